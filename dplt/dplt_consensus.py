"""
DPLT Consensus Module
=====================
Round-robin leader selection, block propagation and fork reconciliation
across the ledger nodes of one network.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from utils.utils import PerformanceMonitor, now_ms
from .dplt_ledger import (
    Block,
    BlockStatus,
    ConsensusStall,
    DivergenceError,
    LedgerNode,
)

logger = logging.getLogger(__name__)


class RoundState(Enum):
    IDLE = "idle"
    LEADER_SELECTED = "leader_selected"
    BLOCK_PRODUCED = "block_produced"
    PROPAGATED = "propagated"
    RECONCILED = "reconciled"


class SyncAction(Enum):
    REFERENCE = "reference"
    IN_SYNC = "in_sync"
    INCREMENTAL = "incremental"
    REBUILD = "rebuild"
    FAILED = "failed"


@dataclass
class ReconciliationReport:
    reference_node_id: Optional[str]
    actions: Dict[str, SyncAction] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    consistent: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'reference_node_id': self.reference_node_id,
            'actions': {node_id: action.value for node_id, action in self.actions.items()},
            'errors': dict(self.errors),
            'consistent': self.consistent,
        }


Propagator = Callable[[Block, LedgerNode], Dict[str, BlockStatus]]


class ConsensusCoordinator:
    """Decides who seals the next block and keeps node chains converged"""

    def __init__(self, nodes: Sequence[LedgerNode], block_interval_ms: int = 10000,
                 sync_interval_ms: int = 5000, shallow_divergence_limit: int = 2,
                 clock: Optional[Callable[[], int]] = None,
                 monitor: Optional[PerformanceMonitor] = None):
        if not nodes:
            raise ValueError("Consensus needs at least one node")

        self.nodes: List[LedgerNode] = list(nodes)
        self.block_interval_ms = block_interval_ms
        self.sync_interval_ms = sync_interval_ms
        self.shallow_divergence_limit = shallow_divergence_limit
        self._clock = clock or now_ms
        self.monitor = monitor or PerformanceMonitor()

        self.state = RoundState.IDLE
        self.round_trace: List[RoundState] = []
        self.last_block_time = 0
        self.rounds_completed = 0
        self.degraded_rounds = 0
        self.resync_requested = False
        self.last_report: Optional[ReconciliationReport] = None

        self._round_lock = threading.Lock()
        self._resync_listeners: List[Callable[[], None]] = []
        self._propagator: Optional[Propagator] = None
        self._reachable: Callable[[LedgerNode], bool] = lambda node: True

        logger.info(
            f"Consensus initialized with {len(self.nodes)} nodes, "
            f"block interval {block_interval_ms}ms, sync interval {sync_interval_ms}ms")

    # ----------------------------------------------------------------- wiring

    def set_propagator(self, propagator: Optional[Propagator]):
        self._propagator = propagator

    def set_reachability(self, reachable: Callable[[LedgerNode], bool]):
        self._reachable = reachable

    def add_resync_listener(self, listener: Callable[[], None]):
        self._resync_listeners.append(listener)

    def participants(self) -> List[LedgerNode]:
        """Nodes currently reachable by the coordinator, in enumeration order"""
        return [node for node in self.nodes if self._reachable(node)]

    def _set_state(self, state: RoundState):
        self.state = state
        self.round_trace.append(state)

    # ------------------------------------------------------------ block round

    def next_round_in_ms(self) -> int:
        return max(0, self.block_interval_ms - (self._clock() - self.last_block_time))

    def select_leader(self, now: Optional[int] = None) -> LedgerNode:
        """Round-robin on the time slot, skipping nodes whose chain fails validation"""
        now = self._clock() if now is None else now
        candidates = self.participants()
        if not candidates:
            raise ConsensusStall("No reachable nodes")

        slot = now // self.block_interval_ms
        for offset in range(len(candidates)):
            node = candidates[(slot + offset) % len(candidates)]
            if node.validate_chain():
                return node
            logger.warning(
                f"Skipping leader candidate {node.node_id}: chain failed validation")
        raise ConsensusStall("No node has a structurally valid chain")

    def run_block_round(self, force: bool = False) -> Optional[Block]:
        """One production round; returns the new block or None if there was nothing to do"""
        with self._round_lock:
            now = self._clock()
            if not force and now - self.last_block_time < self.block_interval_ms:
                return None

            self.round_trace = []
            with self.monitor.start_operation("block_round"):
                if not self.all_consistent():
                    logger.info("Nodes inconsistent before block round, reconciling first")
                    self.reconcile()

                try:
                    leader = self.select_leader(now)
                except ConsensusStall as e:
                    fallback = self.participants() or self.nodes
                    leader = fallback[0]
                    self.degraded_rounds += 1
                    logger.warning(
                        f"Degraded leader selection ({e}); falling back to {leader.node_id}")
                self._set_state(RoundState.LEADER_SELECTED)

                block = leader.produce_block(broadcast=False)
                if block is None:
                    self._set_state(RoundState.IDLE)
                    return None
                self.last_block_time = now
                self._set_state(RoundState.BLOCK_PRODUCED)

                statuses = self._propagate(block, leader)
                forks = [node_id for node_id, status in statuses.items()
                         if status == BlockStatus.FORK_SIGNAL]
                if forks:
                    logger.info(
                        f"Block {block.index} left for reconciliation on {forks}")
                self._set_state(RoundState.PROPAGATED)

                if not self.all_consistent():
                    logger.warning(
                        f"Nodes still inconsistent after block {block.index}, scheduling resync")
                    self.request_resync()
                self._set_state(RoundState.RECONCILED)
                self.rounds_completed += 1

            self._set_state(RoundState.IDLE)
            logger.info(
                f"Round {self.rounds_completed}: {leader.node_id} sealed block {block.index}")
            return block

    def _propagate(self, block: Block, leader: LedgerNode) -> Dict[str, BlockStatus]:
        if self._propagator is not None:
            return self._propagator(block, leader)

        statuses = {}
        for node in self.participants():
            if node is not leader:
                statuses[node.node_id] = node.receive_block(block)
        return statuses

    # --------------------------------------------------------- reconciliation

    def all_consistent(self) -> bool:
        nodes = self.participants()
        if not nodes:
            return True
        first = nodes[0].tip
        first_length = nodes[0].chain_length
        return all(node.chain_length == first_length and node.tip.hash == first.hash
                   for node in nodes[1:])

    def request_resync(self):
        self.resync_requested = True
        for listener in self._resync_listeners:
            listener()

    def _select_reference(self, nodes: Sequence[LedgerNode]) -> Optional[LedgerNode]:
        """Longest structurally valid chain, first in enumeration order on ties"""
        reference = None
        for node in nodes:
            if not node.validate_chain():
                continue
            if reference is None or node.chain_length > reference.chain_length:
                reference = node
        return reference

    def _sync_node(self, node: LedgerNode, reference_chain: List[Block]) -> SyncAction:
        chain = node.chain
        if len(chain) == len(reference_chain) and chain[-1].hash == reference_chain[-1].hash:
            return SyncAction.IN_SYNC

        first_blocks_differ = (len(chain) > 1 and len(reference_chain) > 1
                               and chain[1].hash != reference_chain[1].hash)
        deep = (not node.validate_chain()
                or abs(len(reference_chain) - len(chain)) > self.shallow_divergence_limit
                or first_blocks_differ)

        if deep:
            if not node.rebuild_from(reference_chain):
                raise DivergenceError(f"Rebuild of {node.node_id} failed")
            action = SyncAction.REBUILD
        else:
            fork_point = 0
            for i in range(1, min(len(chain), len(reference_chain))):
                if chain[i].hash != reference_chain[i].hash:
                    break
                fork_point = i

            node.rollback_to(fork_point)
            for block in reference_chain[fork_point + 1:]:
                if not node.append_synced_block(block):
                    raise DivergenceError(
                        f"Node {node.node_id} refused block {block.index} after fork point {fork_point}")
            action = SyncAction.INCREMENTAL

        if node.tip.hash != reference_chain[-1].hash:
            raise DivergenceError(
                f"Node {node.node_id} tip differs from reference after {action.value} sync")
        return action

    def reconcile(self) -> ReconciliationReport:
        """Bring every reachable node onto the reference chain; failures retry next cycle"""
        with self.monitor.start_operation("reconciliation"):
            nodes = self.participants()
            reference = self._select_reference(nodes)
            if reference is None:
                logger.error("No node holds a valid chain; reconciliation deferred")
                report = ReconciliationReport(
                    reference_node_id=None,
                    actions={node.node_id: SyncAction.FAILED for node in nodes},
                )
                self.last_report = report
                return report

            reference_chain = reference.chain
            report = ReconciliationReport(reference_node_id=reference.node_id)
            for node in nodes:
                if node is reference:
                    report.actions[node.node_id] = SyncAction.REFERENCE
                    continue
                try:
                    action = self._sync_node(node, reference_chain)
                except DivergenceError as e:
                    logger.warning(f"Reconciliation failed: {e}")
                    report.actions[node.node_id] = SyncAction.FAILED
                    report.errors[node.node_id] = str(e)
                    continue

                report.actions[node.node_id] = action
                if action != SyncAction.IN_SYNC:
                    logger.info(
                        f"Node {node.node_id} synchronized to {reference.node_id} via {action.value}")

            report.consistent = self.all_consistent()
            if report.consistent:
                self.resync_requested = False
            self.last_report = report
            return report

    def get_stats(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'rounds_completed': self.rounds_completed,
            'degraded_rounds': self.degraded_rounds,
            'block_interval_ms': self.block_interval_ms,
            'sync_interval_ms': self.sync_interval_ms,
            'next_block_in_ms': self.next_round_in_ms(),
            'resync_requested': self.resync_requested,
            'consistent': self.all_consistent(),
            'last_reconciliation': self.last_report.to_dict() if self.last_report else None,
        }
