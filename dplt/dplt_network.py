"""
DPLT Network Module
===================
Owns the ledger nodes and the consensus coordinator, carries signed peer
messages between per-node inboxes, runs the periodic block and
reconciliation tasks, and exposes the inbound API used by the election
layer.
"""

import asyncio
import hashlib
import logging
import secrets
import struct
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from config.config import SystemConfig
from settlement.settlement_mirror import MirrorError, MirrorReceipt, SettlementMirror, create_settlement_mirror
from utils.utils import PerformanceMonitor, canonical_json, now_ms
from zk.zk_proofs import ZKPVoteVerifier, get_group
from .dplt_consensus import ConsensusCoordinator, ReconciliationReport
from .dplt_ledger import (
    Block,
    BlockStatus,
    BlockSummary,
    LedgerNode,
    MessageType,
    SubmitStatus,
    Transaction,
    TransactionKind,
    TransactionValidator,
    ValidationError,
)

logger = logging.getLogger(__name__)

MESSAGE_MAX_AGE_SECONDS = 30
NONCE_BYTES = 16
MIN_TICK_SECONDS = 0.01


# ============================================================================
# MESSAGES
# ============================================================================


@dataclass
class NetworkMessage:
    """Signed peer message with replay protection"""
    message_type: MessageType
    sender_id: str
    body: Dict[str, Any]
    nonce: bytes
    timestamp: float
    signature: bytes = b""

    def signing_bytes(self) -> bytes:
        content = canonical_json({
            'type': self.message_type.value,
            'sender': self.sender_id,
            'body': self.body,
        })
        return content.encode('utf-8') + self.nonce + struct.pack('d', self.timestamp)

    @classmethod
    def create(cls, message_type: MessageType, sender_id: str, body: Dict[str, Any],
               private_key: Ed25519PrivateKey) -> 'NetworkMessage':
        message = cls(
            message_type=message_type,
            sender_id=sender_id,
            body=body,
            nonce=secrets.token_bytes(NONCE_BYTES),
            timestamp=time.time(),
        )
        message.signature = private_key.sign(message.signing_bytes())
        return message

    def verify(self, public_key: Ed25519PublicKey, nonce_tracker: Optional[Dict[str, float]] = None) -> bool:
        """Verify signature and freshness; a nonce is accepted once per tracker"""
        now = time.time()
        if abs(now - self.timestamp) > MESSAGE_MAX_AGE_SECONDS:
            logger.warning(f"Stale message from {self.sender_id}")
            return False

        try:
            public_key.verify(self.signature, self.signing_bytes())
        except InvalidSignature:
            return False
        except (TypeError, ValueError) as e:
            logger.debug(f"Unverifiable message from {self.sender_id}: {e}")
            return False

        if nonce_tracker is not None:
            # Nonces older than the freshness window can no longer be replayed
            expired = [h for h, seen_at in nonce_tracker.items()
                       if now - seen_at > MESSAGE_MAX_AGE_SECONDS]
            for h in expired:
                del nonce_tracker[h]

            nonce_hash = hashlib.sha256(self.nonce).hexdigest()
            if nonce_hash in nonce_tracker:
                logger.warning(
                    f"Replay detected: duplicate nonce from {self.sender_id}")
                return False
            nonce_tracker[nonce_hash] = self.timestamp
        return True


@dataclass
class NodeEndpoint:
    node: LedgerNode
    private_key: Ed25519PrivateKey
    inbox: asyncio.Queue
    seen_nonces: Dict[str, float]

    @property
    def node_id(self) -> str:
        return self.node.node_id


@dataclass
class DeliveryResult:
    node_id: str
    message_type: MessageType
    reference: str
    status: Union[SubmitStatus, BlockStatus]


@dataclass
class SubmitReceipt:
    status: SubmitStatus
    transaction_id: Optional[str]
    node_id: Optional[str]
    reason: Optional[str] = None
    mirror: Optional[MirrorReceipt] = None

    @property
    def accepted(self) -> bool:
        return self.status == SubmitStatus.ACCEPTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'transactionId': self.transaction_id,
            'nodeId': self.node_id,
            'reason': self.reason,
            'mirror': self.mirror.to_dict() if self.mirror else None,
        }


# ============================================================================
# NETWORK HANDLE
# ============================================================================


class NetworkHandle:
    """Explicitly constructed owner of every node, inbox and periodic task"""

    def __init__(self, config: Optional[SystemConfig] = None,
                 clock: Optional[Callable[[], int]] = None,
                 mirror: Optional[SettlementMirror] = None,
                 monitor: Optional[PerformanceMonitor] = None):
        self.config = config or SystemConfig()
        ledger_config = self.config.ledger
        self._clock = clock or now_ms
        self.monitor = monitor or PerformanceMonitor()

        group = get_group(self.config.zkp.curve,
                          self.config.zkp.generator_seed)
        self.zkp_verifier = ZKPVoteVerifier(group)

        self.endpoints: Dict[str, NodeEndpoint] = {}
        for node_id in ledger_config.node_ids:
            validator = TransactionValidator(
                node_id, self.zkp_verifier, clock=self._clock,
                cache_size=ledger_config.validator_cache_size)
            node = LedgerNode(node_id, validator, clock=self._clock)
            node.attach_broadcaster(self._broadcast)
            self.endpoints[node_id] = NodeEndpoint(
                node=node,
                private_key=Ed25519PrivateKey.generate(),
                inbox=asyncio.Queue(),
                seen_nonces={},
            )
        self.public_keys: Dict[str, Ed25519PublicKey] = {
            node_id: endpoint.private_key.public_key()
            for node_id, endpoint in self.endpoints.items()
        }

        self._partitioned: Set[str] = set()
        self._resync_event: Optional[asyncio.Event] = None

        self.coordinator = ConsensusCoordinator(
            self.nodes,
            block_interval_ms=ledger_config.block_interval_ms,
            sync_interval_ms=ledger_config.sync_interval_ms,
            shallow_divergence_limit=ledger_config.shallow_divergence_limit,
            clock=self._clock,
            monitor=self.monitor,
        )
        self.coordinator.set_propagator(self._propagate_block)
        self.coordinator.set_reachability(
            lambda node: node.node_id not in self._partitioned)
        self.coordinator.add_resync_listener(self._on_resync_requested)

        self.mirror = mirror or create_settlement_mirror(self.config.mirror)

        self.stats = {
            'messages_sent': 0,
            'messages_delivered': 0,
            'messages_dropped': 0,
            'unauthenticated_dropped': 0,
        }

        logger.info(
            f"DPLT network started with nodes {list(self.endpoints)}")

    # ------------------------------------------------------------------ nodes

    @property
    def nodes(self) -> List[LedgerNode]:
        return [endpoint.node for endpoint in self.endpoints.values()]

    def get_node(self, node_id: str) -> LedgerNode:
        if node_id not in self.endpoints:
            raise ValueError(f"Unknown node {node_id}")
        return self.endpoints[node_id].node

    def partition(self, node_id: str):
        """Cut a node off: its traffic is dropped and consensus ignores it"""
        self.get_node(node_id)
        self._partitioned.add(node_id)
        logger.warning(f"Node {node_id} partitioned from the network")

    def heal(self, node_id: Optional[str] = None):
        healed = [node_id] if node_id else sorted(self._partitioned)
        for healed_id in healed:
            self._partitioned.discard(healed_id)
        logger.info(f"Healed partition for {healed}")
        self.coordinator.request_resync()

    def is_partitioned(self, node_id: str) -> bool:
        return node_id in self._partitioned

    # ---------------------------------------------------------------- traffic

    def _broadcast(self, sender_id: str, message_type: MessageType, body: Dict[str, Any]):
        if sender_id in self._partitioned:
            self.stats['messages_dropped'] += 1
            logger.debug(f"Dropped {message_type.value} from partitioned {sender_id}")
            return

        message = NetworkMessage.create(
            message_type, sender_id, body, self.endpoints[sender_id].private_key)
        for peer_id, endpoint in self.endpoints.items():
            if peer_id == sender_id:
                continue
            if peer_id in self._partitioned:
                self.stats['messages_dropped'] += 1
                continue
            endpoint.inbox.put_nowait(message)
            self.stats['messages_sent'] += 1

    def inject(self, node_id: str, message: NetworkMessage):
        """Place a raw message in a node's inbox"""
        self.endpoints[node_id].inbox.put_nowait(message)

    def _dispatch(self, endpoint: NodeEndpoint, message: NetworkMessage) -> Optional[DeliveryResult]:
        sender_key = self.public_keys.get(message.sender_id)
        if sender_key is None or not message.verify(sender_key, endpoint.seen_nonces):
            self.stats['unauthenticated_dropped'] += 1
            logger.warning(
                f"Node {endpoint.node_id} dropped unauthenticated {message.message_type.value} "
                f"claiming to be from {message.sender_id}")
            return None

        node = endpoint.node
        try:
            if message.message_type == MessageType.TRANSACTION:
                tx = Transaction.from_dict(message.body)
                result = node.receive_transaction(tx)
                delivery = DeliveryResult(
                    node.node_id, message.message_type, tx.id, result.status)
            else:
                block = Block.from_dict(message.body)
                status = node.receive_block(block)
                delivery = DeliveryResult(
                    node.node_id, message.message_type, block.hash, status)
                if status == BlockStatus.FORK_SIGNAL:
                    self.coordinator.request_resync()
        except ValidationError as e:
            self.stats['messages_dropped'] += 1
            logger.warning(
                f"Node {node.node_id} dropped malformed {message.message_type.value}: {e}")
            return None

        self.stats['messages_delivered'] += 1
        return delivery

    def deliver_pending(self) -> List[DeliveryResult]:
        """Drain every inbox synchronously until the network is quiet"""
        results = []
        delivered = True
        while delivered:
            delivered = False
            for endpoint in self.endpoints.values():
                while not endpoint.inbox.empty():
                    message = endpoint.inbox.get_nowait()
                    endpoint.inbox.task_done()
                    delivered = True
                    if endpoint.node_id in self._partitioned:
                        self.stats['messages_dropped'] += 1
                        continue
                    result = self._dispatch(endpoint, message)
                    if result is not None:
                        results.append(result)
        return results

    def _propagate_block(self, block: Block, leader: LedgerNode) -> Dict[str, BlockStatus]:
        self._broadcast(leader.node_id, MessageType.BLOCK, block.to_dict())
        return {
            result.node_id: result.status
            for result in self.deliver_pending()
            if result.message_type == MessageType.BLOCK and result.reference == block.hash
        }

    def produce_block_on(self, node_id: str) -> Optional[Block]:
        """Let one node seal its pool on its own, outside the coordinator's rounds"""
        return self.get_node(node_id).produce_block()

    # --------------------------------------------------------- periodic tasks

    def _on_resync_requested(self):
        if self._resync_event is not None:
            self._resync_event.set()

    async def _dispatcher(self, endpoint: NodeEndpoint):
        while True:
            message = await endpoint.inbox.get()
            try:
                if endpoint.node_id in self._partitioned:
                    self.stats['messages_dropped'] += 1
                else:
                    self._dispatch(endpoint, message)
            finally:
                endpoint.inbox.task_done()

    async def _block_ticker(self):
        while True:
            wait_ms = self.coordinator.next_round_in_ms()
            await asyncio.sleep(max(wait_ms / 1000, MIN_TICK_SECONDS))
            self.request_block_round()

    async def _reconcile_ticker(self):
        interval = self.coordinator.sync_interval_ms / 1000
        while True:
            try:
                await asyncio.wait_for(self._resync_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            self._resync_event.clear()
            if self.coordinator.resync_requested or not self.coordinator.all_consistent():
                self.coordinator.reconcile()

    async def run(self, duration_s: Optional[float] = None):
        """Run dispatchers and tickers; forever unless a duration is given"""
        self._resync_event = asyncio.Event()
        tasks = [asyncio.create_task(self._dispatcher(endpoint))
                 for endpoint in self.endpoints.values()]
        tasks.append(asyncio.create_task(self._block_ticker()))
        tasks.append(asyncio.create_task(self._reconcile_ticker()))

        try:
            if duration_s is None:
                await asyncio.gather(*tasks)
            else:
                await asyncio.sleep(duration_s)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._resync_event = None

    # ------------------------------------------------------------ inbound API

    def _entry_node(self, node_id: Optional[str]) -> LedgerNode:
        if node_id is not None:
            return self.get_node(node_id)
        participants = self.coordinator.participants()
        return participants[0] if participants else self.nodes[0]

    def _mirror(self, tx: Transaction) -> MirrorReceipt:
        try:
            return self.mirror.mirror_transaction(tx)
        except MirrorError as e:
            logger.warning(f"Settlement mirror failed, keeping local record: {e}")
            return MirrorReceipt(accepted=False, error=str(e))

    def submit_transaction(self, kind: Union[TransactionKind, str], payload: Dict[str, Any],
                           node_id: Optional[str] = None) -> SubmitReceipt:
        node = self._entry_node(node_id)
        try:
            kind = TransactionKind(kind)
        except ValueError:
            return SubmitReceipt(SubmitStatus.REJECTED, None, node.node_id,
                                 f"Unknown transaction kind: {kind!r}")
        if not isinstance(payload, dict):
            return SubmitReceipt(SubmitStatus.REJECTED, None, node.node_id,
                                 "Transaction payload must be an object")

        result = node.submit(Transaction(kind=kind, payload=dict(payload)))
        receipt = SubmitReceipt(
            result.status, result.transaction_id, node.node_id, result.reason)
        if result.accepted:
            receipt.mirror = self._mirror(result.transaction)
        return receipt

    def request_block_round(self, force: bool = False) -> Optional[BlockSummary]:
        self.deliver_pending()
        block = self.coordinator.run_block_round(force=force)
        self.deliver_pending()
        return block.summary() if block else None

    def reconcile(self) -> ReconciliationReport:
        self.deliver_pending()
        return self.coordinator.reconcile()

    def get_chain_snapshot(self, node_id: str) -> List[BlockSummary]:
        return [block.summary() for block in self.get_node(node_id).chain]

    def get_network_consistency(self) -> Dict[str, Any]:
        return {
            'consistent': self.coordinator.all_consistent(),
            'nodeCount': len(self.endpoints),
            'blockCount': self.nodes[0].chain_length,
            'nextRoundInMillis': self.coordinator.next_round_in_ms(),
        }

    def get_network_stats(self) -> Dict[str, Any]:
        nodes = self.nodes
        return {
            'nodeCount': len(nodes),
            'blockCount': nodes[0].chain_length,
            'lastBlockTime': nodes[0].tip.timestamp,
            'transactions': {
                'pending': sum(len(node.pending) for node in nodes),
                'processed': sum(len(block.transactions) for node in nodes for block in node.chain),
            },
            'nodes': {node.node_id: node.get_status() for node in nodes},
            'partitioned': sorted(self._partitioned),
            'network': dict(self.stats),
            'consensus': self.coordinator.get_stats(),
            'performance': self.monitor.get_summary(),
        }
