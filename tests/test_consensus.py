import pytest

from dplt.dplt_consensus import ConsensusCoordinator, RoundState, SyncAction
from dplt.dplt_ledger import Block, ConsensusStall, LedgerNode, Transaction, TransactionKind

INTERVAL_MS = 1000


def _vote(voter, election_id="election-1"):
    return Transaction(kind=TransactionKind.VOTE, payload={
        'electionId': election_id, 'voter': voter, 'candidateIndex': 0})


def _nodes(clock, count=3):
    return [LedgerNode(f"node{i + 1}", clock=clock) for i in range(count)]


def _grow(node, voter):
    node.submit(_vote(voter))
    return node.produce_block()


def _share(block, *nodes):
    for node in nodes:
        node.receive_block(block)


def _coordinator(nodes, clock, **kwargs):
    return ConsensusCoordinator(nodes, block_interval_ms=INTERVAL_MS, sync_interval_ms=500,
                                clock=clock, **kwargs)


def _break_chain(node):
    tip = node.tip
    node._chain.append(Block(tip.index + 1, 0, (), tip.hash, "nobody", "bad"))


def test_leader_is_round_robin_on_the_time_slot(clock):
    nodes = _nodes(clock)
    coordinator = _coordinator(nodes, clock)

    slot = clock() // INTERVAL_MS
    assert coordinator.select_leader() is nodes[slot % 3]
    clock.advance(INTERVAL_MS)
    assert coordinator.select_leader() is nodes[(slot + 1) % 3]


def test_leader_selection_skips_broken_chains(clock):
    nodes = _nodes(clock)
    coordinator = _coordinator(nodes, clock)
    slot = clock() // INTERVAL_MS
    expected = nodes[slot % 3]
    _break_chain(expected)

    assert coordinator.select_leader() is nodes[(slot + 1) % 3]


def test_no_valid_leader_raises_stall_and_round_degrades_to_first_node(clock):
    nodes = _nodes(clock)
    coordinator = _coordinator(nodes, clock)
    for node in nodes:
        node.submit(_vote("alice"))
        _break_chain(node)

    with pytest.raises(ConsensusStall):
        coordinator.select_leader()

    block = coordinator.run_block_round()
    assert coordinator.degraded_rounds == 1
    assert block is None or block.producer_id == "node1"


def test_round_walks_the_state_machine(clock):
    nodes = _nodes(clock)
    coordinator = _coordinator(nodes, clock)
    for node in nodes:
        node.receive_transaction(_vote("alice"))

    block = coordinator.run_block_round()

    assert block is not None
    assert coordinator.round_trace == [
        RoundState.LEADER_SELECTED,
        RoundState.BLOCK_PRODUCED,
        RoundState.PROPAGATED,
        RoundState.RECONCILED,
        RoundState.IDLE,
    ]
    assert coordinator.state == RoundState.IDLE
    assert coordinator.all_consistent()
    assert all(node.pending == [] for node in nodes)
    assert all(node.tip.hash == block.hash for node in nodes)


def test_cadence_gate_blocks_early_rounds(clock):
    nodes = _nodes(clock)
    coordinator = _coordinator(nodes, clock)

    def offer(voter):
        for node in nodes:
            node.receive_transaction(_vote(voter))

    offer("alice")
    assert coordinator.run_block_round() is not None

    offer("bob")
    clock.advance(INTERVAL_MS - 1)
    assert coordinator.run_block_round() is None
    assert coordinator.next_round_in_ms() == 1

    clock.advance(1)
    assert coordinator.run_block_round() is not None
    assert coordinator.rounds_completed == 2


def test_empty_pools_make_the_round_a_noop(clock):
    nodes = _nodes(clock)
    coordinator = _coordinator(nodes, clock)

    assert coordinator.run_block_round() is None
    assert coordinator.last_block_time == 0
    assert coordinator.state == RoundState.IDLE
    assert all(node.chain_length == 1 for node in nodes)


def test_divergent_single_block_forks_converge_on_the_longer_chain(clock):
    a, b = _nodes(clock, 2)
    _grow(a, "alice")
    _grow(a, "bob")
    _grow(b, "carol")
    coordinator = _coordinator([a, b], clock)
    assert not coordinator.all_consistent()

    report = coordinator.reconcile()

    assert report.reference_node_id == "node1"
    assert report.actions["node2"] == SyncAction.REBUILD
    assert report.consistent
    assert coordinator.get_stats()['consistent']
    assert b.tip.hash == a.tip.hash
    assert b.validate_chain()
    assert [tx.payload['voter'] for tx in b.pending] == ["carol"]


def test_partitioned_node_is_rebuilt_from_five_block_reference(clock):
    a, b = _nodes(clock, 2)
    for voter in ("v1", "v2", "v3", "v4", "v5"):
        _grow(a, voter)
    _grow(b, "stranded")
    assert a.chain_length == 6 and b.chain_length == 2

    report = _coordinator([a, b], clock).reconcile()

    assert report.actions["node2"] == SyncAction.REBUILD
    assert b.chain_length == 6
    assert b.tip.hash == a.tip.hash
    assert b.stats['rebuilds'] == 1


def test_shallow_fork_is_resolved_incrementally(clock):
    a, b = _nodes(clock, 2)
    shared = _grow(a, "alice")
    _share(shared, b)
    _grow(a, "bob")
    _grow(b, "carol")
    assert a.chain_length == b.chain_length == 3

    report = _coordinator([a, b], clock).reconcile()

    assert report.actions["node2"] == SyncAction.INCREMENTAL
    assert b.tip.hash == a.tip.hash
    assert b.chain[1].hash == shared.hash
    assert b.stats['rollbacks'] == 1
    assert b.stats['rebuilds'] == 0
    assert [tx.payload['voter'] for tx in b.pending] == ["carol"]


def test_lagging_node_catches_up_without_rollback(clock):
    a, b = _nodes(clock, 2)
    first = _grow(a, "alice")
    _share(first, b)
    _grow(a, "bob")
    _grow(a, "carol")

    report = _coordinator([a, b], clock).reconcile()

    assert report.actions["node2"] == SyncAction.INCREMENTAL
    assert b.chain_length == 4
    assert b.tip.hash == a.tip.hash


def test_node_with_broken_chain_is_rebuilt(clock):
    a, b = _nodes(clock, 2)
    first = _grow(a, "alice")
    _share(first, b)
    _break_chain(b)

    report = _coordinator([a, b], clock).reconcile()

    assert report.actions["node2"] == SyncAction.REBUILD
    assert b.validate_chain()
    assert b.tip.hash == a.tip.hash


def test_consistent_nodes_are_left_alone(clock):
    nodes = _nodes(clock)
    report = _coordinator(nodes, clock).reconcile()
    assert report.actions == {
        "node1": SyncAction.REFERENCE,
        "node2": SyncAction.IN_SYNC,
        "node3": SyncAction.IN_SYNC,
    }
    assert report.consistent


def test_failed_sync_is_reported_and_retried_next_cycle(clock, monkeypatch):
    a, b = _nodes(clock, 2)
    for voter in ("v1", "v2", "v3", "v4"):
        _grow(a, voter)
    coordinator = _coordinator([a, b], clock)

    monkeypatch.setattr(b, "rebuild_from", lambda chain: False)
    report = coordinator.reconcile()
    assert report.actions["node2"] == SyncAction.FAILED
    assert "node2" in report.errors
    assert not report.consistent

    monkeypatch.undo()
    report = coordinator.reconcile()
    assert report.actions["node2"] == SyncAction.REBUILD
    assert report.consistent


def test_inconsistent_nodes_are_reconciled_before_a_round(clock):
    a, b, c = _nodes(clock)
    _grow(a, "alice")
    coordinator = _coordinator([a, b, c], clock)
    for node in (a, b, c):
        node.receive_transaction(_vote("bob"))

    block = coordinator.run_block_round()

    assert block is not None
    assert coordinator.last_report is not None
    assert coordinator.all_consistent()
    assert all(node.chain_length == 3 for node in (a, b, c))


def test_round_left_inconsistent_requests_resync(clock):
    nodes = _nodes(clock)
    coordinator = _coordinator(nodes, clock)
    woken = []
    coordinator.add_resync_listener(lambda: woken.append(True))
    # Deliver the new block nowhere
    coordinator.set_propagator(lambda block, leader: {})
    for node in nodes:
        node.receive_transaction(_vote("alice"))

    block = coordinator.run_block_round()

    assert block is not None
    assert coordinator.resync_requested
    assert woken == [True]

    report = coordinator.reconcile()
    assert report.consistent
    assert not coordinator.resync_requested


def test_unreachable_nodes_are_left_out(clock):
    a, b, c = _nodes(clock)
    coordinator = _coordinator([a, b, c], clock)
    coordinator.set_reachability(lambda node: node is not c)
    _grow(a, "alice")

    report = coordinator.reconcile()

    assert "node3" not in report.actions
    assert b.tip.hash == a.tip.hash
    assert c.chain_length == 1
    assert coordinator.all_consistent()
