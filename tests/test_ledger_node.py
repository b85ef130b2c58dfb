import threading
from dataclasses import replace

from dplt.dplt_ledger import (
    Block,
    BlockStatus,
    LedgerNode,
    MessageType,
    SubmitStatus,
    Transaction,
    TransactionKind,
)


def _vote(voter, candidate=0, election_id="election-1"):
    return Transaction(kind=TransactionKind.VOTE, payload={
        'electionId': election_id, 'voter': voter, 'candidateIndex': candidate})


def _node(clock, node_id="node1"):
    node = LedgerNode(node_id, clock=clock)
    sent = []
    node.attach_broadcaster(lambda sender, kind, body: sent.append((sender, kind, body)))
    return node, sent


def test_submit_fills_in_identity_and_broadcasts(clock):
    node, sent = _node(clock)
    result = node.submit(_vote("alice"))

    assert result.status == SubmitStatus.ACCEPTED
    tx = node.pending[0]
    assert tx.id == result.transaction_id == tx.content_id()
    assert tx.timestamp == clock()
    assert tx.origin_node_id == "node1"
    assert sent == [("node1", MessageType.TRANSACTION, tx.to_dict())]


def test_receive_transaction_does_not_rebroadcast(clock):
    node, sent = _node(clock)
    assert node.receive_transaction(_vote("alice")).accepted
    assert sent == []


def test_duplicates_are_ignored_not_errors(clock):
    node, sent = _node(clock)
    node.submit(_vote("alice", 0))
    again = node.submit(_vote("alice", 2))

    assert again.status == SubmitStatus.DUPLICATE
    assert len(node.pending) == 1
    assert len(sent) == 1

    node.produce_block()
    assert node.submit(_vote("alice", 1)).status == SubmitStatus.DUPLICATE
    assert node.pending == []


def test_id_mismatch_is_rejected(clock):
    node, _ = _node(clock)
    forged = replace(_vote("alice"), id="f" * 64)
    result = node.submit(forged)
    assert result.status == SubmitStatus.REJECTED
    assert "does not match" in result.reason
    assert node.pending == []


def test_invalid_transaction_is_rejected_with_reason(clock):
    node, sent = _node(clock)
    result = node.submit(Transaction(kind=TransactionKind.VOTE, payload={'electionId': "e"}))
    assert result.status == SubmitStatus.REJECTED
    assert "voter" in result.reason
    assert sent == []


def test_produce_block_on_empty_pool_returns_none(clock):
    node, _ = _node(clock)
    assert node.produce_block() is None
    assert node.chain_length == 1


def test_produce_block_seals_pending_in_arrival_order(clock):
    node, sent = _node(clock)
    for voter in ("carol", "alice", "bob"):
        node.submit(_vote(voter))
    clock.advance(1000)

    block = node.produce_block()
    assert [tx.payload['voter'] for tx in block.transactions] == ["carol", "alice", "bob"]
    assert block.index == 1
    assert block.previous_hash == node.chain[0].hash
    assert block.producer_id == "node1"
    assert block.timestamp == clock()
    assert node.pending == []
    assert node.tip == block
    assert sent[-1] == ("node1", MessageType.BLOCK, block.to_dict())
    assert node.validate_chain()


def test_receive_block_outcomes(clock):
    producer, _ = _node(clock, "node1")
    follower, _ = _node(clock, "node2")

    producer.submit(_vote("alice"))
    first = producer.produce_block()
    producer.submit(_vote("bob"))
    second = producer.produce_block()

    assert follower.receive_block(second) == BlockStatus.FORK_SIGNAL
    assert follower.chain_length == 1
    assert follower.receive_block(first) == BlockStatus.APPLIED
    assert follower.receive_block(first) == BlockStatus.DUPLICATE
    assert follower.receive_block(second) == BlockStatus.APPLIED
    assert follower.tip.hash == producer.tip.hash
    assert follower.stats['fork_signals'] == 1


def test_receive_block_rejects_tampered_hash(clock):
    producer, _ = _node(clock, "node1")
    follower, _ = _node(clock, "node2")
    producer.submit(_vote("alice"))
    block = producer.produce_block()

    tampered = replace(block, producer_id="node9")
    assert follower.receive_block(tampered) == BlockStatus.REJECTED
    assert follower.chain_length == 1


def test_receive_block_rejects_invalid_or_committed_transactions(clock):
    producer, _ = _node(clock, "node1")
    follower, _ = _node(clock, "node2")
    producer.submit(_vote("alice"))
    first = producer.produce_block()
    assert follower.receive_block(first) == BlockStatus.APPLIED

    repeat = Block.seal(2, clock(), first.transactions, first.hash, "node1")
    assert follower.receive_block(repeat) == BlockStatus.REJECTED

    bad_tx = Transaction.create(TransactionKind.VOTE, {'electionId': "e"}, "node1", clock())
    invalid = Block.seal(2, clock(), [bad_tx], first.hash, "node1")
    assert follower.receive_block(invalid) == BlockStatus.REJECTED
    assert follower.chain_length == 2


def test_transactions_after_snapshot_stay_pending(clock):
    node, _ = _node(clock)
    node.submit(_vote("alice"))
    block = node.produce_block()
    node.submit(_vote("bob"))
    assert [tx.payload['voter'] for tx in block.transactions] == ["alice"]
    assert [tx.payload['voter'] for tx in node.pending] == ["bob"]


def test_rollback_requeues_removed_transactions_first(clock):
    node, _ = _node(clock)
    node.submit(_vote("alice"))
    node.produce_block()
    node.submit(_vote("bob"))
    node.produce_block()
    node.submit(_vote("carol"))

    requeued = node.rollback_to(0)

    assert [tx.payload['voter'] for tx in requeued] == ["alice", "bob"]
    assert [tx.payload['voter'] for tx in node.pending] == ["alice", "bob", "carol"]
    assert node.chain_length == 1
    assert not node.is_committed(requeued[0].id)
    assert node.validate_chain()


def test_rollback_clamps_and_is_noop_at_tip(clock):
    node, _ = _node(clock)
    node.submit(_vote("alice"))
    node.produce_block()
    assert node.rollback_to(5) == []
    assert node.chain_length == 2
    assert len(node.rollback_to(-3)) == 1
    assert node.chain_length == 1


def test_rollback_never_duplicates_pending(clock):
    node, _ = _node(clock)
    tx = _vote("alice")
    node.submit(tx)
    block = node.produce_block()
    node.rollback_to(0)
    node.receive_transaction(block.transactions[0])
    node.rollback_to(0)
    assert len(node.pending) == 1


def test_rebuild_replays_reference_chain(clock):
    reference, _ = _node(clock, "node1")
    stale, _ = _node(clock, "node2")
    for voter in ("alice", "bob", "carol"):
        reference.submit(_vote(voter))
        reference.produce_block()
    stale.submit(_vote("dave"))
    stale.produce_block()

    assert stale.rebuild_from(reference.chain)
    assert stale.chain_length == 4
    assert stale.tip.hash == reference.tip.hash
    assert [tx.payload['voter'] for tx in stale.pending] == ["dave"]
    assert stale.validate_chain()


def test_rebuild_stops_at_first_broken_block(clock):
    reference, _ = _node(clock, "node1")
    stale, _ = _node(clock, "node2")
    for voter in ("alice", "bob", "carol"):
        reference.submit(_vote(voter))
        reference.produce_block()

    chain = reference.chain
    chain[2] = replace(chain[2], timestamp=chain[2].timestamp + 1)
    assert not stale.rebuild_from(chain)
    assert stale.chain_length == 2
    assert stale.validate_chain()


def test_rebuild_refuses_foreign_genesis(clock):
    node, _ = _node(clock)
    foreign = Block.seal(0, 1, (), "0", "elsewhere")
    assert not node.rebuild_from([foreign])
    assert node.chain_length == 1


def test_append_synced_block_checks_structure_only(clock):
    producer, _ = _node(clock, "node1")
    follower, _ = _node(clock, "node2")
    producer.submit(_vote("alice"))
    block = producer.produce_block()

    assert not follower.append_synced_block(replace(block, hash="0" * 64))
    assert follower.append_synced_block(block)
    assert not follower.append_synced_block(block)
    assert follower.tip.hash == block.hash


def test_appended_blocks_do_not_share_payloads(clock):
    producer, _ = _node(clock, "node1")
    follower, _ = _node(clock, "node2")
    producer.submit(_vote("alice"))
    block = producer.produce_block()
    assert follower.append_synced_block(block)

    follower.chain[1].transactions[0].payload['candidateIndex'] = 1
    block.transactions[0].payload['voter'] = "mallory"

    assert not follower.validate_chain()
    assert producer.validate_chain()
    assert producer.chain[1].transactions[0].payload == {
        'electionId': "election-1", 'voter': "alice", 'candidateIndex': 0}


def test_concurrent_submit_and_produce_keep_each_transaction_once(clock):
    node, _ = _node(clock)
    accepted = []
    done = threading.Event()

    def submit_votes():
        for i in range(200):
            result = node.submit(_vote(f"voter_{i:03d}"))
            if result.accepted:
                accepted.append(result.transaction_id)
        done.set()

    def produce_blocks():
        while not done.is_set():
            node.produce_block()
        node.produce_block()

    threads = [threading.Thread(target=submit_votes), threading.Thread(target=produce_blocks)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(accepted) == 200
    chained = [tx.id for block in node.chain for tx in block.transactions]
    pending = [tx.id for tx in node.pending]
    assert len(chained) == len(set(chained))
    assert sorted(chained + pending) == sorted(accepted)
    assert node.validate_chain()


def test_status_reports_chain_and_pool(clock):
    node, _ = _node(clock)
    node.submit(_vote("alice"))
    status = node.get_status()
    assert status['node_id'] == "node1"
    assert status['chain_length'] == 1
    assert status['pending'] == 1
    assert status['stats']['transactions_accepted'] == 1
    assert status['validator']['approved'] == 1
