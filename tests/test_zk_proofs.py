import pytest
from ecdsa.ellipticcurve import INFINITY

from zk.zk_proofs import (
    EncodingError,
    PedersenCommitment,
    PedersenGroup,
    ProofError,
    ZKPVote,
    ZKPVoteBuilder,
    ZKPVoteVerifier,
    get_group,
    prove_bit,
    prove_sum,
    slot_context,
    verify_bit,
    verify_sum,
)


@pytest.fixture(scope="module")
def group():
    return get_group()


@pytest.fixture(scope="module")
def builder(group):
    return ZKPVoteBuilder(group)


@pytest.fixture(scope="module")
def verifier(group):
    return ZKPVoteVerifier(group)


# ---------------------------------------------------------------- group

def test_second_generator_is_deterministic_and_independent(group):
    assert get_group() is group
    fresh = PedersenGroup()
    assert fresh.points_equal(fresh.h, group.h)
    assert not group.points_equal(group.h, group.g)
    assert group.encode_point(group.h) != group.encode_point(group.g)

    other_seed = PedersenGroup(generator_seed="another-seed")
    assert not group.points_equal(other_seed.h, group.h)


def test_unsupported_curve_is_refused():
    with pytest.raises(ValueError):
        PedersenGroup("curve25519")


def test_nist_curve_commitments_open():
    nist = get_group("NIST256p")
    commitment, blinding = nist.commit(1)
    assert nist.verify_opening(commitment, 1, blinding)
    assert not nist.verify_opening(commitment, 0, blinding)


def test_commitments_are_additively_homomorphic(group):
    c1, r1 = group.commit(2)
    c2, r2 = group.commit(3)
    total = c1 + c2
    assert group.verify_opening(total, 5, (r1 + r2) % group.order)
    assert not group.verify_opening(total, 6, (r1 + r2) % group.order)


def test_same_value_commits_differently_each_time(group):
    first, _ = group.commit(1)
    second, _ = group.commit(1)
    assert first != second


def test_point_encoding_round_trip(group):
    commitment, _ = group.commit(1)
    encoded = commitment.encode()
    assert len(encoded) == group.point_hex_length
    assert encoded[:2] in ("02", "03")
    assert PedersenCommitment.decode(encoded, group) == commitment


def test_identity_only_decodes_when_allowed(group):
    assert group.encode_point(INFINITY) == "00"
    with pytest.raises(EncodingError):
        group.decode_point("00")
    assert group.is_identity(group.decode_point("00", allow_identity=True))


@pytest.mark.parametrize("encoded", [
    None,
    "02",
    "zz" * 33,
    "05" + "11" * 32,
    "02" + "ff" * 32,
])
def test_malformed_points_are_rejected(group, encoded):
    with pytest.raises(EncodingError):
        group.decode_point(encoded)


def test_unreduced_scalar_is_rejected(group):
    with pytest.raises(EncodingError):
        group.decode_scalar(f"{group.order:0{group.scalar_hex_length}x}")
    with pytest.raises(EncodingError):
        group.decode_scalar("12")
    assert group.decode_scalar(group.encode_scalar(7)) == 7


# ---------------------------------------------------------------- proofs

@pytest.mark.parametrize("bit", [0, 1])
def test_bit_proof_verifies_for_either_bit(group, bit):
    commitment, blinding = group.commit(bit)
    proof = prove_bit(commitment, bit, blinding, b"ctx")
    assert verify_bit(commitment, proof, b"ctx")
    assert not verify_bit(commitment, proof, b"other-ctx")


def test_bit_proof_is_bound_to_its_commitment(group):
    commitment, blinding = group.commit(1)
    proof = prove_bit(commitment, 1, blinding)
    other, _ = group.commit(1)
    assert not verify_bit(other, proof)


def test_bit_proof_refuses_non_bits(group):
    commitment, blinding = group.commit(2)
    with pytest.raises(ValueError):
        prove_bit(commitment, 2, blinding)


def test_commitment_to_two_cannot_pass_as_a_bit(group):
    commitment, blinding = group.commit(2)
    proof = prove_bit(commitment, 1, blinding)
    assert not verify_bit(commitment, proof)


def test_sum_proof_requires_total_of_one(group):
    c0, r0 = group.commit(0)
    c1, r1 = group.commit(1)
    blinding_sum = (r0 + r1) % group.order

    proof = prove_sum([c0, c1], blinding_sum, b"sum")
    assert verify_sum([c0, c1], proof, b"sum")
    assert not verify_sum([c0, c1], proof, b"other")
    assert not verify_sum([], proof, b"sum")

    c2, r2 = group.commit(1)
    overfull = prove_sum([c1, c2], (r1 + r2) % group.order, b"sum")
    assert not verify_sum([c1, c2], overfull, b"sum")


# ----------------------------------------------------------------- votes

def test_built_vote_is_one_hot_and_verifies(builder, verifier, group):
    built = builder.build("election-1", "alice", 1, 3)

    assert built.bits == [0, 1, 0]
    assert built.candidate_index == 1
    assert len(built.vote.slots) == 3
    for bit, blinding, commitment in zip(built.bits, built.blinding_factors, built.vote.commitments):
        assert group.verify_opening(commitment, bit, blinding)
    assert verifier.verify_vote(built.vote)


def test_builder_rejects_out_of_range_candidate(builder):
    with pytest.raises(ValueError):
        builder.build("election-1", "alice", 3, 3)
    with pytest.raises(ValueError):
        builder.build("election-1", "alice", 0, 0)


@pytest.mark.parametrize("bits", [[0, 0, 0], [1, 1, 0]])
def test_non_one_hot_ballots_fail_verification(builder, verifier, bits):
    built = builder.build_from_bits("election-1", "mallory", bits)
    with pytest.raises(ProofError, match="sum to exactly one"):
        verifier.check_vote(built.vote)
    assert not verifier.verify_vote(built.vote)


def test_ballot_with_non_bit_slot_cannot_be_built(builder):
    with pytest.raises(ValueError):
        builder.build_from_bits("election-1", "mallory", [0, 2, 0])


def test_vote_is_bound_to_election_and_voter(builder, verifier):
    built = builder.build("election-1", "alice", 0, 2)
    vote = built.vote

    stolen = ZKPVote("election-1", "mallory", vote.slots, vote.sum_proof)
    with pytest.raises(ProofError, match="slot 0"):
        verifier.check_vote(stolen)
    moved = ZKPVote("election-2", "alice", vote.slots, vote.sum_proof)
    assert not verifier.verify_vote(moved)


def test_vote_payload_round_trip(builder, verifier, group):
    built = builder.build("election-1", "alice", 2, 3)
    payload = built.vote.to_payload()

    assert [set(slot) for slot in payload['slots']] == [{'commitment', 'proof'}] * 3
    assert set(payload['sumProof']) == {'a', 'z'}

    decoded = verifier.decode_vote("election-1", "alice", payload)
    assert decoded.commitments == built.vote.commitments
    assert verifier.verify_payload("election-1", "alice", payload)
    assert not verifier.verify_payload("election-1", "bob", payload)


def test_malformed_payloads_fail_cleanly(builder, verifier):
    payload = builder.build("election-1", "alice", 0, 2).vote.to_payload()
    broken_proof = {**payload, 'slots': [dict(payload['slots'][0], proof={'a0': "00"}),
                                         payload['slots'][1]]}

    for bad in (None, {}, {'slots': []}, {'slots': ["x"]}, broken_proof,
                {'slots': payload['slots']}):
        with pytest.raises(EncodingError):
            verifier.decode_vote("election-1", "alice", bad)
        assert not verifier.verify_payload("election-1", "alice", bad)


def test_verification_hash_is_stable(builder):
    built = builder.build("election-1", "alice", 0, 2)
    digest = ZKPVoteVerifier.verification_hash(built.vote)
    assert len(digest) == 64
    assert ZKPVoteVerifier.verification_hash(built.vote) == digest
    other = builder.build("election-1", "alice", 0, 2)
    assert ZKPVoteVerifier.verification_hash(other.vote) != digest


# ---------------------------------------------------------------- tally

def test_tally_opens_to_candidate_count(builder, verifier):
    choices = {"v1": 0, "v2": 1, "v3": 1, "v4": 2}
    built = [builder.build("election-1", voter, choice, 3) for voter, choice in choices.items()]
    votes = [b.vote for b in built]

    counts = []
    for candidate in range(3):
        tally = verifier.tally(candidate, votes)
        assert tally.total_votes == 4
        counts.append(verifier.open_tally(tally, verifier.blinding_sum(built, candidate)))
    assert counts == [1, 2, 1]

    tally = verifier.tally(1, votes)
    assert tally.to_dict() == {
        'candidateIndex': 1,
        'commitmentSum': tally.commitment.encode(),
        'totalVotes': 4,
    }


def test_tally_refuses_wrong_opening(builder, verifier):
    built = [builder.build("election-1", f"v{i}", 0, 2) for i in range(2)]
    tally = verifier.tally(0, [b.vote for b in built])
    wrong = verifier.blinding_sum(built, 1)
    with pytest.raises(ProofError, match="does not open"):
        verifier.open_tally(tally, wrong)


def test_tally_of_no_votes_opens_to_zero(verifier):
    tally = verifier.tally(0, [])
    assert tally.commitment.encode() == "00"
    assert verifier.open_tally(tally, 0) == 0


def test_tally_rejects_missing_slot(builder, verifier):
    vote = builder.build("election-1", "alice", 0, 2).vote
    with pytest.raises(ValueError):
        verifier.tally(2, [vote])


def test_slot_context_binds_index():
    assert slot_context("e", "v", 0) != slot_context("e", "v", 1)
