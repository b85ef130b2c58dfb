"""
Zero-Knowledge Vote Commitment Module
Pedersen bit commitments, OR-proofs and homomorphic tallying
"""

from .zk_proofs import (
    # Group and primitives
    PedersenGroup,
    PedersenCommitment,
    BitProof,
    SumProof,
    get_group,
    prove_bit,
    verify_bit,
    prove_sum,
    verify_sum,

    # Votes
    VoteSlot,
    ZKPVote,
    BuiltVote,
    TallyCommitment,
    ZKPVoteBuilder,
    ZKPVoteVerifier,

    # Exceptions
    ZKError,
    ProofError,
    EncodingError,
)

__all__ = [
    'PedersenGroup',
    'PedersenCommitment',
    'BitProof',
    'SumProof',
    'get_group',
    'prove_bit',
    'verify_bit',
    'prove_sum',
    'verify_sum',
    'VoteSlot',
    'ZKPVote',
    'BuiltVote',
    'TallyCommitment',
    'ZKPVoteBuilder',
    'ZKPVoteVerifier',
    'ZKError',
    'ProofError',
    'EncodingError',
]
