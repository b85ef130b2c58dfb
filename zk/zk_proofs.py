"""
Zero-Knowledge Vote Commitment Module
=====================================
Pedersen commitments over a prime-order elliptic-curve group (secp256k1 by
default), non-interactive proofs that a commitment opens to 0 or 1, a sum
proof that a ballot's slots add up to exactly one vote, and homomorphic
per-candidate tallying.

Bit proofs are disjunctive Schnorr (Cramer-Damgard-Schoenmakers) OR-proofs:
the verifier learns that C = 0*G + r*H or C = 1*G + r*H but not which. The
claimed bit is never part of the proof or of its Fiat-Shamir challenge.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ecdsa import SECP256k1, NIST256p
from ecdsa.ellipticcurve import PointJacobi, INFINITY

logger = logging.getLogger(__name__)

# ============================================================================
# CONSTANTS
# ============================================================================

SUPPORTED_CURVES = {
    "secp256k1": SECP256k1,
    "NIST256p": NIST256p,
}

DEFAULT_CURVE = "secp256k1"
DEFAULT_GENERATOR_SEED = "DPLT-Pedersen-H-v1"

BIT_PROOF_DOMAIN = b"dplt.zkp.bit.v1"
SUM_PROOF_DOMAIN = b"dplt.zkp.sum.v1"

# Only a tally over zero votes (or a freak blinding sum) can hit the identity
IDENTITY_ENCODING = "00"

# ============================================================================
# EXCEPTIONS
# ============================================================================


class ZKError(Exception):
    """Base exception for zero-knowledge operations"""
    pass


class ProofError(ZKError):
    """A bit proof or the one-hot sum proof failed verification"""
    pass


class EncodingError(ZKError):
    """A point or scalar could not be decoded from its wire form"""
    pass


# ============================================================================
# GROUP
# ============================================================================


class PedersenGroup:
    """Prime-order curve group with two independent generators G and H"""

    def __init__(self, curve_name: str = DEFAULT_CURVE, generator_seed: str = DEFAULT_GENERATOR_SEED):
        if curve_name not in SUPPORTED_CURVES:
            raise ValueError(
                f"Unsupported curve {curve_name}; expected one of {sorted(SUPPORTED_CURVES)}")

        self.curve_name = curve_name
        self._curve = SUPPORTED_CURVES[curve_name]
        self._field_curve = self._curve.curve
        self._p = self._field_curve.p()
        if self._p % 4 != 3:
            raise ValueError(
                f"Curve {curve_name} needs p = 3 mod 4 for square roots")

        self.order: int = self._curve.order
        self.coordinate_bytes: int = self._curve.baselen
        self.point_hex_length = 2 * (self.coordinate_bytes + 1)
        self.scalar_hex_length = 2 * self.coordinate_bytes

        self.g = self._curve.generator
        self.h = self._derive_generator(generator_seed.encode('utf-8'))

        logger.debug(
            f"Initialized Pedersen group on {curve_name} with H={self.encode_point(self.h)[:16]}...")

    def _derive_generator(self, seed: bytes) -> PointJacobi:
        """Hash-to-curve by try-and-increment so log_G(H) is unknown to everyone"""
        counter = 0
        while True:
            digest = hashlib.sha256(
                seed + counter.to_bytes(4, 'big')).digest()
            x = int.from_bytes(digest, 'big') % self._p
            y = self._lift_x(x)
            if y is not None:
                return PointJacobi(self._field_curve, x, y, 1, self.order, generator=True)
            counter += 1

    def _lift_x(self, x: int) -> Optional[int]:
        """Return a y with (x, y) on the curve, or None if x is not an abscissa"""
        rhs = (pow(x, 3, self._p) + self._field_curve.a()
               * x + self._field_curve.b()) % self._p
        if rhs == 0:
            return None
        y = pow(rhs, (self._p + 1) // 4, self._p)
        if (y * y) % self._p != rhs:
            return None
        return y

    # ---------------------------------------------------------------- scalars

    def random_scalar(self) -> int:
        return secrets.randbelow(self.order - 1) + 1

    def hash_to_scalar(self, *parts: bytes) -> int:
        """Length-prefixed SHA-256 over all parts, reduced mod the group order"""
        hasher = hashlib.sha256()
        for part in parts:
            hasher.update(len(part).to_bytes(4, 'big'))
            hasher.update(part)
        return int.from_bytes(hasher.digest(), 'big') % self.order

    def encode_scalar(self, value: int) -> str:
        return f"{value % self.order:0{self.scalar_hex_length}x}"

    def decode_scalar(self, encoded: Any) -> int:
        if not isinstance(encoded, str) or len(encoded) != self.scalar_hex_length:
            raise EncodingError(
                f"Scalar must be {self.scalar_hex_length} hex characters")
        try:
            value = int(encoded, 16)
        except ValueError as e:
            raise EncodingError(f"Scalar is not hex: {encoded!r}") from e
        if value >= self.order:
            raise EncodingError("Scalar is not reduced mod the group order")
        return value

    # ----------------------------------------------------------------- points

    @staticmethod
    def is_identity(point) -> bool:
        return point is INFINITY or point == INFINITY

    def add(self, p, q):
        if self.is_identity(p):
            return q
        if self.is_identity(q):
            return p
        return p + q

    def mul(self, point, scalar: int):
        scalar %= self.order
        if scalar == 0 or self.is_identity(point):
            return INFINITY
        return point * scalar

    def neg(self, point):
        return self.mul(point, self.order - 1)

    def sub(self, p, q):
        return self.add(p, self.neg(q))

    def points_equal(self, p, q) -> bool:
        if self.is_identity(p) or self.is_identity(q):
            return self.is_identity(p) and self.is_identity(q)
        return p == q

    def encode_point(self, point) -> str:
        """Compressed SEC1 encoding in hex"""
        if self.is_identity(point):
            return IDENTITY_ENCODING
        x, y = point.x(), point.y()
        prefix = 3 if y & 1 else 2
        return (bytes([prefix]) + x.to_bytes(self.coordinate_bytes, 'big')).hex()

    def decode_point(self, encoded: Any, allow_identity: bool = False):
        if encoded == IDENTITY_ENCODING and allow_identity:
            return INFINITY
        if not isinstance(encoded, str) or len(encoded) != self.point_hex_length:
            raise EncodingError(
                f"Point must be {self.point_hex_length} hex characters")
        try:
            raw = bytes.fromhex(encoded)
        except ValueError as e:
            raise EncodingError(f"Point is not hex: {encoded!r}") from e

        prefix = raw[0]
        if prefix not in (2, 3):
            raise EncodingError(f"Unsupported point prefix {prefix:#04x}")
        x = int.from_bytes(raw[1:], 'big')
        if x >= self._p:
            raise EncodingError("Point x-coordinate out of range")
        y = self._lift_x(x)
        if y is None:
            raise EncodingError("Point is not on the curve")
        if (y & 1) != (prefix & 1):
            y = self._p - y
        return PointJacobi(self._field_curve, x, y, 1, self.order)

    # ------------------------------------------------------------ commitments

    def commit(self, value: int, blinding: Optional[int] = None) -> Tuple['PedersenCommitment', int]:
        """C = value*G + r*H; returns the commitment and its blinding factor"""
        if blinding is None:
            blinding = self.random_scalar()
        point = self.add(self.mul(self.g, value), self.mul(self.h, blinding))
        return PedersenCommitment(point=point, group=self), blinding

    def verify_opening(self, commitment: 'PedersenCommitment', value: int, blinding: int) -> bool:
        expected = self.add(self.mul(self.g, value),
                            self.mul(self.h, blinding))
        return self.points_equal(commitment.point, expected)


@lru_cache(maxsize=None)
def get_group(curve_name: str = DEFAULT_CURVE, generator_seed: str = DEFAULT_GENERATOR_SEED) -> PedersenGroup:
    """Shared, immutable group parameters per (curve, seed)"""
    return PedersenGroup(curve_name, generator_seed)


# ============================================================================
# DATA STRUCTURES
# ============================================================================


@dataclass(frozen=True)
class PedersenCommitment:
    """Public commitment point; the blinding factor stays with the voter"""
    point: Any
    group: PedersenGroup = field(compare=False, repr=False)

    def __add__(self, other: 'PedersenCommitment') -> 'PedersenCommitment':
        return PedersenCommitment(point=self.group.add(self.point, other.point), group=self.group)

    def __eq__(self, other) -> bool:
        if not isinstance(other, PedersenCommitment):
            return NotImplemented
        return self.group.points_equal(self.point, other.point)

    __hash__ = None

    def encode(self) -> str:
        return self.group.encode_point(self.point)

    @classmethod
    def decode(cls, encoded: Any, group: PedersenGroup, allow_identity: bool = False) -> 'PedersenCommitment':
        return cls(point=group.decode_point(encoded, allow_identity=allow_identity), group=group)


@dataclass(frozen=True)
class BitProof:
    """OR-proof transcript: branch 0 proves C = r*H, branch 1 proves C - G = r*H"""
    a0: Any
    a1: Any
    e0: int
    e1: int
    z0: int
    z1: int

    def to_dict(self, group: PedersenGroup) -> Dict[str, str]:
        return {
            'a0': group.encode_point(self.a0),
            'a1': group.encode_point(self.a1),
            'e0': group.encode_scalar(self.e0),
            'e1': group.encode_scalar(self.e1),
            'z0': group.encode_scalar(self.z0),
            'z1': group.encode_scalar(self.z1),
        }

    @classmethod
    def from_dict(cls, data: Any, group: PedersenGroup) -> 'BitProof':
        if not isinstance(data, dict):
            raise EncodingError("Bit proof must be an object")
        try:
            return cls(
                a0=group.decode_point(data['a0']),
                a1=group.decode_point(data['a1']),
                e0=group.decode_scalar(data['e0']),
                e1=group.decode_scalar(data['e1']),
                z0=group.decode_scalar(data['z0']),
                z1=group.decode_scalar(data['z1']),
            )
        except KeyError as e:
            raise EncodingError(f"Bit proof missing field {e}") from e


@dataclass(frozen=True)
class SumProof:
    """Schnorr proof of knowledge of R with sum(C_i) - G = R*H"""
    a: Any
    z: int

    def to_dict(self, group: PedersenGroup) -> Dict[str, str]:
        return {'a': group.encode_point(self.a), 'z': group.encode_scalar(self.z)}

    @classmethod
    def from_dict(cls, data: Any, group: PedersenGroup) -> 'SumProof':
        if not isinstance(data, dict):
            raise EncodingError("Sum proof must be an object")
        try:
            return cls(a=group.decode_point(data['a']), z=group.decode_scalar(data['z']))
        except KeyError as e:
            raise EncodingError(f"Sum proof missing field {e}") from e


@dataclass
class VoteSlot:
    commitment: PedersenCommitment
    proof: BitProof


@dataclass
class ZKPVote:
    """Public part of a committed ballot, one slot per candidate"""
    election_id: str
    voter: str
    slots: List[VoteSlot]
    sum_proof: SumProof

    @property
    def commitments(self) -> List[PedersenCommitment]:
        return [slot.commitment for slot in self.slots]

    def to_payload(self) -> Dict[str, Any]:
        group = self.slots[0].commitment.group if self.slots else get_group()
        return {
            'slots': [
                {
                    'commitment': slot.commitment.encode(),
                    'proof': slot.proof.to_dict(group),
                }
                for slot in self.slots
            ],
            'sumProof': self.sum_proof.to_dict(group),
        }

    @classmethod
    def from_payload(cls, election_id: str, voter: str, data: Any, group: Optional[PedersenGroup] = None) -> 'ZKPVote':
        group = group or get_group()
        if not isinstance(data, dict):
            raise EncodingError("ZKP vote must be an object")
        raw_slots = data.get('slots')
        if not isinstance(raw_slots, list) or not raw_slots:
            raise EncodingError("ZKP vote needs a non-empty list of slots")

        slots = []
        for raw in raw_slots:
            if not isinstance(raw, dict):
                raise EncodingError("ZKP vote slot must be an object")
            slots.append(VoteSlot(
                commitment=PedersenCommitment.decode(
                    raw.get('commitment'), group),
                proof=BitProof.from_dict(raw.get('proof'), group),
            ))

        return cls(
            election_id=election_id,
            voter=voter,
            slots=slots,
            sum_proof=SumProof.from_dict(data.get('sumProof'), group),
        )


@dataclass
class BuiltVote:
    """A freshly built vote together with the voter's private openings"""
    vote: ZKPVote
    bits: List[int]
    blinding_factors: List[int] = field(repr=False)
    candidate_index: Optional[int] = None

    @property
    def blinding_sum(self) -> int:
        group = self.vote.slots[0].commitment.group
        return sum(self.blinding_factors) % group.order


@dataclass
class TallyCommitment:
    """Homomorphic sum of one candidate's slot commitments across votes"""
    candidate_index: int
    commitment: PedersenCommitment
    total_votes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'candidateIndex': self.candidate_index,
            'commitmentSum': self.commitment.encode(),
            'totalVotes': self.total_votes,
        }


# ============================================================================
# PROOFS
# ============================================================================


def slot_context(election_id: str, voter: str, index: int) -> bytes:
    return f"{election_id}|{voter}|slot|{index}".encode('utf-8')


def sum_context(election_id: str, voter: str) -> bytes:
    return f"{election_id}|{voter}|sum".encode('utf-8')


def _bit_challenge(group: PedersenGroup, context: bytes, commitment, a0, a1) -> int:
    return group.hash_to_scalar(
        BIT_PROOF_DOMAIN,
        context,
        group.encode_point(group.h).encode(),
        group.encode_point(commitment).encode(),
        group.encode_point(a0).encode(),
        group.encode_point(a1).encode(),
    )


def prove_bit(commitment: PedersenCommitment, bit: int, blinding: int, context: bytes = b"") -> BitProof:
    """Prove commitment opens to 0 or 1 without revealing which"""
    if bit not in (0, 1):
        raise ValueError("Bit must be 0 or 1")

    group = commitment.group
    n = group.order
    c = commitment.point
    statements = (c, group.sub(c, group.g))

    fake = 1 - bit
    w = group.random_scalar()
    e_fake = group.random_scalar()
    z_fake = group.random_scalar()

    a = [None, None]
    a[bit] = group.mul(group.h, w)
    # Simulated branch: pick (e, z) first and solve for A
    a[fake] = group.sub(group.mul(group.h, z_fake),
                        group.mul(statements[fake], e_fake))

    challenge = _bit_challenge(group, context, c, a[0], a[1])
    e_real = (challenge - e_fake) % n
    z_real = (w + e_real * blinding) % n

    e = [0, 0]
    z = [0, 0]
    e[bit], e[fake] = e_real, e_fake
    z[bit], z[fake] = z_real, z_fake

    return BitProof(a0=a[0], a1=a[1], e0=e[0], e1=e[1], z0=z[0], z1=z[1])


def verify_bit(commitment: PedersenCommitment, proof: BitProof, context: bytes = b"") -> bool:
    """Check both OR branches and that their challenges split the hash"""
    group = commitment.group
    n = group.order
    if not all(0 <= s < n for s in (proof.e0, proof.e1, proof.z0, proof.z1)):
        return False

    c = commitment.point
    challenge = _bit_challenge(group, context, c, proof.a0, proof.a1)
    if (proof.e0 + proof.e1) % n != challenge:
        return False

    left_0 = group.mul(group.h, proof.z0)
    right_0 = group.add(proof.a0, group.mul(c, proof.e0))
    if not group.points_equal(left_0, right_0):
        return False

    left_1 = group.mul(group.h, proof.z1)
    right_1 = group.add(proof.a1, group.mul(
        group.sub(c, group.g), proof.e1))
    return group.points_equal(left_1, right_1)


def _sum_statement(group: PedersenGroup, commitments: Sequence[PedersenCommitment]):
    total = INFINITY
    for commitment in commitments:
        total = group.add(total, commitment.point)
    return total, group.sub(total, group.g)


def prove_sum(commitments: Sequence[PedersenCommitment], blinding_sum: int, context: bytes = b"") -> SumProof:
    """Prove sum(commitments) commits to exactly 1 given the summed blinding"""
    group = commitments[0].group
    total, _ = _sum_statement(group, commitments)
    w = group.random_scalar()
    a = group.mul(group.h, w)
    challenge = group.hash_to_scalar(
        SUM_PROOF_DOMAIN, context,
        group.encode_point(total).encode(),
        group.encode_point(a).encode(),
    )
    return SumProof(a=a, z=(w + challenge * blinding_sum) % group.order)


def verify_sum(commitments: Sequence[PedersenCommitment], proof: SumProof, context: bytes = b"") -> bool:
    if not commitments:
        return False
    group = commitments[0].group
    if not 0 <= proof.z < group.order:
        return False
    total, statement = _sum_statement(group, commitments)
    challenge = group.hash_to_scalar(
        SUM_PROOF_DOMAIN, context,
        group.encode_point(total).encode(),
        group.encode_point(proof.a).encode(),
    )
    left = group.mul(group.h, proof.z)
    right = group.add(proof.a, group.mul(statement, challenge))
    return group.points_equal(left, right)


# ============================================================================
# VOTE BUILDER / VERIFIER
# ============================================================================


class ZKPVoteBuilder:
    """Builds one-hot committed ballots with per-slot bit proofs"""

    def __init__(self, group: Optional[PedersenGroup] = None):
        self.group = group or get_group()

    def build(self, election_id: str, voter: str, candidate_index: int, num_candidates: int) -> BuiltVote:
        if num_candidates < 1:
            raise ValueError("Need at least one candidate slot")
        if not 0 <= candidate_index < num_candidates:
            raise ValueError(
                f"Candidate index {candidate_index} out of range for {num_candidates} candidates")

        bits = [1 if i == candidate_index else 0 for i in range(num_candidates)]
        built = self.build_from_bits(election_id, voter, bits)
        built.candidate_index = candidate_index
        return built

    def build_from_bits(self, election_id: str, voter: str, bits: Sequence[int]) -> BuiltVote:
        """Commit to an arbitrary bit vector; only one-hot vectors will verify"""
        if not bits:
            raise ValueError("Need at least one candidate slot")

        slots: List[VoteSlot] = []
        blinding_factors: List[int] = []
        for index, bit in enumerate(bits):
            commitment, blinding = self.group.commit(bit)
            proof = prove_bit(commitment, bit, blinding,
                              slot_context(election_id, voter, index))
            slots.append(VoteSlot(commitment=commitment, proof=proof))
            blinding_factors.append(blinding)

        blinding_sum = sum(blinding_factors) % self.group.order
        sum_proof = prove_sum([slot.commitment for slot in slots],
                              blinding_sum, sum_context(election_id, voter))

        logger.debug(
            f"Built committed vote for {voter} in {election_id} with {len(slots)} slots")

        return BuiltVote(
            vote=ZKPVote(election_id=election_id, voter=voter,
                         slots=slots, sum_proof=sum_proof),
            bits=list(bits),
            blinding_factors=blinding_factors,
        )


class ZKPVoteVerifier:
    """Verifies committed ballots and aggregates them per candidate"""

    def __init__(self, group: Optional[PedersenGroup] = None):
        self.group = group or get_group()

    def check_vote(self, vote: ZKPVote) -> None:
        """Raise ProofError unless every slot is a bit and the slots sum to one"""
        if not vote.slots:
            raise ProofError("Vote has no candidate slots")

        for index, slot in enumerate(vote.slots):
            context = slot_context(vote.election_id, vote.voter, index)
            if not verify_bit(slot.commitment, slot.proof, context):
                raise ProofError(f"Bit proof for slot {index} failed")

        if not verify_sum(vote.commitments, vote.sum_proof,
                          sum_context(vote.election_id, vote.voter)):
            raise ProofError(
                "Slot commitments do not sum to exactly one vote")

    def verify_vote(self, vote: ZKPVote) -> bool:
        try:
            self.check_vote(vote)
            return True
        except ProofError as e:
            logger.warning(
                f"Rejected committed vote from {vote.voter} in {vote.election_id}: {e}")
            return False

    def decode_vote(self, election_id: str, voter: str, payload: Any) -> ZKPVote:
        return ZKPVote.from_payload(election_id, voter, payload, self.group)

    def verify_payload(self, election_id: str, voter: str, payload: Any) -> bool:
        """Decode a wire-format vote bundle and verify it"""
        try:
            vote = self.decode_vote(election_id, voter, payload)
        except EncodingError as e:
            logger.warning(f"Malformed committed vote from {voter}: {e}")
            return False
        return self.verify_vote(vote)

    def tally(self, candidate_index: int, votes: Sequence[ZKPVote]) -> TallyCommitment:
        """Sum one slot across votes; the result opens to that candidate's count"""
        total = PedersenCommitment(point=INFINITY, group=self.group)
        for vote in votes:
            if not 0 <= candidate_index < len(vote.slots):
                raise ValueError(
                    f"Vote from {vote.voter} has no slot {candidate_index}")
            total = total + vote.slots[candidate_index].commitment

        return TallyCommitment(candidate_index=candidate_index, commitment=total, total_votes=len(votes))

    def blinding_sum(self, built_votes: Sequence[BuiltVote], candidate_index: int) -> int:
        """Combine the voters' private openings for one candidate slot"""
        return sum(built.blinding_factors[candidate_index] for built in built_votes) % self.group.order

    def open_tally(self, tally: TallyCommitment, blinding_sum: int) -> int:
        """Recover the count k with sum = k*G + R*H, given R"""
        candidate = self.group.mul(self.group.h, blinding_sum)
        for count in range(tally.total_votes + 1):
            if self.group.points_equal(candidate, tally.commitment.point):
                return count
            candidate = self.group.add(candidate, self.group.g)
        raise ProofError(
            f"Tally for candidate {tally.candidate_index} does not open with the given blinding sum")

    @staticmethod
    def verification_hash(vote: ZKPVote) -> str:
        """Receipt hash binding voter, election and commitments"""
        commitment_hex = "".join(c.encode() for c in vote.commitments)
        return hashlib.sha256(
            (vote.voter + vote.election_id + commitment_hex).encode('utf-8')).hexdigest()
