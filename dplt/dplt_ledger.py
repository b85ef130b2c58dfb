"""
DPLT Ledger Module
==================
Transactions, blocks, validation rules and the per-node ledger state machine
for the replicated election ledger.
"""

import copy
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from utils.utils import compute_hash, now_ms
from zk.zk_proofs import ZKPVoteVerifier, EncodingError, ProofError

logger = logging.getLogger(__name__)

# ============================================================================
# CONSTANTS
# ============================================================================

GENESIS_INDEX = 0
GENESIS_TIMESTAMP = 0
GENESIS_PREVIOUS_HASH = "0"
GENESIS_PRODUCER = "genesis"

MIN_CANDIDATES = 2

# ============================================================================
# EXCEPTIONS AND ENUMS
# ============================================================================


class LedgerError(Exception):
    """Base exception for ledger operations"""
    pass


class ValidationError(LedgerError):
    """Raised when a transaction or block is malformed or semantically invalid"""
    pass


class ConsensusStall(LedgerError):
    """Raised when no node qualifies as block leader"""
    pass


class DivergenceError(LedgerError):
    """Raised when a node cannot be brought back in line with the reference chain"""
    pass


class TransactionKind(Enum):
    VOTE = "VOTE"
    ELECTION_CREATED = "ELECTION_CREATED"
    ELECTION_ENDED = "ELECTION_ENDED"


class MessageType(Enum):
    """Peer message kinds carried between node inboxes"""
    TRANSACTION = "transaction"
    BLOCK = "block"


class SubmitStatus(Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class BlockStatus(Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    FORK_SIGNAL = "fork_signal"
    REJECTED = "rejected"


# ============================================================================
# DATA STRUCTURES
# ============================================================================


def _kind_value(kind: Any) -> str:
    return kind.value if isinstance(kind, TransactionKind) else str(kind)


@dataclass(frozen=True)
class Transaction:
    """Immutable ledger fact; id is a content hash, never trusted from the wire"""
    kind: TransactionKind
    payload: Dict[str, Any]
    timestamp: int = 0
    origin_node_id: str = ""
    id: str = ""

    def __post_init__(self):
        # Every instance owns its payload; replicas never share one dict
        if isinstance(self.payload, dict):
            object.__setattr__(self, 'payload', copy.deepcopy(self.payload))

    @staticmethod
    def compute_id(kind: Any, payload: Dict[str, Any]) -> str:
        kind_value = _kind_value(kind)
        if kind_value == TransactionKind.VOTE.value and isinstance(payload, dict):
            # One vote per voter per election: the choice is not part of the id
            identity = {
                'electionId': payload.get('electionId'),
                'voter': payload.get('voter'),
            }
        else:
            identity = payload
        return compute_hash({'kind': kind_value, 'payload': identity})

    def content_id(self) -> str:
        return self.compute_id(self.kind, self.payload)

    @classmethod
    def create(cls, kind: TransactionKind, payload: Dict[str, Any], origin_node_id: str = "",
               timestamp: Optional[int] = None) -> 'Transaction':
        return cls(
            kind=kind,
            payload=payload,
            timestamp=now_ms() if timestamp is None else timestamp,
            origin_node_id=origin_node_id,
            id=cls.compute_id(kind, payload),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'kind': _kind_value(self.kind),
            'payload': self.payload,
            'timestamp': self.timestamp,
            'originNodeId': self.origin_node_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        if not isinstance(data, dict):
            raise ValidationError("Transaction must be an object")
        try:
            kind = TransactionKind(data['kind'])
        except ValueError as e:
            raise ValidationError(
                f"Unknown transaction kind: {data.get('kind')!r}") from e
        except KeyError as e:
            raise ValidationError(f"Transaction missing field {e}") from e

        payload = data.get('payload')
        if not isinstance(payload, dict):
            raise ValidationError("Transaction payload must be an object")
        if not isinstance(data.get('id', ""), str) or not isinstance(data.get('originNodeId', ""), str):
            raise ValidationError("Transaction id and originNodeId must be strings")
        timestamp = data.get('timestamp', 0)
        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            raise ValidationError("Transaction timestamp must be an integer")

        return cls(
            kind=kind,
            payload=payload,
            timestamp=timestamp,
            origin_node_id=data.get('originNodeId', ""),
            id=data.get('id', ""),
        )


@dataclass(frozen=True)
class BlockSummary:
    index: int
    hash: str
    previous_hash: str
    timestamp: int
    producer_id: str
    transaction_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'hash': self.hash,
            'previousHash': self.previous_hash,
            'timestamp': self.timestamp,
            'producerId': self.producer_id,
            'transactionCount': self.transaction_count,
        }


@dataclass(frozen=True)
class Block:
    index: int
    timestamp: int
    transactions: Tuple[Transaction, ...]
    previous_hash: str
    producer_id: str
    hash: str = ""

    def header_dict(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'timestamp': self.timestamp,
            'transactions': [tx.to_dict() for tx in self.transactions],
            'previousHash': self.previous_hash,
            'producerId': self.producer_id,
        }

    def compute_hash(self) -> str:
        return compute_hash(self.header_dict())

    def has_valid_hash(self) -> bool:
        try:
            return self.hash == self.compute_hash()
        except (TypeError, ValueError):
            return False

    @classmethod
    def seal(cls, index: int, timestamp: int, transactions: Sequence[Transaction],
             previous_hash: str, producer_id: str) -> 'Block':
        block = cls(index=index, timestamp=timestamp, transactions=tuple(transactions),
                    previous_hash=previous_hash, producer_id=producer_id)
        return replace(block, hash=block.compute_hash())

    def detached(self) -> 'Block':
        """Copy whose transactions own their payloads"""
        return replace(self, transactions=tuple(replace(tx) for tx in self.transactions))

    def summary(self) -> BlockSummary:
        return BlockSummary(
            index=self.index,
            hash=self.hash,
            previous_hash=self.previous_hash,
            timestamp=self.timestamp,
            producer_id=self.producer_id,
            transaction_count=len(self.transactions),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = self.header_dict()
        data['hash'] = self.hash
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Block':
        if not isinstance(data, dict):
            raise ValidationError("Block must be an object")
        try:
            transactions = tuple(Transaction.from_dict(tx)
                                 for tx in data['transactions'])
            return cls(
                index=data['index'],
                timestamp=data['timestamp'],
                transactions=transactions,
                previous_hash=data['previousHash'],
                producer_id=data['producerId'],
                hash=data.get('hash', ""),
            )
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Malformed block: {e}") from e


def create_genesis_block() -> Block:
    """Deterministic genesis, byte-identical on every node"""
    return Block.seal(GENESIS_INDEX, GENESIS_TIMESTAMP, (), GENESIS_PREVIOUS_HASH, GENESIS_PRODUCER)


# ============================================================================
# TRANSACTION VALIDATION
# ============================================================================


def _require_text(payload: Dict[str, Any], key: str):
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Missing or empty '{key}'")


def _require_int(payload: Dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"'{key}' must be an integer")
    return value


def _check_vote(tx: Transaction, zkp_verifier: Optional[ZKPVoteVerifier]):
    payload = tx.payload
    _require_text(payload, 'electionId')
    _require_text(payload, 'voter')

    has_plain = payload.get('candidateIndex') is not None
    has_zkp = payload.get('zkpVote') is not None
    if has_plain == has_zkp:
        raise ValidationError(
            "Vote needs exactly one of 'candidateIndex' or 'zkpVote'")

    if has_plain:
        if _require_int(payload, 'candidateIndex') < 0:
            raise ValidationError("'candidateIndex' must be non-negative")
        return

    verifier = zkp_verifier or ZKPVoteVerifier()
    try:
        vote = verifier.decode_vote(
            payload['electionId'], payload['voter'], payload['zkpVote'])
        verifier.check_vote(vote)
    except EncodingError as e:
        raise ValidationError(f"Malformed zkpVote: {e}") from e
    except ProofError as e:
        raise ValidationError(f"Invalid zkpVote: {e}") from e


def _check_election_created(tx: Transaction):
    payload = tx.payload
    for key in ('electionId', 'electionName', 'createdBy'):
        _require_text(payload, key)

    candidates = payload.get('candidates')
    if not isinstance(candidates, list) or len(candidates) < MIN_CANDIDATES:
        raise ValidationError(
            f"Election needs at least {MIN_CANDIDATES} candidates")
    if not all(isinstance(c, str) and c.strip() for c in candidates):
        raise ValidationError("Candidate names must be non-empty strings")

    start_time = _require_int(payload, 'startTime')
    end_time = _require_int(payload, 'endTime')
    # Checked against the transaction time so peers reach the same verdict later
    if start_time < tx.timestamp:
        raise ValidationError("Election start time is in the past")
    if end_time <= start_time:
        raise ValidationError("Election end time must be after start time")


def _check_election_ended(tx: Transaction):
    _require_text(tx.payload, 'electionId')
    _require_text(tx.payload, 'endedBy')


def check_transaction(tx: Transaction, zkp_verifier: Optional[ZKPVoteVerifier] = None) -> None:
    """Raise ValidationError with the reason if tx is not acceptable"""
    if not isinstance(tx.kind, TransactionKind):
        raise ValidationError(f"Unknown transaction kind: {tx.kind!r}")
    if not isinstance(tx.payload, dict):
        raise ValidationError("Transaction payload must be an object")

    if tx.kind == TransactionKind.VOTE:
        _check_vote(tx, zkp_verifier)
    elif tx.kind == TransactionKind.ELECTION_CREATED:
        _check_election_created(tx)
    elif tx.kind == TransactionKind.ELECTION_ENDED:
        _check_election_ended(tx)


def validate_transaction(tx: Transaction, zkp_verifier: Optional[ZKPVoteVerifier] = None) -> bool:
    try:
        check_transaction(tx, zkp_verifier)
        return True
    except ValidationError:
        return False


@dataclass
class ValidationResult:
    is_valid: bool
    validated_at: int
    validated_by: str
    reason: Optional[str] = None


class TransactionValidator:
    """Per-node validator with an LRU result cache keyed by exact transaction content"""

    def __init__(self, validator_id: str, zkp_verifier: Optional[ZKPVoteVerifier] = None,
                 clock: Optional[Callable[[], int]] = None, cache_size: int = 1000):
        self.validator_id = validator_id
        self.zkp_verifier = zkp_verifier or ZKPVoteVerifier()
        self._clock = clock or now_ms
        self.cache_size = cache_size
        self._cache: "OrderedDict[str, ValidationResult]" = OrderedDict()  # LRU
        self._lock = threading.Lock()
        self.approved = 0
        self.rejected = 0

    def validate(self, tx: Transaction) -> ValidationResult:
        try:
            cache_key = compute_hash(tx.to_dict())
        except (TypeError, ValueError) as e:
            self.rejected += 1
            return ValidationResult(False, self._clock(), self.validator_id,
                                    f"Transaction is not JSON-serializable: {e}")

        with self._lock:
            cached = self._cache.get(cache_key)
            if cached is not None:
                self._cache.move_to_end(cache_key)
        if cached is not None:
            return cached

        try:
            check_transaction(tx, self.zkp_verifier)
            result = ValidationResult(True, self._clock(), self.validator_id)
            self.approved += 1
        except ValidationError as e:
            result = ValidationResult(
                False, self._clock(), self.validator_id, str(e))
            self.rejected += 1

        logger.debug(
            f"Validator {self.validator_id} {'approved' if result.is_valid else 'rejected'} "
            f"transaction {str(tx.id)[:12]}" + (f": {result.reason}" if result.reason else ""))

        with self._lock:
            self._cache[cache_key] = result
            self._cache.move_to_end(cache_key)
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
        return result

    def is_valid(self, tx: Transaction) -> bool:
        return self.validate(tx).is_valid

    def verification_hash(self, tx: Transaction) -> Optional[str]:
        """Hash of the transaction plus validation metadata, None if invalid"""
        result = self.validate(tx)
        if not result.is_valid:
            logger.warning(
                f"Validator {self.validator_id} cannot hash invalid transaction {str(tx.id)[:12]}")
            return None
        return compute_hash({
            'transaction': tx.to_dict(),
            'validation': {
                'validatedAt': result.validated_at,
                'validatedBy': result.validated_by,
            },
        })

    def get_stats(self) -> Dict[str, Any]:
        return {
            'validator_id': self.validator_id,
            'approved': self.approved,
            'rejected': self.rejected,
            'cached': len(self._cache),
        }


# ============================================================================
# LEDGER NODE
# ============================================================================


@dataclass
class SubmitResult:
    status: SubmitStatus
    transaction_id: Optional[str] = None
    reason: Optional[str] = None
    transaction: Optional[Transaction] = field(default=None, repr=False)

    @property
    def accepted(self) -> bool:
        return self.status == SubmitStatus.ACCEPTED


Broadcaster = Callable[[str, MessageType, Dict[str, Any]], None]


class LedgerNode:
    """One replica: a pending pool and a hash-linked chain, mutated only here"""

    def __init__(self, node_id: str, validator: Optional[TransactionValidator] = None,
                 clock: Optional[Callable[[], int]] = None):
        self.node_id = node_id
        self._clock = clock or now_ms
        self.validator = validator or TransactionValidator(
            node_id, clock=self._clock)

        self._lock = threading.RLock()
        self._chain: List[Block] = [create_genesis_block()]
        self._pending: "OrderedDict[str, Transaction]" = OrderedDict()
        self._committed_ids: Set[str] = set()
        self._broadcaster: Optional[Broadcaster] = None

        self.stats = {
            'transactions_accepted': 0,
            'transactions_rejected': 0,
            'duplicates_ignored': 0,
            'blocks_produced': 0,
            'blocks_applied': 0,
            'blocks_rejected': 0,
            'fork_signals': 0,
            'rollbacks': 0,
            'rebuilds': 0,
        }

        logger.info(f"Ledger node {node_id} initialized")

    def attach_broadcaster(self, broadcaster: Optional[Broadcaster]):
        self._broadcaster = broadcaster

    def _broadcast(self, message_type: MessageType, body: Dict[str, Any]):
        if self._broadcaster is not None:
            self._broadcaster(self.node_id, message_type, body)

    # ------------------------------------------------------------------ reads

    @property
    def chain(self) -> List[Block]:
        with self._lock:
            return list(self._chain)

    @property
    def pending(self) -> List[Transaction]:
        with self._lock:
            return list(self._pending.values())

    @property
    def tip(self) -> Block:
        with self._lock:
            return self._chain[-1]

    @property
    def chain_length(self) -> int:
        with self._lock:
            return len(self._chain)

    def has_transaction(self, tx_id: str) -> bool:
        with self._lock:
            return tx_id in self._pending or tx_id in self._committed_ids

    def is_committed(self, tx_id: str) -> bool:
        with self._lock:
            return tx_id in self._committed_ids

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            tip = self._chain[-1]
            return {
                'node_id': self.node_id,
                'chain_length': len(self._chain),
                'tip_index': tip.index,
                'tip_hash': tip.hash,
                'pending': len(self._pending),
                'committed': len(self._committed_ids),
                'stats': dict(self.stats),
                'validator': self.validator.get_stats(),
            }

    # ----------------------------------------------------------- transactions

    def _prepare(self, tx: Transaction) -> Transaction:
        """Fill in origin/timestamp/id and check the id against the content"""
        changes = {}
        if not tx.timestamp:
            changes['timestamp'] = self._clock()
        if not tx.origin_node_id:
            changes['origin_node_id'] = self.node_id

        try:
            expected_id = tx.content_id()
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Transaction is not JSON-serializable: {e}") from e

        if not tx.id:
            changes['id'] = expected_id
        elif tx.id != expected_id:
            raise ValidationError("Transaction id does not match its content")

        return replace(tx, **changes)

    def _accept(self, tx: Transaction, broadcast: bool) -> SubmitResult:
        with self._lock:
            try:
                tx = self._prepare(tx)
            except ValidationError as e:
                self.stats['transactions_rejected'] += 1
                logger.warning(
                    f"Node {self.node_id} rejected transaction: {e}")
                return SubmitResult(SubmitStatus.REJECTED, tx.id or None, str(e))

            if tx.id in self._pending or tx.id in self._committed_ids:
                self.stats['duplicates_ignored'] += 1
                logger.debug(
                    f"Node {self.node_id} ignoring duplicate transaction {str(tx.id)[:12]}")
                return SubmitResult(SubmitStatus.DUPLICATE, tx.id, "Transaction already recorded", tx)

            result = self.validator.validate(tx)
            if not result.is_valid:
                self.stats['transactions_rejected'] += 1
                logger.warning(
                    f"Node {self.node_id} rejected transaction {str(tx.id)[:12]}: {result.reason}")
                return SubmitResult(SubmitStatus.REJECTED, tx.id, result.reason, tx)

            self._pending[tx.id] = tx
            self.stats['transactions_accepted'] += 1

        if broadcast:
            self._broadcast(MessageType.TRANSACTION, tx.to_dict())
        return SubmitResult(SubmitStatus.ACCEPTED, tx.id, None, tx)

    def submit(self, tx: Transaction) -> SubmitResult:
        """Client entry point: validate, queue and broadcast to peers"""
        return self._accept(tx, broadcast=True)

    def receive_transaction(self, tx: Transaction) -> SubmitResult:
        """Peer entry point; the mesh is fully connected so nothing is re-broadcast"""
        return self._accept(tx, broadcast=False)

    # ----------------------------------------------------------------- blocks

    def _check_block(self, block: Block, tip: Block, full: bool = True):
        if not block.has_valid_hash():
            raise ValidationError(f"Block {block.index} hash mismatch")
        if block.index != tip.index + 1 or block.previous_hash != tip.hash:
            raise ValidationError(
                f"Block {block.index} does not extend tip {tip.index}")
        if not full:
            return

        if not block.transactions:
            raise ValidationError("Only genesis may be empty")
        seen: Set[str] = set()
        for tx in block.transactions:
            if tx.id != tx.content_id():
                raise ValidationError(
                    f"Transaction {str(tx.id)[:12]} id does not match its content")
            if tx.id in seen or tx.id in self._committed_ids:
                raise ValidationError(
                    f"Transaction {str(tx.id)[:12]} already committed")
            seen.add(tx.id)
            result = self.validator.validate(tx)
            if not result.is_valid:
                raise ValidationError(
                    f"Transaction {str(tx.id)[:12]} invalid: {result.reason}")

    def _append(self, block: Block):
        block = block.detached()
        self._chain.append(block)
        for tx in block.transactions:
            self._committed_ids.add(tx.id)
            self._pending.pop(tx.id, None)

    def produce_block(self, broadcast: bool = True) -> Optional[Block]:
        """Seal every pending transaction into a block on the current tip"""
        with self._lock:
            if not self._pending:
                return None

            snapshot = list(self._pending.values())
            tip = self._chain[-1]
            block = Block.seal(
                index=tip.index + 1,
                timestamp=max(self._clock(), tip.timestamp),
                transactions=snapshot,
                previous_hash=tip.hash,
                producer_id=self.node_id,
            )

            try:
                self._check_block(block, tip)
            except ValidationError as e:
                logger.error(
                    f"Node {self.node_id} produced a block that fails its own check: {e}")
                return None

            self._append(block)
            self.stats['blocks_produced'] += 1

        logger.info(
            f"Node {self.node_id} produced block {block.index} with "
            f"{len(block.transactions)} transactions ({block.hash[:12]})")
        if broadcast:
            self._broadcast(MessageType.BLOCK, block.to_dict())
        return block

    def receive_block(self, block: Block) -> BlockStatus:
        with self._lock:
            if not block.has_valid_hash():
                self.stats['blocks_rejected'] += 1
                logger.warning(
                    f"Node {self.node_id} rejected block {block.index}: hash mismatch")
                return BlockStatus.REJECTED

            if any(existing.hash == block.hash for existing in self._chain):
                return BlockStatus.DUPLICATE

            tip = self._chain[-1]
            if block.index != tip.index + 1 or block.previous_hash != tip.hash:
                self.stats['fork_signals'] += 1
                logger.info(
                    f"Node {self.node_id} cannot extend tip {tip.index} with block "
                    f"{block.index} from {block.producer_id}; leaving it for reconciliation")
                return BlockStatus.FORK_SIGNAL

            try:
                self._check_block(block, tip)
            except ValidationError as e:
                self.stats['blocks_rejected'] += 1
                logger.warning(
                    f"Node {self.node_id} rejected block {block.index}: {e}")
                return BlockStatus.REJECTED

            self._append(block)
            self.stats['blocks_applied'] += 1

        logger.debug(
            f"Node {self.node_id} applied block {block.index} from {block.producer_id}")
        return BlockStatus.APPLIED

    def append_synced_block(self, block: Block) -> bool:
        """Structural-only append (hash and link) for blocks already agreed on"""
        with self._lock:
            try:
                self._check_block(block, self._chain[-1], full=False)
            except ValidationError as e:
                logger.warning(
                    f"Node {self.node_id} refused synced block {block.index}: {e}")
                return False
            self._append(block)
            return True

    # ---------------------------------------------------------------- recovery

    def validate_chain(self) -> bool:
        with self._lock:
            chain = list(self._chain)

        genesis = chain[0]
        if genesis.hash != create_genesis_block().hash or not genesis.has_valid_hash():
            logger.warning(f"Node {self.node_id} has a corrupt genesis block")
            return False

        for i in range(1, len(chain)):
            block, previous = chain[i], chain[i - 1]
            if block.index != i or not block.has_valid_hash() or block.previous_hash != previous.hash:
                logger.warning(
                    f"Node {self.node_id} chain broken at block {i}")
                return False
        return True

    def rollback_to(self, index: int) -> List[Transaction]:
        """Truncate to index (inclusive) and re-queue the removed transactions first"""
        with self._lock:
            index = max(0, index)
            if index >= len(self._chain) - 1:
                return []

            removed = self._chain[index + 1:]
            self._chain = self._chain[:index + 1]
            self._committed_ids = {
                tx.id for block in self._chain for tx in block.transactions}

            restored: "OrderedDict[str, Transaction]" = OrderedDict()
            for block in removed:
                for tx in block.transactions:
                    if tx.id in self._pending or tx.id in restored or tx.id in self._committed_ids:
                        continue
                    restored[tx.id] = tx

            requeued = list(restored.values())
            restored.update(self._pending)
            self._pending = restored
            self.stats['rollbacks'] += 1

        logger.warning(
            f"Node {self.node_id} rolled back to block {index}, dropped {len(removed)} blocks "
            f"and re-queued {len(requeued)} transactions")
        return requeued

    def rebuild_from(self, reference_chain: Sequence[Block]) -> bool:
        """Replace everything after genesis with the reference chain's blocks"""
        with self._lock:
            if not reference_chain or reference_chain[0].hash != self._chain[0].hash:
                logger.warning(
                    f"Node {self.node_id} cannot rebuild from a chain with a different genesis")
                return False

            self.rollback_to(0)
            for block in reference_chain[1:]:
                if not self.append_synced_block(block):
                    logger.warning(
                        f"Node {self.node_id} rebuild stopped at block {block.index}")
                    return False
            self.stats['rebuilds'] += 1
            length = len(self._chain)

        logger.warning(
            f"Node {self.node_id} rebuilt chain from reference ({length} blocks)")
        return True
