"""
DPLT - replicated election ledger
Ledger nodes, consensus rounds and the in-process signed message network
"""

from .dplt_ledger import (
    Transaction,
    TransactionKind,
    Block,
    BlockSummary,
    LedgerNode,
    TransactionValidator,
    ValidationResult,
    SubmitResult,
    SubmitStatus,
    BlockStatus,
    MessageType,
    create_genesis_block,
    check_transaction,
    validate_transaction,
    LedgerError,
    ValidationError,
    ConsensusStall,
    DivergenceError,
)
from .dplt_consensus import ConsensusCoordinator, RoundState, SyncAction, ReconciliationReport
from .dplt_network import NetworkHandle, NetworkMessage, SubmitReceipt, DeliveryResult

__all__ = [
    'Transaction',
    'TransactionKind',
    'Block',
    'BlockSummary',
    'LedgerNode',
    'TransactionValidator',
    'ValidationResult',
    'SubmitResult',
    'SubmitStatus',
    'BlockStatus',
    'MessageType',
    'create_genesis_block',
    'check_transaction',
    'validate_transaction',
    'LedgerError',
    'ValidationError',
    'ConsensusStall',
    'DivergenceError',
    'ConsensusCoordinator',
    'RoundState',
    'SyncAction',
    'ReconciliationReport',
    'NetworkHandle',
    'NetworkMessage',
    'SubmitReceipt',
    'DeliveryResult',
]
