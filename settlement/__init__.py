"""Outbound settlement-ledger mirror"""

from .settlement_mirror import (
    MirrorError,
    MirrorReceipt,
    CircuitBreaker,
    SettlementMirror,
    NullSettlementMirror,
    HttpSettlementMirror,
    create_settlement_mirror,
)

__all__ = [
    'MirrorError',
    'MirrorReceipt',
    'CircuitBreaker',
    'SettlementMirror',
    'NullSettlementMirror',
    'HttpSettlementMirror',
    'create_settlement_mirror',
]
