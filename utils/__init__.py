"""Utilities for the DPLT election ledger."""

from .utils import (
    setup_logging,
    now_ms,
    canonical_json,
    compute_hash,
    generate_secure_id,
    save_results,
    PerformanceMonitor,
    create_performance_report,
    format_duration
)

__all__ = [
    'setup_logging',
    'now_ms',
    'canonical_json',
    'compute_hash',
    'generate_secure_id',
    'save_results',
    'PerformanceMonitor',
    'create_performance_report',
    'format_duration'
]
