"""Configuration management for the DPLT election ledger."""

from .config import SystemConfig, LedgerConfig, ZKPConfig, MirrorConfig, load_config, save_config

__all__ = ['SystemConfig', 'LedgerConfig', 'ZKPConfig',
           'MirrorConfig', 'load_config', 'save_config']
