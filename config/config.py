import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


@dataclass
class LedgerConfig:
    node_count: int = 3
    node_ids: List[str] = field(default_factory=list)
    block_interval_ms: int = 10000
    sync_interval_ms: int = 5000
    shallow_divergence_limit: int = 2
    validator_cache_size: int = 1000

    def __post_init__(self):
        if not self.node_ids:
            self.node_ids = [f"node{i + 1}" for i in range(self.node_count)]
        self.node_count = len(self.node_ids)

        if self.node_count < 1:
            raise ValueError("A DPLT network needs at least one node")
        if len(set(self.node_ids)) != self.node_count:
            raise ValueError(f"Duplicate node ids in {self.node_ids}")
        if self.block_interval_ms <= 0 or self.sync_interval_ms <= 0:
            raise ValueError("Block and sync intervals must be positive")
        if self.validator_cache_size < 1:
            raise ValueError("Validator cache size must be positive")


@dataclass
class ZKPConfig:
    curve: str = "secp256k1"
    generator_seed: str = "DPLT-Pedersen-H-v1"


@dataclass
class MirrorConfig:
    enabled: bool = False
    endpoint_url: str = "http://localhost:8899/transactions"
    timeout_seconds: float = 5.0
    failure_threshold: int = 5
    recovery_timeout_seconds: float = 60.0


@dataclass
class SystemConfig:
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    zkp: ZKPConfig = field(default_factory=ZKPConfig)
    mirror: MirrorConfig = field(default_factory=MirrorConfig)

    log_dir: Path = field(default_factory=lambda: Path("logs"))
    log_level: str = "INFO"
    results_dir: Path = field(default_factory=lambda: Path("results"))
    enable_debug_mode: bool = False

    def __post_init__(self):
        self.log_dir = Path(self.log_dir)
        self.results_dir = Path(self.results_dir)
        if self.enable_debug_mode:
            self.log_level = "DEBUG"


def _config_from_dict(config_data: Dict[str, Any]) -> SystemConfig:
    ledger_data = config_data.get('ledger', {}) or {}
    ledger_config = LedgerConfig(
        node_count=ledger_data.get('node_count', 3),
        node_ids=list(ledger_data.get('node_ids', [])),
        block_interval_ms=ledger_data.get('block_interval_ms', 10000),
        sync_interval_ms=ledger_data.get('sync_interval_ms', 5000),
        shallow_divergence_limit=ledger_data.get(
            'shallow_divergence_limit', 2),
        validator_cache_size=ledger_data.get('validator_cache_size', 1000)
    )

    zkp_data = config_data.get('zkp', {}) or {}
    zkp_config = ZKPConfig(
        curve=zkp_data.get('curve', 'secp256k1'),
        generator_seed=zkp_data.get('generator_seed', 'DPLT-Pedersen-H-v1')
    )

    mirror_data = config_data.get('mirror', {}) or {}
    mirror_config = MirrorConfig(
        enabled=mirror_data.get('enabled', False),
        endpoint_url=mirror_data.get(
            'endpoint_url', 'http://localhost:8899/transactions'),
        timeout_seconds=mirror_data.get('timeout_seconds', 5.0),
        failure_threshold=mirror_data.get('failure_threshold', 5),
        recovery_timeout_seconds=mirror_data.get(
            'recovery_timeout_seconds', 60.0)
    )

    return SystemConfig(
        ledger=ledger_config,
        zkp=zkp_config,
        mirror=mirror_config,
        log_dir=Path(config_data.get('log_dir', 'logs')),
        log_level=config_data.get('log_level', 'INFO'),
        results_dir=Path(config_data.get('results_dir', 'results')),
        enable_debug_mode=config_data.get('enable_debug_mode', False)
    )


def load_config(config_path: Optional[Path] = None) -> SystemConfig:
    """Load configuration from a YAML file or return defaults"""
    if config_path is None:
        config_path = Path("config.yaml")
    config_path = Path(config_path)

    if config_path.exists():
        try:
            with open(config_path, 'r') as f:
                config_data = yaml.safe_load(f) or {}
            return _config_from_dict(config_data)
        except (yaml.YAMLError, ValueError, TypeError, AttributeError) as e:
            logger.warning(
                f"Could not load config file {config_path}: {e}; using default configuration")

    return SystemConfig()


def save_config(config: SystemConfig, config_path: Optional[Path] = None):
    """Save configuration to YAML file"""
    if config_path is None:
        config_path = Path("config.yaml")
    config_path = Path(config_path)

    config_data = {
        'ledger': {
            'node_count': config.ledger.node_count,
            'node_ids': list(config.ledger.node_ids),
            'block_interval_ms': config.ledger.block_interval_ms,
            'sync_interval_ms': config.ledger.sync_interval_ms,
            'shallow_divergence_limit': config.ledger.shallow_divergence_limit,
            'validator_cache_size': config.ledger.validator_cache_size
        },
        'zkp': {
            'curve': config.zkp.curve,
            'generator_seed': config.zkp.generator_seed
        },
        'mirror': {
            'enabled': config.mirror.enabled,
            'endpoint_url': config.mirror.endpoint_url,
            'timeout_seconds': config.mirror.timeout_seconds,
            'failure_threshold': config.mirror.failure_threshold,
            'recovery_timeout_seconds': config.mirror.recovery_timeout_seconds
        },
        'log_dir': str(config.log_dir),
        'log_level': config.log_level,
        'results_dir': str(config.results_dir),
        'enable_debug_mode': config.enable_debug_mode
    }

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, 'w') as f:
        yaml.dump(config_data, f, default_flow_style=False)
