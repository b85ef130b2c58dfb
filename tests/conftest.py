import sys
from pathlib import Path

import pytest

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.config import LedgerConfig, SystemConfig  # noqa: E402
from dplt.dplt_network import NetworkHandle  # noqa: E402

START_MS = 1_700_000_000_000


class FakeClock:
    """Millisecond clock that only moves when told to"""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def system_config(tmp_path):
    return SystemConfig(
        ledger=LedgerConfig(node_count=3, block_interval_ms=1000, sync_interval_ms=500),
        log_dir=tmp_path / "logs",
        results_dir=tmp_path / "results",
    )


@pytest.fixture
def network(system_config, clock):
    return NetworkHandle(system_config, clock=clock)


@pytest.fixture
def election_payload(clock):
    """Builds a valid ELECTION_CREATED payload relative to the fake clock"""
    def build(election_id="election-1", **overrides):
        payload = {
            'electionId': election_id,
            'electionName': "Board Election",
            'candidates': ["Alice", "Bob", "Carol"],
            'startTime': clock() + 60_000,
            'endTime': clock() + 3_600_000,
            'createdBy': "admin",
        }
        payload.update(overrides)
        return payload
    return build
