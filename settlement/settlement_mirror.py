"""
Settlement Mirror Module
Optional outbound copy of accepted ledger transactions to an external
settlement ledger. The local ledger never depends on the mirror succeeding.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from config.config import MirrorConfig

logger = logging.getLogger(__name__)


class MirrorError(Exception):
    """Raised when the settlement collaborator fails or is unavailable"""
    pass


@dataclass
class MirrorReceipt:
    accepted: bool
    external_ref: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'accepted': self.accepted,
            'externalRef': self.external_ref,
            'error': self.error,
        }


class CircuitBreaker:
    """Circuit breaker for settlement endpoint failures"""

    def __init__(self, failure_threshold=5, recovery_timeout=60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time = None
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    def record_failure(self):
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == "HALF_OPEN" or self.failure_count >= self.failure_threshold:
            self.state = "OPEN"
            logger.warning(
                f"Settlement circuit breaker opened after {self.failure_count} failures")

    def record_success(self):
        if self.state == "HALF_OPEN":
            self.state = "CLOSED"
            self.failure_count = 0
            logger.info("Settlement circuit breaker closed after successful call")
        elif self.state == "CLOSED":
            self.failure_count = max(0, self.failure_count - 1)

    def can_attempt(self) -> bool:
        if self.state == "CLOSED":
            return True
        elif self.state == "OPEN":
            if time.time() - self.last_failure_time > self.recovery_timeout:
                self.state = "HALF_OPEN"
                return True
            return False
        elif self.state == "HALF_OPEN":
            return True
        return False


class SettlementMirror:
    """Submit-and-receipt interface to the external settlement ledger"""

    def mirror_transaction(self, tx) -> MirrorReceipt:
        raise NotImplementedError


class NullSettlementMirror(SettlementMirror):
    """Used when mirroring is disabled; every transaction stays local only"""

    def mirror_transaction(self, tx) -> MirrorReceipt:
        return MirrorReceipt(accepted=False, error="mirroring disabled")


class HttpSettlementMirror(SettlementMirror):
    """POSTs each transaction's JSON form to a settlement endpoint"""

    def __init__(self, endpoint_url: str, timeout_seconds: float = 5.0,
                 breaker: Optional[CircuitBreaker] = None,
                 session: Optional[requests.Session] = None):
        self.endpoint_url = endpoint_url
        self.timeout_seconds = timeout_seconds
        self.breaker = breaker or CircuitBreaker()
        self.session = session or requests.Session()

    def mirror_transaction(self, tx) -> MirrorReceipt:
        if not self.breaker.can_attempt():
            raise MirrorError(
                f"Settlement endpoint {self.endpoint_url} unavailable (circuit open)")

        try:
            response = self.session.post(
                self.endpoint_url, json=tx.to_dict(), timeout=self.timeout_seconds)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            self.breaker.record_failure()
            raise MirrorError(
                f"Mirroring transaction {tx.id[:12]} failed: {e}") from e

        self.breaker.record_success()
        if not isinstance(body, dict):
            body = {}
        accepted = bool(body.get('accepted', True))
        external_ref = body.get('externalRef') or body.get('signature')
        logger.debug(
            f"Mirrored transaction {tx.id[:12]} as {external_ref}")
        return MirrorReceipt(accepted=accepted, external_ref=external_ref,
                             error=None if accepted else body.get('error'))


def create_settlement_mirror(config: Optional[MirrorConfig] = None) -> SettlementMirror:
    config = config or MirrorConfig()
    if not config.enabled:
        return NullSettlementMirror()

    logger.info(f"Mirroring transactions to {config.endpoint_url}")
    return HttpSettlementMirror(
        endpoint_url=config.endpoint_url,
        timeout_seconds=config.timeout_seconds,
        breaker=CircuitBreaker(
            failure_threshold=config.failure_threshold,
            recovery_timeout=config.recovery_timeout_seconds,
        ),
    )
