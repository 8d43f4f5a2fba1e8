"""Credential Governor - Health and rotation of a provider's API keys.

Each provider owns one governor. A credential moves through:
1. ACTIVE: eligible for selection, rotated round-robin
2. IMPAIRED: temporarily benched after a transient failure, with an
   escalating, capped backoff; self-heals once the timer elapses
3. QUARANTINED: the key was rejected by the provider; terminal, never
   reactivated automatically (not even by reset_all)

    ACTIVE <-> IMPAIRED -> QUARANTINED
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import FailureKind
from .observability import log_credential_quarantined
from .provider_config import is_placeholder_credential
from .schemas import credential_fingerprint

logger = logging.getLogger(__name__)

# Backoff schedules: base seconds x min(cap, failure_count)
RATE_LIMIT_BACKOFF_SECONDS = 60.0
RATE_LIMIT_BACKOFF_CAP = 5
TRANSIENT_BACKOFF_SECONDS = 30.0
TRANSIENT_BACKOFF_CAP = 3


class CredentialStatus(Enum):
    """Health state of a credential."""

    ACTIVE = "active"
    IMPAIRED = "impaired"
    QUARANTINED = "quarantined"


@dataclass
class CredentialRecord:
    """Mutable health record for one credential. Guarded by its governor's lock."""

    value: str
    status: CredentialStatus = CredentialStatus.ACTIVE
    impaired_until: Optional[float] = None
    failure_count: int = 0

    @property
    def fingerprint(self) -> str:
        return credential_fingerprint(self.value)

    def is_usable(self, now: float) -> bool:
        if self.status == CredentialStatus.ACTIVE:
            return True
        if self.status == CredentialStatus.IMPAIRED:
            return self.impaired_until is not None and now > self.impaired_until
        return False


class CredentialGovernor:
    """Pool of credentials for a single provider.

    All public methods are synchronous and take the governor's lock for
    their whole body; none of them perform I/O.
    """

    def __init__(
        self,
        provider: str,
        credentials: Iterable[str],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self._clock = clock
        self._lock = threading.Lock()
        self._cursor = 0
        self._records: List[CredentialRecord] = []
        self._by_value: Dict[str, CredentialRecord] = {}

        for value in credentials:
            if is_placeholder_credential(value) or value in self._by_value:
                continue
            record = CredentialRecord(value=value)
            self._records.append(record)
            self._by_value[value] = record

        if self._records:
            logger.info(f"Credential governor for {provider}: managing {len(self._records)} credential(s)")
        else:
            logger.warning(f"⚠️ Credential governor for {provider}: no credentials provided")

    def __len__(self) -> int:
        return len(self._records)

    def _reactivate_expired(self, now: float) -> None:
        """Promote IMPAIRED records whose timer elapsed. Caller holds the lock."""
        for record in self._records:
            if (
                record.status == CredentialStatus.IMPAIRED
                and record.impaired_until is not None
                and now > record.impaired_until
            ):
                record.status = CredentialStatus.ACTIVE
                record.impaired_until = None
                logger.info(f"Credential {self.provider}:{record.fingerprint} recovered from impairment")

    def rotation(self) -> List[str]:
        """All usable credentials, starting at the round-robin cursor.

        Advances the cursor by one so consecutive calls rotate which
        credential comes first.
        """
        with self._lock:
            now = self._clock()
            self._reactivate_expired(now)

            count = len(self._records)
            ordered: List[str] = []
            first_index: Optional[int] = None
            for offset in range(count):
                idx = (self._cursor + offset) % count
                record = self._records[idx]
                if record.status == CredentialStatus.ACTIVE:
                    if first_index is None:
                        first_index = idx
                    ordered.append(record.value)

            if first_index is not None:
                self._cursor = (first_index + 1) % count
            return ordered

    def select_credential(self) -> Optional[str]:
        """Next ACTIVE credential in round-robin order, or None if none is usable."""
        ordered = self.rotation()
        if not ordered:
            logger.warning(f"⚠️ {self.provider}: no usable credential available for rotation")
            return None
        return ordered[0]

    def has_usable_credential(self) -> bool:
        with self._lock:
            now = self._clock()
            return any(record.is_usable(now) for record in self._records)

    def report_outcome(self, credential: str, kind: FailureKind) -> None:
        """Apply a failed attempt's consequences to the credential."""
        with self._lock:
            record = self._by_value.get(credential)
            if record is None:
                logger.debug(f"{self.provider}: outcome for unknown credential ignored")
                return
            if record.status == CredentialStatus.QUARANTINED:
                return

            if kind == FailureKind.INVALID_CREDENTIAL:
                record.status = CredentialStatus.QUARANTINED
                record.impaired_until = None
                logger.error(f"🔒 Credential {self.provider}:{record.fingerprint} quarantined (authentication failed)")
                log_credential_quarantined(self.provider, record.fingerprint)
                return

            if not kind.blames_credential:
                record.failure_count = max(0, record.failure_count - 1)
                return

            record.failure_count += 1
            if kind == FailureKind.RATE_LIMIT:
                backoff = RATE_LIMIT_BACKOFF_SECONDS * min(RATE_LIMIT_BACKOFF_CAP, record.failure_count)
            else:
                backoff = TRANSIENT_BACKOFF_SECONDS * min(TRANSIENT_BACKOFF_CAP, record.failure_count)

            record.status = CredentialStatus.IMPAIRED
            record.impaired_until = self._clock() + backoff
            logger.warning(
                f"Credential {self.provider}:{record.fingerprint} impaired for {backoff:.0f}s "
                f"({kind.value}, failure #{record.failure_count})"
            )

    def report_success(self, credential: str) -> None:
        """A healthy call restarts the backoff escalation."""
        with self._lock:
            record = self._by_value.get(credential)
            if record is not None and record.status != CredentialStatus.QUARANTINED:
                record.failure_count = 0

    def reset_all(self) -> None:
        """Reactivate every non-quarantined credential and clear the cursor."""
        with self._lock:
            for record in self._records:
                if record.status == CredentialStatus.QUARANTINED:
                    continue
                record.status = CredentialStatus.ACTIVE
                record.impaired_until = None
                record.failure_count = 0
            self._cursor = 0
        logger.info(f"Credential governor for {self.provider}: rotation reset")

    def reinstate(self, credential: str) -> bool:
        """Operator-level release of a quarantined credential.

        Never called by the router itself. Returns True if the credential
        was quarantined and is now active again.
        """
        with self._lock:
            record = self._by_value.get(credential)
            if record is None or record.status != CredentialStatus.QUARANTINED:
                return False
            record.status = CredentialStatus.ACTIVE
            record.failure_count = 0
        logger.warning(f"Credential {self.provider}:{record.fingerprint} reinstated by operator")
        return True

    def status_of(self, credential: str) -> Optional[CredentialStatus]:
        with self._lock:
            record = self._by_value.get(credential)
            return record.status if record else None

    def status(self) -> Dict[str, Any]:
        """Diagnostic view keyed by fingerprint; never exposes raw credentials."""
        with self._lock:
            now = self._clock()
            return {
                "provider": self.provider,
                "credentials": [
                    {
                        "fingerprint": record.fingerprint,
                        "status": record.status.value,
                        "failure_count": record.failure_count,
                        "impaired_for_seconds": (
                            max(0.0, record.impaired_until - now)
                            if record.impaired_until is not None else 0.0
                        ),
                    }
                    for record in self._records
                ],
                "usable": sum(1 for record in self._records if record.is_usable(now)),
            }
