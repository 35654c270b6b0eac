from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from ..errors import InvalidTransitionError
from ..models import InstallationRecord, InstallStatus, Tier

logger = logging.getLogger(__name__)


class InstallationLog:
    """Append-only log of installation records for one run.

    ``history`` holds the records of earlier runs as persisted in the state
    file. It answers "was this already installed?" without looking at the
    filesystem. PENDING entries in the history were interrupted and are
    treated as not installed.
    """

    def __init__(self, run_id: str, history: Iterable[InstallationRecord] = ()) -> None:
        self.run_id = run_id
        self._records: List[InstallationRecord] = []
        self._open: Dict[Tuple[Tier, str], InstallationRecord] = {}
        self._last_seen: Dict[Tuple[Tier, str], InstallationRecord] = {}
        for r in sorted(history, key=lambda r: r.timestamp):
            self._last_seen[(r.tier, r.name)] = r
        self._lock = threading.Lock()

    def open(self, tier: Tier, name: str, version: str, *, scope: Optional[str] = None) -> InstallationRecord:
        key = (tier, name)
        with self._lock:
            if key in self._open:
                raise InvalidTransitionError(f"{tier.label}:{name} already has a record in run {self.run_id}")
            record = InstallationRecord(tier=tier, name=name, version=version, run_id=self.run_id, scope=scope)
            self._open[key] = record
            self._records.append(record)
        return record

    def complete(self, record: InstallationRecord, status: InstallStatus, *, detail: Optional[str] = None) -> None:
        with self._lock:
            record.transition(status, detail=detail)
        logger.info("[%s] %s==%s %s", record.tier.label, record.name, record.version, status.value)

    def previously_installed(self, tier: Tier, name: str, version: str, *, scope: Optional[str] = None) -> bool:
        """True when the last record for this package installed ``version`` into ``scope``."""

        prev = self._last_seen.get((tier, name))
        if prev is None or prev.status is not InstallStatus.INSTALLED:
            return False
        return prev.version == version and prev.scope == scope

    def interrupted(self) -> List[InstallationRecord]:
        """Records an earlier run left PENDING; they get installed again."""

        return [r for r in self._last_seen.values() if r.status is InstallStatus.PENDING]

    def records(self, tier: Optional[Tier] = None) -> List[InstallationRecord]:
        with self._lock:
            return [r for r in self._records if tier is None or r.tier == tier]
