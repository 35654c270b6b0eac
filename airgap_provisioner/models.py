from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from packaging.utils import canonicalize_name

from .errors import InvalidTransitionError, ManifestParseError


class Tier(IntEnum):
    """Installation scopes, widest first. The order is fixed."""

    GLOBAL = 0
    WHEELHOUSE = 1
    LOCAL = 2

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: str) -> "Tier":
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ManifestParseError(f"unknown tier {value!r}") from None

    @classmethod
    def ordered(cls) -> List["Tier"]:
        return sorted(cls)


@dataclass(frozen=True)
class DependencySpec:
    name: str
    constraint: str
    tier: Tier
    pinned_digest: Optional[str] = None
    marker: Optional[str] = None
    line_no: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", canonicalize_name(self.name))

    def __str__(self) -> str:
        return f"{self.name}{self.constraint}"


@dataclass(frozen=True)
class ArtifactRef:
    """Where an artifact for one (name, version) can be fetched from."""

    filename: str
    url: str
    sha256: Optional[str] = None


@dataclass(frozen=True)
class ResolvedPackage:
    name: str
    version: str
    source_tier: Tier
    artifact: Optional[ArtifactRef] = None
    requested_by: str = ""

    @property
    def key(self) -> str:
        return f"{self.name}=={self.version}"

    def inherited_in(self, tier: Tier) -> bool:
        return self.source_tier != tier

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "source_tier": self.source_tier.label,
            "filename": self.artifact.filename if self.artifact else None,
            "requested_by": self.requested_by,
        }


@dataclass(frozen=True)
class ArtifactRecord:
    name: str
    version: str
    digest: str
    path: str
    size: int

    @property
    def key(self) -> str:
        return f"{self.name}=={self.version}"


class InstallStatus(str, Enum):
    PENDING = "pending"
    INSTALLED = "installed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not InstallStatus.PENDING


@dataclass
class InstallationRecord:
    tier: Tier
    name: str
    version: str
    status: InstallStatus = InstallStatus.PENDING
    timestamp: float = field(default_factory=time.time)
    detail: Optional[str] = None
    run_id: Optional[str] = None
    # "<mode>:<target>" of the scope the package went into.
    scope: Optional[str] = None

    def transition(self, status: InstallStatus, *, detail: Optional[str] = None) -> None:
        if self.status.terminal:
            raise InvalidTransitionError(
                f"{self.tier.label}:{self.name}=={self.version} already {self.status.value}"
            )
        if not status.terminal:
            raise InvalidTransitionError(f"cannot transition to {status.value}")
        self.status = status
        self.timestamp = time.time()
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.label,
            "name": self.name,
            "version": self.version,
            "status": self.status.value,
            "timestamp": self.timestamp,
            "detail": self.detail,
            "run_id": self.run_id,
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "InstallationRecord":
        return cls(
            tier=Tier.parse(d["tier"]),
            name=str(d["name"]),
            version=str(d["version"]),
            status=InstallStatus(d.get("status", "pending")),
            timestamp=float(d.get("timestamp") or 0.0),
            detail=d.get("detail"),
            run_id=d.get("run_id"),
            scope=d.get("scope"),
        )


class RunState(str, Enum):
    INIT = "init"
    RESOLVING = "resolving"
    FETCHING = "fetching"
    INSTALLING = "installing"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunState.DONE, RunState.FAILED, RunState.CANCELLED)


@dataclass
class TierOutcome:
    tier: Tier
    status: str = "pending"
    resolved: List[ResolvedPackage] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.label,
            "status": self.status,
            "resolved": [p.to_dict() for p in self.resolved],
            "error": self.error,
        }


@dataclass
class ProvisioningRun:
    run_id: str
    tiers: List[Tier]
    state: RunState = RunState.INIT
    current_tier: Optional[Tier] = None
    last_completed_tier: Optional[Tier] = None
    records: List[InstallationRecord] = field(default_factory=list)
    outcomes: Dict[Tier, TierOutcome] = field(default_factory=dict)
    failure: Optional[Dict[str, Any]] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    def records_for(self, tier: Tier) -> List[InstallationRecord]:
        return [r for r in self.records if r.tier == tier]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "tiers": [t.label for t in self.tiers],
            "state": self.state.value,
            "current_tier": self.current_tier.label if self.current_tier is not None else None,
            "last_completed_tier": (
                self.last_completed_tier.label if self.last_completed_tier is not None else None
            ),
            "records": [r.to_dict() for r in self.records],
            "outcomes": {t.label: o.to_dict() for t, o in sorted(self.outcomes.items())},
            "failure": self.failure,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
