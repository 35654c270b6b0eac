from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class ProvisionError(RuntimeError):
    """Base class for every failure the orchestrator knows how to report."""

    exit_code = 1
    kind = "provision"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
        self.tier: Optional[str] = None
        self.stage: Optional[str] = None

    def annotate(self, *, tier: str, stage: str) -> "ProvisionError":
        if self.tier is None:
            self.tier = tier
        if self.stage is None:
            self.stage = stage
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "tier": self.tier,
            "stage": self.stage,
            "exit_code": self.exit_code,
        }

    def __str__(self) -> str:
        if self.tier and self.stage:
            return f"[{self.tier}/{self.stage}] {self.message}"
        return self.message


class ManifestParseError(ProvisionError):
    exit_code = 1
    kind = "manifest"

    def __init__(self, message: str, *, path: Optional[str] = None, line_no: Optional[int] = None) -> None:
        where = path or "<manifest>"
        if line_no is not None:
            where = f"{where}:{line_no}"
        super().__init__(f"{where}: {message}")
        self.path = path
        self.line_no = line_no


class UnresolvableDependencyError(ProvisionError):
    exit_code = 2
    kind = "resolution"

    def __init__(self, name: str, message: str, *, conflicts: Sequence[str] = ()) -> None:
        detail = message
        if conflicts:
            detail = f"{message} (required by: {'; '.join(conflicts)})"
        super().__init__(f"{name}: {detail}")
        self.name = name
        self.conflicts: List[str] = list(conflicts)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["package"] = self.name
        d["conflicts"] = self.conflicts
        return d


class FetchError(ProvisionError):
    """Network or integrity failure while producing an artifact.

    ``reason`` is one of ``network``, ``timeout``, ``http_5xx``, ``http``,
    ``digest_mismatch``, ``offline``, ``missing`` or ``cache_index``. Only ``network``,
    ``timeout`` and ``http_5xx`` are retried by the fetcher.
    """

    exit_code = 3
    kind = "fetch"

    TRANSIENT = frozenset({"network", "timeout", "http_5xx"})

    def __init__(self, name: str, version: str, message: str, *, reason: str = "network") -> None:
        super().__init__(f"{name}=={version}: {message}")
        self.name = name
        self.version = version
        self.reason = reason

    @property
    def transient(self) -> bool:
        return self.reason in self.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update({"package": self.name, "version": self.version, "reason": self.reason})
        return d


class CacheIndexError(FetchError):
    """The cache index is unreadable, so no cached digest can be trusted."""

    def __init__(self, path: str, message: str) -> None:
        ProvisionError.__init__(self, f"{path}: {message}")
        self.name = ""
        self.version = ""
        self.reason = "cache_index"
        self.path = path

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["path"] = self.path
        return d


class InstallError(ProvisionError):
    exit_code = 4
    kind = "install"

    def __init__(self, name: str, version: str, message: str, *, target: Optional[str] = None) -> None:
        where = f" (target={target})" if target else ""
        super().__init__(f"{name}=={version}: {message}{where}")
        self.name = name
        self.version = version
        self.target = target

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update({"package": self.name, "version": self.version, "target": self.target})
        return d


class VerificationError(ProvisionError):
    """Packages were placed on disk but cannot be loaded from their scope."""

    exit_code = 5
    kind = "verification"

    def __init__(self, tier: str, failures: Dict[str, str], *, results: Optional[Dict[str, bool]] = None) -> None:
        names = ", ".join(sorted(failures))
        super().__init__(f"{len(failures)} package(s) not usable in {tier}: {names}")
        self.failures = dict(failures)
        self.results = dict(results or {})

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["failures"] = self.failures
        return d


class ConfigError(ProvisionError):
    exit_code = 6
    kind = "config"


class RunLockedError(ProvisionError):
    exit_code = 6
    kind = "lock"


class ProvisioningCancelled(ProvisionError):
    exit_code = 130
    kind = "cancelled"


class InvalidTransitionError(RuntimeError):
    """An installation record was moved out of a terminal status."""
