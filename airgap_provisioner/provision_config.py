from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import ConfigError, ManifestParseError
from .lib.env import OFFLINE_ENV, PATHS, env_flag
from .models import Tier

SCOPE_MODES = {"system", "user", "target", "wheelhouse"}

DEFAULT_LAYERS = {
    Tier.GLOBAL: (),
    Tier.WHEELHOUSE: (Tier.GLOBAL,),
    Tier.LOCAL: (Tier.GLOBAL, Tier.WHEELHOUSE),
}


@dataclass(frozen=True)
class PackageSourceConfig:
    """Where fetchers look for artifacts.

    Passed explicitly to every index and fetcher; nothing reads a
    process-wide pip.conf.
    """

    index_url: Optional[str] = "https://pypi.org/simple"
    extra_index_urls: Tuple[str, ...] = ()
    trusted_hosts: Tuple[str, ...] = ()
    find_links: Tuple[str, ...] = ()

    @property
    def index_urls(self) -> List[str]:
        urls = [self.index_url] if self.index_url else []
        return urls + [u for u in self.extra_index_urls if u not in urls]

    def with_find_links(self, *dirs: str) -> "PackageSourceConfig":
        merged = list(self.find_links)
        for d in dirs:
            if d and d not in merged:
                merged.append(d)
        return PackageSourceConfig(
            index_url=self.index_url,
            extra_index_urls=self.extra_index_urls,
            trusted_hosts=self.trusted_hosts,
            find_links=tuple(merged),
        )

    @classmethod
    def from_mapping(cls, raw: Dict[str, Any]) -> "PackageSourceConfig":
        if not isinstance(raw, dict):
            raise ConfigError("sources must be a mapping")
        index_url = raw.get("index_url", cls.index_url)
        return cls(
            index_url=str(index_url) if index_url else None,
            extra_index_urls=_str_tuple(raw.get("extra_index_urls"), "sources.extra_index_urls"),
            trusted_hosts=_str_tuple(raw.get("trusted_hosts"), "sources.trusted_hosts"),
            find_links=_str_tuple(raw.get("find_links"), "sources.find_links"),
        )

    @classmethod
    def from_pip_conf(cls, path: str) -> "PackageSourceConfig":
        """Import the ``[global]`` section of an existing pip.conf."""

        parser = configparser.ConfigParser()
        try:
            with open(path, encoding="utf-8") as f:
                parser.read_file(f)
        except (OSError, configparser.Error) as e:
            raise ConfigError(f"cannot read pip config {path}: {e}") from e

        sect = parser["global"] if parser.has_section("global") else {}

        def multi(key: str) -> Tuple[str, ...]:
            return tuple((sect.get(key) or "").split())

        return cls(
            index_url=sect.get("index-url") or cls.index_url,
            extra_index_urls=multi("extra-index-url"),
            trusted_hosts=multi("trusted-host"),
            find_links=multi("find-links"),
        )


@dataclass(frozen=True)
class TierScope:
    """The filesystem location one tier installs into."""

    tier: Tier
    mode: str
    target: Optional[str] = None
    optional: bool = False
    layers: Tuple[Tier, ...] = ()


@dataclass(frozen=True)
class ProvisionConfig:
    raw: Dict[str, Any] = field(default_factory=dict)
    offline_override: Optional[bool] = None

    @property
    def sources(self) -> PackageSourceConfig:
        raw = self.raw.get("sources") or {}
        pip_conf = raw.get("pip_conf") if isinstance(raw, dict) else None
        if pip_conf:
            return PackageSourceConfig.from_pip_conf(str(pip_conf))
        return PackageSourceConfig.from_mapping(raw)

    @property
    def offline(self) -> bool:
        if self.offline_override is not None:
            return self.offline_override
        return bool(self.raw.get("offline", False))

    @property
    def fetch_timeout(self) -> float:
        return float((self.raw.get("fetch") or {}).get("timeout", 30.0))

    @property
    def fetch_retries(self) -> int:
        return int((self.raw.get("fetch") or {}).get("retries", 3))

    @property
    def fetch_backoff(self) -> float:
        return float((self.raw.get("fetch") or {}).get("backoff", 0.5))

    @property
    def fetch_workers(self) -> int:
        return max(1, int((self.raw.get("fetch") or {}).get("workers", 4)))

    @property
    def python(self) -> str:
        return str(self.raw.get("python") or "python3")

    @property
    def state_path(self) -> str:
        return str((self.raw.get("paths") or {}).get("state") or PATHS.state_default)

    @property
    def log_path(self) -> str:
        return str((self.raw.get("paths") or {}).get("log") or PATHS.log_default)

    @property
    def report_path(self) -> Optional[str]:
        p = (self.raw.get("paths") or {}).get("report")
        return str(p) if p else None

    @property
    def import_names(self) -> Dict[str, str]:
        names = (self.raw.get("verify") or {}).get("import_names") or {}
        if not isinstance(names, dict):
            raise ConfigError("verify.import_names must be a mapping")
        return {str(k).lower(): str(v) for k, v in names.items()}

    @property
    def verify_skip(self) -> List[str]:
        return [str(s).lower() for s in ((self.raw.get("verify") or {}).get("skip") or [])]

    def scope(self, tier: Tier) -> TierScope:
        tiers = self.raw.get("tiers") or {}
        if not isinstance(tiers, dict):
            raise ConfigError("tiers must be a mapping")
        t = tiers.get(tier.label) or {}

        default_mode = {
            Tier.GLOBAL: "system",
            Tier.WHEELHOUSE: "wheelhouse",
            Tier.LOCAL: "user",
        }[tier]
        mode = str(t.get("mode") or default_mode)
        if mode not in SCOPE_MODES:
            raise ConfigError(f"tiers.{tier.label}.mode must be one of {sorted(SCOPE_MODES)}")

        target = t.get("target")
        if target is None and mode == "wheelhouse":
            target = PATHS.wheelhouse_default
        if mode in {"target", "wheelhouse"} and not target:
            raise ConfigError(f"tiers.{tier.label}.target is required for mode {mode}")

        if "layers" in t:
            try:
                layers = tuple(Tier.parse(x) for x in (t.get("layers") or []))
            except ManifestParseError as e:
                raise ConfigError(f"tiers.{tier.label}.layers: {e.message}") from e
            if any(layer >= tier for layer in layers):
                raise ConfigError(f"tiers.{tier.label}.layers may only name wider tiers")
        else:
            layers = DEFAULT_LAYERS[tier]

        return TierScope(
            tier=tier,
            mode=mode,
            target=str(target) if target else None,
            optional=bool(t.get("optional", False)),
            layers=layers,
        )

    def scopes(self) -> Dict[Tier, TierScope]:
        return {t: self.scope(t) for t in Tier.ordered()}


def _str_tuple(value: Any, key: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{key} must be a list")
    return tuple(str(v) for v in value)


def load_provision_config(path: Optional[str] = None) -> ProvisionConfig:
    """Load the YAML config; a missing default file means built-in defaults."""

    explicit = path is not None
    path = path or os.environ.get("AIRGAP_PROVISION_CONFIG") or PATHS.config_default
    p = Path(path)

    offline = env_flag(OFFLINE_ENV)

    if not p.exists():
        if explicit:
            raise ConfigError(f"config file not found: {path}")
        return ProvisionConfig(raw={}, offline_override=offline)

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ConfigError("provision config must be YAML")

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping/object")

    cfg = ProvisionConfig(raw=raw, offline_override=offline)
    # Surface shape errors at load time rather than mid-run.
    _ = (cfg.sources, cfg.scopes())
    return cfg
