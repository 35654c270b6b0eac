from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Set

from .lib.cache import ArtifactCache
from .lib.install_log import InstallationLog
from .lib.installer import Installer
from .lib.manifests import ManifestStore
from .lib.resolver import Resolver
from .lib.verifier import Verifier
from .models import ArtifactRecord, DependencySpec, ProvisioningRun, ResolvedPackage, Tier
from .provision_config import TierScope

logger = logging.getLogger(__name__)


@dataclass
class ProvisionCtx:
    """Everything the stages of one run share."""

    manifests: ManifestStore
    resolver: Resolver
    cache: ArtifactCache
    installer: Installer
    verifier: Verifier
    scopes: Dict[Tier, TierScope]
    log: InstallationLog
    run: ProvisioningRun
    workers: int = 4
    dry_run: bool = False

    specs: Dict[Tier, List[DependencySpec]] = field(default_factory=dict)
    resolved: Dict[Tier, List[ResolvedPackage]] = field(default_factory=dict)
    artifacts: Dict[Tier, Dict[str, ArtifactRecord]] = field(default_factory=dict)
    verified: Dict[Tier, Dict[str, bool]] = field(default_factory=dict)
    skipped: Set[Tier] = field(default_factory=set)

    def owned(self, tier: Tier) -> List[ResolvedPackage]:
        """Packages this tier installs itself (not inherited from a wider tier)."""

        return [p for p in self.resolved.get(tier, []) if p.source_tier == tier]

    def pinned_digest(self, tier: Tier, name: str):
        for s in self.specs.get(tier, []):
            if s.name == name:
                return s.pinned_digest
        return None

    def environment_for(self, tier: Tier) -> Dict[str, ResolvedPackage]:
        """Packages visible to ``tier`` through its layered lookup path."""

        env: Dict[str, ResolvedPackage] = {}
        for layer in self.scopes[tier].layers:
            self.ensure_resolved(layer)
            for p in self.resolved.get(layer, []):
                env.setdefault(p.name, p)
        return env

    def ensure_resolved(self, tier: Tier) -> None:
        """Resolve a wider tier that is not part of this run, for lookup only."""

        if tier in self.resolved or tier in self.skipped:
            return
        logger.info("[%s] resolving for lookup only (not processed in this run)", tier.label)
        specs = self.manifests.load(tier)
        self.specs[tier] = specs
        self.resolved[tier] = self.resolver.resolve(tier, specs, self.environment_for(tier))
