from __future__ import annotations

import logging

from ..context import ProvisionCtx
from ..models import RunState, Tier

logger = logging.getLogger(__name__)


class ResolveStage:
    stage_id = "resolve"
    state = RunState.RESOLVING

    def run(self, ctx: ProvisionCtx, tier: Tier) -> None:
        specs = ctx.manifests.load(tier)
        ctx.specs[tier] = specs
        if not specs:
            logger.info("[%s] manifest declares nothing", tier.label)

        env = ctx.environment_for(tier)
        resolved = ctx.resolver.resolve(tier, specs, env)
        ctx.resolved[tier] = resolved

        for p in resolved:
            origin = "inherited from " + p.source_tier.label if p.inherited_in(tier) else "owned"
            logger.info("[%s] %s (%s)", tier.label, p.key, origin)
