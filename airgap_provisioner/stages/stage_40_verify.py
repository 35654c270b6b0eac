from __future__ import annotations

import logging

from ..context import ProvisionCtx
from ..models import RunState, Tier

logger = logging.getLogger(__name__)


class VerifyStage:
    stage_id = "verify"
    state = RunState.VERIFYING

    def run(self, ctx: ProvisionCtx, tier: Tier) -> None:
        artifacts = ctx.artifacts.get(tier) or {}
        owned = [artifacts[p.name] for p in ctx.owned(tier)]
        if not owned:
            logger.info("[%s] nothing to verify", tier.label)
            ctx.verified[tier] = {}
            return
        ctx.verified[tier] = ctx.verifier.verify(tier, owned)
