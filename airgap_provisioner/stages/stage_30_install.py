from __future__ import annotations

import logging

from ..context import ProvisionCtx
from ..lib.installer import pins_for
from ..models import RunState, Tier

logger = logging.getLogger(__name__)


class InstallStage:
    stage_id = "install"
    state = RunState.INSTALLING

    def run(self, ctx: ProvisionCtx, tier: Tier) -> None:
        pins = pins_for(ctx.resolved.get(tier, []))
        artifacts = ctx.artifacts.get(tier) or {}
        owned = ctx.owned(tier)
        logger.info("[%s] installing %d package(s) into %s", tier.label, len(owned), ctx.scopes[tier].mode)

        # Stops at the first failure; packages after it get no record.
        for p in owned:
            ctx.installer.install(tier, artifacts[p.name], log=ctx.log, pins=pins)
