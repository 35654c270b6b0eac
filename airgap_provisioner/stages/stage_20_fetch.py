from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, List, Optional

from ..context import ProvisionCtx
from ..errors import FetchError
from ..models import ArtifactRecord, ResolvedPackage, RunState, Tier

logger = logging.getLogger(__name__)


class FetchStage:
    """Make sure every artifact the tier needs is in the cache.

    That is the packages the tier owns, plus inherited packages whose source
    tier is a wheelhouse: pip reaches those through the cache as well. All
    fetches of the tier complete (or fail) before the stage returns.
    """

    stage_id = "fetch"
    state = RunState.FETCHING

    def _needed(self, ctx: ProvisionCtx, tier: Tier) -> List[ResolvedPackage]:
        out = []
        for p in ctx.resolved.get(tier, []):
            if not p.inherited_in(tier):
                out.append(p)
            elif ctx.scopes[p.source_tier].mode == "wheelhouse":
                out.append(p)
        return out

    def run(self, ctx: ProvisionCtx, tier: Tier) -> None:
        needed = self._needed(ctx, tier)
        if not needed:
            ctx.artifacts[tier] = {}
            return

        workers = max(1, min(ctx.workers, len(needed)))
        logger.info("[%s] ensuring %d artifact(s) with %d worker(s)", tier.label, len(needed), workers)

        futures: Dict[str, Future] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"fetch-{tier.label}") as pool:
            for p in needed:
                pinned = ctx.pinned_digest(p.source_tier, p.name)
                futures[p.name] = pool.submit(ctx.cache.ensure, p, pinned)

        artifacts: Dict[str, ArtifactRecord] = {}
        first_error: Optional[FetchError] = None
        for p in needed:
            try:
                artifacts[p.name] = futures[p.name].result()
            except FetchError as e:
                logger.error("[%s] %s", tier.label, e)
                if first_error is None:
                    first_error = e

        if first_error is not None:
            raise first_error
        ctx.artifacts[tier] = artifacts
