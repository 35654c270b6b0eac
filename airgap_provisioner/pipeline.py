from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from .context import ProvisionCtx
from .errors import ManifestParseError, ProvisionError, ProvisioningCancelled, VerificationError
from .models import ProvisioningRun, RunState, Tier, TierOutcome
from .stages import FetchStage, InstallStage, ResolveStage, VerifyStage

logger = logging.getLogger(__name__)


class Stage(Protocol):
    """One per-tier stage of the orchestrator."""

    stage_id: str
    state: RunState

    def run(self, ctx: ProvisionCtx, tier: Tier) -> None:
        ...


def build_stages() -> List[Stage]:
    return [ResolveStage(), FetchStage(), InstallStage(), VerifyStage()]


@dataclass(frozen=True)
class PipelineResult:
    run: ProvisioningRun
    ran_tiers: List[Tier]
    skipped_tiers: List[Tier]

    @property
    def exit_code(self) -> int:
        if self.run.state is RunState.DONE:
            return 0
        if self.run.failure:
            return int(self.run.failure.get("exit_code") or 1)
        return 1


def _check_cancelled(cancel: Optional[threading.Event], tier: Tier, stage: Stage) -> None:
    if cancel is not None and cancel.is_set():
        raise ProvisioningCancelled(f"cancelled before {stage.stage_id} of {tier.label}")


def run_pipeline(
    *,
    ctx: ProvisionCtx,
    tiers: Sequence[Tier],
    stages: Optional[Sequence[Stage]] = None,
    cancel: Optional[threading.Event] = None,
    resume_after: Optional[Tier] = None,
) -> PipelineResult:
    """Drive tiers through resolve, fetch, install and verify, widest first.

    A failing tier stops the run unless it is optional, in which case it is
    marked skipped and narrower tiers no longer see its packages. With
    ``resume_after`` every tier up to and including that one is skipped.
    """

    run = ctx.run
    stages = list(stages) if stages is not None else build_stages()
    ran: List[Tier] = []
    skipped: List[Tier] = []

    # A malformed manifest fails the run before any tier does work.
    for tier in Tier.ordered():
        try:
            ctx.manifests.load(tier)
        except ManifestParseError as e:
            e.annotate(tier=tier.label, stage="validate")
            logger.error("%s", e)
            run.current_tier = tier
            _finish(ctx, RunState.FAILED, failure=e)
            return PipelineResult(run=run, ran_tiers=ran, skipped_tiers=skipped)

    for tier in sorted(tiers):
        outcome = run.outcomes.setdefault(tier, TierOutcome(tier=tier))

        if resume_after is not None and tier <= resume_after:
            logger.info("Skipping tier %s (completed by an earlier run)", tier.label)
            outcome.status = "resumed"
            run.last_completed_tier = tier
            skipped.append(tier)
            continue

        run.current_tier = tier
        stage: Optional[Stage] = None
        try:
            for stage in stages:
                _check_cancelled(cancel, tier, stage)
                if ctx.dry_run and stage.state is not RunState.RESOLVING:
                    break
                run.state = stage.state
                logger.info("[%s] %s", tier.label, stage.state.value)
                stage.run(ctx, tier)
        except ProvisioningCancelled as e:
            e.annotate(tier=tier.label, stage=stage.stage_id if stage else "")
            logger.warning("%s", e)
            outcome.status = "cancelled"
            _finish(ctx, RunState.CANCELLED, failure=e)
            return PipelineResult(run=run, ran_tiers=ran, skipped_tiers=skipped)
        except ProvisionError as e:
            e.annotate(tier=tier.label, stage=stage.stage_id if stage else "")
            outcome.resolved = list(ctx.resolved.get(tier, []))
            outcome.error = e.to_dict()
            if isinstance(e, VerificationError):
                ctx.verified[tier] = e.results
            if ctx.scopes[tier].optional:
                logger.warning("Optional tier %s skipped: %s", tier.label, e)
                outcome.status = "skipped"
                ctx.resolved.pop(tier, None)
                ctx.skipped.add(tier)
                skipped.append(tier)
                continue
            logger.error("Tier %s failed: %s", tier.label, e)
            outcome.status = "failed"
            _finish(ctx, RunState.FAILED, failure=e)
            return PipelineResult(run=run, ran_tiers=ran, skipped_tiers=skipped)

        outcome.resolved = list(ctx.resolved.get(tier, []))
        ran.append(tier)
        if ctx.dry_run:
            outcome.status = "planned"
        else:
            outcome.status = "done"
            run.last_completed_tier = tier

    _finish(ctx, RunState.DONE)
    return PipelineResult(run=run, ran_tiers=ran, skipped_tiers=skipped)


def _finish(ctx: ProvisionCtx, state: RunState, *, failure: Optional[ProvisionError] = None) -> None:
    run = ctx.run
    run.state = state
    run.current_tier = None if state is RunState.DONE else run.current_tier
    run.failure = failure.to_dict() if failure is not None else None
    run.records = ctx.log.records()
    run.finished_at = time.time()
    logger.info("Run %s finished: %s", run.run_id, state.value)
