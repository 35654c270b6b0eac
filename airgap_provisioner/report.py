from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from .context import ProvisionCtx
from .models import ProvisioningRun, Tier
from .pipeline import PipelineResult

logger = logging.getLogger(__name__)


def _package_rows(ctx: ProvisionCtx, run: ProvisioningRun, tier: Tier) -> List[Dict[str, Any]]:
    records = {r.name: r for r in run.records_for(tier)}
    outcome = run.outcomes.get(tier)
    verified = ctx.verified.get(tier) or {}
    resolved = outcome.resolved if outcome is not None else []

    rows: List[Dict[str, Any]] = []
    for p in resolved:
        row: Dict[str, Any] = {
            "name": p.name,
            "version": p.version,
            "source_tier": p.source_tier.label,
        }
        rec = records.pop(p.name, None)
        if p.inherited_in(tier):
            row["status"] = "inherited"
        elif rec is not None:
            row["status"] = rec.status.value
            row["detail"] = rec.detail
        else:
            row["status"] = "resolved"
        if p.name in verified:
            row["verified"] = verified[p.name]
        rows.append(row)

    # Records whose package is no longer in the resolved set (optional tier skipped).
    for rec in records.values():
        rows.append(
            {
                "name": rec.name,
                "version": rec.version,
                "source_tier": tier.label,
                "status": rec.status.value,
                "detail": rec.detail,
            }
        )
    return rows


def build_report(ctx: ProvisionCtx, result: PipelineResult) -> Dict[str, Any]:
    """Per-tier, per-package summary of one run."""

    run = result.run
    tiers: Dict[str, Any] = {}
    for tier in sorted(run.outcomes):
        outcome = run.outcomes[tier]
        scope = ctx.scopes[tier]
        tiers[tier.label] = {
            "status": outcome.status,
            "mode": scope.mode,
            "target": ctx.installer.target_label(scope),
            "error": outcome.error,
            "packages": _package_rows(ctx, run, tier),
        }

    return {
        "run_id": run.run_id,
        "state": run.state.value,
        "exit_code": result.exit_code,
        "dry_run": ctx.dry_run,
        "failure": run.failure,
        "tiers": tiers,
        "records": [r.to_dict() for r in run.records],
        "started_at": run.started_at,
        "finished_at": run.finished_at,
    }


def write_report(path: str, report: Dict[str, Any]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(report, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    logger.info("Wrote run report to %s", p)


def format_summary(report: Dict[str, Any]) -> str:
    lines = [f"run {report['run_id']}: {report['state']}"]
    for label, t in report["tiers"].items():
        lines.append(f"  {label} ({t['mode']} -> {t['target']}): {t['status']}")
        for row in t["packages"]:
            mark = ""
            if row.get("verified") is False:
                mark = " [verification failed]"
            lines.append(f"    {row['name']}=={row['version']} {row['status']}{mark}")
        if t["error"]:
            lines.append(f"    error: {t['error']['message']}")
    return "\n".join(lines)
