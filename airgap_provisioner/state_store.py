from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .models import InstallationRecord, ProvisioningRun, Tier

logger = logging.getLogger(__name__)

# Runs kept in the state file; the audit trail of older runs lives in reports.
MAX_RUN_HISTORY = 20


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"json", "yaml", "yml"}:
        return ext
    # Default to JSON for unknown extensions.
    return "json"


def load_state(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        return {}

    fmt = _detect_format(p)
    data: Dict[str, Any]

    if fmt in {"yaml", "yml"}:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    else:
        data = json.loads(p.read_text(encoding="utf-8"))

    if not isinstance(data, dict):
        raise ValueError(f"State file must be an object/dict, got {type(data)}")

    return data


def save_state(path: str, state: Dict[str, Any]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)

    fmt = _detect_format(p)
    if fmt in {"yaml", "yml"}:
        text = yaml.safe_dump(state, sort_keys=False) + "\n"
    else:
        text = json.dumps(state, indent=2, sort_keys=True) + "\n"

    tmp = p.with_name(p.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(p)


def ensure_defaults(state: Dict[str, Any]) -> Dict[str, Any]:
    """Fill required keys with defaults (without overriding existing values)."""

    state.setdefault("version", 1)
    state.setdefault("runs", [])
    state.setdefault("checkpoint", {})
    state["checkpoint"].setdefault("last_completed_tier", None)
    state["checkpoint"].setdefault("run_id", None)
    return state


def history_records(state: Dict[str, Any]) -> List[InstallationRecord]:
    """Every installation record persisted by earlier runs, oldest first."""

    out: List[InstallationRecord] = []
    for run in state.get("runs") or []:
        for r in run.get("records") or []:
            try:
                out.append(InstallationRecord.from_dict(r))
            except (KeyError, ValueError) as e:
                logger.warning("Ignoring malformed record in state: %s (%s)", r, e)
    return out


def last_completed_tier(state: Dict[str, Any]) -> Optional[Tier]:
    label = (state.get("checkpoint") or {}).get("last_completed_tier")
    return Tier.parse(label) if label else None


def record_run(state: Dict[str, Any], run: ProvisioningRun, *, move_checkpoint: bool = True) -> None:
    """Insert or replace ``run`` in the state's run history.

    The checkpoint only moves for runs that covered the tiers from GLOBAL on;
    a run of a single narrow tier says nothing about the wider ones.
    """

    runs = state.setdefault("runs", [])
    payload = run.to_dict()
    for i, existing in enumerate(runs):
        if existing.get("run_id") == run.run_id:
            runs[i] = payload
            break
    else:
        runs.append(payload)
    del runs[:-MAX_RUN_HISTORY]

    if not move_checkpoint or not run.tiers or min(run.tiers) != Tier.GLOBAL:
        return
    cp = state.setdefault("checkpoint", {})
    cp["run_id"] = run.run_id
    cp["last_completed_tier"] = (
        run.last_completed_tier.label if run.last_completed_tier is not None else None
    )
