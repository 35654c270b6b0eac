from __future__ import annotations

import pytest

from airgap_provisioner.errors import InvalidTransitionError
from airgap_provisioner.models import InstallationRecord, InstallStatus, ProvisioningRun, RunState, Tier
from airgap_provisioner.state_store import (
    MAX_RUN_HISTORY,
    ensure_defaults,
    history_records,
    last_completed_tier,
    load_state,
    record_run,
    save_state,
)


def _run(run_id, tiers, last=None):
    run = ProvisioningRun(run_id=run_id, tiers=tiers, state=RunState.DONE, last_completed_tier=last)
    rec = InstallationRecord(tier=tiers[0], name="pytest", version="8.0.0", run_id=run_id)
    rec.transition(InstallStatus.INSTALLED)
    run.records.append(rec)
    return run


@pytest.mark.parametrize("name", ["state.json", "state.yaml"])
def test_state_survives_a_save_load_cycle(tmp_path, name):
    path = str(tmp_path / "nested" / name)
    state = ensure_defaults(load_state(path))
    record_run(state, _run("r1", Tier.ordered(), last=Tier.LOCAL))
    save_state(path, state)

    loaded = load_state(path)
    assert last_completed_tier(loaded) == Tier.LOCAL
    (rec,) = history_records(loaded)
    assert (rec.tier, rec.name, rec.status) == (Tier.GLOBAL, "pytest", InstallStatus.INSTALLED)


def test_checkpoint_only_moves_for_runs_starting_at_global():
    state = ensure_defaults({})
    record_run(state, _run("full", Tier.ordered(), last=Tier.WHEELHOUSE))
    record_run(state, _run("narrow", [Tier.LOCAL], last=Tier.LOCAL))

    assert state["checkpoint"] == {"last_completed_tier": "wheelhouse", "run_id": "full"}
    assert [r["run_id"] for r in state["runs"]] == ["full", "narrow"]


def test_history_is_bounded():
    state = ensure_defaults({})
    for i in range(MAX_RUN_HISTORY + 5):
        record_run(state, _run(f"r{i}", [Tier.GLOBAL]))
    assert len(state["runs"]) == MAX_RUN_HISTORY
    assert state["runs"][0]["run_id"] == "r5"


def test_malformed_records_are_ignored():
    state = {"runs": [{"records": [{"tier": "global"}, {"tier": "local", "name": "x", "version": "1"}]}]}
    assert [r.name for r in history_records(state)] == ["x"]


def test_terminal_records_never_change():
    rec = InstallationRecord(tier=Tier.GLOBAL, name="pytest", version="8.0.0")
    with pytest.raises(InvalidTransitionError):
        rec.transition(InstallStatus.PENDING)

    rec.transition(InstallStatus.FAILED, detail="boom")
    with pytest.raises(InvalidTransitionError):
        rec.transition(InstallStatus.INSTALLED)
    assert rec.status is InstallStatus.FAILED
