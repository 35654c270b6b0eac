from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import sys
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import requests

from .context import ProvisionCtx
from .errors import ManifestParseError, ProvisionError
from .lib.cache import ArtifactCache
from .lib.command import Runner, run_cmd
from .lib.env import PATHS
from .lib.fetcher import Fetcher
from .lib.index import ArtifactIndex, build_index
from .lib.install_log import InstallationLog
from .lib.installer import Installer
from .lib.manifests import ManifestStore
from .lib.resolver import Resolver
from .lib.run_lock import RunLock
from .lib.transport import make_session
from .lib.verifier import Verifier
from .logging_utils import configure_logging
from .models import InstallationRecord, ProvisioningRun, RunState, Tier
from .pipeline import PipelineResult, run_pipeline
from .provision_config import ProvisionConfig, load_provision_config
from .report import build_report, format_summary, write_report
from .state_store import (
    ensure_defaults,
    history_records,
    last_completed_tier,
    load_state,
    record_run,
    save_state,
)

logger = logging.getLogger(__name__)

LOCK_NAME = "provision.lock"
EXIT_CANCELLED = 130


def parse_tiers(value: str) -> List[Tier]:
    """``ALL`` or a comma-separated list of tier names, returned widest first."""

    if value.strip().upper() == "ALL":
        return Tier.ordered()
    return sorted({Tier.parse(v) for v in value.split(",") if v.strip()})


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def build_context(
    cfg: ProvisionConfig,
    *,
    manifest_path: str,
    cache_dir: str,
    run: ProvisioningRun,
    history: Iterable[InstallationRecord] = (),
    dry_run: bool = False,
    index: Optional[ArtifactIndex] = None,
    runner: Runner = run_cmd,
    session: Optional[requests.Session] = None,
) -> ProvisionCtx:
    """Wire every component of one run from explicit configuration."""

    scopes = cfg.scopes()
    session = session or make_session()

    fetcher = Fetcher.from_config(cfg, session=session)
    cache = ArtifactCache(cache_dir, fetcher)

    if index is None:
        wheelhouses = [s.target for s in scopes.values() if s.mode == "wheelhouse" and s.target]
        index = build_index(
            cfg.sources,
            extra_find_links=[cache.find_links_dir, *wheelhouses],
            offline=cfg.offline,
            session=session,
            timeout=cfg.fetch_timeout,
        )

    return ProvisionCtx(
        manifests=ManifestStore(manifest_path),
        resolver=Resolver(index),
        cache=cache,
        installer=Installer(scopes, cache_dir=cache.find_links_dir, python=cfg.python, runner=runner),
        verifier=Verifier(
            scopes,
            python=cfg.python,
            runner=runner,
            import_names=cfg.import_names,
            skip=cfg.verify_skip,
        ),
        scopes=scopes,
        log=InstallationLog(run.run_id, history),
        run=run,
        workers=cfg.fetch_workers,
        dry_run=dry_run,
    )


def provision(
    cfg: ProvisionConfig,
    *,
    manifest_path: str,
    cache_dir: str,
    tiers: Sequence[Tier],
    state_path: str,
    dry_run: bool = False,
    resume: bool = False,
    cancel: Optional[threading.Event] = None,
    index: Optional[ArtifactIndex] = None,
    runner: Runner = run_cmd,
    session: Optional[requests.Session] = None,
) -> Tuple[PipelineResult, ProvisionCtx]:
    """Run the orchestrator under the run lock, persisting state for resume."""

    lock = RunLock(str(Path(state_path).parent / LOCK_NAME))
    with lock:
        state = ensure_defaults(load_state(state_path))
        run = ProvisioningRun(run_id=new_run_id(), tiers=sorted(tiers))
        ctx = build_context(
            cfg,
            manifest_path=manifest_path,
            cache_dir=cache_dir,
            run=run,
            history=history_records(state),
            dry_run=dry_run,
            index=index,
            runner=runner,
            session=session,
        )

        for r in ctx.log.interrupted():
            logger.warning(
                "Run %s left %s:%s==%s pending; it will be installed again",
                r.run_id,
                r.tier.label,
                r.name,
                r.version,
            )

        resume_after = last_completed_tier(state) if resume else None
        if resume_after is not None:
            logger.info("Resuming after tier %s", resume_after.label)

        logger.info("Run %s: tiers=%s dry_run=%s", run.run_id, [t.label for t in run.tiers], dry_run)
        try:
            result = run_pipeline(ctx=ctx, tiers=run.tiers, cancel=cancel, resume_after=resume_after)
            return result, ctx
        except Exception as e:
            logger.exception("Provisioning run %s failed unexpectedly", run.run_id)
            run.state = RunState.FAILED
            run.failure = {"kind": "internal", "message": str(e), "exit_code": 1}
            run.records = ctx.log.records()
            raise
        finally:
            if not dry_run:
                record_run(state, run)
                save_state(state_path, state)


def run(
    *,
    manifest: str,
    tiers: Sequence[Tier],
    cache_dir: str,
    config_path: Optional[str] = None,
    state_path: Optional[str] = None,
    log_path: Optional[str] = None,
    report_path: Optional[str] = None,
    offline: bool = False,
    dry_run: bool = False,
    resume: bool = False,
    verbose: bool = False,
    cancel: Optional[threading.Event] = None,
) -> Dict[str, Any]:
    """Provision the requested tiers and return the run report."""

    cfg = load_provision_config(config_path)
    if offline:
        cfg = dataclasses.replace(cfg, offline_override=True)

    requested_log = log_path or cfg.log_path
    actual_log_path = configure_logging(
        log_path=requested_log,
        level=logging.DEBUG if verbose else logging.INFO,
    )
    state_path = state_path or cfg.state_path
    report_path = report_path or cfg.report_path

    if cfg.offline:
        logger.info("Offline mode: only the cache and local find-links are used")

    result, ctx = provision(
        cfg,
        manifest_path=manifest,
        cache_dir=cache_dir,
        tiers=tiers,
        state_path=state_path,
        dry_run=dry_run,
        resume=resume,
        cancel=cancel,
    )

    report = build_report(ctx, result)
    report["paths"] = {
        "log_path_requested": requested_log,
        "log_path_actual": actual_log_path,
        "state": state_path,
        "cache": cache_dir,
    }
    if report_path:
        write_report(report_path, report)
    return report


def _install_signal_handlers(cancel: threading.Event) -> Dict[int, Any]:
    """Turn SIGINT/SIGTERM into a cancellation request; returns the previous handlers."""

    if threading.current_thread() is not threading.main_thread():
        return {}

    def handler(signum, _frame):
        if cancel.is_set():
            # Second signal: stop waiting for the stage boundary.
            raise KeyboardInterrupt
        logger.warning("Received signal %d; cancelling at the next stage boundary", signum)
        cancel.set()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.getsignal(sig)
        signal.signal(sig, handler)
    return previous


def _tiers_arg(value: str) -> List[Tier]:
    try:
        return parse_tiers(value)
    except ManifestParseError as e:
        raise argparse.ArgumentTypeError(e.message) from None


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(
        prog="provision",
        description="Resolve, fetch, install and verify Python dependencies tier by tier.",
    )
    p.add_argument("--manifest", required=True, help="Sectioned manifest file or directory of <tier>.txt files")
    p.add_argument("--tier", type=_tiers_arg, required=True, help="GLOBAL, WHEELHOUSE, LOCAL or ALL")
    p.add_argument("--cache-dir", required=True, help="Artifact cache directory")
    p.add_argument("--config", default=None, help=f"Provisioning config (yaml); default {PATHS.config_default}")
    p.add_argument("--state", default=None, help="Path to run state (json|yaml)")
    p.add_argument("--log", default=None, help="Path to provisioning log")
    p.add_argument("--report", default=None, help="Write a JSON run report here")
    p.add_argument("--offline", action="store_true", help="Never touch the network; cache and find-links only")
    p.add_argument("--dry-run", action="store_true", help="Resolve and report the plan; fetch and install nothing")
    p.add_argument("--resume", action="store_true", help="Skip tiers completed by the last run")
    p.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    args = p.parse_args(argv)

    cancel = threading.Event()
    previous_handlers = _install_signal_handlers(cancel)

    try:
        report = run(
            manifest=args.manifest,
            tiers=args.tier,
            cache_dir=args.cache_dir,
            config_path=args.config,
            state_path=args.state,
            log_path=args.log,
            report_path=args.report,
            offline=args.offline,
            dry_run=args.dry_run,
            resume=args.resume,
            verbose=args.verbose,
            cancel=cancel,
        )
    except ProvisionError as e:
        print(f"provision: {e}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        print("provision: interrupted", file=sys.stderr)
        return EXIT_CANCELLED
    finally:
        for sig, h in previous_handlers.items():
            if h is not None:
                signal.signal(sig, h)

    print(format_summary(report))
    if report["failure"]:
        f = report["failure"]
        print(f"provision: [{f.get('tier')}/{f.get('stage')}] {f['message']}", file=sys.stderr)
    return int(report["exit_code"])


if __name__ == "__main__":
    raise SystemExit(main())
