from __future__ import annotations

import logging
import tarfile
import zipfile
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from ..errors import VerificationError
from ..models import ArtifactRecord, Tier
from ..provision_config import TierScope
from .command import Runner, run_cmd
from .transport import sha256_file

logger = logging.getLogger(__name__)

IMPORT_CHECK = "import importlib, sys; [importlib.import_module(m) for m in sys.argv[1:]]"


def import_names_from_wheel(path: str) -> List[str]:
    """Top-level importable names shipped by a wheel."""

    try:
        with zipfile.ZipFile(path) as zf:
            names = zf.namelist()
            top = next((n for n in names if n.endswith(".dist-info/top_level.txt")), None)
            if top is not None:
                return [ln.strip() for ln in zf.read(top).decode("utf-8").splitlines() if ln.strip()]
            found: List[str] = []
            for n in names:
                head = n.split("/", 1)[0]
                if head.endswith((".dist-info", ".data")):
                    continue
                mod = head[:-3] if head.endswith(".py") else head
                if ("/" in n or head.endswith(".py")) and mod not in found:
                    found.append(mod)
            return found
    except (OSError, zipfile.BadZipFile):
        return []


class Verifier:
    """Smoke-checks that what a tier just installed can be used."""

    def __init__(
        self,
        scopes: Mapping[Tier, TierScope],
        *,
        python: str = "python3",
        runner: Runner = run_cmd,
        import_names: Optional[Mapping[str, str]] = None,
        skip: Sequence[str] = (),
        timeout: float = 120.0,
    ) -> None:
        self.scopes = dict(scopes)
        self.python = python
        self.runner = runner
        self.import_names = dict(import_names or {})
        self.skip = set(skip)
        self.timeout = timeout

    def modules_for(self, artifact: ArtifactRecord) -> List[str]:
        if artifact.name in self.import_names:
            return [self.import_names[artifact.name]]
        if artifact.path.endswith(".whl"):
            mods = [m for m in import_names_from_wheel(artifact.path) if not m.startswith("_")]
            if mods:
                return mods
        return [artifact.name.replace("-", "_")]

    def verify(self, tier: Tier, artifacts: Sequence[ArtifactRecord]) -> Dict[str, bool]:
        """Return pass/fail per package; raises VerificationError if any failed."""

        scope = self.scopes[tier]
        results: Dict[str, bool] = {}
        failures: Dict[str, str] = {}

        for a in artifacts:
            if a.name in self.skip:
                logger.info("[%s] verification skipped for %s", tier.label, a.name)
                results[a.name] = True
                continue
            if scope.mode == "wheelhouse":
                problem = self._check_materialized(scope, a)
            else:
                problem = self._check_import(scope, a)
            results[a.name] = problem is None
            if problem is not None:
                failures[a.name] = problem
                logger.error("[%s] %s==%s failed verification: %s", tier.label, a.name, a.version, problem)

        if failures:
            raise VerificationError(tier.label, failures, results=results)
        logger.info("[%s] verified %d package(s)", tier.label, len(results))
        return results

    def _check_materialized(self, scope: TierScope, a: ArtifactRecord) -> Optional[str]:
        p = Path(scope.target or ".") / Path(a.path).name
        if not p.exists():
            return f"{p} missing"
        if sha256_file(str(p)) != a.digest:
            return f"{p} does not match {a.digest}"
        name = p.name.lower()
        if name.endswith(".whl") or name.endswith(".zip"):
            if not zipfile.is_zipfile(p):
                return f"{p} is not a readable zip archive"
        elif name.endswith(".tar.gz") and not tarfile.is_tarfile(p):
            return f"{p} is not a readable tar archive"
        return None

    def _check_import(self, scope: TierScope, a: ArtifactRecord) -> Optional[str]:
        env: Dict[str, str] = {}
        if scope.mode == "target" and scope.target:
            env["PYTHONPATH"] = scope.target
        mods = self.modules_for(a)
        r = self.runner(
            [self.python, "-c", IMPORT_CHECK, *mods],
            check=False,
            env=env,
            timeout=self.timeout,
        )
        if r.returncode != 0:
            lines = (r.stderr or "").strip().splitlines()
            return lines[-1] if lines else f"import of {', '.join(mods)} failed"
        return None
