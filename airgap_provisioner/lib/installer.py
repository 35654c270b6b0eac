from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Mapping, Sequence

from ..errors import InstallError
from ..models import ArtifactRecord, InstallationRecord, InstallStatus, ResolvedPackage, Tier
from ..provision_config import TierScope
from .command import CommandFailed, Runner, run_cmd
from .install_log import InstallationLog
from .transport import sha256_file

logger = logging.getLogger(__name__)


class Installer:
    """Materializes cached artifacts into a tier's scope.

    WHEELHOUSE-style scopes receive a copy of the artifact file. Python
    scopes are installed with pip, fully offline: the cache root and the
    wheelhouses of the tiers this scope layers on are the only sources.
    """

    def __init__(
        self,
        scopes: Mapping[Tier, TierScope],
        *,
        cache_dir: str,
        python: str = "python3",
        runner: Runner = run_cmd,
    ) -> None:
        self.scopes = dict(scopes)
        self.cache_dir = cache_dir
        self.python = python
        self.runner = runner

    def target_label(self, scope: TierScope) -> str:
        if scope.target:
            return scope.target
        return {"system": "<system site-packages>", "user": "<user site-packages>"}.get(scope.mode, scope.mode)

    def scope_key(self, scope: TierScope) -> str:
        return f"{scope.mode}:{self.target_label(scope)}"

    def find_links(self, tier: Tier) -> List[str]:
        """Lookup path for ``tier``: the cache, then each layered wheelhouse."""

        dirs = [self.cache_dir]
        for layer in self.scopes[tier].layers:
            s = self.scopes.get(layer)
            if s is not None and s.mode == "wheelhouse" and s.target and s.target not in dirs:
                dirs.append(s.target)
        return dirs

    def install(
        self,
        tier: Tier,
        artifact: ArtifactRecord,
        *,
        log: InstallationLog,
        pins: Sequence[str] = (),
    ) -> InstallationRecord:
        scope = self.scopes[tier]
        scope_key = self.scope_key(scope)
        record = log.open(tier, artifact.name, artifact.version, scope=scope_key)

        # A changed mode or target means the package is not in the new scope yet.
        previous = log.previously_installed(tier, artifact.name, artifact.version, scope=scope_key)
        if previous and self._still_present(scope, artifact):
            log.complete(record, InstallStatus.INSTALLED, detail="already installed")
            return record

        try:
            if scope.mode == "wheelhouse":
                self._materialize(scope, artifact)
            else:
                self._pip_install(scope, artifact, pins)
        except (OSError, CommandFailed) as e:
            log.complete(record, InstallStatus.FAILED, detail=str(e))
            raise InstallError(artifact.name, artifact.version, str(e), target=self.target_label(scope)) from e

        log.complete(record, InstallStatus.INSTALLED)
        return record

    def materialized_path(self, scope: TierScope, artifact: ArtifactRecord) -> Path:
        return Path(scope.target or ".") / os.path.basename(artifact.path)

    def _still_present(self, scope: TierScope, artifact: ArtifactRecord) -> bool:
        if scope.mode == "wheelhouse":
            return self.materialized_path(scope, artifact).exists()
        return True

    def _materialize(self, scope: TierScope, artifact: ArtifactRecord) -> None:
        dst = self.materialized_path(scope, artifact)
        dst.parent.mkdir(parents=True, exist_ok=True)
        if dst.exists() and sha256_file(str(dst)) == artifact.digest:
            logger.info("%s already present in %s", dst.name, dst.parent)
            return
        shutil.copy2(artifact.path, dst)
        logger.info("Materialized %s into %s", dst.name, dst.parent)

    def pip_argv(self, scope: TierScope, artifact: ArtifactRecord, constraints_file: str = "") -> List[str]:
        argv = [
            self.python,
            "-m",
            "pip",
            "install",
            "--no-index",
            "--disable-pip-version-check",
            "--no-input",
        ]
        for d in self.find_links(scope.tier):
            argv += ["--find-links", d]
        if constraints_file:
            argv += ["--constraint", constraints_file]
        if scope.mode == "user":
            argv.append("--user")
        elif scope.mode == "target":
            argv += ["--target", str(scope.target)]
        argv.append(artifact.path)
        return argv

    def _pip_install(self, scope: TierScope, artifact: ArtifactRecord, pins: Sequence[str]) -> None:
        if scope.mode == "target" and scope.target:
            Path(scope.target).mkdir(parents=True, exist_ok=True)

        constraints_file = ""
        if pins:
            fd, constraints_file = tempfile.mkstemp(prefix="constraints-", suffix=".txt")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write("\n".join(pins) + "\n")
        try:
            self.runner(self.pip_argv(scope, artifact, constraints_file))
        finally:
            if constraints_file:
                os.unlink(constraints_file)


def pins_for(resolved: Sequence[ResolvedPackage], extra: Sequence[ResolvedPackage] = ()) -> List[str]:
    """``name==version`` lines for a pip constraints file."""

    seen: Dict[str, str] = {}
    for p in list(resolved) + list(extra):
        seen.setdefault(p.name, f"{p.name}=={p.version}")
    return list(seen.values())
