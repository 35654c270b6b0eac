"""Tier manifests.

A manifest is either a single file split into ``[global]``, ``[wheelhouse]``
and ``[local]`` sections, or a directory holding ``global.txt``,
``wheelhouse.txt`` and ``local.txt``. Every non-blank, non-comment line is one
requirement::

    pandas>=2.0,<3.0
    pytest==8.0.0 --hash=sha256:<64 hex chars>
    tomli ; python_version < "3.11"
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from packaging.requirements import InvalidRequirement, Requirement

from ..errors import ManifestParseError
from ..models import DependencySpec, Tier

logger = logging.getLogger(__name__)

_SECTION_RE = re.compile(r"^\[\s*([A-Za-z_-]+)\s*\]$")
_HASH_RE = re.compile(r"^--hash=sha256:([0-9a-fA-F]{64})$")
_TRAILING_COMMENT_RE = re.compile(r"\s+#.*$")


def _strip_comment(line: str) -> str:
    s = line.strip()
    if s.startswith("#"):
        return ""
    return _TRAILING_COMMENT_RE.sub("", s).strip()


def parse_line(line: str, *, tier: Tier, path: Optional[str] = None, line_no: Optional[int] = None) -> Optional[DependencySpec]:
    """Parse one manifest line; None for blank and comment lines."""

    text = _strip_comment(line)
    if not text:
        return None

    pinned: Optional[str] = None
    parts: List[str] = []
    for tok in text.split():
        if tok.startswith("--hash"):
            m = _HASH_RE.match(tok)
            if not m:
                raise ManifestParseError(f"bad hash option {tok!r} (expected --hash=sha256:<hex>)", path=path, line_no=line_no)
            if pinned is not None:
                raise ManifestParseError("more than one --hash option", path=path, line_no=line_no)
            pinned = "sha256:" + m.group(1).lower()
        elif tok.startswith("-"):
            raise ManifestParseError(f"unsupported option {tok!r}", path=path, line_no=line_no)
        else:
            parts.append(tok)

    try:
        req = Requirement(" ".join(parts))
    except InvalidRequirement as e:
        raise ManifestParseError(f"malformed specifier {text!r}: {e}", path=path, line_no=line_no) from e

    if req.url:
        raise ManifestParseError(f"URL requirements are not supported: {text!r}", path=path, line_no=line_no)
    if req.extras:
        raise ManifestParseError(f"extras are not supported: {text!r}", path=path, line_no=line_no)

    return DependencySpec(
        name=req.name,
        constraint=str(req.specifier),
        tier=tier,
        pinned_digest=pinned,
        marker=str(req.marker) if req.marker else None,
        line_no=line_no,
    )


def parse_lines(lines: List[str], *, tier: Tier, path: Optional[str] = None) -> List[DependencySpec]:
    return _parse_numbered(list(enumerate(lines, start=1)), tier=tier, path=path)


def _parse_numbered(numbered: List[Tuple[int, str]], *, tier: Tier, path: Optional[str]) -> List[DependencySpec]:
    specs: List[DependencySpec] = []
    seen: Dict[str, int] = {}
    for line_no, line in numbered:
        spec = parse_line(line, tier=tier, path=path, line_no=line_no)
        if spec is None:
            continue
        if spec.name in seen:
            raise ManifestParseError(
                f"duplicate {spec.name!r} in tier {tier.label} (first declared on line {seen[spec.name]})",
                path=path,
                line_no=line_no,
            )
        seen[spec.name] = line_no
        specs.append(spec)
    return specs


def split_sections(text: str, *, path: Optional[str] = None) -> Dict[Tier, List[Tuple[int, str]]]:
    """Group the lines of a sectioned manifest by tier, keeping line numbers."""

    sections: Dict[Tier, List[Tuple[int, str]]] = {}
    current: Optional[Tier] = None
    for line_no, line in enumerate(text.splitlines(), start=1):
        stripped = _strip_comment(line)
        if not stripped:
            continue
        m = _SECTION_RE.match(stripped)
        if m:
            try:
                current = Tier.parse(m.group(1))
            except ManifestParseError:
                raise ManifestParseError(f"unknown tier section [{m.group(1)}]", path=path, line_no=line_no) from None
            sections.setdefault(current, [])
            continue
        if current is None:
            raise ManifestParseError("specifier outside of a [tier] section", path=path, line_no=line_no)
        sections[current].append((line_no, line))
    return sections


class ManifestStore:
    """Read-only access to the per-tier dependency declarations."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)

    def _tier_file(self, tier: Tier) -> Path:
        return self.path / f"{tier.label}.txt"

    def _check_tier_files(self) -> None:
        known = {f"{t.label}.txt" for t in Tier.ordered()}
        for p in sorted(self.path.glob("*.txt")):
            if p.name not in known:
                raise ManifestParseError(
                    f"unknown tier file {p.name!r} (expected one of {', '.join(sorted(known))})",
                    path=str(p),
                )

    def load(self, tier: Tier) -> List[DependencySpec]:
        if not self.path.exists():
            raise ManifestParseError("manifest not found", path=str(self.path))

        if self.path.is_dir():
            self._check_tier_files()
            p = self._tier_file(tier)
            if not p.exists():
                logger.debug("No manifest for tier %s at %s", tier.label, p)
                return []
            lines = p.read_text(encoding="utf-8").splitlines()
            return parse_lines(lines, tier=tier, path=str(p))

        text = self.path.read_text(encoding="utf-8")
        sections = split_sections(text, path=str(self.path))
        return _parse_numbered(sections.get(tier, []), tier=tier, path=str(self.path))

    def declared_tiers(self) -> List[Tier]:
        return [t for t in Tier.ordered() if self.load(t)]

    def validate(self) -> Dict[Tier, List[DependencySpec]]:
        """Parse every tier up front so a malformed manifest fails before any work."""

        return {t: self.load(t) for t in Tier.ordered()}
