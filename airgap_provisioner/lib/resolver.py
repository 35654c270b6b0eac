"""Tier-scoped dependency resolution.

The algorithm is simple and deterministic: every name gets the highest
version allowed by all constraints seen so far. When a new constraint rules
out an existing pick, the old pick is discarded together with every
constraint it contributed, and the name is picked again. A name whose
constraints admit no version is unresolvable and the error lists every
requirement that contributed a constraint.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from packaging.markers import Marker
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.utils import canonicalize_name
from packaging.version import Version

from ..errors import UnresolvableDependencyError
from ..models import ArtifactRef, DependencySpec, ResolvedPackage, Tier
from .index import ArtifactIndex, Candidate, select_artifact

logger = logging.getLogger(__name__)

# Upper bound on picks per resolve() call; only reachable with pathological
# re-pick chains.
MAX_PICKS = 10_000


def marker_applies(marker: Optional[str]) -> bool:
    if not marker:
        return True
    return Marker(marker).evaluate({"extra": ""})


class _Constraints:
    def __init__(self) -> None:
        self._by_name: Dict[str, List[Tuple[SpecifierSet, str]]] = {}

    def add(self, name: str, spec: SpecifierSet, origin: str) -> bool:
        entries = self._by_name.setdefault(name, [])
        if any(str(s) == str(spec) and o == origin for s, o in entries):
            return False
        entries.append((spec, origin))
        return True

    def has(self, name: str) -> bool:
        return bool(self._by_name.get(name))

    def combined(self, name: str) -> SpecifierSet:
        out = SpecifierSet()
        for spec, _origin in self._by_name.get(name, []):
            out &= spec
        return out

    def origins(self, name: str) -> List[str]:
        return [f"{origin} ({spec or 'any'})" for spec, origin in self._by_name.get(name, [])]

    def required_by(self, origin: str) -> List[str]:
        return [name for name, entries in self._by_name.items() if any(o == origin for _s, o in entries)]

    def drop_origin(self, origin: str) -> List[str]:
        """Remove every constraint ``origin`` contributed; return the names affected."""

        affected = []
        for name in list(self._by_name):
            kept = [(s, o) for s, o in self._by_name[name] if o != origin]
            if len(kept) == len(self._by_name[name]):
                continue
            affected.append(name)
            if kept:
                self._by_name[name] = kept
            else:
                del self._by_name[name]
        return affected


class Resolver:
    def __init__(self, index: ArtifactIndex) -> None:
        self.index = index

    def resolve(
        self,
        tier: Tier,
        specs: Sequence[DependencySpec],
        environment: Optional[Mapping[str, ResolvedPackage]] = None,
    ) -> List[ResolvedPackage]:
        """Resolve one tier's declarations to exact versions.

        ``environment`` holds packages already provided by wider tiers this
        tier layers on. A version found there that satisfies every
        constraint is reused (and keeps its original source tier); a stricter
        declaration in this tier wins inside this tier only.

        The result is ordered by declaration, then by first discovery, and
        holds only packages reachable from the declarations.
        """

        env = dict(environment or {})
        constraints = _Constraints()
        picks: Dict[str, ResolvedPackage] = {}
        seen: Dict[str, int] = {}
        declared: List[str] = []
        queue: Deque[str] = deque()

        def enqueue(name: str) -> None:
            seen.setdefault(name, len(seen))
            queue.append(name)

        def discard(name: str) -> None:
            old = picks.pop(name, None)
            if old is None:
                return
            # Deps of the old pick are picked again against what is left, or
            # dropped when nothing asks for them any more.
            for dep in constraints.drop_origin(old.key):
                discard(dep)
                if constraints.has(dep):
                    queue.append(dep)

        for spec in specs:
            if spec.tier != tier:
                raise ValueError(f"spec {spec} belongs to {spec.tier.label}, not {tier.label}")
            if not marker_applies(spec.marker):
                logger.info("[%s] skipping %s (marker %s does not apply)", tier.label, spec, spec.marker)
                continue
            try:
                specifier = SpecifierSet(spec.constraint)
            except InvalidSpecifier as e:
                raise UnresolvableDependencyError(spec.name, f"invalid constraint {spec.constraint!r}") from e
            where = f"{tier.label} manifest" + (f" line {spec.line_no}" if spec.line_no else "")
            constraints.add(spec.name, specifier, where)
            declared.append(spec.name)
            enqueue(spec.name)

        steps = 0
        while queue:
            name = queue.popleft()
            if not constraints.has(name):
                continue
            current = picks.get(name)
            combined = constraints.combined(name)
            if current is not None:
                if combined.contains(current.version, prereleases=True):
                    continue
                logger.debug("[%s] %s no longer satisfies %s; picking again", tier.label, current.key, combined)
                discard(name)

            steps += 1
            if steps > MAX_PICKS:
                raise UnresolvableDependencyError(name, "resolution did not converge", conflicts=constraints.origins(name))

            pkg, cand = self._pick(tier, name, combined, env, constraints)
            picks[name] = pkg
            logger.debug("[%s] picked %s from %s", tier.label, pkg.key, pkg.source_tier.label)

            if cand is None:
                # Inherited: its requirements were resolved in its own tier.
                continue

            for req in self.index.requires(cand):
                if req.marker is not None and not req.marker.evaluate({"extra": ""}):
                    continue
                dep = canonicalize_name(req.name)
                if constraints.add(dep, req.specifier, pkg.key):
                    enqueue(dep)

        reachable = self._reachable(declared, picks, constraints)
        for name in list(picks):
            if name not in reachable:
                logger.debug("[%s] dropping %s (no longer required)", tier.label, picks[name].key)
                del picks[name]

        return sorted(picks.values(), key=lambda p: seen[p.name])

    @staticmethod
    def _reachable(declared: Sequence[str], picks: Mapping[str, ResolvedPackage], constraints: _Constraints) -> Set[str]:
        # Cycles among discarded picks can keep constraints alive; only what the
        # declarations lead to counts.
        out: Set[str] = set()
        stack = list(declared)
        while stack:
            name = stack.pop()
            if name in out or name not in picks:
                continue
            out.add(name)
            stack.extend(constraints.required_by(picks[name].key))
        return out

    def _pick(
        self,
        tier: Tier,
        name: str,
        combined: SpecifierSet,
        env: Mapping[str, ResolvedPackage],
        constraints: _Constraints,
    ) -> Tuple[ResolvedPackage, Optional[Candidate]]:
        inherited = env.get(name)
        if inherited is not None and combined.contains(inherited.version, prereleases=True):
            return inherited, None

        cands = self.index.candidates(name)
        if not cands:
            raise UnresolvableDependencyError(name, "no artifacts found in any source", conflicts=constraints.origins(name))

        by_version: Dict[Version, List[Candidate]] = {}
        for c in cands:
            by_version.setdefault(c.version, []).append(c)

        allowed = list(combined.filter(by_version.keys()))
        if not allowed:
            available = ", ".join(str(v) for v in sorted(by_version)[-5:])
            raise UnresolvableDependencyError(
                name,
                f"no version satisfies '{combined or 'any'}' (latest available: {available})",
                conflicts=constraints.origins(name),
            )

        version = max(allowed)
        chosen = select_artifact(by_version[version])
        origins = constraints.origins(name)
        pkg = ResolvedPackage(
            name=name,
            version=str(version),
            source_tier=tier,
            artifact=ArtifactRef(filename=chosen.filename, url=chosen.url, sha256=chosen.sha256),
            requested_by=origins[0] if origins else "",
        )
        return pkg, chosen
