"""Sources of available artifacts for the resolver.

Every source answers two questions: which files exist for a project, and
what a given file requires. ``SimpleIndex`` talks to a PEP 503 index,
``FindLinksIndex`` scans local directories (the wheelhouse and the cache
root), ``StaticIndex`` reads a YAML/JSON description of an index.
"""

from __future__ import annotations

import json
import logging
import re
import urllib.parse
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import requests
import yaml
from packaging.metadata import parse_email
from packaging.requirements import InvalidRequirement, Requirement
from packaging.tags import sys_tags
from packaging.utils import (
    InvalidSdistFilename,
    InvalidWheelFilename,
    canonicalize_name,
    parse_sdist_filename,
    parse_wheel_filename,
)
from packaging.version import InvalidVersion, Version

from ..errors import ConfigError, FetchError
from .transport import make_session, verify_for

if TYPE_CHECKING:
    from ..provision_config import PackageSourceConfig

logger = logging.getLogger(__name__)

_ANCHOR_RE = re.compile(r"<a\s+([^>]*)>([^<]+)</a>", re.IGNORECASE)
_HREF_RE = re.compile(r'href=[\'"]([^\'"]+)[\'"]', re.IGNORECASE)
_META_RE = re.compile(r'data-(?:core|dist-info)-metadata=[\'"]([^\'"]*)[\'"]', re.IGNORECASE)
_SHA256_FRAG_RE = re.compile(r"(?:^|&)sha256=([0-9a-fA-F]{64})(?:&|$)")

ARCHIVE_SUFFIXES = (".whl", ".tar.gz", ".zip")


@dataclass(frozen=True)
class Candidate:
    name: str
    version: Version
    filename: str
    url: str
    sha256: Optional[str] = None
    is_wheel: bool = True
    metadata_url: Optional[str] = None
    source: str = ""
    requires: Optional[Tuple[str, ...]] = field(default=None, compare=False)


class ArtifactIndex(Protocol):
    def candidates(self, name: str) -> List[Candidate]:
        ...

    def requires(self, candidate: Candidate) -> List[Requirement]:
        ...


def candidate_from_filename(
    filename: str,
    url: str,
    *,
    sha256: Optional[str] = None,
    metadata_url: Optional[str] = None,
    source: str = "",
) -> Optional[Candidate]:
    """Build a candidate from an artifact filename; None if it isn't one."""

    lower = filename.lower()
    try:
        if lower.endswith(".whl"):
            name, version, _build, _tags = parse_wheel_filename(filename)
            is_wheel = True
        elif lower.endswith((".tar.gz", ".zip")):
            name, version = parse_sdist_filename(filename)
            is_wheel = False
        else:
            return None
    except (InvalidWheelFilename, InvalidSdistFilename, InvalidVersion):
        logger.debug("Ignoring unparseable artifact name %s", filename)
        return None
    return Candidate(
        name=canonicalize_name(name),
        version=version,
        filename=filename,
        url=url,
        sha256=sha256.lower() if sha256 else None,
        is_wheel=is_wheel,
        metadata_url=metadata_url,
        source=source,
    )


def _parse_requires(lines: Iterable[str], *, origin: str) -> List[Requirement]:
    reqs: List[Requirement] = []
    for raw in lines:
        try:
            reqs.append(Requirement(raw))
        except InvalidRequirement:
            logger.warning("Skipping unparseable requirement %r from %s", raw, origin)
    return reqs


def requires_from_metadata(data: bytes, *, origin: str) -> List[Requirement]:
    raw, _unparsed = parse_email(data)
    return _parse_requires(raw.get("requires_dist") or [], origin=origin)


def requires_from_wheel(path: str) -> List[Requirement]:
    """Read Requires-Dist from a wheel's METADATA file."""

    try:
        with zipfile.ZipFile(path) as zf:
            meta = next((n for n in zf.namelist() if n.endswith(".dist-info/METADATA")), None)
            if meta is None:
                return []
            return requires_from_metadata(zf.read(meta), origin=path)
    except (OSError, zipfile.BadZipFile) as e:
        logger.warning("Cannot read metadata from %s: %s", path, e)
        return []


def select_artifact(cands: Sequence[Candidate]) -> Candidate:
    """Pick the best file among candidates for one version.

    Wheels compatible with the running interpreter win, best tag first, then
    sdists, then wheels built for other interpreters or platforms. Earlier
    sources win ties.
    """

    order: Dict[str, int] = {}
    for t in sys_tags():
        order.setdefault(str(t), len(order))
    sdist_rank = len(order)
    incompatible_rank = sdist_rank + 1

    def score(pos_cand: Tuple[int, Candidate]) -> Tuple[int, int]:
        pos, c = pos_cand
        if not c.is_wheel:
            return (sdist_rank, pos)
        _n, _v, _b, tags = parse_wheel_filename(c.filename)
        best = min((order.get(str(t), incompatible_rank) for t in tags), default=incompatible_rank)
        return (best, pos)

    return min(enumerate(cands), key=score)[1]


class SimpleIndex:
    """A PEP 503 "simple" repository."""

    def __init__(
        self,
        index_url: str,
        *,
        session: Optional[requests.Session] = None,
        trusted_hosts: Sequence[str] = (),
        timeout: float = 30.0,
    ) -> None:
        self.index_url = index_url.rstrip("/") + "/"
        self.session = session or make_session()
        self.trusted_hosts = tuple(trusted_hosts)
        self.timeout = timeout

    def _get(self, url: str, name: str) -> Optional[requests.Response]:
        try:
            r = self.session.get(url, timeout=self.timeout, verify=verify_for(url, self.trusted_hosts))
        except requests.Timeout as e:
            raise FetchError(name, "*", f"index timeout for {url}", reason="timeout") from e
        except requests.RequestException as e:
            raise FetchError(name, "*", f"index unreachable at {url}: {e}", reason="network") from e
        if r.status_code == 404:
            return None
        if r.status_code >= 400:
            raise FetchError(name, "*", f"index returned HTTP {r.status_code} for {url}", reason="http")
        return r

    def candidates(self, name: str) -> List[Candidate]:
        project = canonicalize_name(name)
        url = urllib.parse.urljoin(self.index_url, project + "/")
        r = self._get(url, project)
        if r is None:
            return []

        out: List[Candidate] = []
        for m in _ANCHOR_RE.finditer(r.text):
            attrs, text = m.group(1), m.group(2).strip()
            href_m = _HREF_RE.search(attrs)
            if not href_m:
                continue
            href = urllib.parse.urljoin(url, href_m.group(1))
            parsed = urllib.parse.urlparse(href)
            frag = _SHA256_FRAG_RE.search(parsed.fragment or "")
            meta_m = _META_RE.search(attrs)
            metadata_url = None
            if meta_m and meta_m.group(1).lower() != "false":
                metadata_url = parsed._replace(fragment="").geturl() + ".metadata"
            c = candidate_from_filename(
                text,
                parsed._replace(fragment="").geturl(),
                sha256=frag.group(1) if frag else None,
                metadata_url=metadata_url,
                source=self.index_url,
            )
            if c is not None and c.name == project:
                out.append(c)
        return out

    def requires(self, candidate: Candidate) -> List[Requirement]:
        if candidate.requires is not None:
            return _parse_requires(candidate.requires, origin=candidate.filename)
        if not candidate.metadata_url:
            logger.debug("No core metadata published for %s; treating as dependency-free", candidate.filename)
            return []
        r = self._get(candidate.metadata_url, candidate.name)
        if r is None:
            return []
        return requires_from_metadata(r.content, origin=candidate.metadata_url)


class FindLinksIndex:
    """Flat local directories of artifacts, like pip's --find-links."""

    def __init__(self, dirs: Sequence[str]) -> None:
        self.dirs = [Path(d) for d in dirs]

    def candidates(self, name: str) -> List[Candidate]:
        project = canonicalize_name(name)
        out: List[Candidate] = []
        for d in self.dirs:
            if not d.is_dir():
                continue
            for p in sorted(d.iterdir()):
                if not p.is_file() or not p.name.lower().endswith(ARCHIVE_SUFFIXES):
                    continue
                c = candidate_from_filename(p.name, p.resolve().as_uri(), source=str(d))
                if c is not None and c.name == project:
                    out.append(c)
        return out

    def requires(self, candidate: Candidate) -> List[Requirement]:
        if not candidate.is_wheel:
            return []
        path = urllib.parse.unquote(urllib.parse.urlparse(candidate.url).path)
        return requires_from_wheel(path)


class StaticIndex:
    """An index described up front::

        packages:
          pandas:
            "2.2.1":
              filename: pandas-2.2.1-py3-none-any.whl
              url: https://mirror.example/pandas-2.2.1-py3-none-any.whl
              sha256: ...
              requires: ["numpy>=1.26"]
    """

    def __init__(self, packages: Dict[str, Dict[str, Dict[str, Any]]], *, base_url: str = "", source: str = "static") -> None:
        self.base_url = base_url
        self.source = source
        self._by_name: Dict[str, List[Candidate]] = {}
        for raw_name, versions in (packages or {}).items():
            name = canonicalize_name(raw_name)
            for raw_version, entry in (versions or {}).items():
                entry = entry or {}
                version = str(raw_version)
                filename = str(entry.get("filename") or f"{name.replace('-', '_')}-{version}-py3-none-any.whl")
                url = str(entry.get("url") or (base_url + filename))
                try:
                    v = Version(version)
                except InvalidVersion as e:
                    raise ConfigError(f"static index: bad version {raw_version!r} for {raw_name}") from e
                self._by_name.setdefault(name, []).append(
                    Candidate(
                        name=name,
                        version=v,
                        filename=filename,
                        url=url,
                        sha256=entry.get("sha256"),
                        is_wheel=filename.lower().endswith(".whl"),
                        source=source,
                        requires=tuple(str(r) for r in entry.get("requires") or ()),
                    )
                )

    @classmethod
    def from_file(cls, path: str) -> "StaticIndex":
        p = Path(path)
        text = p.read_text(encoding="utf-8")
        data = json.loads(text) if p.suffix.lower() == ".json" else yaml.safe_load(text)
        if not isinstance(data, dict):
            raise ConfigError(f"static index {path} must be a mapping")
        return cls(data.get("packages") or {}, base_url=str(data.get("base_url") or ""), source=str(p))

    def candidates(self, name: str) -> List[Candidate]:
        return list(self._by_name.get(canonicalize_name(name), []))

    def requires(self, candidate: Candidate) -> List[Requirement]:
        return _parse_requires(candidate.requires or (), origin=candidate.filename)


class CompositeIndex:
    """Several sources consulted in order; earlier sources win ties."""

    def __init__(self, indexes: Sequence[ArtifactIndex]) -> None:
        self.indexes = list(indexes)
        self._owner: Dict[Tuple[str, str, str], ArtifactIndex] = {}

    def candidates(self, name: str) -> List[Candidate]:
        out: List[Candidate] = []
        seen = set()
        for idx in self.indexes:
            for c in idx.candidates(name):
                key = (c.name, str(c.version), c.filename)
                if key in seen:
                    continue
                seen.add(key)
                self._owner[key] = idx
                out.append(c)
        return out

    def requires(self, candidate: Candidate) -> List[Requirement]:
        owner = self._owner.get((candidate.name, str(candidate.version), candidate.filename))
        if owner is None:
            return []
        return owner.requires(candidate)


def build_index(sources: "PackageSourceConfig", *, extra_find_links: Sequence[str] = (), offline: bool = False, session: Optional[requests.Session] = None, timeout: float = 30.0) -> CompositeIndex:
    """Assemble the index for one run from a PackageSourceConfig.

    Local directories come first so cached and wheelhouse artifacts win ties
    with the network. Offline runs never consult an index URL.
    """

    dirs = list(extra_find_links) + [d for d in sources.find_links if d not in extra_find_links]
    indexes: List[ArtifactIndex] = [FindLinksIndex(dirs)]
    if not offline:
        shared = session or make_session()
        for url in sources.index_urls:
            indexes.append(SimpleIndex(url, session=shared, trusted_hosts=sources.trusted_hosts, timeout=timeout))
    return CompositeIndex(indexes)
