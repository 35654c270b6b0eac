"""On-disk artifact cache.

Layout::

    <root>/
      index.json                       name==version -> filename, digest, size
      pandas-2.2.1-cp313-...-x86_64.whl
      pytest-8.0.0-py3-none-any.whl

The root is flat and keeps upstream filenames so it can be handed to pip as a
``--find-links`` directory. Entries are never removed here.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import CacheIndexError, FetchError
from ..models import ArtifactRecord, ResolvedPackage
from .fetcher import Fetcher
from .transport import normalize_digest, sha256_file

logger = logging.getLogger(__name__)

INDEX_NAME = "index.json"


class ArtifactCache:
    def __init__(self, root: str, fetcher: Fetcher) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.fetcher = fetcher
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # Guards index.json read-modify-write only; never held across a download.
        self._index_lock = threading.Lock()

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_NAME

    @property
    def find_links_dir(self) -> str:
        return str(self.root)

    def _key_lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _read_index(self) -> Dict[str, Dict[str, Any]]:
        # Not rebuilt from the files on disk: that would re-trust whatever bytes
        # are there now.
        if not self.index_path.exists():
            return {}
        path = str(self.index_path)
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CacheIndexError(path, f"unreadable cache index: {e}") from e
        if not isinstance(data, dict):
            raise CacheIndexError(path, "cache index must contain an object")
        entries = data.get("artifacts") or {}
        if not isinstance(entries, dict):
            raise CacheIndexError(path, "cache index 'artifacts' must be a mapping")
        for key, entry in entries.items():
            if not isinstance(entry, dict) or not {"filename", "digest", "size"} <= set(entry):
                raise CacheIndexError(path, f"malformed cache index entry {key!r}")
        return entries

    def _write_entry(self, key: str, entry: Dict[str, Any]) -> None:
        with self._index_lock:
            entries = self._read_index()
            entries[key] = entry
            payload = json.dumps({"version": 1, "artifacts": entries}, indent=2, sort_keys=True) + "\n"
            _atomic_write(self.index_path, payload.encode("utf-8"))

    def _entry(self, key: str) -> Optional[Dict[str, Any]]:
        with self._index_lock:
            return self._read_index().get(key)

    def _record(self, name: str, version: str, entry: Dict[str, Any]) -> ArtifactRecord:
        return ArtifactRecord(
            name=name,
            version=version,
            digest=entry["digest"],
            path=str(self.root / entry["filename"]),
            size=int(entry["size"]),
        )

    def lookup(self, name: str, version: str) -> Optional[ArtifactRecord]:
        """Index lookup without hashing; None unless the file is present."""

        entry = self._entry(f"{name}=={version}")
        if entry is None or not (self.root / entry["filename"]).exists():
            return None
        return self._record(name, version, entry)

    def records(self) -> List[ArtifactRecord]:
        with self._index_lock:
            entries = self._read_index()
        out = []
        for key, entry in sorted(entries.items()):
            name, _, version = key.partition("==")
            out.append(self._record(name, version, entry))
        return out

    def ensure(self, package: ResolvedPackage, pinned_digest: Optional[str] = None) -> ArtifactRecord:
        """Return the cached artifact for ``package``, fetching it at most once.

        A cached file is re-hashed on every hit; bytes that no longer match
        the recorded digest are reported as tampering, not re-fetched.
        """

        name, version, key = package.name, package.version, package.key
        pinned = normalize_digest(pinned_digest) if pinned_digest else None

        with self._key_lock(key):
            entry = self._entry(key)
            baseline: Optional[str] = None
            if entry is not None:
                baseline = entry["digest"]
                path = self.root / entry["filename"]
                if path.exists():
                    actual = sha256_file(str(path))
                    if actual != baseline:
                        raise FetchError(
                            name,
                            version,
                            f"cached artifact {path.name} was altered: recorded {baseline}, found {actual}",
                            reason="digest_mismatch",
                        )
                    if pinned and pinned != baseline:
                        raise FetchError(
                            name,
                            version,
                            f"cached artifact {path.name} does not match pinned digest {pinned}",
                            reason="digest_mismatch",
                        )
                    logger.debug("Cache hit %s (%s)", key, baseline)
                    return self._record(name, version, entry)
                logger.warning("Cache entry %s lost its file; fetching again against recorded digest", key)

            if package.artifact is None:
                raise FetchError(name, version, "no artifact location known", reason="missing")

            advertised = normalize_digest(package.artifact.sha256) if package.artifact.sha256 else None
            expected = pinned or advertised or baseline
            data, digest = self.fetcher.download(package, expected_digest=expected)
            if baseline and digest != baseline:
                raise FetchError(
                    name,
                    version,
                    f"fetched digest {digest} differs from trusted baseline {baseline}",
                    reason="digest_mismatch",
                )

            filename = os.path.basename(package.artifact.filename)
            _atomic_write(self.root / filename, data)
            entry = {"filename": filename, "digest": digest, "size": len(data)}
            self._write_entry(key, entry)
            logger.info("Cached %s as %s", key, filename)
            return self._record(name, version, entry)


def _atomic_write(path: Path, data: bytes) -> None:
    fd, tmp = tempfile.mkstemp(prefix=".partial-", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
