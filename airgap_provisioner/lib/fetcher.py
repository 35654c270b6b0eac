from __future__ import annotations

import logging
import threading
import time
import urllib.parse
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional, Tuple

import requests

from ..errors import FetchError
from ..models import ResolvedPackage
from .transport import make_session, normalize_digest, sha256_digest, verify_for

if TYPE_CHECKING:
    from ..provision_config import ProvisionConfig

logger = logging.getLogger(__name__)


class Fetcher:
    """Downloads artifact bytes and checks them against an expected digest.

    Connection errors, timeouts and 5xx responses are retried with
    exponential backoff. A digest mismatch is never retried.
    """

    def __init__(
        self,
        *,
        trusted_hosts: Tuple[str, ...] = (),
        timeout: float = 30.0,
        retries: int = 3,
        backoff: float = 0.5,
        offline: bool = False,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.trusted_hosts = tuple(trusted_hosts)
        self.timeout = timeout
        self.retries = max(0, retries)
        self.backoff = backoff
        self.offline = offline
        self.session = session or make_session()
        self._sleep = sleep
        self._count_lock = threading.Lock()
        self.download_count = 0

    @classmethod
    def from_config(cls, cfg: "ProvisionConfig", *, session: Optional[requests.Session] = None) -> "Fetcher":
        return cls(
            trusted_hosts=cfg.sources.trusted_hosts,
            timeout=cfg.fetch_timeout,
            retries=cfg.fetch_retries,
            backoff=cfg.fetch_backoff,
            offline=cfg.offline,
            session=session,
        )

    def download(self, package: ResolvedPackage, expected_digest: Optional[str] = None) -> Tuple[bytes, str]:
        name, version = package.name, package.version
        if package.artifact is None or not package.artifact.url:
            raise FetchError(name, version, "no artifact location known", reason="missing")

        url = package.artifact.url
        scheme = urllib.parse.urlparse(url).scheme
        if scheme in ("http", "https"):
            # Local find-links artifacts stay readable offline; the network does not.
            if self.offline:
                raise FetchError(name, version, "not in cache and offline mode is on", reason="offline")
            with self._count_lock:
                self.download_count += 1
            data = self._download_http(name, version, url)
        else:
            data = self._read_local(name, version, url)

        digest = sha256_digest(data)
        if expected_digest:
            expected = normalize_digest(expected_digest)
            if digest != expected:
                raise FetchError(
                    name,
                    version,
                    f"digest mismatch for {package.artifact.filename}: expected {expected}, got {digest}",
                    reason="digest_mismatch",
                )
        logger.info("Fetched %s==%s (%d bytes, %s)", name, version, len(data), digest)
        return data, digest

    def _read_local(self, name: str, version: str, url: str) -> bytes:
        parsed = urllib.parse.urlparse(url)
        path = urllib.parse.unquote(parsed.path) if parsed.scheme == "file" else url
        try:
            return Path(path).read_bytes()
        except OSError as e:
            raise FetchError(name, version, f"cannot read {path}: {e}", reason="missing") from e

    def _download_http(self, name: str, version: str, url: str) -> bytes:
        verify = verify_for(url, self.trusted_hosts)
        last: Optional[FetchError] = None
        for attempt in range(self.retries + 1):
            try:
                r = self.session.get(url, timeout=self.timeout, verify=verify)
                if r.status_code >= 500:
                    last = FetchError(name, version, f"HTTP {r.status_code} from {url}", reason="http_5xx")
                elif r.status_code >= 400:
                    raise FetchError(name, version, f"HTTP {r.status_code} from {url}", reason="http")
                else:
                    return r.content
            except requests.Timeout as e:
                last = FetchError(name, version, f"timed out after {self.timeout}s fetching {url}", reason="timeout")
                last.__cause__ = e
            except requests.RequestException as e:
                last = FetchError(name, version, f"network error fetching {url}: {e}", reason="network")
                last.__cause__ = e

            if attempt < self.retries:
                delay = self.backoff * (2 ** attempt)
                logger.warning(
                    "Transient failure for %s==%s (%s); retry %d/%d in %.1fs",
                    name,
                    version,
                    last,
                    attempt + 1,
                    self.retries,
                    delay,
                )
                self._sleep(delay)

        assert last is not None
        raise last
