from __future__ import annotations

import hashlib
import urllib.parse
from typing import Sequence

import requests

from .. import __version__

USER_AGENT = f"airgap-provisioner/{__version__}"


def make_session(user_agent: str = USER_AGENT) -> requests.Session:
    s = requests.Session()
    s.headers["User-Agent"] = user_agent
    return s


def verify_for(url: str, trusted_hosts: Sequence[str]) -> bool:
    """TLS verification is disabled only for hosts listed as trusted."""

    host = urllib.parse.urlparse(url).hostname or ""
    for trusted in trusted_hosts:
        # pip accepts "host" and "host:port" entries.
        if host == trusted.split(":", 1)[0]:
            return False
    return True


def normalize_digest(value: str) -> str:
    """Return ``sha256:<lowercase hex>`` for either a bare hex or prefixed digest."""

    v = value.strip()
    algo, sep, hexpart = v.partition(":")
    if not sep:
        algo, hexpart = "sha256", v
    if algo.lower() != "sha256":
        raise ValueError(f"unsupported digest algorithm {algo!r}")
    return "sha256:" + hexpart.lower()


def sha256_digest(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


def sha256_file(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return "sha256:" + h.hexdigest()
