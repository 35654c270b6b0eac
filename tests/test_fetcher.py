from __future__ import annotations

import hashlib

import pytest
import requests

from airgap_provisioner.errors import FetchError
from airgap_provisioner.lib.fetcher import Fetcher
from airgap_provisioner.models import ArtifactRef, ResolvedPackage, Tier

from .fakes import FakeResponse, FakeSession

URL = "https://mirror.test/files/pytest-8.0.0-py3-none-any.whl"
DATA = b"wheel bytes"


def _package(url=URL):
    return ResolvedPackage(
        name="pytest",
        version="8.0.0",
        source_tier=Tier.GLOBAL,
        artifact=ArtifactRef(filename="pytest-8.0.0-py3-none-any.whl", url=url),
    )


def _fetcher(session, **kw):
    sleeps = []
    kw.setdefault("backoff", 0.5)
    f = Fetcher(session=session, sleep=sleeps.append, **kw)
    return f, sleeps


def test_transient_errors_retry_with_exponential_backoff():
    session = FakeSession(
        {URL: [requests.ConnectionError("reset"), FakeResponse(503), requests.Timeout("slow"), DATA]}
    )
    fetcher, sleeps = _fetcher(session, retries=3)

    data, digest = fetcher.download(_package())

    assert data == DATA
    assert digest == "sha256:" + hashlib.sha256(DATA).hexdigest()
    assert sleeps == [0.5, 1.0, 2.0]
    assert len(session.calls) == 4


def test_gives_up_after_retries_with_last_reason():
    session = FakeSession({URL: requests.Timeout("slow")})
    fetcher, sleeps = _fetcher(session, retries=2)

    with pytest.raises(FetchError) as exc:
        fetcher.download(_package())

    assert exc.value.reason == "timeout"
    assert exc.value.transient
    assert len(session.calls) == 3
    assert len(sleeps) == 2


def test_client_errors_are_not_retried():
    session = FakeSession({URL: FakeResponse(404)})
    fetcher, sleeps = _fetcher(session, retries=3)

    with pytest.raises(FetchError) as exc:
        fetcher.download(_package())

    assert exc.value.reason == "http"
    assert not exc.value.transient
    assert sleeps == []
    assert exc.value.exit_code == 3


def test_digest_mismatch_is_not_retried():
    session = FakeSession({URL: DATA})
    fetcher, sleeps = _fetcher(session, retries=3)

    with pytest.raises(FetchError) as exc:
        fetcher.download(_package(), expected_digest="0" * 64)

    assert exc.value.reason == "digest_mismatch"
    assert len(session.calls) == 1
    assert sleeps == []


def test_expected_digest_accepts_bare_or_prefixed_hex():
    hexdigest = hashlib.sha256(DATA).hexdigest()
    fetcher, _ = _fetcher(FakeSession({URL: DATA}))

    fetcher.download(_package(), expected_digest=hexdigest.upper())
    fetcher.download(_package(), expected_digest="sha256:" + hexdigest)
    assert fetcher.download_count == 2


def test_offline_blocks_http_only(tmp_path):
    local = tmp_path / "pytest-8.0.0-py3-none-any.whl"
    local.write_bytes(DATA)
    session = FakeSession({URL: DATA})
    fetcher, _ = _fetcher(session, offline=True)

    with pytest.raises(FetchError) as exc:
        fetcher.download(_package())
    assert exc.value.reason == "offline"

    data, _ = fetcher.download(_package(url=local.as_uri()))
    assert data == DATA
    assert session.calls == []
    assert fetcher.download_count == 0


def test_missing_location():
    fetcher, _ = _fetcher(FakeSession())
    pkg = ResolvedPackage(name="pytest", version="8.0.0", source_tier=Tier.GLOBAL)

    with pytest.raises(FetchError) as exc:
        fetcher.download(pkg)
    assert exc.value.reason == "missing"
