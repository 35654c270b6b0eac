from __future__ import annotations

import pytest

from airgap_provisioner.errors import ConfigError
from airgap_provisioner.lib.env import OFFLINE_ENV
from airgap_provisioner.models import Tier
from airgap_provisioner.provision_config import PackageSourceConfig, ProvisionConfig, load_provision_config


def test_defaults_without_a_config_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("AIRGAP_PROVISION_CONFIG", raising=False)
    monkeypatch.delenv(OFFLINE_ENV, raising=False)

    cfg = load_provision_config()

    assert cfg.offline is False
    assert cfg.fetch_retries == 3
    assert cfg.fetch_workers == 4
    assert cfg.sources.index_urls == ["https://pypi.org/simple"]

    scopes = cfg.scopes()
    assert [scopes[t].mode for t in Tier.ordered()] == ["system", "wheelhouse", "user"]
    assert scopes[Tier.WHEELHOUSE].target == "packages"
    assert scopes[Tier.LOCAL].layers == (Tier.GLOBAL, Tier.WHEELHOUSE)


def test_yaml_config_is_read(tmp_path, monkeypatch):
    monkeypatch.delenv(OFFLINE_ENV, raising=False)
    p = tmp_path / "provision.yaml"
    p.write_text(
        "offline: true\n"
        "sources:\n"
        "  index_url: https://mirror.internal/simple\n"
        "  extra_index_urls: [https://extra.internal/simple]\n"
        "  trusted_hosts: [mirror.internal]\n"
        "fetch:\n"
        "  workers: 8\n"
        "tiers:\n"
        "  local:\n"
        "    mode: target\n"
        "    target: /opt/app/site\n"
        "    optional: true\n"
        "    layers: [wheelhouse]\n",
        encoding="utf-8",
    )

    cfg = load_provision_config(str(p))

    assert cfg.offline is True
    assert cfg.fetch_workers == 8
    assert cfg.sources.index_urls == ["https://mirror.internal/simple", "https://extra.internal/simple"]
    assert cfg.sources.trusted_hosts == ("mirror.internal",)
    local = cfg.scope(Tier.LOCAL)
    assert (local.mode, local.target, local.optional, local.layers) == (
        "target",
        "/opt/app/site",
        True,
        (Tier.WHEELHOUSE,),
    )


def test_offline_environment_variable_overrides_file(tmp_path, monkeypatch):
    p = tmp_path / "provision.yaml"
    p.write_text("offline: false\n", encoding="utf-8")
    monkeypatch.setenv(OFFLINE_ENV, "yes")

    assert load_provision_config(str(p)).offline is True


@pytest.mark.parametrize(
    "raw, fragment",
    [
        ({"tiers": {"local": {"mode": "conda"}}}, "mode must be one of"),
        ({"tiers": {"local": {"mode": "target"}}}, "target is required"),
        ({"tiers": {"global": {"layers": ["local"]}}}, "only name wider tiers"),
        ({"tiers": {"local": {"layers": ["nowhere"]}}}, "unknown tier"),
        ({"sources": {"find_links": 3}}, "must be a list"),
    ],
)
def test_invalid_shapes_raise_config_error(raw, fragment):
    cfg = ProvisionConfig(raw=raw)
    with pytest.raises(ConfigError, match=fragment):
        cfg.sources
        cfg.scopes()


def test_explicit_missing_config_file_is_an_error(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_provision_config(str(tmp_path / "absent.yaml"))


def test_sources_can_be_imported_from_pip_conf(tmp_path):
    conf = tmp_path / "pip.conf"
    conf.write_text(
        "[global]\n"
        "index-url = https://mirror.internal/simple\n"
        "extra-index-url =\n"
        "    https://a.internal/simple\n"
        "    https://b.internal/simple\n"
        "trusted-host = mirror.internal\n"
        "find-links = /srv/wheels\n",
        encoding="utf-8",
    )

    sources = ProvisionConfig(raw={"sources": {"pip_conf": str(conf)}}).sources

    assert sources == PackageSourceConfig(
        index_url="https://mirror.internal/simple",
        extra_index_urls=("https://a.internal/simple", "https://b.internal/simple"),
        trusted_hosts=("mirror.internal",),
        find_links=("/srv/wheels",),
    )
    assert sources.with_find_links("/cache", "/srv/wheels").find_links == ("/srv/wheels", "/cache")
