from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import pytest

from airgap_provisioner.provision_config import ProvisionConfig

from .fakes import FakeRunner, Mirror


@pytest.fixture()
def mirror(tmp_path: Path) -> Mirror:
    """pytest, pandas (three versions) and myapp-cli, which needs pandas."""

    m = Mirror(tmp_path / "mirror")
    m.add("pytest", "7.4.0")
    m.add("pytest", "8.0.0")
    m.add("pandas", "2.1.0")
    m.add("pandas", "2.2.1")
    m.add("pandas", "3.0.0")
    m.add("myapp-cli", "1.2.0", requires=["pandas>=2.0"])
    return m


@pytest.fixture()
def manifest(tmp_path: Path) -> Path:
    p = tmp_path / "manifest.txt"
    p.write_text(
        "# image dependencies\n"
        "[global]\n"
        "pytest==8.0.0\n"
        "\n"
        "[wheelhouse]\n"
        "pandas>=2.0,<3.0\n"
        "\n"
        "[local]\n"
        "myapp-cli==1.2.0\n",
        encoding="utf-8",
    )
    return p


def make_config(tmp_path: Path, **overrides: Any) -> ProvisionConfig:
    raw: Dict[str, Any] = {
        "tiers": {
            "global": {"mode": "target", "target": str(tmp_path / "global-site")},
            "wheelhouse": {"mode": "wheelhouse", "target": str(tmp_path / "packages")},
            "local": {"mode": "target", "target": str(tmp_path / "local-site")},
        },
        "fetch": {"backoff": 0, "workers": 4},
    }
    for key, value in overrides.items():
        if key == "tiers":
            for label, fields in value.items():
                raw["tiers"].setdefault(label, {}).update(fields)
        else:
            raw[key] = value
    return ProvisionConfig(raw=raw)


@pytest.fixture()
def config(tmp_path: Path) -> ProvisionConfig:
    return make_config(tmp_path)


@pytest.fixture()
def config_factory(tmp_path: Path):
    """Build a config like ``config`` with some keys replaced; ``tiers`` entries are merged."""

    return lambda **overrides: make_config(tmp_path, **overrides)


@pytest.fixture()
def runner() -> FakeRunner:
    return FakeRunner()
