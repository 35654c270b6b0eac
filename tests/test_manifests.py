from __future__ import annotations

import pytest

from airgap_provisioner.errors import ManifestParseError
from airgap_provisioner.lib.manifests import ManifestStore, parse_line, parse_lines
from airgap_provisioner.models import Tier


def test_sectioned_manifest_loads_each_tier(manifest):
    store = ManifestStore(str(manifest))

    local = store.load(Tier.LOCAL)
    assert [(s.name, s.constraint, s.tier) for s in local] == [("myapp-cli", "==1.2.0", Tier.LOCAL)]

    wheelhouse = store.load(Tier.WHEELHOUSE)
    assert wheelhouse[0].name == "pandas"
    assert wheelhouse[0].line_no == 6

    assert store.declared_tiers() == [Tier.GLOBAL, Tier.WHEELHOUSE, Tier.LOCAL]


def test_directory_manifest_missing_tier_file_is_empty(tmp_path):
    d = tmp_path / "manifests"
    d.mkdir()
    (d / "global.txt").write_text("pytest==8.0.0\n", encoding="utf-8")

    store = ManifestStore(str(d))
    assert [s.name for s in store.load(Tier.GLOBAL)] == ["pytest"]
    assert store.load(Tier.LOCAL) == []


def test_directory_manifest_rejects_unknown_tier_files(tmp_path):
    d = tmp_path / "manifests"
    d.mkdir()
    (d / "local.txt").write_text("myapp-cli==1.2.0\n", encoding="utf-8")
    (d / "globl.txt").write_text("pytest==8.0.0\n", encoding="utf-8")
    (d / "README.md").write_text("notes\n", encoding="utf-8")

    with pytest.raises(ManifestParseError, match="unknown tier file 'globl.txt'") as exc:
        ManifestStore(str(d)).load(Tier.LOCAL)
    assert exc.value.path == str(d / "globl.txt")
    assert exc.value.exit_code == 1


def test_hash_pin_and_marker_are_kept():
    digest = "A" * 64
    spec = parse_line(
        f'Tomli>=2.0 ; python_version < "3.11" --hash=sha256:{digest}  # toml backport',
        tier=Tier.GLOBAL,
    )
    assert spec.name == "tomli"
    assert spec.pinned_digest == "sha256:" + "a" * 64
    assert spec.marker == 'python_version < "3.11"'


def test_names_are_canonicalized():
    spec = parse_line("My_App.CLI==1.0", tier=Tier.LOCAL)
    assert spec.name == "my-app-cli"


@pytest.mark.parametrize(
    "line, fragment",
    [
        ("pandas>=>2", "malformed specifier"),
        ("requests[socks]==2.31", "extras are not supported"),
        ("pkg @ https://example.invalid/pkg.whl", "URL requirements"),
        ("pkg==1.0 --hash=md5:abc", "bad hash option"),
        ("pkg==1.0 --no-deps", "unsupported option"),
    ],
)
def test_bad_lines_fail_with_location(line, fragment):
    with pytest.raises(ManifestParseError) as exc:
        parse_line(line, tier=Tier.LOCAL, path="local.txt", line_no=7)
    assert fragment in str(exc.value)
    assert "local.txt:7" in str(exc.value)
    assert exc.value.exit_code == 1


def test_duplicate_name_in_one_tier_is_rejected():
    with pytest.raises(ManifestParseError) as exc:
        parse_lines(["pandas>=2.0", "# comment", "Pandas<3"], tier=Tier.WHEELHOUSE, path="wheelhouse.txt")
    assert exc.value.line_no == 3
    assert "line 1" in str(exc.value)


def test_same_name_in_two_tiers_is_allowed(tmp_path):
    p = tmp_path / "m.txt"
    p.write_text("[wheelhouse]\npandas>=2.0\n[local]\npandas==2.2.1\n", encoding="utf-8")
    store = ManifestStore(str(p))
    assert store.validate()[Tier.LOCAL][0].constraint == "==2.2.1"


def test_unknown_section_and_orphan_lines(tmp_path):
    p = tmp_path / "m.txt"
    p.write_text("[system]\npytest\n", encoding="utf-8")
    with pytest.raises(ManifestParseError, match=r"unknown tier section \[system\]"):
        ManifestStore(str(p)).load(Tier.GLOBAL)

    p.write_text("pytest\n[global]\n", encoding="utf-8")
    with pytest.raises(ManifestParseError, match="outside of a"):
        ManifestStore(str(p)).load(Tier.GLOBAL)


def test_missing_manifest(tmp_path):
    with pytest.raises(ManifestParseError, match="manifest not found"):
        ManifestStore(str(tmp_path / "nope.txt")).load(Tier.GLOBAL)
