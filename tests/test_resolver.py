from __future__ import annotations

import pytest

from airgap_provisioner.errors import UnresolvableDependencyError
from airgap_provisioner.lib.index import StaticIndex
from airgap_provisioner.lib.manifests import parse_lines
from airgap_provisioner.lib.resolver import Resolver
from airgap_provisioner.models import Tier


def _index(packages, **kw):
    return StaticIndex(packages, base_url="https://mirror.test/files/", **kw)


PACKAGES = {
    "pandas": {
        "2.1.0": {"requires": ["numpy>=1.22"]},
        "2.2.1": {"requires": ["numpy>=1.26", "python-dateutil>=2.8"]},
        "3.0.0": {"requires": ["numpy>=2.0"]},
    },
    "numpy": {"1.26.4": {}, "2.0.1": {}},
    "python-dateutil": {"2.9.0": {"requires": ["six>=1.5"]}},
    "six": {"1.16.0": {}},
    "myapp-cli": {"1.2.0": {"requires": ["pandas>=2.0"]}},
}


def _resolve(tier, lines, packages=PACKAGES, environment=None):
    specs = parse_lines(lines, tier=tier)
    return Resolver(_index(packages)).resolve(tier, specs, environment)


def test_picks_highest_allowed_version_with_transitive_deps():
    resolved = {p.name: p for p in _resolve(Tier.WHEELHOUSE, ["pandas>=2.0,<3.0"])}

    assert resolved["pandas"].version == "2.2.1"
    assert resolved["numpy"].version == "2.0.1"
    assert resolved["six"].version == "1.16.0"
    assert all(p.source_tier == Tier.WHEELHOUSE for p in resolved.values())
    assert resolved["six"].requested_by.startswith("python-dateutil==2.9.0")
    assert resolved["pandas"].artifact.url == "https://mirror.test/files/pandas-2.2.1-py3-none-any.whl"


def test_resolution_is_deterministic_regardless_of_index_order():
    reordered = {name: dict(reversed(list(versions.items()))) for name, versions in reversed(list(PACKAGES.items()))}
    lines = ["myapp-cli==1.2.0", "pandas<3"]

    first = _resolve(Tier.LOCAL, lines)
    again = _resolve(Tier.LOCAL, lines)
    other = _resolve(Tier.LOCAL, lines, packages=reordered)

    assert first == again
    assert sorted((p.name, p.version) for p in first) == sorted((p.name, p.version) for p in other)


def test_later_constraint_forces_a_repick():
    packages = dict(PACKAGES)
    packages["myapp-cli"] = {"1.2.0": {"requires": ["pandas>=2.0", "plotkit"]}}
    packages["plotkit"] = {"0.9": {"requires": ["pandas<3"]}}

    # pandas 3.0.0 is picked first; plotkit's bound arrives later and narrows it.
    resolved = {p.name: p.version for p in _resolve(Tier.LOCAL, ["myapp-cli==1.2.0"], packages=packages)}
    assert resolved["pandas"] == "2.2.1"
    assert resolved["plotkit"] == "0.9"
    assert resolved["numpy"] == "2.0.1"


def test_conflict_names_every_requirer():
    packages = {
        "a": {"1.0": {"requires": ["c<2"]}},
        "b": {"1.0": {"requires": ["c>=2"]}},
        "c": {"1.5": {}, "2.1": {}},
    }
    with pytest.raises(UnresolvableDependencyError) as exc:
        _resolve(Tier.GLOBAL, ["a", "b"], packages=packages)

    err = exc.value
    assert err.name == "c"
    assert err.exit_code == 2
    assert any(c.startswith("a==1.0") for c in err.conflicts)
    assert any(c.startswith("b==1.0") for c in err.conflicts)


def test_unknown_package_is_unresolvable():
    with pytest.raises(UnresolvableDependencyError, match="no artifacts found"):
        _resolve(Tier.GLOBAL, ["ghost==1.0"])


def test_inherits_satisfying_package_from_wider_tier():
    wheelhouse = {p.name: p for p in _resolve(Tier.WHEELHOUSE, ["pandas>=2.0,<3.0"])}

    local = {p.name: p for p in _resolve(Tier.LOCAL, ["myapp-cli==1.2.0"], environment=wheelhouse)}

    assert local["pandas"].version == "2.2.1"
    assert local["pandas"].source_tier == Tier.WHEELHOUSE
    assert local["pandas"].inherited_in(Tier.LOCAL)
    assert local["myapp-cli"].source_tier == Tier.LOCAL
    # Inherited packages bring their own closure; nothing is re-resolved below them.
    assert "numpy" not in local


def test_stricter_local_declaration_wins_inside_its_tier():
    wheelhouse = {p.name: p for p in _resolve(Tier.WHEELHOUSE, ["pandas>=2.0,<3.0"])}

    local = {p.name: p for p in _resolve(Tier.LOCAL, ["pandas==2.1.0"], environment=wheelhouse)}

    assert local["pandas"].version == "2.1.0"
    assert local["pandas"].source_tier == Tier.LOCAL
    assert wheelhouse["pandas"].version == "2.2.1"


def test_marker_that_does_not_apply_is_skipped():
    resolved = _resolve(Tier.GLOBAL, ['six==1.16.0', 'ghost==1.0 ; python_version < "2.0"'])
    assert [p.name for p in resolved] == ["six"]


def test_repick_retracts_the_discarded_versions_requirements():
    packages = {
        "a": {"2.0": {"requires": ["b==1.0"]}, "1.0": {"requires": ["b==2.0"]}},
        "b": {"1.0": {}, "2.0": {}},
        "c": {"1.0": {"requires": ["a<2"]}},
    }

    resolved = _resolve(Tier.GLOBAL, ["a", "c"], packages=packages)

    assert [(p.name, p.version) for p in resolved] == [("a", "1.0"), ("c", "1.0"), ("b", "2.0")]
    by_name = {p.name: p for p in resolved}
    assert by_name["b"].requested_by.startswith("a==1.0")


def test_repick_drops_dependencies_only_the_old_version_needed():
    packages = {
        "a": {"2.0": {"requires": ["extra-dep"]}, "1.0": {}},
        "extra-dep": {"1.0": {"requires": ["leaf"]}},
        "leaf": {"1.0": {}},
        "c": {"1.0": {"requires": ["a<2"]}},
    }

    resolved = {p.name: p.version for p in _resolve(Tier.GLOBAL, ["a", "c"], packages=packages)}

    assert resolved == {"a": "1.0", "c": "1.0"}


def test_dependency_cycle_of_a_discarded_pick_is_pruned():
    packages = {
        "a": {"2.0": {"requires": ["x"]}, "1.0": {}},
        "x": {"1.0": {"requires": ["y"]}},
        "y": {"1.0": {"requires": ["x"]}},
        "c": {"1.0": {"requires": ["d"]}},
        "d": {"1.0": {"requires": ["a<2"]}},
    }

    resolved = {p.name for p in _resolve(Tier.GLOBAL, ["a", "c"], packages=packages)}

    assert resolved == {"a", "c", "d"}
