from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

OFFLINE_ENV = "AIRGAP_PROVISION_OFFLINE"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class Paths:
    config_default: str = "provision.yaml"
    state_default: str = "/var/lib/airgap-provisioner/state.json"
    log_default: str = "/var/log/airgap-provisioner.log"
    wheelhouse_default: str = "packages"


PATHS = Paths()


def env_flag(name: str) -> Optional[bool]:
    """Read a boolean environment variable; None when unset or unrecognized."""

    raw = os.environ.get(name)
    if raw is None:
        return None
    v = raw.strip().lower()
    if v in _TRUTHY:
        return True
    if v in _FALSY:
        return False
    return None
