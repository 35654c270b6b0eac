from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

DEFAULT_LOG_PATH = "/var/log/airgap-provisioner.log"

# requests logs every connection at DEBUG through urllib3.
_NOISY_LOGGERS = ("urllib3",)


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Configure logging for a provisioning run.

    The log file is the audit trail of a run: it always receives DEBUG, so
    every resolver pick, cache hit and command line is recorded there. The
    console follows ``level``.

    Image builds often run as an unprivileged user that cannot write under
    /var/log; then a file in the working directory is used instead and the
    intended path is still reported.

    Returns the actual file path being used.
    """

    root = logging.getLogger()

    # Calling twice (CLI wrapper + run()) must not duplicate handlers.
    if getattr(root, "_airgap_configured", False):
        for h in root.handlers:
            if getattr(h, "_airgap_console", False):
                h.setLevel(level)
        return getattr(root, "_airgap_log_path", log_path)

    root.setLevel(logging.DEBUG)
    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    chosen_path = log_path
    file_handler: Optional[logging.Handler] = None
    try:
        Path(os.path.dirname(log_path) or ".").mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
    except OSError:
        chosen_path = str(Path.cwd() / "airgap-provisioner.log")
        file_handler = logging.FileHandler(chosen_path)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(fmt)
        setattr(console, "_airgap_console", True)
        root.addHandler(console)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    setattr(root, "_airgap_configured", True)
    setattr(root, "_airgap_log_path", chosen_path)

    logging.getLogger(__name__).info(
        "Logging initialized (requested=%s, actual=%s)", log_path, chosen_path
    )
    return chosen_path
