from .stage_10_resolve import ResolveStage
from .stage_20_fetch import FetchStage
from .stage_30_install import InstallStage
from .stage_40_verify import VerifyStage

__all__ = [
    "ResolveStage",
    "FetchStage",
    "InstallStage",
    "VerifyStage",
]
