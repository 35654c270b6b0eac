"""Air-gapped dependency provisioner (tiered, state-driven).

Core design goals:
- Resolve once, fetch once, install offline
- Fixed tier order: GLOBAL, then WHEELHOUSE, then LOCAL
- Hash-verified artifact cache
- Explicit installation log instead of filesystem scanning
- Centralized logging
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
