"""realmctl: create, provision and run a fleet of worldserver realms."""
from __future__ import annotations

__all__ = ["__version__"]

# Keep in step with ``project.version`` in pyproject.toml.
__version__ = "0.1.0"
