"""Deployment tooling for a single AvalancheGo node supervised by systemd."""
from __future__ import annotations

__all__ = ["__version__"]

# Keep in step with ``version`` in pyproject.toml.
__version__ = "0.3.0"
