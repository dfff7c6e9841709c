# =============================================================================
# wabridge - Main Package
# =============================================================================
"""
wabridge - WhatsApp event bridge

Normalizes upstream protocol events, resolves participant identities and
dispatches the canonical events to subscribed webhooks.

Version is loaded from installed package metadata (pyproject.toml).
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version


def _get_version() -> str:
    """Get package version from installed metadata."""
    try:
        return version("wabridge")
    except PackageNotFoundError:
        # Running from a source checkout without `pip install -e .`
        return "0.0.0+unknown"


__version__: str = _get_version()
__description__: str = "wabridge - event normalization, identity resolution and webhook dispatch"

__all__ = [
    "__version__",
    "__description__",
]
