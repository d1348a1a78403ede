"""
Provider Adapters

Base class and URL helpers shared by the per-provider adapters.
"""

from .base_adapter import BaseProviderAdapter, build_versioned_url

__all__ = [
    "BaseProviderAdapter",
    "build_versioned_url",
]
