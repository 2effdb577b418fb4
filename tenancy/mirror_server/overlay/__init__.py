"""
Overlay layer for aggregation contexts.

This module provides:
- OverrideStore: context-only field values for mirrored records
- ExclusionRegistry: mirrored records an aggregation tenant has deleted
"""

from .exclusions import Exclusion, ExclusionRegistry
from .overrides import Override, OverrideStore, overlay_key

__all__ = [
    "Exclusion",
    "ExclusionRegistry",
    "Override",
    "OverrideStore",
    "overlay_key",
]
