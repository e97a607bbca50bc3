"""
Device profile registry.

Provides a unified layer for per-family flashing configuration.
"""

from .registry import (
    DeviceProfile,
    TransferMode,
    list_profiles,
    get_profile,
    find_profile_by_family,
)

__all__ = [
    "DeviceProfile",
    "TransferMode",
    "list_profiles",
    "get_profile",
    "find_profile_by_family",
]
