"""
Third-party network adapters.
"""

from src.adapters.base import ThirdPartyAdapter, AdapterCapabilities

__all__ = [
    "ThirdPartyAdapter",
    "AdapterCapabilities",
]
