"""
Puppet bridge orchestration.

Runs one relay engine per identity pair behind a single application service.
"""

from src.bridges.puppet_bridge import (
    PuppetBridgeApp,
    BridgeStartupError,
    load_adapter_factory,
)

__all__ = [
    "PuppetBridgeApp",
    "BridgeStartupError",
    "load_adapter_factory",
]
