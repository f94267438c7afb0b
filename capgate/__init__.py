"""
capgate - Capability-translation gateway for MCP tool servers.

Connects to any number of MCP backends, discovers the tools each one
offers, and serves them as plain HTTP routes with one aggregated OpenAPI
document describing everything that is callable right now.

Architecture:
- One session per backend drives connect → discover → ready, and
  recovers on its own when the backend goes away
- A supervisor turns discovery results into route swaps
- The route registry is an immutable snapshot, swapped whole
- The dispatcher validates, forwards, and checks every call
"""

__version__ = "0.3.0"
__license__ = "Apache-2.0"

from capgate.bridge.registry import RouteRegistry
from capgate.bridge.supervisor import Supervisor
from capgate.validation.config import Config, GatewayConfig

__all__ = [
    "Config",
    "GatewayConfig",
    "RouteRegistry",
    "Supervisor",
    "__version__",
]
