"""
Bridge - MCP backends in, HTTP routes out.

    Backend ── session ──> operation descriptors ── translator ──> routes
                                                                     │
    Caller ── HTTP ──> dispatcher ──> registry snapshot ─────────────┘
                           │
                           └──> session.invoke ──> backend
"""

from capgate.bridge.dispatcher import Dispatcher, DispatchResult
from capgate.bridge.errors import GatewayError
from capgate.bridge.publisher import CapabilityPublisher
from capgate.bridge.registry import RegistrySnapshot, RouteEntry, RouteRegistry
from capgate.bridge.schema import BackendState, InvocationContext, OperationDescriptor, RouteDescriptor
from capgate.bridge.session import BackendSession
from capgate.bridge.supervisor import Supervisor
from capgate.bridge.translator import translate, translate_all

__all__ = [
    "BackendSession",
    "BackendState",
    "CapabilityPublisher",
    "Dispatcher",
    "DispatchResult",
    "GatewayError",
    "InvocationContext",
    "OperationDescriptor",
    "RegistrySnapshot",
    "RouteDescriptor",
    "RouteEntry",
    "RouteRegistry",
    "Supervisor",
    "translate",
    "translate_all",
]
