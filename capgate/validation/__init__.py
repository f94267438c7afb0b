"""
capgate validation module.

This module provides configuration validation and payload schema enforcement.
"""

from capgate.validation.config import Config, ConfigError, GatewayConfig
from capgate.validation.payload import PayloadError, validate_payload

__all__ = ["Config", "ConfigError", "GatewayConfig", "PayloadError", "validate_payload"]
