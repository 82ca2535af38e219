"""Client for the external model-serving layer."""

from .client import GatewayResponse, ModelGatewayClient, parse_structured

__all__ = ["GatewayResponse", "ModelGatewayClient", "parse_structured"]
