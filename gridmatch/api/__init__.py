"""
API layer for the energy marketplace.

This module provides the REST API for order intake and settlement views,
and the WebSocket feed of trades and matching passes.
"""

from .rest_api import create_app
from .websocket_api import WebSocketServer
from .validators import validate_offer_request, validate_region

__all__ = [
    "create_app",
    "WebSocketServer",
    "validate_offer_request",
    "validate_region",
]
