"""
WebSocket API for real-time trade and matching feeds.

Clients subscribe to regions and receive every settled trade and every
completed matching pass for those regions. Matching runs on worker
threads, so engine callbacks hand broadcasts over to the server loop.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Set, Dict, Any, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ..core.matching_engine import MatchingEngine, MatchSummary
from ..core.notary import Receipt
from ..core.order import Trade
from .validators import validate_region

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WebSocketServer:
    """
    WebSocket server for real-time data streaming.

    Tracks connected clients with their region subscriptions and
    broadcasts trades and match summaries to subscribers.
    """

    def __init__(self, matching_engine: MatchingEngine, host: str = 'localhost', port: int = 8765):
        """
        Initialize WebSocket server.

        Args:
            matching_engine: Matching engine instance
            host: Host to bind to
            port: Port to bind to
        """
        self.matching_engine = matching_engine
        self.host = host
        self.port = port

        # Client management
        self.clients: Set[Any] = set()
        self.subscriptions: Dict[Any, Set[str]] = {}
        self.loop: Optional[asyncio.AbstractEventLoop] = None

        # Register callbacks
        self.matching_engine.add_trade_callback(self._on_trade)
        self.matching_engine.add_match_callback(self._on_match)

        logger.info(f"WebSocket server initialized on {host}:{port}")

    async def start(self) -> None:
        """Start the WebSocket server."""
        self.loop = asyncio.get_running_loop()
        logger.info(f"Starting WebSocket server on {self.host}:{self.port}")

        async with websockets.serve(
            self._handle_client,
            self.host,
            self.port,
            ping_interval=20,
            ping_timeout=10,
            close_timeout=10
        ):
            await asyncio.Future()  # Run forever

    async def _handle_client(self, websocket, path: Optional[str] = None) -> None:
        """
        Handle new client connection.

        Args:
            websocket: WebSocket connection
            path: Request path (older websockets releases only)
        """
        remote = websocket.remote_address or ('unknown', 0)
        client_address = f"{remote[0]}:{remote[1]}"
        logger.info(f"Client connected: {client_address}")

        self.clients.add(websocket)
        self.subscriptions[websocket] = set()

        try:
            await self._send_message(websocket, {
                'type': 'connection',
                'status': 'connected',
                'timestamp': _now_iso(),
                'message': 'Connected to energy marketplace WebSocket'
            })

            async for message in websocket:
                await self._handle_message(websocket, message)

        except ConnectionClosed:
            logger.info(f"Client disconnected: {client_address}")
        finally:
            self.clients.discard(websocket)
            self.subscriptions.pop(websocket, None)

    async def _handle_message(self, websocket, message: str) -> None:
        """
        Handle message from client.

        Args:
            websocket: WebSocket connection
            message: Raw JSON message
        """
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            await self._send_error(websocket, "Invalid JSON message")
            return

        if not isinstance(data, dict):
            await self._send_error(websocket, "Message must be a JSON object")
            return

        message_type = str(data.get('type', '')).lower()

        if message_type == 'subscribe':
            await self._handle_subscribe(websocket, data)
        elif message_type == 'unsubscribe':
            await self._handle_unsubscribe(websocket, data)
        elif message_type == 'ping':
            await self._send_message(websocket, {'type': 'pong', 'timestamp': _now_iso()})
        else:
            await self._send_error(websocket, f"Unknown message type: {message_type}")

    async def _handle_subscribe(self, websocket, data: Dict[str, Any]) -> None:
        region_id = data.get('region_id')
        is_valid, error = validate_region(region_id)
        if not is_valid:
            await self._send_error(websocket, error)
            return

        self.subscriptions.setdefault(websocket, set()).add(region_id)
        await self._send_message(websocket, {
            'type': 'subscribed',
            'region_id': region_id,
            'timestamp': _now_iso()
        })
        logger.debug(f"Client subscribed to {region_id}")

    async def _handle_unsubscribe(self, websocket, data: Dict[str, Any]) -> None:
        region_id = data.get('region_id')
        self.subscriptions.get(websocket, set()).discard(region_id)
        await self._send_message(websocket, {
            'type': 'unsubscribed',
            'region_id': region_id,
            'timestamp': _now_iso()
        })

    async def _send_message(self, websocket, message: Dict[str, Any]) -> None:
        """Send message to client."""
        try:
            await websocket.send(json.dumps(message))
        except ConnectionClosed:
            logger.debug("Client connection closed while sending message")

    async def _send_error(self, websocket, error_message: str) -> None:
        """Send error message to client."""
        await self._send_message(websocket, {
            'type': 'error',
            'message': error_message,
            'timestamp': _now_iso()
        })

    def _schedule(self, coro) -> None:
        if self.loop is None or self.loop.is_closed():
            coro.close()
            return
        asyncio.run_coroutine_threadsafe(coro, self.loop)

    def _on_trade(self, trade: Trade, receipt: Receipt) -> None:
        """Handle settled trade callback (called from matching threads)."""
        self._schedule(self.broadcast(trade.region_id, {
            'type': 'trade',
            'timestamp': _now_iso(),
            'trade': trade.to_dict(),
            'receipt': receipt.to_dict(),
        }))

    def _on_match(self, summary: MatchSummary) -> None:
        """Handle completed matching pass callback."""
        self._schedule(self.broadcast(summary.region_id, {
            'type': 'match',
            'timestamp': _now_iso(),
            'region_id': summary.region_id,
            'executed_trades': summary.executed_trades,
            'quantity_kwh': str(summary.quantity_kwh),
        }))

    async def broadcast(self, region_id: str, message: Dict[str, Any]) -> int:
        """
        Send a message to every client subscribed to a region.

        Returns:
            Number of clients the message was sent to
        """
        tasks = []
        for websocket in self.clients.copy():
            if region_id in self.subscriptions.get(websocket, set()):
                tasks.append(self._send_message(websocket, message))

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return len(tasks)

    def get_client_count(self) -> int:
        """Get number of connected clients."""
        return len(self.clients)

    def get_subscription_count(self) -> Dict[str, int]:
        """Get subscription counts by region."""
        counts = {}
        for subscriptions in self.subscriptions.values():
            for region_id in subscriptions:
                counts[region_id] = counts.get(region_id, 0) + 1
        return counts
