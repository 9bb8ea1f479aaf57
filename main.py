#!/usr/bin/env python3
"""
Run the energy marketplace.

The REST API serves from a background thread and the WebSocket feed owns
the main thread's event loop. Both sit on one Marketplace, so trades
settled through REST are streamed to WebSocket subscribers.
"""

import asyncio
import signal
import sys
import threading

from gridmatch.api.rest_api import create_app
from gridmatch.api.websocket_api import WebSocketServer
from gridmatch.config.settings import Settings, get_settings
from gridmatch.core.marketplace import Marketplace, create_marketplace
from gridmatch.utils.logger import create_audit_logger, get_logger, setup_logging

logger = get_logger(__name__)


class GridmatchServer:
    """
    Owns the marketplace and both network front ends.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.marketplace: Marketplace = create_marketplace(
            settings, audit_logger=create_audit_logger(settings.audit_log_file)
        )
        self.feed = WebSocketServer(
            self.marketplace.engine,
            host=settings.websocket_host,
            port=settings.websocket_port
        )
        self.rest_thread = None

    def serve_rest(self) -> None:
        """Serve the REST API on a daemon thread."""
        app = create_app(self.marketplace, self.settings)

        def run():
            try:
                app.run(
                    host=self.settings.rest_host,
                    port=self.settings.rest_port,
                    debug=self.settings.debug,
                    use_reloader=False,
                    threaded=True
                )
            except OSError as e:
                logger.error(f"REST API stopped: {str(e)}")

        logger.info(f"REST API on {self.settings.rest_host}:{self.settings.rest_port}")
        self.rest_thread = threading.Thread(target=run, name="rest-api", daemon=True)
        self.rest_thread.start()

    def run(self) -> None:
        """Start REST in the background and block on the WebSocket feed."""
        self.serve_rest()
        try:
            asyncio.run(self.feed.start())
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        self.marketplace.engine.notary.close()
        stats = self.marketplace.engine.get_statistics()
        logger.info(
            f"Marketplace stopped after {stats['total_runs']} passes and "
            f"{stats['total_trades_executed']} trades"
        )


def handle_signal(signum, frame):
    logger.info(f"Received signal {signum}, shutting down...")
    raise KeyboardInterrupt


def main():
    """Main entry point."""
    try:
        settings = get_settings()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(level=settings.log_level, log_file=settings.log_file)
    logger.info(f"Configuration: {settings.to_dict()}")

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        GridmatchServer(settings).run()
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error(f"Fatal error: {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
