"""
Logging configuration for the marketplace.

Console and rotating file handlers for the application log, a
structured logger for orders, trades and receipts, and a separate
audit log for settled trades.
"""

import logging
import logging.handlers
import os
import sys
from typing import Any, Dict, Optional

APP_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
CONSOLE_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
AUDIT_FORMAT = '%(asctime)s|%(levelname)s|%(message)s'

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ('websockets', 'urllib3', 'werkzeug')


def _rotating_handler(path: str, max_bytes: int, backups: int, fmt: str,
                      datefmt: Optional[str] = None) -> logging.Handler:
    """Rotating file handler; the parent directory is created if missing."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backups)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_file_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> None:
    """
    Configure the root logger.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path of the rotating application log
        max_file_size: Rotation threshold in bytes
        backup_count: Rotated files kept
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
    handlers = [console]

    if log_file:
        handlers.append(_rotating_handler(log_file, max_file_size, backup_count, APP_FORMAT, '%Y-%m-%d %H:%M:%S'))

    for handler in handlers:
        handler.setLevel(numeric_level)
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging initialized - Level: {level}, File: {log_file or 'Console only'}")


def get_logger(name: str) -> logging.Logger:
    """Module logger; same as logging.getLogger."""
    return logging.getLogger(name)


class MarketLogger:
    """
    Structured logger for marketplace operations.

    Lines are pipe-delimited so they can be grepped and split.
    """

    def __init__(self, name: str = "gridmatch"):
        self.logger = logging.getLogger(name)
        self.order_logger = logging.getLogger(f"{name}.orders")
        self.trade_logger = logging.getLogger(f"{name}.trades")
        self.receipt_logger = logging.getLogger(f"{name}.receipts")

    def log_order_post(self, order_id: str, side: str, region_id: str, user_id: str,
                       price_cents: int, quantity_kwh: str) -> None:
        self.order_logger.info(
            f"ORDER_POST|{order_id}|{side}|{region_id}|{user_id}|{price_cents}|{quantity_kwh}"
        )

    def log_order_cancel(self, order_id: str, side: str, user_id: str) -> None:
        self.order_logger.info(f"ORDER_CANCEL|{order_id}|{side}|{user_id}")

    def log_trade_settled(self, trade_id: str, region_id: str, price_cents: int,
                          quantity_kwh: str, amount_cents: int) -> None:
        self.trade_logger.info(
            f"TRADE_SETTLED|{trade_id}|{region_id}|{price_cents}|{quantity_kwh}|{amount_cents}"
        )

    def log_receipt(self, trade_id: str, tx_hash: Optional[str], error: Optional[str] = None) -> None:
        if error:
            self.receipt_logger.warning(f"RECEIPT_FAILED|{trade_id}|{error}")
        else:
            self.receipt_logger.info(f"RECEIPT|{trade_id}|{tx_hash}")

    def log_match_run(self, region_id: str, executed_trades: int, latency_ms: float) -> None:
        self.logger.info(f"MATCH_RUN|{region_id}|{executed_trades}|{latency_ms:.3f}ms")

    def log_error(self, component: str, error: str, ref_id: Optional[str] = None) -> None:
        suffix = f"|{ref_id}" if ref_id else ""
        self.logger.error(f"ERROR|{component}|{error}{suffix}")


def create_audit_logger(log_file: str = "logs/audit.log") -> logging.Logger:
    """
    Dedicated, non-propagating logger for the settled-trade audit trail.

    Args:
        log_file: Audit log path

    Returns:
        The "gridmatch.audit" logger
    """
    audit = logging.getLogger("gridmatch.audit")
    audit.setLevel(logging.INFO)
    audit.propagate = False
    audit.addHandler(_rotating_handler(log_file, 50 * 1024 * 1024, 10, AUDIT_FORMAT))
    return audit


AUDIT_FIELDS = (
    ("ID", "trade_id"),
    ("REGION", "region_id"),
    ("BUYER", "buyer_id"),
    ("SELLER", "seller_id"),
    ("PRICE", "price_cents_per_kwh"),
    ("QTY", "quantity_kwh"),
    ("AMOUNT", "amount_cents"),
    ("OFFER", "offer_id"),
    ("REQUEST", "request_id"),
)


def log_trade_audit(audit_logger: logging.Logger, trade: Dict[str, Any]) -> None:
    """Write one TRADE_SETTLED line; missing fields show as N/A."""
    fields = "|".join(f"{label}:{trade.get(key, 'N/A')}" for label, key in AUDIT_FIELDS)
    audit_logger.info(f"TRADE_SETTLED|{fields}")
