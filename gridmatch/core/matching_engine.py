"""
Per-region matching and settlement.

MatchingEngine.run_match reads a snapshot of one region's book, crosses
it with match_orders, and applies the resulting trades one by one:
trade record, buyer debit, seller credit, receipt, order fills. Passes
for the same region are serialized; different regions run in parallel.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
import logging

from .errors import MarketError, MatchingInvariantError, SettlementError
from .ledger import Ledger
from .matcher import TradeIntent, match_orders
from .notary import Receipt, ReceiptNotary
from .order import Trade
from .order_book import OrderBook
from .order_types import EventType, RECEIPT_EVENTS
from .store import MarketStore
from ..utils.logger import MarketLogger, log_trade_audit
from ..utils.performance import PerformanceMonitor, get_performance_monitor

logger = logging.getLogger(__name__)


class RegionLockRegistry:
    """One lock per region; at most one matching pass per region at a time."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock(self, region_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(region_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[region_id] = lock
            return lock

    def regions(self) -> List[str]:
        with self._guard:
            return list(self._locks.keys())


@dataclass
class MatchSummary:
    """Outcome of one matching pass."""

    region_id: str
    executed_trades: int = 0
    receipts: List[Receipt] = field(default_factory=list)
    trades: List[Trade] = field(default_factory=list)

    def add(self, trade: Trade, receipt: Receipt) -> None:
        self.trades.append(trade)
        self.receipts.append(receipt)
        self.executed_trades += 1

    @property
    def failed_receipts(self) -> List[Receipt]:
        return [r for r in self.receipts if not r.ok]

    @property
    def quantity_kwh(self) -> Decimal:
        return sum((t.quantity_kwh for t in self.trades), Decimal('0'))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executed_trades": self.executed_trades,
            "region_id": self.region_id,
            "receipts": [r.to_dict() for r in self.receipts],
            "trades": [t.to_dict() for t in self.trades],
        }


class MatchingEngine:
    """
    Runs matching passes and drives settlement.

    The ledger is the only writer of wallet balances; the notary is a
    best-effort side channel whose failures never undo a trade.
    """

    def __init__(
        self,
        store: MarketStore,
        ledger: Ledger,
        notary: ReceiptNotary,
        performance_monitor: Optional[PerformanceMonitor] = None,
        audit_logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the matching engine.

        Args:
            store: Order and trade storage
            ledger: Wallet ledger
            notary: Receipt backend
            performance_monitor: Metrics sink (global monitor by default)
            audit_logger: Optional audit trail for settled trades
        """
        self.store = store
        self.order_book = OrderBook(store)
        self.ledger = ledger
        self.event_log = ledger.event_log
        self.notary = notary
        self.region_locks = RegionLockRegistry()

        self.performance_monitor = performance_monitor or get_performance_monitor()
        self.audit_logger = audit_logger
        self.market_logger = MarketLogger()

        self.trade_callbacks: List[Callable[[Trade, Receipt], None]] = []
        self.match_callbacks: List[Callable[[MatchSummary], None]] = []

        # Statistics
        self.total_runs = 0
        self.total_trades_executed = 0
        self.total_volume_kwh = Decimal('0')
        self.total_value_cents = 0
        self._stats_lock = threading.Lock()

        self.start_time = datetime.now(timezone.utc)

        logger.info("Matching engine initialized")

    def run_match(self, region_id: str) -> MatchSummary:
        """
        Run one matching pass for a region.

        Args:
            region_id: Region to match

        Returns:
            MatchSummary with the executed trades and their receipts

        Raises:
            MatchingInvariantError: Snapshot bookkeeping is inconsistent; nothing was written
            SettlementError: A ledger or fill write failed part-way through a trade
        """
        if not region_id:
            raise ValueError("Region cannot be empty")

        with self.region_locks.lock(region_id):
            start = time.perf_counter()

            snapshot = self.order_book.snapshot(region_id)
            try:
                result = match_orders(snapshot)
            except MatchingInvariantError as e:
                self.market_logger.log_error("matcher", str(e), region_id)
                self.performance_monitor.increment_counter("matching_invariant_errors")
                raise

            summary = MatchSummary(region_id=region_id)
            for intent in result.intents:
                trade, receipt = self._settle(intent, summary)
                summary.add(trade, receipt)
                self._notify_trade(trade, receipt)

            latency_ms = (time.perf_counter() - start) * 1000

        self.performance_monitor.record_metric("run_match_latency_ms", latency_ms)
        self.performance_monitor.increment_counter("match_runs")
        self.performance_monitor.increment_counter("trades_executed", summary.executed_trades)
        if summary.failed_receipts:
            self.performance_monitor.increment_counter("receipt_failures", len(summary.failed_receipts))

        with self._stats_lock:
            self.total_runs += 1
            self.total_trades_executed += summary.executed_trades
            for trade in summary.trades:
                self.total_volume_kwh += trade.quantity_kwh
                self.total_value_cents += trade.amount_cents

        self.market_logger.log_match_run(region_id, summary.executed_trades, latency_ms)
        self._notify_match(summary)
        return summary

    def _settle(self, intent: TradeIntent, summary: MatchSummary):
        trade = Trade(
            region_id=intent.region_id,
            buyer_id=intent.buyer_id,
            seller_id=intent.seller_id,
            offer_id=intent.offer_id,
            request_id=intent.request_id,
            price_cents_per_kwh=intent.price_cents_per_kwh,
            quantity_kwh=intent.quantity_kwh,
            amount_cents=intent.amount_cents,
        )
        self.store.save_trade(trade)

        # Buyer debit always precedes seller credit
        try:
            self.ledger.debit(trade.buyer_id, trade.amount_cents, trade.trade_id)
            self.ledger.credit(trade.seller_id, trade.amount_cents, trade.trade_id)
        except Exception as e:
            self.market_logger.log_error("ledger", str(e), trade.trade_id)
            self.performance_monitor.increment_counter("settlement_errors")
            raise SettlementError(trade.trade_id, str(e), summary) from e

        receipt = self._issue_receipt(trade)

        try:
            self.order_book.apply_fill(intent.request_fill)
            self.order_book.apply_fill(intent.offer_fill)
        except MarketError as e:
            self.market_logger.log_error("order_book", str(e), trade.trade_id)
            raise SettlementError(trade.trade_id, str(e), summary) from e

        self.market_logger.log_trade_settled(
            trade.trade_id, trade.region_id, trade.price_cents_per_kwh,
            str(trade.quantity_kwh), trade.amount_cents,
        )
        if self.audit_logger is not None:
            log_trade_audit(self.audit_logger, trade.to_dict())

        return trade, receipt

    def _issue_receipt(self, trade: Trade) -> Receipt:
        try:
            receipt = self.notary.issue(trade.trade_id, trade.receipt_summary())
        except Exception as e:
            logger.error(f"Notary raised for trade {trade.trade_id}: {str(e)}")
            receipt = Receipt(trade_id=trade.trade_id, error=str(e) or type(e).__name__)
        self.market_logger.log_receipt(trade.trade_id, receipt.tx_hash, receipt.error)
        return receipt

    def add_trade_callback(self, callback: Callable[[Trade, Receipt], None]) -> None:
        """Add callback for settled trades."""
        self.trade_callbacks.append(callback)

    def add_match_callback(self, callback: Callable[[MatchSummary], None]) -> None:
        """Add callback for completed matching passes."""
        self.match_callbacks.append(callback)

    def _notify_trade(self, trade: Trade, receipt: Receipt) -> None:
        for callback in self.trade_callbacks:
            try:
                callback(trade, receipt)
            except Exception as e:
                logger.error(f"Error in trade callback: {str(e)}")

    def _notify_match(self, summary: MatchSummary) -> None:
        for callback in self.match_callbacks:
            try:
                callback(summary)
            except Exception as e:
                logger.error(f"Error in match callback: {str(e)}")

    def get_settlement(self, region_id: str, limit: int = 20) -> Dict[str, Any]:
        """
        Latest trades of a region with their most recent receipt.

        Args:
            region_id: Region to report
            limit: Number of trades, clamped to 1..50
        """
        limit = max(1, min(50, int(limit)))
        trades = self.store.list_trades(region_id=region_id, limit=limit)

        receipts: Dict[str, Dict[str, Any]] = {}
        if trades:
            events = self.event_log.query(
                types=RECEIPT_EVENTS,
                ref_ids=[t.trade_id for t in trades],
                newest_first=True,
            )
            for event in events:
                if event.ref_id in receipts:
                    continue
                data = event.data
                receipts[event.ref_id] = {
                    "type": event.event_type.value,
                    "tx_hash": data.get("tx_hash"),
                    "block_number": data.get("block_number"),
                    "chain_id": data.get("chain_id"),
                    "error": data.get("error"),
                    "created_at": event.created_at.isoformat(),
                }
                if event.event_type == EventType.CHAIN_RECEIPT_MOCK:
                    receipts[event.ref_id]["tx_hash"] = f"mock_tx_{event.event_id}"

        return {
            "region_id": region_id,
            "trades": [
                dict(trade.to_dict(), receipt=receipts.get(trade.trade_id))
                for trade in trades
            ],
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }

    def get_statistics(self) -> Dict[str, Any]:
        """Get engine statistics."""
        uptime = datetime.now(timezone.utc) - self.start_time
        with self._stats_lock:
            return {
                "uptime_seconds": uptime.total_seconds(),
                "total_runs": self.total_runs,
                "total_trades_executed": self.total_trades_executed,
                "total_volume_kwh": str(self.total_volume_kwh),
                "total_value_cents": self.total_value_cents,
                "regions": self.region_locks.regions(),
                "run_match_latency_ms": self.performance_monitor.get_metric_stats("run_match_latency_ms"),
            }
