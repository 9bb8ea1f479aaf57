"""
Best-effort settlement receipts.

A notary attests a settled trade to an external record (a chain relay in
production, the event log in mock mode). Issuing a receipt never raises
and never takes longer than the configured timeout; failures are logged
as CHAIN_ERROR events and returned as receipts carrying an error.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional
import logging

import requests

from .order_types import EventType
from .store import EventLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Receipt:
    """Receipt handle, or the error that prevented one."""

    trade_id: str
    tx_hash: Optional[str] = None
    block_number: Optional[str] = None
    chain_id: Optional[str] = None
    mocked: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        if self.error is not None:
            return {"trade_id": self.trade_id, "error": self.error}
        data: Dict[str, Any] = {"trade_id": self.trade_id, "tx_hash": self.tx_hash}
        if self.block_number is not None:
            data["block_number"] = self.block_number
        if self.chain_id is not None:
            data["chain_id"] = self.chain_id
        if self.mocked:
            data["mocked"] = True
        return data


class ReceiptNotary:
    """
    Base class for receipt backends.

    Subclasses implement _record, which may raise; issue wraps it with a
    timeout and turns every failure into a CHAIN_ERROR event.
    """

    def __init__(self, event_log: EventLog, timeout_seconds: float = 10.0, max_workers: int = 4):
        self.event_log = event_log
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notary")

    def issue(self, trade_id: str, summary: Dict[str, Any]) -> Receipt:
        """
        Record a receipt for a settled trade.

        Args:
            trade_id: Trade being attested
            summary: region_id, price_cents_per_kwh, quantity_kwh, amount_cents

        Returns:
            Receipt with a transaction reference, or with error set
        """
        try:
            future = self._executor.submit(self._record, trade_id, summary)
            return future.result(timeout=self.timeout_seconds)
        except FuturesTimeout:
            error = f"Receipt timed out after {self.timeout_seconds}s"
        except Exception as e:
            error = str(e) or type(e).__name__

        logger.error(f"Receipt failed for trade {trade_id}: {error}")
        try:
            self.event_log.append(EventType.CHAIN_ERROR, trade_id, {"payload": summary, "error": error})
        except Exception as e:
            logger.error(f"Could not log receipt failure for trade {trade_id}: {str(e)}")
        return Receipt(trade_id=trade_id, error=error)

    def _record(self, trade_id: str, summary: Dict[str, Any]) -> Receipt:
        raise NotImplementedError

    def close(self) -> None:
        self._executor.shutdown(wait=False)


class EventLogNotary(ReceiptNotary):
    """Mock mode: the event log entry itself is the receipt."""

    def _record(self, trade_id: str, summary: Dict[str, Any]) -> Receipt:
        entry = self.event_log.append(EventType.CHAIN_RECEIPT_MOCK, trade_id, {"payload": summary})
        return Receipt(trade_id=trade_id, tx_hash=f"mock_tx_{entry.event_id}", mocked=True)


def quantity_wh(quantity_kwh: Any) -> int:
    """kWh to whole Wh, as recorded on chain."""
    wh = Decimal(str(quantity_kwh)) * 1000
    return max(0, int(wh.quantize(Decimal('1'), rounding=ROUND_HALF_UP)))


class HttpNotary(ReceiptNotary):
    """
    Posts receipts to an external receipt writer.

    The writer is expected to answer with JSON holding tx_hash and
    optionally block_number and chain_id.
    """

    def __init__(self, event_log: EventLog, url: str, api_key: Optional[str] = None,
                 timeout_seconds: float = 10.0, session: Optional[requests.Session] = None):
        super().__init__(event_log, timeout_seconds=timeout_seconds)
        if not url:
            raise ValueError("Receipt writer URL cannot be empty")
        self.url = url.rstrip('/')
        self.session = session or requests.Session()
        if api_key:
            self.session.headers.update({"x-api-key": api_key})

    def _record(self, trade_id: str, summary: Dict[str, Any]) -> Receipt:
        body = dict(summary)
        body["trade_id"] = trade_id
        body["quantity_wh"] = quantity_wh(summary.get("quantity_kwh", 0))

        r = self.session.post(f"{self.url}/receipts", json=body, timeout=self.timeout_seconds)
        r.raise_for_status()
        data = r.json()

        tx_hash = data.get("tx_hash") or data.get("txHash")
        if not tx_hash:
            raise ValueError("Receipt writer response has no transaction hash")

        block_number = data.get("block_number", data.get("blockNumber"))
        chain_id = data.get("chain_id", data.get("chainId"))
        receipt = Receipt(
            trade_id=trade_id,
            tx_hash=str(tx_hash),
            block_number=str(block_number) if block_number is not None else None,
            chain_id=str(chain_id) if chain_id is not None else None,
        )
        self.event_log.append(EventType.CHAIN_RECEIPT, trade_id, {
            "payload": summary,
            "tx_hash": receipt.tx_hash,
            "block_number": receipt.block_number,
            "chain_id": receipt.chain_id,
        })
        return receipt


def create_notary(mode: str, event_log: EventLog, url: Optional[str] = None,
                  api_key: Optional[str] = None, timeout_seconds: float = 10.0) -> ReceiptNotary:
    """
    Build the configured notary.

    Args:
        mode: "mock" or "http"
        event_log: Shared event log
        url: Receipt writer base URL (http mode)
        api_key: Optional API key (http mode)
        timeout_seconds: Upper bound on one receipt call
    """
    if mode == "http":
        return HttpNotary(event_log, url=url or "", api_key=api_key, timeout_seconds=timeout_seconds)
    if mode == "mock":
        return EventLogNotary(event_log, timeout_seconds=timeout_seconds)
    raise ValueError(f"Unknown notary mode: {mode}")
