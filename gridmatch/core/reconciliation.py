"""
Settlement reconciliation from the event log.

Debit and credit of a trade are two separate ledger writes. This module
replays the audit trail to find trades whose payments do not pair up, and
wallets whose balance disagrees with their own history.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
import logging

from .ledger import Ledger
from .order import Trade
from .order_types import EventType, PAYMENT_EVENTS, RECEIPT_EVENTS
from .store import EventLog

logger = logging.getLogger(__name__)


class IssueKind(Enum):
    ORPHANED_DEBIT = "ORPHANED_DEBIT"
    ORPHANED_CREDIT = "ORPHANED_CREDIT"
    UNSETTLED = "UNSETTLED"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"
    BALANCE_DRIFT = "BALANCE_DRIFT"
    MISSING_RECEIPT = "MISSING_RECEIPT"
    RECEIPT_FAILED = "RECEIPT_FAILED"


# Receipt problems never affect economic settlement
INFORMATIONAL = frozenset({IssueKind.MISSING_RECEIPT, IssueKind.RECEIPT_FAILED})


@dataclass(frozen=True)
class ReconciliationIssue:
    kind: IssueKind
    ref_id: str
    detail: str

    @property
    def informational(self) -> bool:
        return self.kind in INFORMATIONAL

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "ref_id": self.ref_id, "detail": self.detail}


@dataclass
class ReconciliationReport:
    trades_checked: int = 0
    wallets_checked: int = 0
    issues: List[ReconciliationIssue] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not any(not issue.informational for issue in self.issues)

    def issues_for(self, ref_id: str) -> List[ReconciliationIssue]:
        return [issue for issue in self.issues if issue.ref_id == ref_id]

    def kinds_for(self, ref_id: str) -> List[IssueKind]:
        return [issue.kind for issue in self.issues_for(ref_id)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trades_checked": self.trades_checked,
            "wallets_checked": self.wallets_checked,
            "is_clean": self.is_clean,
            "issues": [issue.to_dict() for issue in self.issues],
        }


def _check_trade(trade: Trade, debits: List[Dict[str, Any]], credits: List[Dict[str, Any]],
                 issues: List[ReconciliationIssue]) -> None:
    tid = trade.trade_id

    if not debits and not credits:
        issues.append(ReconciliationIssue(IssueKind.UNSETTLED, tid, "no debit and no credit recorded"))
        return
    if debits and not credits:
        issues.append(ReconciliationIssue(
            IssueKind.ORPHANED_DEBIT, tid,
            f"buyer {trade.buyer_id} debited {debits[0].get('amount_cents')} but seller {trade.seller_id} not credited",
        ))
    if credits and not debits:
        issues.append(ReconciliationIssue(
            IssueKind.ORPHANED_CREDIT, tid,
            f"seller {trade.seller_id} credited {credits[0].get('amount_cents')} but buyer {trade.buyer_id} not debited",
        ))
    if len(debits) > 1 or len(credits) > 1:
        issues.append(ReconciliationIssue(
            IssueKind.DUPLICATE_PAYMENT, tid, f"{len(debits)} debits and {len(credits)} credits recorded",
        ))

    for payment in debits + credits:
        if payment.get("amount_cents") != trade.amount_cents:
            issues.append(ReconciliationIssue(
                IssueKind.AMOUNT_MISMATCH, tid,
                f"{payment.get('direction')} of {payment.get('amount_cents')} for trade amount {trade.amount_cents}",
            ))
        expected_user = trade.buyer_id if payment.get("direction") == "DEBIT" else trade.seller_id
        if payment.get("user_id") != expected_user:
            issues.append(ReconciliationIssue(
                IssueKind.AMOUNT_MISMATCH, tid,
                f"{payment.get('direction')} applied to {payment.get('user_id')} instead of {expected_user}",
            ))


def _replay_balances(event_log: EventLog) -> Dict[str, int]:
    balances: Dict[str, int] = defaultdict(int)
    for event in event_log.query(types=(EventType.WALLET_OPENED,) + PAYMENT_EVENTS):
        data = event.data
        user_id = data.get("user_id") or event.ref_id
        if event.event_type == EventType.WALLET_OPENED:
            balances[user_id] = int(data.get("balance_cents", 0))
        elif event.event_type == EventType.PAYMENT_DEBIT:
            balances[user_id] -= int(data.get("amount_cents", 0))
        else:
            balances[user_id] += int(data.get("amount_cents", 0))
    return balances


def reconcile(trades: Iterable[Trade], event_log: EventLog, ledger: Optional[Ledger] = None) -> ReconciliationReport:
    """
    Cross-check trades against the payment and receipt trail.

    Args:
        trades: Trades to check
        event_log: Audit trail
        ledger: When given, wallet balances are also replayed and compared

    Returns:
        ReconciliationReport listing every discrepancy by trade or user ID
    """
    trades = list(trades)
    report = ReconciliationReport(trades_checked=len(trades))

    debits: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    credits: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for event in event_log.query(types=PAYMENT_EVENTS):
        data = event.data
        reference = data.get("reference")
        if not reference:
            continue
        if event.event_type == EventType.PAYMENT_DEBIT:
            debits[reference].append(data)
        else:
            credits[reference].append(data)

    last_receipt: Dict[str, EventType] = {}
    for event in event_log.query(types=RECEIPT_EVENTS):
        last_receipt[event.ref_id] = event.event_type

    for trade in trades:
        _check_trade(trade, debits.get(trade.trade_id, []), credits.get(trade.trade_id, []), report.issues)

        receipt_type = last_receipt.get(trade.trade_id)
        if receipt_type is None:
            report.issues.append(ReconciliationIssue(IssueKind.MISSING_RECEIPT, trade.trade_id, "no receipt recorded"))
        elif receipt_type == EventType.CHAIN_ERROR:
            report.issues.append(ReconciliationIssue(IssueKind.RECEIPT_FAILED, trade.trade_id, "last receipt attempt failed"))

    if ledger is not None:
        replayed = _replay_balances(event_log)
        wallets = ledger.wallets()
        report.wallets_checked = len(wallets)
        for wallet in wallets:
            expected = replayed.get(wallet.user_id, 0)
            if expected != wallet.balance_cents:
                report.issues.append(ReconciliationIssue(
                    IssueKind.BALANCE_DRIFT, wallet.user_id,
                    f"wallet balance {wallet.balance_cents} but event log replays to {expected}",
                ))

    blocking = [i for i in report.issues if not i.informational]
    if blocking:
        logger.warning(f"Reconciliation found {len(blocking)} settlement issues in {len(trades)} trades")
    return report
