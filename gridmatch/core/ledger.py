"""
Wallet ledger with an append-only audit trail.

Every balance change goes through debit or credit and leaves one event
log entry recording the resulting balance. Wallets are created at zero on
first use. Balances have no floor; a negative balance is an amount owed.
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
import logging

from .errors import LedgerError
from .order import utc_now
from .order_types import EventType, LedgerDirection
from .store import EventLog, EventLogEntry

logger = logging.getLogger(__name__)


@dataclass
class Wallet:
    """Running balance of one user, in cents."""

    user_id: str
    wallet_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    balance_cents: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, object]:
        return {
            "wallet_id": self.wallet_id,
            "user_id": self.user_id,
            "balance_cents": self.balance_cents,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class LedgerTransaction:
    """Outcome of one debit or credit."""

    transaction_ref: str
    user_id: str
    direction: LedgerDirection
    amount_cents: int
    balance_cents: int
    reference: Optional[str]
    event_id: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "transaction_ref": self.transaction_ref,
            "user_id": self.user_id,
            "direction": self.direction.value,
            "amount_cents": self.amount_cents,
            "balance_cents": self.balance_cents,
            "reference": self.reference,
        }


def _validate_amount(amount_cents: int) -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise LedgerError(f"Amount must be an integer number of cents, got: {amount_cents!r}")
    if amount_cents < 0:
        raise LedgerError(f"Amount must be non-negative, got: {amount_cents}")
    return amount_cents


class Ledger:
    """
    Owns all wallets.

    Operations on the same wallet are serialized by a per-wallet lock;
    operations on different wallets run concurrently. Each debit or credit
    is durable on its own; a debit and its matching credit are not one
    transaction.
    """

    def __init__(self, event_log: EventLog):
        """
        Initialize the ledger.

        Args:
            event_log: Log receiving one entry per balance change
        """
        self.event_log = event_log
        self._wallets: Dict[str, Wallet] = {}
        self._wallet_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._wallet_locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._wallet_locks[user_id] = lock
            return lock

    def _upsert(self, user_id: str, initial_balance_cents: int = 0) -> Wallet:
        # Caller holds the wallet lock
        wallet = self._wallets.get(user_id)
        if wallet is None:
            wallet = Wallet(user_id=user_id, balance_cents=initial_balance_cents)
            self._wallets[user_id] = wallet
            self.event_log.append(EventType.WALLET_OPENED, user_id, {
                "wallet_id": wallet.wallet_id,
                "user_id": user_id,
                "balance_cents": initial_balance_cents,
                "timestamp": wallet.created_at.isoformat(),
            })
            logger.info(f"Opened wallet for {user_id} with balance {initial_balance_cents}")
        return wallet

    def ensure_wallet(self, user_id: str, initial_balance_cents: int = 0) -> Wallet:
        """
        Return the user's wallet, creating it if absent.

        An existing wallet keeps its balance; initial_balance_cents only
        applies on creation.
        """
        if not user_id:
            raise LedgerError("User ID cannot be empty")
        if isinstance(initial_balance_cents, bool) or not isinstance(initial_balance_cents, int):
            raise LedgerError(f"Initial balance must be an integer, got: {initial_balance_cents!r}")
        with self._lock_for(user_id):
            wallet = self._upsert(user_id, initial_balance_cents)
            return Wallet(**vars(wallet))

    def get_wallet(self, user_id: str) -> Wallet:
        return self.ensure_wallet(user_id)

    def find_wallet(self, user_id: str) -> Optional[Wallet]:
        """The user's wallet if one was opened; never opens one."""
        with self._lock_for(user_id):
            wallet = self._wallets.get(user_id)
            return Wallet(**vars(wallet)) if wallet is not None else None

    def get_balance(self, user_id: str) -> int:
        """Current balance in cents; opens a zero wallet on first access."""
        return self.ensure_wallet(user_id).balance_cents

    def debit(self, user_id: str, amount_cents: int, reference: Optional[str] = None) -> LedgerTransaction:
        """
        Subtract amount_cents from the user's wallet.

        Args:
            user_id: Wallet owner
            amount_cents: Non-negative magnitude
            reference: Trade ID or other correlation reference

        Returns:
            LedgerTransaction describing the change
        """
        return self._apply(user_id, amount_cents, LedgerDirection.DEBIT, reference)

    def credit(self, user_id: str, amount_cents: int, reference: Optional[str] = None) -> LedgerTransaction:
        """
        Add amount_cents to the user's wallet.

        Args:
            user_id: Wallet owner
            amount_cents: Non-negative magnitude
            reference: Trade ID or other correlation reference

        Returns:
            LedgerTransaction describing the change
        """
        return self._apply(user_id, amount_cents, LedgerDirection.CREDIT, reference)

    def _apply(self, user_id: str, amount_cents: int, direction: LedgerDirection,
               reference: Optional[str]) -> LedgerTransaction:
        if not user_id:
            raise LedgerError("User ID cannot be empty")
        amount = _validate_amount(amount_cents)

        with self._lock_for(user_id):
            wallet = self._upsert(user_id)
            delta = -amount if direction == LedgerDirection.DEBIT else amount
            new_balance = wallet.balance_cents + delta
            now = utc_now()

            wallet.balance_cents = new_balance
            wallet.updated_at = now

            entry = self.event_log.append(
                EventType.PAYMENT_DEBIT if direction == LedgerDirection.DEBIT else EventType.PAYMENT_CREDIT,
                user_id,
                {
                    "wallet_id": wallet.wallet_id,
                    "user_id": user_id,
                    "direction": direction.value,
                    "amount_cents": amount,
                    "balance_cents": new_balance,
                    "reference": reference,
                    "timestamp": now.isoformat(),
                },
            )

        logger.debug(f"{direction.value} {user_id} {amount} -> {new_balance} ref={reference}")
        return LedgerTransaction(
            transaction_ref=f"{direction.value.lower()}_{entry.event_id}",
            user_id=user_id,
            direction=direction,
            amount_cents=amount,
            balance_cents=new_balance,
            reference=reference,
            event_id=entry.event_id,
        )

    def wallets(self) -> List[Wallet]:
        with self._registry_lock:
            user_ids = list(self._wallets.keys())
        return [self.get_wallet(user_id) for user_id in user_ids]

    def history(self, user_id: str) -> List[EventLogEntry]:
        """Wallet events of one user, oldest first."""
        return self.event_log.query(
            types=[EventType.WALLET_OPENED, EventType.PAYMENT_DEBIT, EventType.PAYMENT_CREDIT],
            ref_id=user_id,
        )
