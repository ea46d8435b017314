"""
Spendable customer credit.

The balance is never cached: it is the sum of ``issued`` credit rows,
recomputed inside the same storage transaction that consumes them. A
redemption marks rows ``used`` oldest first, splitting the last row when
only part of it is needed, and stamps the order in that transaction.
The amount applied never exceeds the balance or what the order still owes.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from .config import settings
from .errors import (
    DuplicateKeyError,
    EntityNotFoundError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    TransientStoreError,
)
from .models import (
    CreditBalance,
    CreditStatus,
    CustomerCredit,
    Order,
    RecipientKind,
    RedemptionResult,
)
from .poster import CREDIT_CONSTRAINT
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class CreditAccountant:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def _customer(self, customer_id: UUID) -> dict:
        row = self.storage.get("entities", customer_id)
        if row is None or row["kind"] != RecipientKind.CUSTOMER:
            raise EntityNotFoundError(f"Customer {customer_id} not found")
        return row

    def _issued_rows(self, customer_id: UUID) -> list[dict]:
        rows = self.storage.select("credits", customer_id=customer_id, status=CreditStatus.ISSUED)
        rows.sort(key=lambda r: (r["issued_at"], str(r["id"])))
        return rows

    def get_balance(self, customer_id: UUID) -> int:
        with self.storage.transaction():
            self._customer(customer_id)
            return sum(r["amount_minor"] for r in self._issued_rows(customer_id))

    def balance(self, customer_id: UUID) -> CreditBalance:
        return CreditBalance(
            customer_id=customer_id,
            available_balance_minor=self.get_balance(customer_id),
            currency=settings.CURRENCY,
        )

    def safe_balance(self, customer_id: UUID) -> CreditBalance:
        """Balance for checkout pages: a store outage reads as zero credit."""
        try:
            return self.balance(customer_id)
        except TransientStoreError as e:
            logger.warning(f"Credit balance for {customer_id} unavailable, reporting zero: {e}")
            return CreditBalance(customer_id=customer_id, available_balance_minor=0, currency=settings.CURRENCY)

    def issue(
        self,
        customer_id: UUID,
        amount_minor: int,
        reason: str,
        source_order_id: Optional[UUID] = None,
        source_referral_id: Optional[UUID] = None,
        idempotency_key: Optional[str] = None,
    ) -> tuple[CustomerCredit, bool]:
        """Issue a standalone credit. Returns the credit and whether it was newly created."""
        if amount_minor <= 0:
            raise ValueError("Credit amount must be positive")

        if idempotency_key:
            existing = self.find_by_key(idempotency_key)
            if existing:
                return existing, False

        now = datetime.now(timezone.utc)
        credit_data = {
            "id": uuid4(),
            "customer_id": customer_id,
            "amount_minor": amount_minor,
            "status": CreditStatus.ISSUED,
            "reason": reason,
            "source_order_id": source_order_id,
            "source_referral_id": source_referral_id,
            "source_entry_id": None,
            "used_on_order_id": None,
            "idempotency_key": idempotency_key or f"credit:{uuid4()}",
            "issued_at": now,
            "used_at": None,
        }
        try:
            with self.storage.transaction():
                customer = self._customer(customer_id)
                self.storage.insert_unique("credits", CREDIT_CONSTRAINT, credit_data["idempotency_key"], credit_data)
                self.storage.update(
                    "entities", customer_id,
                    credit_balance_minor=customer["credit_balance_minor"] + amount_minor,
                )
        except DuplicateKeyError:
            return self.find_by_key(credit_data["idempotency_key"]), False

        logger.info(f"Issued {amount_minor} credit to customer {customer_id} ({reason})")
        return CustomerCredit(**credit_data), True

    def find_by_key(self, idempotency_key: str) -> Optional[CustomerCredit]:
        credit_id = self.storage.lookup(CREDIT_CONSTRAINT, idempotency_key)
        if credit_id is None:
            return None
        return CustomerCredit(**self.storage.get("credits", credit_id))

    def redeem(self, customer_id: UUID, order_id: UUID, requested_minor: int) -> RedemptionResult:
        if requested_minor < 0:
            raise ValueError("Requested credit must not be negative")

        with self.storage.transaction():
            customer = self._customer(customer_id)
            order = self.storage.get("orders", order_id)
            if order is None:
                raise OrderNotFoundError(f"Order {order_id} not found")
            if order["customer_email"].lower() != customer["email"].lower():
                raise InvalidStateTransitionError(f"Order {order_id} does not belong to customer {customer_id}")

            if order["credit_applied_minor"] > 0:
                # Re-invocation after a timeout: report the first outcome.
                return RedemptionResult(
                    customer_id=customer_id,
                    order_id=order_id,
                    requested_minor=requested_minor,
                    applied_minor=order["credit_applied_minor"],
                    balance_after_minor=self.get_balance(customer_id),
                    already_applied=True,
                )

            rows = self._issued_rows(customer_id)
            available = sum(r["amount_minor"] for r in rows)
            payable = max(Order(**order).total_minor, 0)
            applied = min(requested_minor, available, payable)
            clamped = applied < requested_minor

            now = datetime.now(timezone.utc)
            remaining = applied
            for row in rows:
                if remaining <= 0:
                    break
                take = min(row["amount_minor"], remaining)
                if take < row["amount_minor"]:
                    self._split(row, take)
                self.storage.update(
                    "credits", row["id"],
                    amount_minor=take, status=CreditStatus.USED,
                    used_on_order_id=order_id, used_at=now,
                )
                remaining -= take

            if applied > 0:
                self.storage.update("orders", order_id, credit_applied_minor=applied, credit_applied_by=customer_id)
                self.storage.update(
                    "entities", customer_id,
                    credit_balance_minor=customer["credit_balance_minor"] - applied,
                )
            balance_after = available - applied

        if clamped:
            logger.warning(
                f"Redemption for customer {customer_id} clamped: requested {requested_minor}, "
                f"balance {available}, order payable {payable}"
            )
        if applied:
            logger.info(f"Redeemed {applied} credit from customer {customer_id} on order {order_id}")

        return RedemptionResult(
            customer_id=customer_id,
            order_id=order_id,
            requested_minor=requested_minor,
            applied_minor=applied,
            balance_after_minor=balance_after,
            clamped=clamped,
        )

    def _split(self, row: dict, take: int) -> None:
        """Move the unconsumed part of ``row`` into a new issued row."""
        remainder = dict(row)
        remainder["id"] = uuid4()
        remainder["amount_minor"] = row["amount_minor"] - take
        remainder["idempotency_key"] = f"{row['idempotency_key']}:remainder:{remainder['id']}"
        self.storage.insert_unique("credits", CREDIT_CONSTRAINT, remainder["idempotency_key"], remainder)

    def credit_history(self, customer_id: UUID) -> list[CustomerCredit]:
        self._customer(customer_id)
        rows = self.storage.select("credits", customer_id=customer_id)
        rows.sort(key=lambda r: (r["issued_at"], str(r["id"])))
        return [CustomerCredit(**r) for r in rows]

    def totals(self, customer_id: UUID) -> dict[str, int]:
        totals = {status.value: 0 for status in CreditStatus}
        for credit in self.credit_history(customer_id):
            totals[credit.status.value] += credit.amount_minor
        return totals
