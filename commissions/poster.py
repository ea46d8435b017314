import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from .config import settings
from .errors import (
    AlreadyProcessedError,
    CommissionNotFoundError,
    DuplicateKeyError,
    EntityNotFoundError,
    InvalidStateTransitionError,
    OrderNotFoundError,
)
from .models import (
    CommissionLedgerEntry,
    CommissionStatus,
    CommissionType,
    CreditStatus,
    CustomerCredit,
    LedgerHistoryResponse,
    PayableSummary,
    PostCommissionRequest,
    PostingResult,
    RecipientKind,
)
from .rates import amount_for_rate
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

LEDGER_CONSTRAINT = "ledger_key"
CREDIT_CONSTRAINT = "credit_key"


def ledger_key(recipient_id: UUID, order_id: UUID, commission_type: CommissionType) -> tuple[UUID, UUID, str]:
    return (recipient_id, order_id, CommissionType(commission_type).value)


class CommissionPoster:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def post_commission(self, request: PostCommissionRequest) -> PostingResult:
        key = ledger_key(request.recipient_id, request.order_id, request.commission_type)
        existing = self.find_entry(*key)
        if existing:
            return self._already_processed(existing)

        try:
            with self.storage.transaction():
                return self._insert(request, key)
        except AlreadyProcessedError as e:
            return self._already_processed(self.get_entry(e.existing_id))
        except DuplicateKeyError:
            # Lost the race to a concurrent delivery of the same event.
            return self._already_processed(self.find_entry(*key))

    def _insert(self, request: PostCommissionRequest, key: tuple) -> PostingResult:
        existing_id = self.storage.lookup(LEDGER_CONSTRAINT, key)
        if existing_id is not None:
            raise AlreadyProcessedError(f"Commission {key} already posted", existing_id)
        order = self.storage.get("orders", request.order_id)
        if order is None:
            logger.error(f"Commission for order {request.order_id} not posted: order not found")
            raise OrderNotFoundError(f"Order {request.order_id} not found")
        recipient = self.storage.get("entities", request.recipient_id)
        if recipient is None or recipient["kind"] != request.recipient_kind:
            logger.error(f"Commission for order {request.order_id} not posted: recipient {request.recipient_id} not found")
            raise EntityNotFoundError(f"{request.recipient_kind.value} {request.recipient_id} not found")

        is_credit = request.commission_type == CommissionType.CUSTOMER_CREDIT
        if is_credit and request.recipient_kind != RecipientKind.CUSTOMER:
            raise InvalidStateTransitionError("Customer credit can only be posted to a customer")

        amount = amount_for_rate(request.subtotal_minor, request.rate)
        now = datetime.now(timezone.utc)

        entry_data = {
            "id": uuid4(),
            "recipient_id": request.recipient_id,
            "recipient_kind": request.recipient_kind,
            "order_id": request.order_id,
            "order_amount_minor": request.subtotal_minor,
            "commission_amount_minor": amount,
            "commission_rate": request.rate,
            "commission_type": request.commission_type,
            "status": CommissionStatus.APPROVED if is_credit else CommissionStatus.PENDING,
            "currency": order.get("currency") or settings.CURRENCY,
            "created_at": now,
            "updated_at": now,
            "metadata": request.metadata.model_dump(),
        }
        self.storage.insert_unique("ledger_entries", LEDGER_CONSTRAINT, key, entry_data)

        credit = None
        if is_credit:
            credit = self._issue_credit_for_entry(entry_data, now)

        logger.info(
            f"Posted {request.commission_type.value} commission {amount} to "
            f"{request.recipient_kind.value} {request.recipient_id} for order {request.order_id}"
        )
        return PostingResult(
            entry=CommissionLedgerEntry(**entry_data),
            created=True,
            credit=credit,
            message="Commission posted",
        )

    def _issue_credit_for_entry(self, entry: dict, now: datetime) -> CustomerCredit:
        credit_data = {
            "id": uuid4(),
            "customer_id": entry["recipient_id"],
            "amount_minor": entry["commission_amount_minor"],
            "status": CreditStatus.ISSUED,
            "reason": "referral_credit",
            "source_order_id": entry["order_id"],
            "source_referral_id": None,
            "source_entry_id": entry["id"],
            "used_on_order_id": None,
            "idempotency_key": f"entry:{entry['id']}",
            "issued_at": now,
            "used_at": None,
        }
        self.storage.insert_unique("credits", CREDIT_CONSTRAINT, credit_data["idempotency_key"], credit_data)
        recipient = self.storage.get("entities", entry["recipient_id"])
        self.storage.update(
            "entities", entry["recipient_id"],
            credit_balance_minor=recipient["credit_balance_minor"] + entry["commission_amount_minor"],
        )
        return CustomerCredit(**credit_data)

    def _already_processed(self, entry: CommissionLedgerEntry) -> PostingResult:
        logger.info(f"Commission {entry.idempotency_key} already posted as {entry.id}")
        credit = None
        if entry.commission_type == CommissionType.CUSTOMER_CREDIT:
            rows = self.storage.select("credits", source_entry_id=entry.id)
            credit = CustomerCredit(**rows[0]) if rows else None
        return PostingResult(entry=entry, created=False, credit=credit, message="Commission already posted (idempotent return)")

    def find_entry(self, recipient_id: UUID, order_id: UUID, commission_type) -> Optional[CommissionLedgerEntry]:
        entry_id = self.storage.lookup(LEDGER_CONSTRAINT, ledger_key(recipient_id, order_id, commission_type))
        if entry_id is None:
            return None
        return CommissionLedgerEntry(**self.storage.get("ledger_entries", entry_id))

    def entries_for_order(self, order_id: UUID) -> list[CommissionLedgerEntry]:
        return [CommissionLedgerEntry(**e) for e in self.storage.select("ledger_entries", order_id=order_id)]

    def get_entry(self, entry_id: UUID) -> CommissionLedgerEntry:
        row = self.storage.get("ledger_entries", entry_id)
        if row is None:
            raise CommissionNotFoundError(f"Commission {entry_id} not found")
        return CommissionLedgerEntry(**row)

    def approve(self, entry_id: UUID) -> CommissionLedgerEntry:
        entry = self.get_entry(entry_id)
        if not entry.can_approve():
            raise InvalidStateTransitionError(f"Cannot approve commission in {entry.status.value} state")
        return self._advance(entry, CommissionStatus.APPROVED)

    def mark_paid(self, entry_id: UUID) -> CommissionLedgerEntry:
        entry = self.get_entry(entry_id)
        if not entry.can_mark_paid():
            raise InvalidStateTransitionError(
                f"Cannot mark commission paid in {entry.status.value} state. Only approved commissions can be paid."
            )
        return self._advance(entry, CommissionStatus.PAID)

    def _advance(self, entry: CommissionLedgerEntry, target: CommissionStatus) -> CommissionLedgerEntry:
        changed = self.storage.compare_and_set(
            "ledger_entries", entry.id, "status", entry.status, target,
            updated_at=datetime.now(timezone.utc),
        )
        if not changed:
            raise InvalidStateTransitionError(f"Commission {entry.id} changed concurrently")
        logger.info(f"Commission {entry.id} moved {entry.status.value} -> {target.value}")
        return self.get_entry(entry.id)

    def payable_summary(self, recipient_id: UUID, currency: Optional[str] = None) -> PayableSummary:
        currency = currency or settings.CURRENCY
        entries = [
            e for e in self.storage.select("ledger_entries", recipient_id=recipient_id)
            if e["currency"] == currency
        ]
        totals = {status: 0 for status in CommissionStatus}
        for e in entries:
            totals[CommissionStatus(e["status"])] += e["commission_amount_minor"]
        return PayableSummary(
            recipient_id=recipient_id,
            currency=currency,
            pending_minor=totals[CommissionStatus.PENDING],
            approved_minor=totals[CommissionStatus.APPROVED],
            paid_minor=totals[CommissionStatus.PAID],
            total_entries=len(entries),
        )

    def ledger_history(self, recipient_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        all_entries = [
            CommissionLedgerEntry(**e) for e in self.storage.select("ledger_entries", recipient_id=recipient_id)
        ]
        all_entries.sort(key=lambda e: e.created_at, reverse=True)
        return LedgerHistoryResponse(
            recipient_id=recipient_id,
            entries=all_entries[offset:offset + limit],
            total_count=len(all_entries),
        )
