import logging
import random
import string
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from .attribution import CODE_CONSTRAINT, AttributionResolver
from .config import settings
from .errors import (
    AttributionCycleError,
    DuplicateKeyError,
    EntityNotFoundError,
    InvalidStateTransitionError,
    ReferralExpiredError,
    ReferralNotFoundError,
)
from .models import (
    REFERRAL_STATUS_ORDER,
    RecipientKind,
    ReferralRecord,
    ReferralStatus,
    ReferrerEntity,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

EMAIL_CONSTRAINT = "entity_email"
CODE_PREFIXES = {
    RecipientKind.PARTNER: "P",
    RecipientKind.CUSTOMER: "C",
    RecipientKind.INFLUENCER: "I",
}


def _email_key(kind: RecipientKind, email: str) -> tuple[str, str]:
    return (RecipientKind(kind).value, email.strip().lower())


class ReferralService:
    def __init__(self, storage: InMemoryStorage, resolver: Optional[AttributionResolver] = None):
        self.storage = storage
        self.resolver = resolver or AttributionResolver(storage)

    def register_referrer(
        self,
        kind: RecipientKind,
        email: str,
        name: str = "",
        personal_code: Optional[str] = None,
        commission_rate: Optional[Decimal] = None,
        lifetime_commission_rate: Optional[Decimal] = None,
        created_at: Optional[datetime] = None,
    ) -> ReferrerEntity:
        now = created_at or datetime.now(timezone.utc)
        entity_id = uuid4()
        with self.storage.transaction():
            code = personal_code.upper() if personal_code else self._generate_code(CODE_PREFIXES[kind])
            self.storage.claim(CODE_CONSTRAINT, code, entity_id)
            row = {
                "id": entity_id,
                "kind": RecipientKind(kind),
                "email": email.strip().lower(),
                "name": name,
                "personal_referral_code": code,
                "referral_code_used": None,
                "credit_balance_minor": 0,
                "commission_rate": commission_rate,
                "lifetime_commission_rate": lifetime_commission_rate,
                "created_at": now,
            }
            self.storage.insert_unique("entities", EMAIL_CONSTRAINT, _email_key(kind, email), row)
        logger.info(f"Registered {kind} {row['email']} with code {code}")
        return ReferrerEntity(**row)

    def get_entity(self, entity_id: UUID) -> ReferrerEntity:
        row = self.storage.get("entities", entity_id)
        if row is None:
            raise EntityNotFoundError(f"Entity {entity_id} not found")
        return ReferrerEntity(**row)

    def find_customer_by_email(self, email: str) -> Optional[ReferrerEntity]:
        entity_id = self.storage.lookup(EMAIL_CONSTRAINT, _email_key(RecipientKind.CUSTOMER, email))
        if entity_id is None:
            return None
        return ReferrerEntity(**self.storage.get("entities", entity_id))

    def issue_code(
        self,
        referrer_id: UUID,
        referee_email: Optional[str] = None,
        expires_in_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ReferralRecord:
        referrer = self.get_entity(referrer_id)
        now = now or datetime.now(timezone.utc)
        days = expires_in_days if expires_in_days is not None else settings.REFERRAL_EXPIRY_DAYS
        record_id = uuid4()
        with self.storage.transaction():
            code = self._generate_code(CODE_PREFIXES[referrer.kind])
            row = {
                "id": record_id,
                "code": code,
                "referrer_id": referrer.id,
                "referrer_kind": referrer.kind,
                "referee_email": referee_email.strip().lower() if referee_email else None,
                "referee_id": None,
                "status": ReferralStatus.INVITED,
                "order_id": None,
                "commission_rate": None,
                "discount_amount_minor": None,
                "expires_at": now + timedelta(days=days),
                "created_at": now,
                "accessed_at": None,
                "accepted_at": None,
                "applied_at": None,
            }
            self.storage.insert_unique("referrals", CODE_CONSTRAINT, code, row)
        logger.info(f"Issued referral code {code} for {referrer.email}")
        return ReferralRecord(**row)

    def get_record(self, record_id: UUID) -> ReferralRecord:
        row = self.storage.get("referrals", record_id)
        if row is None:
            raise ReferralNotFoundError(f"Referral {record_id} not found")
        return ReferralRecord(**row)

    def verify_code(self, code: str, now: Optional[datetime] = None) -> tuple[ReferrerEntity, Optional[ReferralRecord]]:
        """Owner of a code plus its issued record, if the code is not a personal one."""
        now = now or datetime.now(timezone.utc)
        code = code.strip().upper()
        owner = self.resolver.find_code_owner(code)
        if owner is None:
            raise ReferralNotFoundError(f"Referral code {code} not found")
        record = self._issued_record(code)
        if record is not None and record.is_expired(now):
            self._mark_expired(record)
            raise ReferralExpiredError(f"Referral code {code} has expired")
        return owner, record

    def track_access(self, code: str, now: Optional[datetime] = None) -> ReferralRecord:
        now = now or datetime.now(timezone.utc)
        _, record = self.verify_code(code, now)
        if record is None:
            raise ReferralNotFoundError(f"{code} is a personal code with no issued referral")
        if self.storage.compare_and_set("referrals", record.id, "status", ReferralStatus.INVITED,
                                        ReferralStatus.ACCESSED, accessed_at=now):
            logger.info(f"Referral {code} accessed")
        return self.get_record(record.id)

    def accept(self, code: str, referee_id: UUID, now: Optional[datetime] = None) -> ReferralRecord:
        """
        Record a referee signing up with ``code``.

        The referee's back-reference always points at the referrer's
        personal code so graph traversal never needs to know about issued
        codes. Personal codes get an ``accepted`` record created on the fly.
        """
        now = now or datetime.now(timezone.utc)
        owner, record = self.verify_code(code, now)
        referee = self.get_entity(referee_id)

        if referee.referral_code_used:
            raise InvalidStateTransitionError(f"{referee.email} was already referred with {referee.referral_code_used}")
        if self.resolver.would_create_cycle(referee.id, owner.id):
            raise AttributionCycleError(f"{referee.email} cannot be referred by {owner.email}")

        with self.storage.transaction():
            if record is None:
                record_row = {
                    "id": uuid4(),
                    "code": owner.personal_referral_code,
                    "referrer_id": owner.id,
                    "referrer_kind": owner.kind,
                    "referee_email": referee.email,
                    "referee_id": referee.id,
                    "status": ReferralStatus.ACCEPTED,
                    "order_id": None,
                    "commission_rate": None,
                    "discount_amount_minor": None,
                    "expires_at": now + timedelta(days=settings.REFERRAL_EXPIRY_DAYS),
                    "created_at": now,
                    "accessed_at": now,
                    "accepted_at": now,
                    "applied_at": None,
                }
                self.storage.insert("referrals", record_row)
                record_id = record_row["id"]
            else:
                if record.referee_email and record.referee_email != referee.email:
                    raise InvalidStateTransitionError(f"Referral {record.code} was issued to a different email")
                self._advance(record, ReferralStatus.ACCEPTED, referee_id=referee.id,
                              referee_email=referee.email, accepted_at=now,
                              accessed_at=record.accessed_at or now)
                record_id = record.id
            self.storage.update("entities", referee.id, referral_code_used=owner.personal_referral_code)

        logger.info(f"{referee.email} accepted referral from {owner.email}")
        return self.get_record(record_id)

    def apply(
        self,
        record_id: UUID,
        order_id: UUID,
        commission_rate: Decimal,
        discount_minor: int,
        now: Optional[datetime] = None,
    ) -> ReferralRecord:
        """Link the qualifying order. Re-applying with the same order is a no-op."""
        record = self.get_record(record_id)
        if record.status == ReferralStatus.APPLIED:
            if record.order_id != order_id:
                logger.info(f"Referral {record.code} already applied to order {record.order_id}")
            return record
        if record.status != ReferralStatus.ACCEPTED:
            raise InvalidStateTransitionError(f"Referral {record.code} is {record.status.value}, not accepted")
        self._advance(record, ReferralStatus.APPLIED, order_id=order_id,
                      commission_rate=commission_rate, discount_amount_minor=discount_minor,
                      applied_at=now or datetime.now(timezone.utc))
        logger.info(f"Referral {record.code} applied to order {order_id}")
        return self.get_record(record_id)

    def find_active_referral(self, referee_id: UUID, at: Optional[datetime] = None) -> Optional[ReferralRecord]:
        at = at or datetime.now(timezone.utc)
        records = [ReferralRecord(**r) for r in self.storage.select("referrals", referee_id=referee_id)]
        active = [r for r in records if r.is_active(at)]
        if not active:
            return None
        # An applied record wins; otherwise the most recent acceptance.
        active.sort(key=lambda r: (r.status == ReferralStatus.APPLIED, r.accepted_at or r.created_at), reverse=True)
        return active[0]

    def expire_stale(self, now: Optional[datetime] = None) -> list[ReferralRecord]:
        now = now or datetime.now(timezone.utc)
        expired = []
        for row in self.storage.select("referrals"):
            record = ReferralRecord(**row)
            if record.status in (ReferralStatus.APPLIED, ReferralStatus.EXPIRED):
                continue
            if record.is_expired(now) and self._mark_expired(record):
                expired.append(self.get_record(record.id))
        if expired:
            logger.info(f"Expired {len(expired)} stale referral records")
        return expired

    def _issued_record(self, code: str) -> Optional[ReferralRecord]:
        row_id = self.storage.lookup(CODE_CONSTRAINT, code)
        row = self.storage.get("referrals", row_id) if row_id else None
        return ReferralRecord(**row) if row else None

    def _advance(self, record: ReferralRecord, target: ReferralStatus, **fields) -> None:
        current = ReferralStatus(record.status)
        if current in (ReferralStatus.EXPIRED, ReferralStatus.APPLIED):
            raise InvalidStateTransitionError(f"Referral {record.code} is {current.value}")
        if REFERRAL_STATUS_ORDER[target] <= REFERRAL_STATUS_ORDER[current]:
            raise InvalidStateTransitionError(
                f"Cannot move referral {record.code} from {current.value} to {target.value}"
            )
        if not self.storage.compare_and_set("referrals", record.id, "status", current, target, **fields):
            raise InvalidStateTransitionError(f"Referral {record.code} changed concurrently")

    def _mark_expired(self, record: ReferralRecord) -> bool:
        if record.status == ReferralStatus.APPLIED:
            return False
        return self.storage.compare_and_set("referrals", record.id, "status", record.status, ReferralStatus.EXPIRED)

    def _generate_code(self, prefix: str = "") -> str:
        length = max(settings.REFERRAL_CODE_LENGTH - len(prefix), 4)
        for _ in range(20):
            suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=length))
            code = f"{prefix}{suffix}"
            if self.storage.lookup(CODE_CONSTRAINT, code) is None:
                return code
        raise DuplicateKeyError(CODE_CONSTRAINT, prefix)
