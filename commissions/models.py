from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class RecipientKind(str, Enum):
    PARTNER = "partner"
    CUSTOMER = "customer"
    INFLUENCER = "influencer"


class ReferralStatus(str, Enum):
    INVITED = "invited"
    ACCESSED = "accessed"
    ACCEPTED = "accepted"
    APPLIED = "applied"
    EXPIRED = "expired"


REFERRAL_STATUS_ORDER = {
    ReferralStatus.INVITED: 0,
    ReferralStatus.ACCESSED: 1,
    ReferralStatus.ACCEPTED: 2,
    ReferralStatus.APPLIED: 3,
}


class CommissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"


class CommissionType(str, Enum):
    INITIAL = "initial"
    LIFETIME = "lifetime"
    CUSTOMER_CREDIT = "customer_credit"


class CreditStatus(str, Enum):
    PENDING = "pending"
    ISSUED = "issued"
    USED = "used"
    EXPIRED = "expired"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class ReferrerEntity(BaseModel):
    """A partner, influencer or customer that owns a personal referral code."""

    id: UUID
    kind: RecipientKind
    email: str
    name: str = ""
    personal_referral_code: str
    referral_code_used: Optional[str] = None
    credit_balance_minor: int = 0
    commission_rate: Optional[Decimal] = None
    lifetime_commission_rate: Optional[Decimal] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReferralRecord(BaseModel):
    id: UUID
    code: str
    referrer_id: UUID
    referrer_kind: RecipientKind
    referee_email: Optional[str] = None
    referee_id: Optional[UUID] = None
    status: ReferralStatus
    order_id: Optional[UUID] = None
    commission_rate: Optional[Decimal] = None
    discount_amount_minor: Optional[int] = None
    expires_at: Optional[datetime] = None
    created_at: datetime
    accessed_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_expired(self, at: datetime) -> bool:
        if self.status == ReferralStatus.APPLIED:
            return False
        if self.expires_at is None:
            return self.status == ReferralStatus.EXPIRED
        return self.expires_at < at

    def is_active(self, at: datetime) -> bool:
        """Whether an order placed at ``at`` falls under this referral."""
        if self.status == ReferralStatus.EXPIRED:
            # Expired after signup: orders placed before expiry still count.
            return self.accepted_at is not None and not self.is_expired(at)
        if self.status not in (ReferralStatus.ACCEPTED, ReferralStatus.APPLIED):
            return False
        return not self.is_expired(at)


class LedgerMetadata(BaseModel):
    """Optional context attached to a ledger entry; never used for accounting."""

    customer_id: Optional[UUID] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    order_number: Optional[str] = None
    referral_code: Optional[str] = None
    created_via: str = "webhook"
    extra: dict[str, str] = Field(default_factory=dict)


class CommissionLedgerEntry(BaseModel):
    id: UUID
    recipient_id: UUID
    recipient_kind: RecipientKind
    order_id: UUID
    order_amount_minor: int
    commission_amount_minor: int
    commission_rate: Decimal
    commission_type: CommissionType
    status: CommissionStatus
    currency: str = "GBP"
    created_at: datetime
    updated_at: datetime
    metadata: LedgerMetadata = Field(default_factory=LedgerMetadata)

    model_config = ConfigDict(from_attributes=True)

    @property
    def idempotency_key(self) -> tuple[UUID, UUID, CommissionType]:
        return (self.recipient_id, self.order_id, self.commission_type)

    def can_approve(self) -> bool:
        return self.status == CommissionStatus.PENDING

    def can_mark_paid(self) -> bool:
        return self.status == CommissionStatus.APPROVED


class CustomerCredit(BaseModel):
    id: UUID
    customer_id: UUID
    amount_minor: int
    status: CreditStatus
    reason: str
    source_order_id: Optional[UUID] = None
    source_referral_id: Optional[UUID] = None
    source_entry_id: Optional[UUID] = None
    used_on_order_id: Optional[UUID] = None
    idempotency_key: Optional[str] = None
    issued_at: datetime
    used_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Order(BaseModel):
    id: UUID
    order_number: str
    customer_email: str
    subtotal_minor: int = Field(..., ge=0, description="Pre-discount item subtotal in minor units")
    discount_minor: int = 0
    shipping_minor: int = 0
    credit_applied_minor: int = 0
    credit_applied_by: Optional[UUID] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    commission_bearing: bool = True
    currency: str = "GBP"
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def total_minor(self) -> int:
        return self.subtotal_minor - self.discount_minor - self.credit_applied_minor + self.shipping_minor


class AttributedDescendant(BaseModel):
    entity_id: UUID
    kind: RecipientKind
    email: str
    level: int
    path: str
    referral_code_used: Optional[str] = None


class ReferrerLink(BaseModel):
    entity_id: UUID
    kind: RecipientKind
    email: str
    code: str
    level: int


class RedeemRequest(BaseModel):
    order_id: UUID
    requested_minor: int = Field(..., ge=0)


class RedemptionResult(BaseModel):
    customer_id: UUID
    order_id: UUID
    requested_minor: int
    applied_minor: int
    balance_after_minor: int
    clamped: bool = False
    already_applied: bool = False


class CreditBalance(BaseModel):
    customer_id: UUID
    available_balance_minor: int
    currency: str = "GBP"


class PostCommissionRequest(BaseModel):
    order_id: UUID
    recipient_id: UUID
    recipient_kind: RecipientKind
    subtotal_minor: int = Field(..., ge=0)
    rate: Decimal
    commission_type: CommissionType
    metadata: LedgerMetadata = Field(default_factory=LedgerMetadata)


class PostingResult(BaseModel):
    entry: CommissionLedgerEntry
    created: bool
    credit: Optional[CustomerCredit] = None
    message: str


class OrderPaidResult(BaseModel):
    order_id: UUID
    processed: bool
    commission_type: Optional[CommissionType] = None
    commission_rate: Decimal = Decimal("0")
    discount_percent: Decimal = Decimal("0")
    discount_minor: int = 0
    posting: Optional[PostingResult] = None
    message: str


class PayableSummary(BaseModel):
    recipient_id: UUID
    currency: str
    pending_minor: int
    approved_minor: int
    paid_minor: int
    total_entries: int


class LedgerHistoryResponse(BaseModel):
    recipient_id: UUID
    entries: list[CommissionLedgerEntry]
    total_count: int


class LevelSummary(BaseModel):
    level: int
    customers: int
    orders: int
    revenue_minor: int


class AttributedCustomerSummary(AttributedDescendant):
    order_count: int = 0
    total_revenue_minor: int = 0


class AttributionReport(BaseModel):
    referrer_id: UUID
    total_attributed_customers: int
    total_attributed_orders: int
    total_attributed_revenue_minor: int
    by_level: list[LevelSummary]
    customers: list[AttributedCustomerSummary]


class ReconciliationFinding(BaseModel):
    order_id: UUID
    order_number: str
    customer_email: str
    recipient_id: Optional[UUID] = None
    commission_type: Optional[CommissionType] = None
    commission_minor: int = 0
    discount_shortfall_minor: int = 0
    actions: list[str] = Field(default_factory=list)


class ReconciliationFailure(BaseModel):
    order_id: UUID
    error: str


class ReconciliationReport(BaseModel):
    dry_run: bool
    started_at: datetime
    finished_at: Optional[datetime] = None
    orders_scanned: int = 0
    orders_missing_commission: int = 0
    commissions_posted: int = 0
    commission_total_minor: int = 0
    discount_shortfalls: int = 0
    credits_issued: int = 0
    credit_total_minor: int = 0
    referrals_applied: int = 0
    affected: list[ReconciliationFinding] = Field(default_factory=list)
    failures: list[ReconciliationFailure] = Field(default_factory=list)
