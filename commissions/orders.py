import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from .attribution import AttributionResolver
from .errors import OrderNotFoundError, TransientStoreError
from .models import (
    LedgerMetadata,
    Order,
    OrderPaidResult,
    PaymentStatus,
    PostCommissionRequest,
    ReferralRecord,
    ReferralStatus,
    ReferrerEntity,
    ReferrerLink,
)
from .poster import CommissionPoster, ledger_key
from .rates import RateDecision, RatePolicy, amount_for_rate, determine_rate
from .referrals import ReferralService
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


@dataclass
class OrderPlan:
    """Everything the live path decides about one paid order, before any write."""

    order: Order
    decision: RateDecision
    discount_minor: int = 0
    customer: Optional[ReferrerEntity] = None
    referral: Optional[ReferralRecord] = None
    referrer: Optional[ReferrerLink] = None
    request: Optional[PostCommissionRequest] = None
    skip_reason: Optional[str] = None

    @property
    def key(self) -> Optional[tuple]:
        if self.request is None:
            return None
        return ledger_key(self.request.recipient_id, self.request.order_id, self.request.commission_type)

    @property
    def needs_referral_applied(self) -> bool:
        return (
            self.decision.is_initial
            and self.referral is not None
            and self.referral.status == ReferralStatus.ACCEPTED
        )


@dataclass
class DiscountQuote:
    decision: RateDecision
    discount_minor: int
    referral_code: Optional[str] = None


class OrderCommissionService:
    def __init__(
        self,
        storage: InMemoryStorage,
        referrals: Optional[ReferralService] = None,
        poster: Optional[CommissionPoster] = None,
        policy: Optional[RatePolicy] = None,
    ):
        self.storage = storage
        self.resolver = referrals.resolver if referrals else AttributionResolver(storage)
        self.referrals = referrals or ReferralService(storage, self.resolver)
        self.poster = poster or CommissionPoster(storage)
        self.policy = policy

    def record_order(
        self,
        customer_email: str,
        subtotal_minor: int,
        discount_minor: int = 0,
        shipping_minor: int = 0,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        created_at: Optional[datetime] = None,
        order_number: Optional[str] = None,
        commission_bearing: bool = True,
    ) -> Order:
        order_id = uuid4()
        order = Order(
            id=order_id,
            order_number=order_number or f"ORD-{str(order_id)[:8].upper()}",
            customer_email=customer_email.strip().lower(),
            subtotal_minor=subtotal_minor,
            discount_minor=discount_minor,
            shipping_minor=shipping_minor,
            payment_status=payment_status,
            commission_bearing=commission_bearing,
            created_at=created_at or datetime.now(timezone.utc),
        )
        self.storage.insert("orders", order.model_dump())
        return order

    def confirm_payment(self, order_id: UUID) -> Order:
        """Payment collaborator marks the order paid; the ledger never does this itself."""
        order = self.get_order(order_id)
        self.storage.update("orders", order.id, payment_status=PaymentStatus.PAID)
        return self.get_order(order_id)

    def get_order(self, order_id: UUID) -> Order:
        row = self.storage.get("orders", order_id)
        if row is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return Order(**row)

    def is_first_paid_order(self, order: Order) -> bool:
        email = order.customer_email.lower()
        earlier = [
            o for o in self.storage.select("orders", payment_status=PaymentStatus.PAID)
            if o["customer_email"].lower() == email and o["id"] != order.id and o["created_at"] < order.created_at
        ]
        return not earlier

    def _policy_for(self, referrer: ReferrerEntity) -> RatePolicy:
        policy = self.policy or RatePolicy.from_settings()
        return policy.with_overrides(referrer.commission_rate, referrer.lifetime_commission_rate)

    def _resolve_referrer(self, customer: ReferrerEntity, referral: ReferralRecord) -> Optional[ReferrerEntity]:
        link = self.resolver.immediate_referrer(customer.id)
        referrer_id = link.entity_id if link else referral.referrer_id
        row = self.storage.get("entities", referrer_id)
        return ReferrerEntity(**row) if row else None

    def plan(self, order_id: UUID) -> OrderPlan:
        order = self.get_order(order_id)
        plan = OrderPlan(order=order, decision=RateDecision.none())

        if order.payment_status != PaymentStatus.PAID:
            plan.skip_reason = "order not paid"
            return plan
        if not order.commission_bearing:
            plan.skip_reason = "order is not commission bearing"
            return plan

        customer = self.referrals.find_customer_by_email(order.customer_email)
        if customer is None:
            plan.skip_reason = "no customer account (organic order)"
            return plan
        plan.customer = customer

        referral = self.referrals.find_active_referral(customer.id, at=order.created_at)
        if referral is None:
            plan.skip_reason = "no active referral (organic order)"
            return plan
        plan.referral = referral

        referrer = self._resolve_referrer(customer, referral)
        if referrer is None:
            plan.skip_reason = "referrer no longer exists"
            return plan
        plan.referrer = ReferrerLink(
            entity_id=referrer.id, kind=referrer.kind, email=referrer.email,
            code=customer.referral_code_used or referral.code, level=1,
        )

        if referral.status == ReferralStatus.APPLIED:
            is_first = referral.order_id == order.id
        else:
            is_first = self.is_first_paid_order(order)

        plan.decision = determine_rate(is_first, referrer.kind, self._policy_for(referrer))
        plan.discount_minor = amount_for_rate(order.subtotal_minor, plan.decision.discount_percent)
        if not plan.decision.creates_entry:
            plan.skip_reason = "zero commission rate"
            return plan

        plan.request = PostCommissionRequest(
            order_id=order.id,
            recipient_id=referrer.id,
            recipient_kind=referrer.kind,
            subtotal_minor=order.subtotal_minor,
            rate=plan.decision.commission_rate,
            commission_type=plan.decision.commission_type,
            metadata=LedgerMetadata(
                customer_id=customer.id,
                customer_email=customer.email,
                customer_name=customer.name or None,
                order_number=order.order_number,
                referral_code=plan.referrer.code,
            ),
        )
        return plan

    def apply_plan(self, plan: OrderPlan, created_via: str = "webhook") -> OrderPaidResult:
        if plan.skip_reason:
            return OrderPaidResult(order_id=plan.order.id, processed=False, message=plan.skip_reason)

        plan.request.metadata.created_via = created_via
        with self.storage.transaction():
            posting = self.poster.post_commission(plan.request)
            if plan.needs_referral_applied:
                self.referrals.apply(
                    plan.referral.id, plan.order.id,
                    commission_rate=plan.decision.commission_rate,
                    discount_minor=plan.discount_minor,
                )

        return OrderPaidResult(
            order_id=plan.order.id,
            processed=True,
            commission_type=plan.decision.commission_type,
            commission_rate=plan.decision.commission_rate,
            discount_percent=plan.decision.discount_percent,
            discount_minor=plan.discount_minor,
            posting=posting,
            message=posting.message,
        )

    def handle_order_paid(self, order_id: UUID) -> OrderPaidResult:
        """Entry point for the payment webhook. Safe to call any number of times."""
        plan = self.plan(order_id)
        result = self.apply_plan(plan)
        if not result.processed:
            logger.info(f"Order {order_id} skipped: {result.message}")
        return result

    def preview_discount(self, customer_email: str, subtotal_minor: int, at: Optional[datetime] = None) -> DiscountQuote:
        """
        Discount a checkout should apply before payment. Store failures
        degrade to no discount so checkout is never blocked.
        """
        at = at or datetime.now(timezone.utc)
        try:
            customer = self.referrals.find_customer_by_email(customer_email)
            if customer is None:
                return DiscountQuote(RateDecision.none(), 0)
            referral = self.referrals.find_active_referral(customer.id, at=at)
            if referral is None:
                return DiscountQuote(RateDecision.none(), 0)
            referrer = self._resolve_referrer(customer, referral)
            if referrer is None:
                return DiscountQuote(RateDecision.none(), 0)
            probe = Order(
                id=uuid4(), order_number="preview", customer_email=customer.email,
                subtotal_minor=subtotal_minor, created_at=at,
            )
            is_first = referral.status != ReferralStatus.APPLIED and self.is_first_paid_order(probe)
            decision = determine_rate(is_first, referrer.kind, self._policy_for(referrer))
        except TransientStoreError as e:
            logger.warning(f"Discount preview for {customer_email} degraded to zero: {e}")
            return DiscountQuote(RateDecision.none(), 0)
        return DiscountQuote(decision, amount_for_rate(subtotal_minor, decision.discount_percent), referral.code)
