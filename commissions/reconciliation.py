"""
Out-of-band repair of gaps between paid orders and the ledger.

The job replays the live order-paid path for every paid order. Because
postings are keyed on (recipient, order, commission type) and retrofit
credits on ``discount-retrofit:<order id>``, running it again, or alongside
live webhooks, cannot create duplicates. Missed first-order discounts are
compensated with customer credit; historical orders are never rewritten.

Dry runs (the default) only report what would change.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from .credits import CreditAccountant
from .errors import InvalidStateTransitionError, NotFoundError, TransientStoreError
from .models import (
    Order,
    PaymentStatus,
    ReconciliationFailure,
    ReconciliationFinding,
    ReconciliationReport,
)
from .orders import OrderCommissionService, OrderPlan
from .rates import amount_for_rate
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

RETROFIT_REASON = "referral_discount_retrospective"


def retrofit_key(order: Order) -> str:
    return f"discount-retrofit:{order.id}"


class ReconciliationJob:
    def __init__(
        self,
        storage: InMemoryStorage,
        orders: Optional[OrderCommissionService] = None,
        credits: Optional[CreditAccountant] = None,
    ):
        self.storage = storage
        self.orders = orders or OrderCommissionService(storage)
        self.credits = credits or CreditAccountant(storage)

    def run(self, dry_run: bool = True) -> ReconciliationReport:
        report = ReconciliationReport(dry_run=dry_run, started_at=datetime.now(timezone.utc))

        paid = sorted(
            (Order(**o) for o in self.storage.select("orders", payment_status=PaymentStatus.PAID)),
            key=lambda o: (o.created_at, str(o.id)),
        )
        for order in paid:
            report.orders_scanned += 1
            try:
                finding = self._reconcile(order, report, dry_run)
            except (NotFoundError, TransientStoreError, InvalidStateTransitionError) as e:
                logger.error(f"Reconciliation failed for order {order.id}: {e}")
                report.failures.append(ReconciliationFailure(order_id=order.id, error=str(e)))
                continue
            if finding is not None:
                report.affected.append(finding)

        report.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Reconciliation {'dry run' if dry_run else 'run'} scanned {report.orders_scanned} orders: "
            f"{report.orders_missing_commission} missing commission, "
            f"{report.discount_shortfalls} discount shortfalls, {len(report.failures)} failures"
        )
        return report

    def _reconcile(self, order: Order, report: ReconciliationReport, dry_run: bool) -> Optional[ReconciliationFinding]:
        plan = self.orders.plan(order.id)
        if plan.skip_reason:
            return None

        finding = ReconciliationFinding(
            order_id=order.id,
            order_number=order.order_number,
            customer_email=order.customer_email,
            recipient_id=plan.request.recipient_id,
            commission_type=plan.request.commission_type,
        )

        missing_entry = self.orders.poster.find_entry(*plan.key) is None
        if missing_entry:
            amount = amount_for_rate(plan.request.subtotal_minor, plan.request.rate)
            report.orders_missing_commission += 1
            finding.commission_minor = amount
            finding.actions.append("post_commission")
        if plan.needs_referral_applied:
            finding.actions.append("apply_referral")

        if missing_entry or plan.needs_referral_applied:
            posted = True
            if not dry_run:
                result = self.orders.apply_plan(plan, created_via="reconciliation")
                posted = result.posting is not None and result.posting.created
            if missing_entry and posted:
                report.commissions_posted += 1
                report.commission_total_minor += finding.commission_minor
            if plan.needs_referral_applied:
                report.referrals_applied += 1

        shortfall = self._discount_shortfall(plan)
        if shortfall > 0:
            finding.discount_shortfall_minor = shortfall
            finding.actions.append("issue_credit")
            report.discount_shortfalls += 1
            issued = True
            if not dry_run:
                _, issued = self.credits.issue(
                    plan.customer.id, shortfall, RETROFIT_REASON,
                    source_order_id=order.id,
                    source_referral_id=plan.referral.id,
                    idempotency_key=retrofit_key(order),
                )
            if issued:
                report.credits_issued += 1
                report.credit_total_minor += shortfall

        return finding if finding.actions else None

    def _discount_shortfall(self, plan: OrderPlan) -> int:
        if not plan.decision.is_initial or plan.discount_minor <= 0:
            return 0
        if self.credits.find_by_key(retrofit_key(plan.order)) is not None:
            return 0
        return max(plan.discount_minor - plan.order.discount_minor, 0)
