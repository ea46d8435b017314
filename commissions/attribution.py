import logging
from collections import deque
from typing import Optional
from uuid import UUID

from .config import settings
from .errors import EntityNotFoundError
from .models import (
    AttributedCustomerSummary,
    AttributedDescendant,
    AttributionReport,
    LevelSummary,
    PaymentStatus,
    ReferrerEntity,
    ReferrerLink,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

CODE_CONSTRAINT = "referral_code"


class AttributionResolver:
    """
    Walks the referral graph stored as ``referral_code_used`` back-references.

    Downward traversal is an iterative BFS keyed on personal codes; upward
    traversal follows one back-reference per step. Both keep a visited set
    and stop at ``max_depth`` so corrupted data containing a cycle still
    yields a finite answer.
    """

    def __init__(self, storage: InMemoryStorage, max_depth: Optional[int] = None):
        self.storage = storage
        self.max_depth = max_depth or settings.MAX_ATTRIBUTION_DEPTH

    def find_code_owner(self, code: str) -> Optional[ReferrerEntity]:
        """Resolve a personal or issued referral code to the entity that owns it."""
        if not code:
            return None
        row_id = self.storage.lookup(CODE_CONSTRAINT, code)
        if row_id is None:
            return None
        entity = self.storage.get("entities", row_id)
        if entity is not None:
            return ReferrerEntity(**entity)
        referral = self.storage.get("referrals", row_id)
        if referral is not None:
            owner = self.storage.get("entities", referral["referrer_id"])
            return ReferrerEntity(**owner) if owner else None
        return None

    def resolve_attributed_descendants(self, root_code: str) -> list[AttributedDescendant]:
        root = self.find_code_owner(root_code)
        if root is None:
            return []

        results: list[AttributedDescendant] = []
        visited: set[UUID] = {root.id}
        frontier = deque([(root.personal_referral_code, root.email, 1)])

        while frontier:
            code, path, level = frontier.popleft()
            if level > self.max_depth:
                logger.warning(f"Attribution depth limit {self.max_depth} reached below {root.email}; truncating")
                continue

            children = sorted(
                self.storage.select("entities", referral_code_used=code),
                key=lambda e: (e["created_at"], str(e["id"])),
            )
            for child in children:
                if child["id"] in visited:
                    logger.warning(f"Attribution cycle at {child['email']} under code {code}; skipping")
                    continue
                visited.add(child["id"])
                child_path = f"{path} → {child['email']}"
                results.append(AttributedDescendant(
                    entity_id=child["id"],
                    kind=child["kind"],
                    email=child["email"],
                    level=level,
                    path=child_path,
                    referral_code_used=child["referral_code_used"],
                ))
                frontier.append((child["personal_referral_code"], child_path, level + 1))

        return results

    def resolve_referrer_chain(self, entity_id: UUID, max_levels: Optional[int] = None) -> list[ReferrerLink]:
        """Immediate referrer first, then upward until an unattributed root."""
        row = self.storage.get("entities", entity_id)
        if row is None:
            raise EntityNotFoundError(f"Entity {entity_id} not found")

        limit = min(max_levels or self.max_depth, self.max_depth)
        visited: set[UUID] = {entity_id}
        chain: list[ReferrerLink] = []
        code = row["referral_code_used"]

        while code and len(chain) < limit:
            owner = self.find_code_owner(code)
            if owner is None:
                logger.warning(f"Referral code {code} used by {row['email']} has no owner; treating as unattributed")
                break
            if owner.id in visited:
                logger.warning(f"Attribution cycle detected at {owner.email}; truncating chain for {entity_id}")
                break
            visited.add(owner.id)
            chain.append(ReferrerLink(
                entity_id=owner.id,
                kind=owner.kind,
                email=owner.email,
                code=code,
                level=len(chain) + 1,
            ))
            row = owner.model_dump()
            code = owner.referral_code_used

        return chain

    def immediate_referrer(self, entity_id: UUID) -> Optional[ReferrerLink]:
        chain = self.resolve_referrer_chain(entity_id, max_levels=1)
        return chain[0] if chain else None

    def would_create_cycle(self, referee_id: UUID, referrer_id: UUID) -> bool:
        if referee_id == referrer_id:
            return True
        return any(link.entity_id == referee_id for link in self.resolve_referrer_chain(referrer_id))

    def attribution_report(self, referrer_id: UUID) -> AttributionReport:
        row = self.storage.get("entities", referrer_id)
        if row is None:
            raise EntityNotFoundError(f"Referrer {referrer_id} not found")

        descendants = self.resolve_attributed_descendants(row["personal_referral_code"])
        emails = {d.email.lower() for d in descendants}
        paid_orders = [
            o for o in self.storage.select("orders", payment_status=PaymentStatus.PAID)
            if o["customer_email"].lower() in emails
        ]

        by_email: dict[str, list[dict]] = {}
        for order in paid_orders:
            by_email.setdefault(order["customer_email"].lower(), []).append(order)

        levels: dict[int, LevelSummary] = {}
        customers = []
        for d in descendants:
            orders = by_email.get(d.email.lower(), [])
            revenue = sum(o["subtotal_minor"] for o in orders)
            summary = levels.setdefault(d.level, LevelSummary(level=d.level, customers=0, orders=0, revenue_minor=0))
            summary.customers += 1
            summary.orders += len(orders)
            summary.revenue_minor += revenue
            customers.append(AttributedCustomerSummary(
                **d.model_dump(), order_count=len(orders), total_revenue_minor=revenue,
            ))

        return AttributionReport(
            referrer_id=referrer_id,
            total_attributed_customers=len(descendants),
            total_attributed_orders=len(paid_orders),
            total_attributed_revenue_minor=sum(o["subtotal_minor"] for o in paid_orders),
            by_level=sorted(levels.values(), key=lambda s: s.level),
            customers=customers,
        )
