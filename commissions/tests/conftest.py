import itertools
from datetime import datetime, timedelta, timezone

import pytest

from commissions.credits import CreditAccountant
from commissions.models import PaymentStatus, RecipientKind
from commissions.orders import OrderCommissionService
from commissions.poster import CommissionPoster
from commissions.reconciliation import ReconciliationJob
from commissions.referrals import ReferralService
from commissions.storage import InMemoryStorage

PARTNER_CODE = "ABC12345"


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def referrals(storage):
    return ReferralService(storage)


@pytest.fixture
def poster(storage):
    return CommissionPoster(storage)


@pytest.fixture
def credits(storage):
    return CreditAccountant(storage)


@pytest.fixture
def orders(storage, referrals, poster):
    return OrderCommissionService(storage, referrals, poster)


@pytest.fixture
def job(storage, orders, credits):
    return ReconciliationJob(storage, orders, credits)


@pytest.fixture
def partner(referrals):
    return referrals.register_referrer(
        RecipientKind.PARTNER, "partner@example.com", name="Paws Studio", personal_code=PARTNER_CODE,
    )


@pytest.fixture
def customer(referrals):
    """Factory for customer accounts, optionally signed up with a referral code."""
    def _create(email, code=None):
        entity = referrals.register_referrer(RecipientKind.CUSTOMER, email, name=email.split("@")[0])
        if code:
            referrals.accept(code, entity.id)
        return referrals.get_entity(entity.id)
    return _create


@pytest.fixture
def paid_order(orders):
    """Factory for paid orders with strictly increasing creation times."""
    clock = itertools.count(1)
    base = datetime.now(timezone.utc)

    def _create(email, subtotal_minor, discount_minor=0, shipping_minor=0, created_at=None):
        return orders.record_order(
            email,
            subtotal_minor,
            discount_minor=discount_minor,
            shipping_minor=shipping_minor,
            payment_status=PaymentStatus.PAID,
            created_at=created_at or base + timedelta(minutes=next(clock)),
        )
    return _create
