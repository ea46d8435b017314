"""
Referral Attribution and Commission Ledger

This package provides:
- Referral graph resolution (partner -> customer -> customer ...)
- Initial vs lifetime commission rates and first-order discounts
- Idempotent commission posting keyed on (recipient, order, type)
- Customer credit balances with FIFO redemption
- Reconciliation of paid orders that missed their ledger postings
"""

from .models import (
    CommissionLedgerEntry,
    CommissionStatus,
    CommissionType,
    CreditStatus,
    CustomerCredit,
    RecipientKind,
    ReferralRecord,
    ReferralStatus,
)
from .attribution import AttributionResolver
from .credits import CreditAccountant
from .orders import OrderCommissionService
from .poster import CommissionPoster
from .rates import determine_rate
from .reconciliation import ReconciliationJob
from .referrals import ReferralService
from .storage import InMemoryStorage

__all__ = [
    "CommissionLedgerEntry",
    "CommissionStatus",
    "CommissionType",
    "CreditStatus",
    "CustomerCredit",
    "RecipientKind",
    "ReferralRecord",
    "ReferralStatus",
    "AttributionResolver",
    "CreditAccountant",
    "OrderCommissionService",
    "CommissionPoster",
    "determine_rate",
    "ReconciliationJob",
    "ReferralService",
    "InMemoryStorage",
]
