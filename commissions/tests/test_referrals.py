"""
Unit Tests for the referral record lifecycle
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from commissions.errors import (
    AttributionCycleError,
    DuplicateKeyError,
    InvalidStateTransitionError,
    ReferralExpiredError,
    ReferralNotFoundError,
)
from commissions.models import RecipientKind, ReferralStatus

PARTNER_CODE = "ABC12345"


class TestIssueAndAccess:
    def test_issue_code(self, referrals, partner):
        record = referrals.issue_code(partner.id, "Friend@Example.com")

        assert record.status == ReferralStatus.INVITED
        assert record.code.startswith("P")
        assert len(record.code) == 8
        assert record.referee_email == "friend@example.com"
        assert record.expires_at > record.created_at

    def test_codes_are_unique(self, referrals, partner):
        codes = {referrals.issue_code(partner.id).code for _ in range(50)}
        assert len(codes) == 50
        assert PARTNER_CODE not in codes

    def test_track_access(self, referrals, partner):
        record = referrals.issue_code(partner.id)

        accessed = referrals.track_access(record.code)
        again = referrals.track_access(record.code)

        assert accessed.status == ReferralStatus.ACCESSED
        assert again.status == ReferralStatus.ACCESSED
        assert again.accessed_at == accessed.accessed_at

    def test_access_never_moves_backward(self, referrals, partner, customer):
        record = referrals.issue_code(partner.id)
        customer("friend@example.com", record.code)

        assert referrals.track_access(record.code).status == ReferralStatus.ACCEPTED

    def test_unknown_code(self, referrals):
        with pytest.raises(ReferralNotFoundError):
            referrals.verify_code("NOPE0000")

    def test_duplicate_personal_code_rejected(self, referrals, partner):
        with pytest.raises(DuplicateKeyError):
            referrals.register_referrer(RecipientKind.PARTNER, "other@example.com", personal_code=PARTNER_CODE)


class TestAccept:
    def test_accept_issued_code(self, referrals, partner, customer):
        record = referrals.issue_code(partner.id, "friend@example.com")
        friend = customer("friend@example.com")

        accepted = referrals.accept(record.code, friend.id)

        assert accepted.id == record.id
        assert accepted.status == ReferralStatus.ACCEPTED
        assert accepted.referee_id == friend.id
        # Back-reference always points at the personal code.
        assert referrals.get_entity(friend.id).referral_code_used == PARTNER_CODE

    def test_accept_personal_code_creates_record(self, referrals, partner, customer):
        friend = customer("friend@example.com")

        record = referrals.accept(PARTNER_CODE.lower(), friend.id)

        assert record.status == ReferralStatus.ACCEPTED
        assert record.referrer_id == partner.id
        assert record.referrer_kind == RecipientKind.PARTNER

    def test_cannot_be_referred_twice(self, referrals, partner, customer):
        friend = customer("friend@example.com", PARTNER_CODE)
        other = referrals.register_referrer(RecipientKind.PARTNER, "other@example.com")

        with pytest.raises(InvalidStateTransitionError):
            referrals.accept(other.personal_referral_code, friend.id)

    def test_self_referral_rejected(self, referrals, customer):
        me = customer("me@example.com")

        with pytest.raises(AttributionCycleError):
            referrals.accept(me.personal_referral_code, me.id)

    def test_cycle_rejected(self, referrals, customer):
        c1 = customer("c1@example.com")
        c2 = customer("c2@example.com", c1.personal_referral_code)

        with pytest.raises(AttributionCycleError):
            referrals.accept(c2.personal_referral_code, c1.id)
        assert referrals.get_entity(c1.id).referral_code_used is None

    def test_issued_to_other_email(self, referrals, partner, customer):
        record = referrals.issue_code(partner.id, "someone@example.com")
        friend = customer("friend@example.com")

        with pytest.raises(InvalidStateTransitionError):
            referrals.accept(record.code, friend.id)
        assert referrals.get_record(record.id).status == ReferralStatus.INVITED
        assert referrals.get_entity(friend.id).referral_code_used is None


class TestApplyAndExpire:
    def test_apply_links_order(self, referrals, partner, customer):
        friend = customer("friend@example.com")
        record = referrals.accept(PARTNER_CODE, friend.id)
        order_id = uuid4()

        applied = referrals.apply(record.id, order_id, Decimal("20.00"), 2000)

        assert applied.status == ReferralStatus.APPLIED
        assert applied.order_id == order_id
        assert applied.discount_amount_minor == 2000

    def test_applied_record_is_immutable(self, referrals, partner, customer):
        friend = customer("friend@example.com")
        record = referrals.accept(PARTNER_CODE, friend.id)
        first_order = uuid4()
        referrals.apply(record.id, first_order, Decimal("20.00"), 2000)

        again = referrals.apply(record.id, uuid4(), Decimal("5.00"), 0)

        assert again.order_id == first_order
        assert again.commission_rate == Decimal("20.00")

    def test_cannot_apply_invited_record(self, referrals, partner):
        record = referrals.issue_code(partner.id)

        with pytest.raises(InvalidStateTransitionError):
            referrals.apply(record.id, uuid4(), Decimal("20.00"), 2000)

    def test_expired_code_rejected(self, referrals, partner, customer):
        issued_at = datetime.now(timezone.utc) - timedelta(days=10)
        record = referrals.issue_code(partner.id, expires_in_days=1, now=issued_at)
        friend = customer("friend@example.com")

        with pytest.raises(ReferralExpiredError):
            referrals.accept(record.code, friend.id)
        assert referrals.get_record(record.id).status == ReferralStatus.EXPIRED

    def test_expiry_is_terminal(self, referrals, partner):
        issued_at = datetime.now(timezone.utc) - timedelta(days=10)
        record = referrals.issue_code(partner.id, expires_in_days=1, now=issued_at)
        referrals.expire_stale()

        with pytest.raises(ReferralExpiredError):
            referrals.track_access(record.code)

    def test_expire_stale_skips_applied(self, referrals, partner, customer):
        long_ago = datetime.now(timezone.utc) - timedelta(days=200)
        stale = referrals.issue_code(partner.id, now=long_ago)
        friend = customer("friend@example.com")
        record = referrals.accept(PARTNER_CODE, friend.id, now=long_ago)
        referrals.apply(record.id, uuid4(), Decimal("20.00"), 2000)

        expired = referrals.expire_stale()

        assert [r.id for r in expired] == [stale.id]
        assert referrals.get_record(record.id).status == ReferralStatus.APPLIED
