"""
Unit Tests for the Commission Rate Engine
"""

from decimal import Decimal

from commissions.models import CommissionType, RecipientKind
from commissions.rates import RatePolicy, amount_for_rate, determine_rate


class TestDetermineRate:
    """Rate and discount decisions by order position and referrer kind."""

    def test_first_partner_order_is_initial(self):
        decision = determine_rate(True, RecipientKind.PARTNER)

        assert decision.commission_type == CommissionType.INITIAL
        assert decision.commission_rate == Decimal("20.00")
        assert decision.discount_percent == Decimal("20.00")
        assert decision.is_initial

    def test_repeat_partner_order_is_lifetime(self):
        decision = determine_rate(False, RecipientKind.PARTNER)

        assert decision.commission_type == CommissionType.LIFETIME
        assert decision.commission_rate == Decimal("5.00")
        assert decision.discount_percent == Decimal("0")
        assert not decision.is_initial

    def test_influencer_follows_partner_rates(self):
        assert determine_rate(True, RecipientKind.INFLUENCER).commission_type == CommissionType.INITIAL
        assert determine_rate(False, RecipientKind.INFLUENCER).commission_rate == Decimal("5.00")

    def test_customer_referrer_earns_credit(self):
        first = determine_rate(True, RecipientKind.CUSTOMER)
        repeat = determine_rate(False, RecipientKind.CUSTOMER)

        assert first.commission_type == CommissionType.CUSTOMER_CREDIT
        assert first.commission_rate == Decimal("10.00")
        assert first.discount_percent == Decimal("20.00")
        assert repeat.commission_type == CommissionType.CUSTOMER_CREDIT
        assert repeat.discount_percent == Decimal("0")

    def test_no_referrer_means_no_entry(self):
        decision = determine_rate(True, None)

        assert decision.commission_rate == Decimal("0")
        assert decision.commission_type is None
        assert not decision.creates_entry

    def test_referrer_overrides_replace_defaults(self):
        policy = RatePolicy.from_settings().with_overrides(initial=Decimal("15.00"))

        assert determine_rate(True, RecipientKind.PARTNER, policy).commission_rate == Decimal("15.00")
        assert determine_rate(False, RecipientKind.PARTNER, policy).commission_rate == Decimal("5.00")


class TestAmountForRate:
    """Minor-unit amounts use round-half-up."""

    def test_whole_amounts(self):
        assert amount_for_rate(10000, Decimal("20.00")) == 2000
        assert amount_for_rate(5000, Decimal("5.00")) == 250

    def test_half_rounds_up(self):
        assert amount_for_rate(25, Decimal("10")) == 3
        assert amount_for_rate(15, Decimal("10")) == 2
        assert amount_for_rate(14, Decimal("10")) == 1

    def test_no_float_drift_across_many_orders(self):
        # 1999 * 5% = 99.95 -> 100 every time
        total = sum(amount_for_rate(1999, Decimal("5.00")) for _ in range(10000))
        assert total == 1000000

    def test_zero_rate(self):
        assert amount_for_rate(10000, Decimal("0")) == 0
