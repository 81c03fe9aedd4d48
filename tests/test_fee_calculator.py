"""
Fee, refund and invoice tax calculations
"""

from decimal import Decimal

import pytest

from utils.fee_calculator import (
    FeeCalculator, FixedAmount, Percentage, calculate_invoice_totals, tax_spec_from_dict,
)


class TestSellerPayout:
    """Seller receives subtotal × (1 − fee rate), rounded half up"""

    def test_standard_rate(self):
        assert FeeCalculator.calculate_seller_payout(Decimal("500.00"), Decimal("0.08")) == Decimal("460.00")

    def test_rounding_half_up(self):
        # 10.05 × 0.92 = 9.246
        assert FeeCalculator.calculate_seller_payout(Decimal("10.05"), Decimal("0.08")) == Decimal("9.25")

    def test_zero_rate(self):
        assert FeeCalculator.calculate_seller_payout(Decimal("99.99"), Decimal("0")) == Decimal("99.99")

    def test_rate_from_config(self):
        assert FeeCalculator.get_seller_fee_rate() == Decimal("0.08")

    @pytest.mark.parametrize("rate", ["1", "-0.01", "1.5"])
    def test_invalid_rate_override(self, rate):
        with pytest.raises(ValueError):
            FeeCalculator.get_seller_fee_rate(rate)


class TestBuyerCharges:
    def test_no_buyer_fee_by_default(self):
        assert FeeCalculator.calculate_buyer_fee(Decimal("500.00")) == Decimal("0.00")

    def test_charge_amount(self):
        assert FeeCalculator.calculate_charge_amount(Decimal("500.00"), Decimal("12.50")) == Decimal("512.50")


class TestRefunds:
    """Buyer-favored resolution refunds the unreleased part plus the buyer fee"""

    def test_full_refund(self):
        assert FeeCalculator.calculate_refund_amount(Decimal("500.00"), Decimal("0")) == Decimal("500.00")

    def test_partial_after_milestone(self):
        refund = FeeCalculator.calculate_refund_amount(Decimal("500"), Decimal("5"), Decimal("300"))
        assert refund == Decimal("205.00")

    def test_over_released(self):
        with pytest.raises(ValueError):
            FeeCalculator.calculate_refund_amount(Decimal("100"), Decimal("0"), Decimal("100.01"))


class TestInvoiceTax:
    """Tax is either a percentage or a fixed amount, never both"""

    def test_percentage(self):
        totals = calculate_invoice_totals([Decimal("100"), Decimal("50")], Percentage(Decimal("0.2")))
        assert totals.subtotal == Decimal("150.00")
        assert totals.tax == Decimal("30.00")
        assert totals.total == Decimal("180.00")

    def test_fixed_amount(self):
        totals = calculate_invoice_totals([Decimal("20")], FixedAmount(Decimal("7.5")))
        assert totals.tax == Decimal("7.50")
        assert totals.total == Decimal("27.50")

    def test_no_tax(self):
        totals = calculate_invoice_totals(["19.99", "0.01"])
        assert totals.tax == Decimal("0.00")
        assert totals.total == Decimal("20.00")

    def test_parse_tax_spec(self):
        assert tax_spec_from_dict({"kind": "percentage", "rate": "0.2"}) == Percentage(Decimal("0.2"))
        assert tax_spec_from_dict({"kind": "FIXED", "amount": 7.5}) == FixedAmount(Decimal("7.5"))
        assert tax_spec_from_dict(None) is None

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            tax_spec_from_dict({"kind": "vat"})
