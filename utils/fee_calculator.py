"""Fee, payout and refund calculations for rift transactions"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Union
from config import Config
from utils.helpers import to_decimal

logger = logging.getLogger(__name__)


class FeeCalculator:
    """Handles all fee-related calculations with mathematical precision"""

    USD_PRECISION = Decimal("0.01")

    @classmethod
    def quantize(cls, amount: Decimal) -> Decimal:
        return to_decimal(amount).quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def get_seller_fee_rate(cls, override: Optional[Union[str, Decimal]] = None) -> Decimal:
        """Seller fee rate as a fraction (0.08 = 8%)"""
        rate = to_decimal(override, "seller_fee_rate") if override is not None else Config.SELLER_FEE_RATE
        if rate < 0 or rate >= 1:
            raise ValueError(f"seller_fee_rate must be in [0, 1), got {rate}")
        return rate

    @classmethod
    def calculate_buyer_fee(cls, subtotal: Decimal) -> Decimal:
        """Buyer-side processing fee charged on top of the subtotal"""
        return cls.quantize(to_decimal(subtotal) * Config.BUYER_FEE_RATE)

    @classmethod
    def calculate_seller_payout(cls, amount: Decimal, seller_fee_rate: Decimal) -> Decimal:
        """Net amount credited to the seller: ``amount × (1 − seller_fee_rate)``"""
        payout = cls.quantize(to_decimal(amount) * (Decimal("1") - to_decimal(seller_fee_rate)))
        logger.debug(f"Seller payout for {amount} at rate {seller_fee_rate}: {payout}")
        return payout

    @classmethod
    def calculate_charge_amount(cls, subtotal: Decimal, buyer_fee: Decimal) -> Decimal:
        """Total the buyer is charged at pay time"""
        return cls.quantize(to_decimal(subtotal) + to_decimal(buyer_fee))

    @classmethod
    def calculate_refund_amount(
        cls, subtotal: Decimal, buyer_fee: Decimal, released_amount: Decimal = Decimal("0")
    ) -> Decimal:
        """
        Refund owed to the buyer on a buyer-favored resolution.

        Only the unreleased part of the subtotal is refundable; milestones
        already paid to the seller stay with the seller. The buyer fee is
        returned in full.
        """
        unreleased = to_decimal(subtotal) - to_decimal(released_amount)
        if unreleased < 0:
            raise ValueError("released amount exceeds subtotal")
        return cls.quantize(unreleased + to_decimal(buyer_fee))


# ============================================================================
# INVOICE TAX - tagged choice instead of two nullable numbers
# ============================================================================

@dataclass(frozen=True)
class Percentage:
    """Tax as a fraction of the taxable amount (0.2 = 20%)"""
    rate: Decimal

    def tax_on(self, taxable: Decimal) -> Decimal:
        return FeeCalculator.quantize(taxable * to_decimal(self.rate))


@dataclass(frozen=True)
class FixedAmount:
    """Tax as a flat amount regardless of the invoice total"""
    amount: Decimal

    def tax_on(self, taxable: Decimal) -> Decimal:
        return FeeCalculator.quantize(to_decimal(self.amount))


TaxSpec = Union[Percentage, FixedAmount]


def tax_spec_from_dict(data: Optional[dict]) -> Optional[TaxSpec]:
    """Parse ``{"kind": "percentage", "rate": ...}`` or ``{"kind": "fixed", "amount": ...}``"""
    if not data:
        return None
    kind = str(data.get("kind", "")).lower()
    if kind == "percentage":
        return Percentage(rate=to_decimal(data.get("rate"), "rate"))
    if kind == "fixed":
        return FixedAmount(amount=to_decimal(data.get("amount"), "amount"))
    raise ValueError(f"Unknown tax kind: {data.get('kind')!r}")


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    tax: Decimal
    total: Decimal


def calculate_invoice_totals(line_amounts: Iterable[Decimal], tax: Optional[TaxSpec] = None) -> InvoiceTotals:
    """Sum invoice line items and apply an optional tax spec"""
    subtotal = FeeCalculator.quantize(sum((to_decimal(a) for a in line_amounts), Decimal("0")))
    tax_amount = tax.tax_on(subtotal) if tax is not None else Decimal("0.00")
    return InvoiceTotals(subtotal=subtotal, tax=tax_amount, total=FeeCalculator.quantize(subtotal + tax_amount))
