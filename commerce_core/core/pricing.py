"""
Order pricing in integer minor units.

Discount, tax and shipping are separate policies injected into the
PricingEngine. The engine distributes the order discount across lines by the
largest-remainder method and computes tax per line, so line totals always sum
to the order's subtotal - discount + tax.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from sqlalchemy import inspect

from ..database.models import Order
from .exceptions import TotalsInvariantViolation, ValidationError

BPS = 10000


@dataclass(frozen=True)
class OrderLineInput:
    """A line of an order draft, with the product snapshot taken at checkout."""

    variant_id: str
    location_id: str
    quantity: int
    price: int
    product_title: str
    product_id: Optional[str] = None
    product_handle: Optional[str] = None
    variant_title: Optional[str] = None
    sku: Optional[str] = None

    @property
    def subtotal(self) -> int:
        return self.price * self.quantity


@dataclass(frozen=True)
class PricedLine:
    line: OrderLineInput
    subtotal: int
    discount_amount: int
    tax_amount: int

    @property
    def total(self) -> int:
        return self.subtotal - self.discount_amount + self.tax_amount


@dataclass(frozen=True)
class OrderTotals:
    lines: List[PricedLine]
    subtotal: int
    discount: int
    tax: int
    shipping: int

    @property
    def total(self) -> int:
        return self.subtotal - self.discount + self.tax + self.shipping


def round_half_up(numerator: int, denominator: int) -> int:
    """Integer division rounding .5 away from zero (inputs are non-negative)."""
    return (2 * numerator + denominator) // (2 * denominator)


def allocate(amount: int, weights: Sequence[int]) -> List[int]:
    """
    Split amount across weights by the largest-remainder method.

    The parts always sum to amount; ties go to the earlier weight.
    """
    total_weight = sum(weights)
    if amount == 0 or total_weight == 0:
        return [0] * len(weights)

    shares = [amount * weight // total_weight for weight in weights]
    remainders = [amount * weight % total_weight for weight in weights]
    leftover = amount - sum(shares)
    for index in sorted(range(len(weights)), key=lambda i: (-remainders[i], i))[:leftover]:
        shares[index] += 1
    return shares


class DiscountPolicy(ABC):
    @abstractmethod
    def discount_for(self, subtotal: int, codes: Sequence[str]) -> int:
        """Order-level discount for the given codes."""


class TaxPolicy(ABC):
    @abstractmethod
    def tax_for(self, taxable_amount: int) -> int:
        """Tax on a line's post-discount amount."""


class ShippingPolicy(ABC):
    @abstractmethod
    def rate_for(self, method: Optional[str]) -> int:
        """Shipping charge for a method."""


@dataclass(frozen=True)
class DiscountRule:
    """percentage values are basis points; fixed values are minor units."""

    kind: str
    value: int
    minimum_subtotal: int = 0


class CodeTableDiscount(DiscountPolicy):
    """Discount codes looked up in a static table; unknown codes are rejected."""

    def __init__(self, rules: Optional[Dict[str, DiscountRule]] = None):
        self.rules = {code.upper(): rule for code, rule in (rules or {}).items()}

    def discount_for(self, subtotal: int, codes: Sequence[str]) -> int:
        discount = 0
        for code in codes:
            rule = self.rules.get(code.upper())
            if rule is None:
                raise ValidationError(f"Unknown discount code: {code}", code=code)
            if subtotal < rule.minimum_subtotal:
                raise ValidationError(
                    f"Discount code {code} requires a subtotal of {rule.minimum_subtotal}",
                    code=code,
                    minimum_subtotal=rule.minimum_subtotal,
                )
            if rule.kind == "percentage":
                discount += subtotal * rule.value // BPS
            elif rule.kind == "fixed":
                discount += rule.value
            else:
                raise ValidationError(f"Unsupported discount kind: {rule.kind}", code=code)
        return min(discount, subtotal)


class FlatRateTax(TaxPolicy):
    def __init__(self, rate_bps: int):
        self.rate_bps = rate_bps

    def tax_for(self, taxable_amount: int) -> int:
        return round_half_up(taxable_amount * self.rate_bps, BPS)


class FlatTableShipping(ShippingPolicy):
    def __init__(self, rates: Dict[str, int]):
        self.rates = dict(rates)

    def rate_for(self, method: Optional[str]) -> int:
        if method is None:
            return 0
        if method not in self.rates:
            raise ValidationError(
                f"Unknown shipping method: {method}",
                shipping_method=method,
                available=sorted(self.rates),
            )
        return self.rates[method]


class PricingEngine:
    """Computes the five monetary fields of an order from its lines."""

    def __init__(
        self, discounts: DiscountPolicy, tax: TaxPolicy, shipping: ShippingPolicy
    ):
        self.discounts = discounts
        self.tax = tax
        self.shipping = shipping

    def price(
        self,
        lines: Sequence[OrderLineInput],
        discount_codes: Sequence[str] = (),
        shipping_method: Optional[str] = None,
    ) -> OrderTotals:
        """
        Raises:
            ValidationError: For an empty order, non-positive quantities,
                negative prices, unknown codes or shipping methods
        """
        if not lines:
            raise ValidationError("An order needs at least one line item")
        for line in lines:
            if line.quantity <= 0:
                raise ValidationError(
                    "Line quantity must be positive",
                    variant_id=line.variant_id,
                    quantity=line.quantity,
                )
            if line.price < 0:
                raise ValidationError(
                    "Line price cannot be negative", variant_id=line.variant_id, price=line.price
                )

        subtotals = [line.subtotal for line in lines]
        subtotal = sum(subtotals)
        discount = self.discounts.discount_for(subtotal, discount_codes)
        line_discounts = allocate(discount, subtotals)

        priced = [
            PricedLine(
                line=line,
                subtotal=line_subtotal,
                discount_amount=line_discount,
                tax_amount=self.tax.tax_for(line_subtotal - line_discount),
            )
            for line, line_subtotal, line_discount in zip(lines, subtotals, line_discounts)
        ]
        return OrderTotals(
            lines=priced,
            subtotal=subtotal,
            discount=discount,
            tax=sum(p.tax_amount for p in priced),
            shipping=self.shipping.rate_for(shipping_method),
        )


def assert_totals(order: Order) -> None:
    """
    Check total = subtotal - discount + tax + shipping and that the lines agree.

    Raises:
        TotalsInvariantViolation: If any of the sums disagree
    """
    expected = (
        order.subtotal_amount - order.discount_amount + order.tax_amount + order.shipping_amount
    )
    problems = []
    if order.total_amount != expected:
        problems.append(f"total {order.total_amount} != {expected}")
    if "items" not in inspect(order).unloaded:
        if sum(item.subtotal for item in order.items) != order.subtotal_amount:
            problems.append("line subtotals do not sum to the order subtotal")
        if sum(item.discount_amount for item in order.items) != order.discount_amount:
            problems.append("line discounts do not sum to the order discount")
        if sum(item.tax_amount for item in order.items) != order.tax_amount:
            problems.append("line taxes do not sum to the order tax")
    if problems:
        raise TotalsInvariantViolation(
            f"Order {order.order_number} totals are inconsistent: {'; '.join(problems)}",
            order_id=str(order.id),
            order_number=order.order_number,
            problems=problems,
        )
