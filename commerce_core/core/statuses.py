"""
Exhaustive transition tables for every status axis.

A transition that is not listed is rejected with IllegalTransition;
writing the current value again is a no-op.
"""
from enum import Enum
from typing import Dict, FrozenSet, Mapping, Type, TypeVar

from ..database.enums import (
    FinancialStatus,
    FulfillmentStatus,
    OrderPaymentStatus,
    OrderStatus,
    PaymentStatus,
    StatusType,
)
from .exceptions import IllegalTransition

E = TypeVar("E", bound=Enum)

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
    ),
    OrderStatus.PROCESSING: frozenset(
        {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
    ),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.REFUNDED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.REFUNDED: frozenset(),
}

ORDER_PAYMENT_TRANSITIONS: Dict[OrderPaymentStatus, FrozenSet[OrderPaymentStatus]] = {
    OrderPaymentStatus.PENDING: frozenset(
        {OrderPaymentStatus.AUTHORIZED, OrderPaymentStatus.FAILED, OrderPaymentStatus.CANCELLED}
    ),
    OrderPaymentStatus.AUTHORIZED: frozenset(
        {OrderPaymentStatus.PAID, OrderPaymentStatus.FAILED, OrderPaymentStatus.CANCELLED}
    ),
    OrderPaymentStatus.PAID: frozenset(
        {OrderPaymentStatus.PARTIALLY_REFUNDED, OrderPaymentStatus.REFUNDED}
    ),
    OrderPaymentStatus.PARTIALLY_REFUNDED: frozenset({OrderPaymentStatus.REFUNDED}),
    OrderPaymentStatus.REFUNDED: frozenset(),
    # a retried payment, or a new payment after a void, authorizes again
    OrderPaymentStatus.FAILED: frozenset({OrderPaymentStatus.AUTHORIZED}),
    OrderPaymentStatus.CANCELLED: frozenset({OrderPaymentStatus.AUTHORIZED}),
}

FULFILLMENT_TRANSITIONS: Dict[FulfillmentStatus, FrozenSet[FulfillmentStatus]] = {
    FulfillmentStatus.UNFULFILLED: frozenset(
        {FulfillmentStatus.PARTIAL, FulfillmentStatus.FULFILLED, FulfillmentStatus.CANCELLED}
    ),
    FulfillmentStatus.PARTIAL: frozenset(
        {FulfillmentStatus.FULFILLED, FulfillmentStatus.CANCELLED}
    ),
    FulfillmentStatus.FULFILLED: frozenset({FulfillmentStatus.CANCELLED}),
    FulfillmentStatus.CANCELLED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.AUTHORIZED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.AUTHORIZED: frozenset(
        {PaymentStatus.CAPTURED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.CAPTURED: frozenset(
        {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}
    ),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}

AXES: Mapping[StatusType, tuple] = {
    StatusType.ORDER: (OrderStatus, ORDER_TRANSITIONS, "status"),
    StatusType.PAYMENT: (OrderPaymentStatus, ORDER_PAYMENT_TRANSITIONS, "payment_status"),
    StatusType.FULFILLMENT: (FulfillmentStatus, FULFILLMENT_TRANSITIONS, "fulfillment_status"),
}

FINANCIAL_STATUS_BY_PAYMENT_STATUS: Dict[OrderPaymentStatus, FinancialStatus] = {
    OrderPaymentStatus.PENDING: FinancialStatus.PENDING,
    OrderPaymentStatus.AUTHORIZED: FinancialStatus.AUTHORIZED,
    OrderPaymentStatus.PAID: FinancialStatus.PAID,
    OrderPaymentStatus.PARTIALLY_REFUNDED: FinancialStatus.PARTIALLY_REFUNDED,
    OrderPaymentStatus.REFUNDED: FinancialStatus.REFUNDED,
    OrderPaymentStatus.FAILED: FinancialStatus.PENDING,
    OrderPaymentStatus.CANCELLED: FinancialStatus.VOIDED,
}


def _coerce(enum_cls: Type[E], value: object, axis: str) -> E:
    try:
        return enum_cls(value)
    except ValueError:
        raise IllegalTransition(f"Unknown {axis} status: {value!r}", axis=axis, status=value)


def is_allowed(table: Mapping[E, FrozenSet[E]], current: E, target: E) -> bool:
    return target == current or target in table[current]


def assert_transition(
    enum_cls: Type[E],
    table: Mapping[E, FrozenSet[E]],
    current: object,
    target: object,
    axis: str,
) -> E:
    """
    Validate a transition and return the target as an enum member.

    Raises:
        IllegalTransition: If either status is unknown or the move is not in the table
    """
    current_status = _coerce(enum_cls, current, axis)
    target_status = _coerce(enum_cls, target, axis)
    if not is_allowed(table, current_status, target_status):
        raise IllegalTransition(
            f"Cannot move {axis} from {current_status.value} to {target_status.value}",
            axis=axis,
            from_status=current_status.value,
            to_status=target_status.value,
        )
    return target_status


def assert_payment_transition(current: object, target: object) -> PaymentStatus:
    return assert_transition(PaymentStatus, PAYMENT_TRANSITIONS, current, target, "payment")


def derive_financial_status(payment_status: object) -> FinancialStatus:
    return FINANCIAL_STATUS_BY_PAYMENT_STATUS[OrderPaymentStatus(payment_status)]
