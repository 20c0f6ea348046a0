"""
Append-only order status history.

Every write to one of an order's status axes goes through
StatusHistoryRecorder.transition, which validates the move, writes the field
and appends exactly one OrderStatusHistory row in the caller's transaction.
"""
import uuid
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.enums import StatusType
from ..database.models import Order, OrderStatusHistory
from .statuses import AXES, assert_transition, derive_financial_status

logger = structlog.get_logger(__name__)


class StatusHistoryRecorder:
    """Validates status writes and records them in order_status_history."""

    async def transition(
        self,
        session: AsyncSession,
        order: Order,
        status_type: StatusType,
        to_status: object,
        actor: Optional[str],
        notes: Optional[str] = None,
        is_public: bool = False,
    ) -> Optional[str]:
        """
        Move one status axis of an order.

        Args:
            session: Session holding the caller's transaction
            order: Order being mutated (should be locked by the caller)
            status_type: Axis to write
            to_status: Target status (enum member or persisted string)
            actor: Who made the change
            notes: Free-form note stored with the history row
            is_public: Whether the row is visible to the customer

        Returns:
            Optional[str]: The previous status, or None if nothing changed

        Raises:
            IllegalTransition: If the move is not in the axis' transition table
        """
        enum_cls, table, field_name = AXES[status_type]
        current = getattr(order, field_name)
        target = assert_transition(enum_cls, table, current, to_status, status_type.value)
        if target.value == current:
            return None

        setattr(order, field_name, target.value)
        if status_type is StatusType.PAYMENT:
            order.financial_status = derive_financial_status(target.value).value

        session.add(
            OrderStatusHistory(
                order_id=order.id,
                from_status=current,
                to_status=target.value,
                status_type=status_type.value,
                notes=notes,
                is_public=is_public,
                changed_by=actor,
            )
        )

        logger.info(
            "order_status_changed",
            order_id=str(order.id),
            status_type=status_type.value,
            from_status=current,
            to_status=target.value,
            actor=actor,
        )
        return current

    def record_initial(self, session: AsyncSession, order: Order, actor: Optional[str]) -> None:
        """Record the starting value of every axis for a newly created order."""
        for status_type, (_, _, field_name) in AXES.items():
            session.add(
                OrderStatusHistory(
                    order_id=order.id,
                    from_status=None,
                    to_status=getattr(order, field_name),
                    status_type=status_type.value,
                    notes="Order created",
                    is_public=status_type is StatusType.ORDER,
                    changed_by=actor,
                )
            )

    async def list_for_order(
        self, session: AsyncSession, order_id: uuid.UUID, public_only: bool = False
    ) -> List[OrderStatusHistory]:
        stmt = (
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.id)
        )
        if public_only:
            stmt = stmt.where(OrderStatusHistory.is_public.is_(True))
        result = await session.execute(stmt)
        return list(result.scalars().all())
