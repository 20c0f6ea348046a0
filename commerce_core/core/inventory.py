"""
Inventory ledger: stock levels, reservations and adjustments per (variant, location).

Every write is a single conditional UPDATE whose WHERE clause carries the
precondition (compare-and-swap), so concurrent callers never read-then-write
and reserved_quantity can never exceed quantity. Every change of on-hand
quantity appends an InventoryAdjustment row; replaying those rows from zero
reproduces StockLevel.quantity.

All operations run inside the caller's transaction.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.enums import AdjustmentType, ReferenceType
from ..database.models import InventoryAdjustment, StockLevel, utc_now
from ..monitoring.metrics import metrics
from .exceptions import (
    ConcurrentModification,
    InsufficientStock,
    LedgerMismatch,
    NotFoundError,
    ValidationError,
)

logger = structlog.get_logger(__name__)

POSITIVE_TYPES = frozenset({AdjustmentType.RECEIVED, AdjustmentType.RETURNED})
NEGATIVE_TYPES = frozenset({AdjustmentType.SOLD, AdjustmentType.DAMAGED, AdjustmentType.LOST})


@dataclass(frozen=True)
class StockLine:
    """A quantity of one variant at one location."""

    variant_id: str
    location_id: str
    quantity: int


@dataclass(frozen=True)
class StockAdjustment:
    """One entry of a bulk adjustment."""

    variant_id: str
    location_id: str
    delta: int
    adjustment_type: AdjustmentType
    reason: Optional[str] = None


@dataclass(frozen=True)
class LedgerReconciliation:
    variant_id: str
    location_id: str
    seed: int
    ledger_sum: int
    quantity: int

    @property
    def expected_quantity(self) -> int:
        return self.seed + self.ledger_sum

    @property
    def matches(self) -> bool:
        return self.expected_quantity == self.quantity

    def to_dict(self) -> dict:
        return {
            "variant_id": self.variant_id,
            "location_id": self.location_id,
            "seed": self.seed,
            "ledger_sum": self.ledger_sum,
            "quantity": self.quantity,
            "expected_quantity": self.expected_quantity,
            "matches": self.matches,
        }


def _key(variant_id: str, location_id: str) -> tuple:
    return (StockLevel.variant_id == variant_id, StockLevel.location_id == location_id)


class InventoryLedger:
    """Stock bookkeeping with atomic conditional updates."""

    async def get_stock_level(
        self, session: AsyncSession, variant_id: str, location_id: str
    ) -> Optional[StockLevel]:
        stmt = (
            select(StockLevel)
            .where(*_key(variant_id, location_id))
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def require_stock_level(
        self, session: AsyncSession, variant_id: str, location_id: str
    ) -> StockLevel:
        stock = await self.get_stock_level(session, variant_id, location_id)
        if stock is None:
            raise NotFoundError(
                f"No stock level for variant {variant_id} at location {location_id}",
                variant_id=variant_id,
                location_id=location_id,
            )
        return stock

    async def available(self, session: AsyncSession, variant_id: str, location_id: str) -> int:
        stock = await self.require_stock_level(session, variant_id, location_id)
        return stock.available_quantity

    async def create_stock_level(
        self,
        session: AsyncSession,
        variant_id: str,
        location_id: str,
        quantity: int = 0,
        reorder_point: Optional[int] = None,
        reorder_quantity: Optional[int] = None,
        created_by: Optional[str] = None,
    ) -> StockLevel:
        """
        Create the stock row for a variant at a location.

        The opening quantity is written as a `received` adjustment so the ledger
        replays from zero.

        Raises:
            ValidationError: If the row already exists or quantity is negative
        """
        if quantity < 0:
            raise ValidationError("Opening quantity cannot be negative", quantity=quantity)

        stock = StockLevel(
            variant_id=variant_id,
            location_id=location_id,
            quantity=0,
            reserved_quantity=0,
            incoming_quantity=0,
            reorder_point=reorder_point,
            reorder_quantity=reorder_quantity,
        )
        try:
            async with session.begin_nested():
                session.add(stock)
                await session.flush()
        except IntegrityError:
            raise ValidationError(
                f"Stock level already exists for variant {variant_id} at location {location_id}",
                variant_id=variant_id,
                location_id=location_id,
            )

        if quantity > 0:
            await self.adjust(
                session,
                variant_id,
                location_id,
                quantity,
                AdjustmentType.RECEIVED,
                reason="Opening stock",
                created_by=created_by,
            )
        logger.info(
            "stock_level_created",
            variant_id=variant_id,
            location_id=location_id,
            quantity=quantity,
        )
        return await self.require_stock_level(session, variant_id, location_id)

    async def reserve(
        self, session: AsyncSession, variant_id: str, location_id: str, quantity: int
    ) -> None:
        """
        Hold stock for an open order.

        A single UPDATE ... WHERE quantity - reserved_quantity >= :quantity.
        No ledger row is written; a reservation is not a sale.

        Raises:
            ValidationError: If quantity is not positive
            InsufficientStock: If available stock is lower than requested
            NotFoundError: If the variant is not stocked at the location
        """
        if quantity <= 0:
            raise ValidationError("Reservation quantity must be positive", quantity=quantity)

        stmt = (
            update(StockLevel)
            .where(
                *_key(variant_id, location_id),
                StockLevel.quantity - StockLevel.reserved_quantity >= quantity,
            )
            .values(
                reserved_quantity=StockLevel.reserved_quantity + quantity,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount == 1:
            metrics.record_reservation("reserved")
            logger.info(
                "stock_reserved",
                variant_id=variant_id,
                location_id=location_id,
                quantity=quantity,
            )
            return

        metrics.record_reservation("insufficient")
        stock = await self.require_stock_level(session, variant_id, location_id)
        logger.warning(
            "stock_reservation_rejected",
            variant_id=variant_id,
            location_id=location_id,
            requested=quantity,
            available=stock.available_quantity,
        )
        raise InsufficientStock(
            f"Insufficient stock for variant {variant_id} at location {location_id}: "
            f"requested {quantity}, available {stock.available_quantity}",
            variant_id=variant_id,
            location_id=location_id,
            requested=quantity,
            available=stock.available_quantity,
        )

    async def reserve_many(self, session: AsyncSession, lines: Iterable[StockLine]) -> None:
        """
        Reserve several lines; all succeed or the caller's transaction rolls back.

        Lines for the same variant/location are merged and taken in a stable
        order so concurrent multi-line reservations lock rows consistently.
        """
        merged: dict = {}
        for line in lines:
            key = (line.variant_id, line.location_id)
            merged[key] = merged.get(key, 0) + line.quantity

        for (variant_id, location_id), quantity in sorted(merged.items()):
            await self.reserve(session, variant_id, location_id, quantity)

    async def commit_reservation(
        self,
        session: AsyncSession,
        variant_id: str,
        location_id: str,
        quantity: int,
        reference_id: str,
        reference_type: ReferenceType = ReferenceType.ORDER,
        created_by: Optional[str] = None,
    ) -> InventoryAdjustment:
        """
        Turn a reservation into a sale.

        Decrements both quantity and reserved_quantity and appends a `sold` row.

        Raises:
            ValidationError: If fewer units are reserved than committed
        """
        if quantity <= 0:
            raise ValidationError("Commit quantity must be positive", quantity=quantity)

        now = utc_now()
        stmt = (
            update(StockLevel)
            .where(
                *_key(variant_id, location_id),
                StockLevel.reserved_quantity >= quantity,
                StockLevel.quantity >= quantity,
            )
            .values(
                quantity=StockLevel.quantity - quantity,
                reserved_quantity=StockLevel.reserved_quantity - quantity,
                last_sold_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            stock = await self.require_stock_level(session, variant_id, location_id)
            raise ValidationError(
                f"Cannot commit {quantity} units of variant {variant_id}: "
                f"only {stock.reserved_quantity} reserved",
                variant_id=variant_id,
                location_id=location_id,
                requested=quantity,
                reserved=stock.reserved_quantity,
            )

        return self._append(
            session,
            variant_id,
            location_id,
            AdjustmentType.SOLD,
            -quantity,
            reference_type=reference_type,
            reference_id=reference_id,
            reason="Order fulfilled",
            created_by=created_by,
        )

    async def release(
        self,
        session: AsyncSession,
        variant_id: str,
        location_id: str,
        quantity: int,
        reference_id: Optional[str] = None,
        reference_type: ReferenceType = ReferenceType.ORDER,
        created_by: Optional[str] = None,
    ) -> InventoryAdjustment:
        """
        Give back reserved stock (order cancelled before fulfillment).

        Only reserved_quantity changes. The `correction` row carries a zero
        on-hand delta and notes the released units.
        """
        if quantity <= 0:
            raise ValidationError("Release quantity must be positive", quantity=quantity)

        stmt = (
            update(StockLevel)
            .where(*_key(variant_id, location_id), StockLevel.reserved_quantity >= quantity)
            .values(
                reserved_quantity=StockLevel.reserved_quantity - quantity,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            stock = await self.require_stock_level(session, variant_id, location_id)
            raise ValidationError(
                f"Cannot release {quantity} units of variant {variant_id}: "
                f"only {stock.reserved_quantity} reserved",
                variant_id=variant_id,
                location_id=location_id,
                requested=quantity,
                reserved=stock.reserved_quantity,
            )

        logger.info(
            "stock_reservation_released",
            variant_id=variant_id,
            location_id=location_id,
            quantity=quantity,
            reference_id=reference_id,
        )
        return self._append(
            session,
            variant_id,
            location_id,
            AdjustmentType.CORRECTION,
            0,
            reference_type=reference_type,
            reference_id=reference_id,
            reason="Reservation released",
            notes=f"released {quantity} reserved units",
            created_by=created_by,
        )

    async def adjust(
        self,
        session: AsyncSession,
        variant_id: str,
        location_id: str,
        delta: int,
        adjustment_type: AdjustmentType,
        reference_id: Optional[str] = None,
        reason: Optional[str] = None,
        reference_type: Optional[ReferenceType] = ReferenceType.ADJUSTMENT,
        notes: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> InventoryAdjustment:
        """
        Write a direct ledger entry (receiving, damage, loss, manual correction).

        Never touches reserved_quantity; a delta that would leave fewer units on
        hand than are reserved is rejected.

        Raises:
            ValidationError: On a zero delta, a sign that contradicts the type, or
                a delta that would drop quantity below reserved_quantity
        """
        adjustment_type = AdjustmentType(adjustment_type)
        if delta == 0:
            raise ValidationError("Adjustment delta cannot be zero")
        if adjustment_type in POSITIVE_TYPES and delta < 0:
            raise ValidationError(
                f"{adjustment_type.value} adjustments must be positive", delta=delta
            )
        if adjustment_type in NEGATIVE_TYPES and delta > 0:
            raise ValidationError(
                f"{adjustment_type.value} adjustments must be negative", delta=delta
            )

        now = utc_now()
        values = {"quantity": StockLevel.quantity + delta, "updated_at": now}
        if adjustment_type is AdjustmentType.RECEIVED:
            values["last_restocked_at"] = now

        stmt = (
            update(StockLevel)
            .where(
                *_key(variant_id, location_id),
                StockLevel.quantity + delta >= StockLevel.reserved_quantity,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            stock = await self.require_stock_level(session, variant_id, location_id)
            raise ValidationError(
                f"Adjustment of {delta} would leave {stock.quantity + delta} on hand "
                f"with {stock.reserved_quantity} reserved",
                variant_id=variant_id,
                location_id=location_id,
                delta=delta,
                quantity=stock.quantity,
                reserved=stock.reserved_quantity,
            )

        return self._append(
            session,
            variant_id,
            location_id,
            adjustment_type,
            delta,
            reference_type=reference_type,
            reference_id=reference_id,
            reason=reason,
            notes=notes,
            created_by=created_by,
        )

    async def adjust_many(
        self,
        session: AsyncSession,
        adjustments: Iterable[StockAdjustment],
        reason: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> List[InventoryAdjustment]:
        """
        Apply several adjustments; one rejected entry rolls back the caller's transaction.

        Entries are applied in (variant, location) order, the same order
        reserve_many takes rows in. reason is the default for entries without one.
        """
        entries = list(adjustments)
        if not entries:
            raise ValidationError("Bulk adjustment needs at least one entry")

        rows = []
        for entry in sorted(entries, key=lambda e: (e.variant_id, e.location_id)):
            rows.append(
                await self.adjust(
                    session,
                    entry.variant_id,
                    entry.location_id,
                    entry.delta,
                    entry.adjustment_type,
                    reason=entry.reason or reason,
                    created_by=created_by,
                )
            )
        logger.info("stock_bulk_adjusted", entries=len(rows))
        return rows

    async def set_quantity(
        self,
        session: AsyncSession,
        variant_id: str,
        location_id: str,
        quantity: int,
        reason: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Optional[InventoryAdjustment]:
        """
        Set on-hand quantity to an absolute count (e.g. after a stocktake).

        The difference is written as a `correction` row so the ledger still
        replays to the new quantity. The UPDATE is conditional on the quantity
        read, so a concurrent change is never overwritten.

        Returns:
            Optional[InventoryAdjustment]: The correction, or None if nothing changed

        Raises:
            ValidationError: If quantity is negative or below reserved_quantity
            ConcurrentModification: If on-hand quantity changed since it was read
        """
        if quantity < 0:
            raise ValidationError("Quantity cannot be negative", quantity=quantity)

        stock = await self.require_stock_level(session, variant_id, location_id)
        current = stock.quantity
        delta = quantity - current
        if delta == 0:
            return None
        if quantity < stock.reserved_quantity:
            raise ValidationError(
                f"Cannot set quantity to {quantity} with {stock.reserved_quantity} reserved",
                variant_id=variant_id,
                location_id=location_id,
                quantity=quantity,
                reserved=stock.reserved_quantity,
            )

        stmt = (
            update(StockLevel)
            .where(
                *_key(variant_id, location_id),
                StockLevel.quantity == current,
                StockLevel.reserved_quantity <= quantity,
            )
            .values(quantity=quantity, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            raise ConcurrentModification(
                f"Stock for variant {variant_id} at {location_id} changed while being set",
                variant_id=variant_id,
                location_id=location_id,
                expected_quantity=current,
            )

        return self._append(
            session,
            variant_id,
            location_id,
            AdjustmentType.CORRECTION,
            delta,
            reference_type=ReferenceType.ADJUSTMENT,
            reason=reason or f"Set stock to {quantity}",
            notes=f"counted {quantity}, was {current}",
            created_by=created_by,
        )

    async def update_reorder_settings(
        self,
        session: AsyncSession,
        variant_id: str,
        location_id: str,
        reorder_point: Optional[int] = None,
        reorder_quantity: Optional[int] = None,
        created_by: Optional[str] = None,
    ) -> StockLevel:
        """
        Set the reorder point and quantity of a stock row, creating an empty row if needed.

        Raises:
            ValidationError: If reorder_point is negative or reorder_quantity is below one
        """
        if reorder_point is not None and reorder_point < 0:
            raise ValidationError("Reorder point cannot be negative", reorder_point=reorder_point)
        if reorder_quantity is not None and reorder_quantity < 1:
            raise ValidationError(
                "Reorder quantity must be at least one", reorder_quantity=reorder_quantity
            )

        stmt = (
            update(StockLevel)
            .where(*_key(variant_id, location_id))
            .values(
                reorder_point=reorder_point,
                reorder_quantity=reorder_quantity,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            return await self.create_stock_level(
                session,
                variant_id,
                location_id,
                reorder_point=reorder_point,
                reorder_quantity=reorder_quantity,
                created_by=created_by,
            )

        logger.info(
            "stock_reorder_settings_updated",
            variant_id=variant_id,
            location_id=location_id,
            reorder_point=reorder_point,
            reorder_quantity=reorder_quantity,
        )
        return await self.require_stock_level(session, variant_id, location_id)

    async def transfer(
        self,
        session: AsyncSession,
        variant_id: str,
        from_location_id: str,
        to_location_id: str,
        quantity: int,
        reference_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> List[InventoryAdjustment]:
        """Move on-hand stock between locations as a pair of `transfer` rows."""
        if quantity <= 0:
            raise ValidationError("Transfer quantity must be positive", quantity=quantity)
        if from_location_id == to_location_id:
            raise ValidationError("Transfer source and destination must differ")

        outbound = await self.adjust(
            session,
            variant_id,
            from_location_id,
            -quantity,
            AdjustmentType.TRANSFER,
            reference_id=reference_id,
            reference_type=ReferenceType.TRANSFER,
            reason=f"Transfer to {to_location_id}",
            created_by=created_by,
        )
        inbound = await self.adjust(
            session,
            variant_id,
            to_location_id,
            quantity,
            AdjustmentType.TRANSFER,
            reference_id=reference_id,
            reference_type=ReferenceType.TRANSFER,
            reason=f"Transfer from {from_location_id}",
            created_by=created_by,
        )
        return [outbound, inbound]

    async def list_adjustments(
        self, session: AsyncSession, variant_id: str, location_id: str
    ) -> List[InventoryAdjustment]:
        await session.flush()
        stmt = (
            select(InventoryAdjustment)
            .where(
                InventoryAdjustment.variant_id == variant_id,
                InventoryAdjustment.location_id == location_id,
            )
            .order_by(InventoryAdjustment.id)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def reconcile(
        self, session: AsyncSession, variant_id: str, location_id: str, seed: int = 0
    ) -> LedgerReconciliation:
        """Replay the ledger for a variant/location and compare with on-hand quantity."""
        await session.flush()
        stock = await self.require_stock_level(session, variant_id, location_id)
        ledger_sum = await session.scalar(
            select(func.coalesce(func.sum(InventoryAdjustment.quantity), 0)).where(
                InventoryAdjustment.variant_id == variant_id,
                InventoryAdjustment.location_id == location_id,
            )
        )
        return LedgerReconciliation(
            variant_id=variant_id,
            location_id=location_id,
            seed=seed,
            ledger_sum=int(ledger_sum or 0),
            quantity=stock.quantity,
        )

    async def assert_reconciled(
        self, session: AsyncSession, variant_id: str, location_id: str, seed: int = 0
    ) -> LedgerReconciliation:
        """
        Raises:
            LedgerMismatch: If the ledger does not reproduce the on-hand quantity
        """
        report = await self.reconcile(session, variant_id, location_id, seed)
        if not report.matches:
            metrics.record_inconsistency(LedgerMismatch.code)
            logger.critical("inventory_ledger_mismatch", **report.to_dict())
            raise LedgerMismatch(
                f"Ledger for variant {variant_id} at {location_id} sums to "
                f"{report.expected_quantity} but {report.quantity} are on hand",
                **report.to_dict(),
            )
        return report

    async def list_stock_keys(self, session: AsyncSession) -> Sequence[tuple]:
        result = await session.execute(
            select(StockLevel.variant_id, StockLevel.location_id).order_by(
                StockLevel.variant_id, StockLevel.location_id
            )
        )
        return [tuple(row) for row in result.all()]

    def _append(
        self,
        session: AsyncSession,
        variant_id: str,
        location_id: str,
        adjustment_type: AdjustmentType,
        quantity: int,
        reference_type: Optional[ReferenceType] = None,
        reference_id: Optional[str] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> InventoryAdjustment:
        adjustment = InventoryAdjustment(
            variant_id=variant_id,
            location_id=location_id,
            type=adjustment_type.value,
            quantity=quantity,
            reference_type=reference_type.value if reference_type else None,
            reference_id=reference_id,
            reason=reason,
            notes=notes,
            created_by=created_by,
        )
        session.add(adjustment)
        metrics.record_adjustment(adjustment_type.value)
        logger.info(
            "inventory_adjustment_recorded",
            variant_id=variant_id,
            location_id=location_id,
            type=adjustment_type.value,
            quantity=quantity,
            reference_id=reference_id,
        )
        return adjustment
