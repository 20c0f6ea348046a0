"""
Gift card and store credit balances.

Both are append-only transaction chains. Gift card debits and credits move
gift_cards.current_amount with a conditional UPDATE and append one
gift_card_transactions row carrying balance_after. Store credit has no
balance row: the latest transaction's balance_after is the balance, and
writers racing for the same next sequence collide on a unique constraint.

A credit tied to a refund is unique per refund id, so repeating it is a no-op.
"""
import uuid
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.enums import GiftCardStatus, GiftCardTransactionType
from ..database.models import GiftCard, GiftCardTransaction, StoreCreditTransaction, utc_now
from .exceptions import ConcurrentModification, NotFoundError, ValidationError

logger = structlog.get_logger(__name__)

STORE_CREDIT_WRITE_ATTEMPTS = 3


class BalanceLedger:
    """Debits and credits against gift cards and customer store credit."""

    async def get_gift_card(
        self, session: AsyncSession, code: str, lock: bool = False
    ) -> GiftCard:
        stmt = (
            select(GiftCard)
            .where(GiftCard.code == code)
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        card = (await session.execute(stmt)).scalar_one_or_none()
        if card is None:
            raise NotFoundError(f"Gift card {code} not found", code=code)
        return card

    async def issue_gift_card(
        self,
        session: AsyncSession,
        code: str,
        amount: int,
        currency: str,
        expires_at: Optional[datetime] = None,
    ) -> GiftCard:
        """
        Raises:
            ValidationError: If the amount is not positive or the code is taken
        """
        if amount <= 0:
            raise ValidationError("Gift card amount must be positive", amount=amount)

        card = GiftCard(
            id=uuid.uuid4(),
            code=code,
            initial_amount=amount,
            current_amount=amount,
            currency=currency,
            status=GiftCardStatus.ACTIVE.value,
            expires_at=expires_at,
        )
        try:
            async with session.begin_nested():
                session.add(card)
                await session.flush()
        except IntegrityError:
            raise ValidationError(f"Gift card code {code} already exists", code=code)

        session.add(
            GiftCardTransaction(
                gift_card_id=card.id,
                type=GiftCardTransactionType.ISSUED.value,
                amount=amount,
                balance_after=amount,
                notes="Issued",
            )
        )
        logger.info("gift_card_issued", gift_card_code=code, amount=amount)
        return card

    async def redeem_gift_card(
        self,
        session: AsyncSession,
        code: str,
        amount: int,
        order_id: uuid.UUID,
    ) -> GiftCardTransaction:
        """
        Debit a gift card for an order.

        Raises:
            ValidationError: If the card is not active, expired, in another
                currency, or its balance is lower than the amount
        """
        if amount <= 0:
            raise ValidationError("Redeem amount must be positive", amount=amount)

        card = await self.get_gift_card(session, code)
        if card.status != GiftCardStatus.ACTIVE.value:
            raise ValidationError(f"Gift card {code} is {card.status}", code=code)
        if card.expires_at is not None and await self._expired(session, card):
            raise ValidationError(f"Gift card {code} has expired", code=code)

        stmt = (
            update(GiftCard)
            .where(GiftCard.id == card.id, GiftCard.current_amount >= amount)
            .values(current_amount=GiftCard.current_amount - amount, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        if (await session.execute(stmt)).rowcount != 1:
            raise ValidationError(
                f"Gift card {code} balance is lower than {amount}",
                code=code,
                requested=amount,
            )

        card = await self.get_gift_card(session, code)
        if card.current_amount == 0:
            card.status = GiftCardStatus.USED.value

        transaction = GiftCardTransaction(
            gift_card_id=card.id,
            type=GiftCardTransactionType.USED.value,
            amount=-amount,
            balance_after=card.current_amount,
            order_id=order_id,
            notes="Redeemed at checkout",
        )
        session.add(transaction)
        logger.info(
            "gift_card_redeemed",
            gift_card_code=code,
            amount=amount,
            balance_after=card.current_amount,
            order_id=str(order_id),
        )
        return transaction

    async def credit_gift_card(
        self,
        session: AsyncSession,
        code: str,
        amount: int,
        refund_id: uuid.UUID,
        order_id: Optional[uuid.UUID] = None,
    ) -> GiftCardTransaction:
        """
        Credit a refund back to a gift card, at most once per refund.

        A repeated call returns the transaction written the first time.
        """
        existing = await self._gift_card_credit_for(session, refund_id)
        if existing is not None:
            return existing

        card = await self.get_gift_card(session, code, lock=True)
        balance_after = card.current_amount + amount
        transaction = GiftCardTransaction(
            gift_card_id=card.id,
            type=GiftCardTransactionType.REFUNDED.value,
            amount=amount,
            balance_after=balance_after,
            order_id=order_id,
            refund_id=refund_id,
            notes="Refund credit",
        )
        try:
            async with session.begin_nested():
                session.add(transaction)
                await session.flush()
        except IntegrityError:
            existing = await self._gift_card_credit_for(session, refund_id)
            if existing is None:
                raise
            return existing

        await session.execute(
            update(GiftCard)
            .where(GiftCard.id == card.id)
            .values(
                current_amount=GiftCard.current_amount + amount,
                status=GiftCardStatus.ACTIVE.value,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "gift_card_credited",
            gift_card_code=code,
            amount=amount,
            balance_after=balance_after,
            refund_id=str(refund_id),
        )
        return transaction

    async def gift_card_transactions(
        self, session: AsyncSession, code: str
    ) -> List[GiftCardTransaction]:
        card = await self.get_gift_card(session, code)
        result = await session.execute(
            select(GiftCardTransaction)
            .where(GiftCardTransaction.gift_card_id == card.id)
            .order_by(GiftCardTransaction.id)
        )
        return list(result.scalars().all())

    async def _gift_card_credit_for(
        self, session: AsyncSession, refund_id: uuid.UUID
    ) -> Optional[GiftCardTransaction]:
        result = await session.execute(
            select(GiftCardTransaction).where(GiftCardTransaction.refund_id == refund_id)
        )
        return result.scalar_one_or_none()

    async def _expired(self, session: AsyncSession, card: GiftCard) -> bool:
        # Compared in SQL: some drivers return naive datetimes
        expired = await session.scalar(
            select(GiftCard.id).where(GiftCard.id == card.id, GiftCard.expires_at < utc_now())
        )
        return expired is not None

    async def store_credit_balance(self, session: AsyncSession, customer_id: str) -> int:
        latest = await self._latest_store_credit(session, customer_id)
        return latest.balance_after if latest is not None else 0

    async def store_credit_transactions(
        self, session: AsyncSession, customer_id: str
    ) -> List[StoreCreditTransaction]:
        result = await session.execute(
            select(StoreCreditTransaction)
            .where(StoreCreditTransaction.customer_id == customer_id)
            .order_by(StoreCreditTransaction.sequence)
        )
        return list(result.scalars().all())

    async def credit_store_credit(
        self,
        session: AsyncSession,
        customer_id: str,
        amount: int,
        currency: str,
        refund_id: Optional[uuid.UUID] = None,
        order_id: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
    ) -> StoreCreditTransaction:
        """Add store credit; with a refund id the credit happens at most once."""
        if amount <= 0:
            raise ValidationError("Store credit amount must be positive", amount=amount)
        if refund_id is not None:
            existing = await self._store_credit_for_refund(session, refund_id)
            if existing is not None:
                return existing
        return await self._append_store_credit(
            session, customer_id, amount, currency, refund_id, order_id, notes
        )

    async def debit_store_credit(
        self,
        session: AsyncSession,
        customer_id: str,
        amount: int,
        currency: str,
        order_id: uuid.UUID,
    ) -> StoreCreditTransaction:
        """
        Raises:
            ValidationError: If the customer's balance is lower than the amount
        """
        if amount <= 0:
            raise ValidationError("Store credit amount must be positive", amount=amount)
        return await self._append_store_credit(
            session, customer_id, -amount, currency, None, order_id, "Redeemed at checkout"
        )

    async def _append_store_credit(
        self,
        session: AsyncSession,
        customer_id: str,
        amount: int,
        currency: str,
        refund_id: Optional[uuid.UUID],
        order_id: Optional[uuid.UUID],
        notes: Optional[str],
    ) -> StoreCreditTransaction:
        for _ in range(STORE_CREDIT_WRITE_ATTEMPTS):
            latest = await self._latest_store_credit(session, customer_id)
            balance = latest.balance_after if latest is not None else 0
            if balance + amount < 0:
                raise ValidationError(
                    f"Store credit balance {balance} is lower than {-amount}",
                    customer_id=customer_id,
                    balance=balance,
                    requested=-amount,
                )
            transaction = StoreCreditTransaction(
                customer_id=customer_id,
                sequence=(latest.sequence + 1) if latest is not None else 1,
                amount=amount,
                balance_after=balance + amount,
                currency=currency,
                order_id=order_id,
                refund_id=refund_id,
                notes=notes,
            )
            try:
                async with session.begin_nested():
                    session.add(transaction)
                    await session.flush()
            except IntegrityError:
                if refund_id is not None:
                    existing = await self._store_credit_for_refund(session, refund_id)
                    if existing is not None:
                        return existing
                logger.info("store_credit_sequence_conflict", customer_id=customer_id)
                continue

            logger.info(
                "store_credit_recorded",
                customer_id=customer_id,
                amount=amount,
                balance_after=transaction.balance_after,
            )
            return transaction

        raise ConcurrentModification(
            f"Store credit for customer {customer_id} is being modified concurrently",
            customer_id=customer_id,
        )

    async def _latest_store_credit(
        self, session: AsyncSession, customer_id: str
    ) -> Optional[StoreCreditTransaction]:
        result = await session.execute(
            select(StoreCreditTransaction)
            .where(StoreCreditTransaction.customer_id == customer_id)
            .order_by(StoreCreditTransaction.sequence.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _store_credit_for_refund(
        self, session: AsyncSession, refund_id: uuid.UUID
    ) -> Optional[StoreCreditTransaction]:
        result = await session.execute(
            select(StoreCreditTransaction).where(StoreCreditTransaction.refund_id == refund_id)
        )
        return result.scalar_one_or_none()
