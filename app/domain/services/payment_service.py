"""
Payment Service - gateway payments, credit settlement and refunds

Gateway calls are made outside any trip lock: the pending Payment is
committed first, the gateway is called, and the outcome is written in a
second short transaction. Callbacks and the periodic reconciler both go
through ``reconcile_payment``, which is idempotent for payments that have
already reached a terminal state.
"""
import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.core.exceptions import (
    AppException,
    BookingNotFoundError,
    InvalidAmountError,
    InvalidStateError,
    PaymentGatewayError,
    PaymentNotFoundError,
    PolicyViolationError,
    UnauthorizedActionError,
    UserNotFoundError,
)
from app.core.logging import get_logger, log_async_operation, log_state_transition
from app.core.money import quantize_money
from app.db.database import unit_of_work
from app.db.models.booking import Booking, BookingPaymentStatus, BookingStatus, PaymentMethod
from app.db.models.credit_transaction import CreditTransaction, CreditTransactionType
from app.db.models.payment import Payment, PaymentChannel, PaymentPurpose, PaymentStatus
from app.db.models.trip import Trip
from app.db.models.user import User
from app.domain.services.activity_service import ActivityService, ActivityType
from app.domain.services.gateway import BasePaymentGateway, GatewayStatus, get_payment_gateway
from app.domain.services.ledger_service import LedgerService
from app.domain.services.outbox_service import NotificationEvent, OutboxService
from app.state_machine.transitions import ensure_transition

logger = get_logger(__name__)


@dataclass
class ReconcileResult:
    payment: Payment
    # True when the payment was already terminal and nothing was changed
    replayed: bool = False


class PaymentService:
    """Service for payments against the gateway and the credit ledger"""

    def __init__(self, db: AsyncSession, gateway: Optional[BasePaymentGateway] = None):
        self.db = db
        self._gateway = gateway
        self.ledger = LedgerService(db)
        self.activity = ActivityService(db)
        self.outbox = OutboxService(db)

    @property
    def gateway(self) -> BasePaymentGateway:
        if self._gateway is None:
            self._gateway = get_payment_gateway()
        return self._gateway

    # ==================== lookups ====================

    async def _get_user(self, user_id: int) -> User:
        result = await self.db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if not user:
            raise UserNotFoundError(user_id)
        if not user.is_active:
            raise UnauthorizedActionError("Account is not active", user_id=user_id)
        return user

    async def get_payment(self, payment_id: int, for_update: bool = False) -> Payment:
        query = select(Payment).where(Payment.id == payment_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        payment = result.scalar_one_or_none()
        if not payment:
            raise PaymentNotFoundError(payment_id)
        return payment

    async def get_by_reference(self, external_reference: str, for_update: bool = False) -> Payment:
        query = select(Payment).where(Payment.external_reference == external_reference)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        payment = result.scalar_one_or_none()
        if not payment:
            raise PaymentNotFoundError(external_reference)
        return payment

    async def _lock_booking(self, booking_id: int) -> Booking:
        result = await self.db.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if not booking:
            raise BookingNotFoundError(booking_id)
        return booking

    def _transition(self, payment: Payment, target: PaymentStatus) -> None:
        old = payment.status
        ensure_transition(old, target, payment.id)
        payment.status = target
        log_state_transition(
            logger, "payment", payment.id, old, target,
            user_id=payment.user_id, booking_id=payment.booking_id,
        )

    # ==================== gateway payments ====================

    @log_async_operation("initialize_payment")
    async def initialize_payment(
        self,
        user_id: int,
        amount: Decimal,
        description: str,
        booking_id: Optional[int] = None,
        purpose: PaymentPurpose = PaymentPurpose.BOOKING,
        currency: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Payment:
        """
        Create a pending gateway payment and authorize it.

        On success the payment is ``processing`` with the gateway reference
        and redirect URL. If the gateway fails before a reference is
        obtained the payment is marked ``failed`` and PaymentGatewayError
        is raised.
        """
        currency = (currency or settings.DEFAULT_CURRENCY).upper()
        amount = quantize_money(amount, currency)
        if amount <= 0:
            raise InvalidAmountError("Payment amount must be positive")

        user = await self._get_user(user_id)

        async with unit_of_work(self.db, "initialize_payment"):
            payment = Payment(
                user_id=user_id,
                booking_id=booking_id,
                amount=amount,
                currency=currency,
                method=PaymentChannel.EXTERNAL_GATEWAY,
                purpose=purpose,
                status=PaymentStatus.PENDING,
                description=description,
            )
            self.db.add(payment)
            await self.db.flush()

        order_ref = f"{payment.id}-{secrets.token_hex(6)}"
        try:
            authorization = await self.gateway.authorize(
                amount, currency, user.phone_number, order_ref, description
            )
        except Exception as e:
            reason = e.message if isinstance(e, AppException) else str(e)
            await self._mark_failed(payment.id, reason)
            if isinstance(e, PaymentGatewayError):
                raise
            raise PaymentGatewayError(
                reason,
                details={"payment_id": payment.id, "cause": type(e).__name__},
            ) from e

        now = now or utcnow()
        async with unit_of_work(self.db, "initialize_payment"):
            payment = await self.get_payment(payment.id, for_update=True)
            self._transition(payment, PaymentStatus.PROCESSING)
            payment.external_reference = authorization.external_reference
            payment.redirect_url = authorization.redirect_url
            payment.processed_at = now
            await self.activity.record(
                user_id,
                ActivityType.PAYMENT_INITIATED,
                f"Payment of {amount} {currency} started",
                related_booking_id=booking_id,
                related_payment_id=payment.id,
            )

        return payment

    async def _mark_failed(self, payment_id: int, reason: str) -> None:
        async with unit_of_work(self.db, "mark_payment_failed"):
            payment = await self.get_payment(payment_id, for_update=True)
            self._transition(payment, PaymentStatus.FAILED)
            payment.failure_reason = reason[:1000]

    async def create_trip_payment(self, user_id: int, booking_id: int) -> Payment:
        """Start a gateway payment for the passenger's own booking"""
        result = await self.db.execute(select(Booking).where(Booking.id == booking_id))
        booking = result.scalar_one_or_none()
        if not booking:
            raise BookingNotFoundError(booking_id)
        if booking.passenger_id != user_id:
            raise UnauthorizedActionError("Not authorized to pay for this booking", user_id=user_id)
        if booking.status in (BookingStatus.CANCELLED, BookingStatus.COMPLETED):
            raise InvalidStateError(
                f"Cannot pay for a {booking.status.value} booking",
                details={"booking_id": booking_id, "status": booking.status.value},
            )
        if booking.payment_method != PaymentMethod.EXTERNAL_GATEWAY:
            raise PolicyViolationError(
                "Booking is not paid through the payment gateway",
                details={"booking_id": booking_id, "payment_method": booking.payment_method.value},
            )
        if booking.payment_status != BookingPaymentStatus.PENDING:
            raise InvalidStateError(
                "Booking payment is already settled",
                details={"booking_id": booking_id, "payment_status": booking.payment_status.value},
            )

        in_flight = await self.db.execute(
            select(Payment.id).where(
                Payment.booking_id == booking_id,
                Payment.status == PaymentStatus.PROCESSING,
            )
        )
        if in_flight.first() is not None:
            raise InvalidStateError(
                "A payment for this booking is already in progress",
                details={"booking_id": booking_id},
            )

        return await self.initialize_payment(
            user_id,
            booking.total_price,
            f"Trip booking #{booking.id}",
            booking_id=booking.id,
            purpose=PaymentPurpose.BOOKING,
            currency=booking.currency,
        )

    async def purchase_credit(self, user_id: int, amount: Decimal) -> Payment:
        """Buy credit through the gateway; the ledger is credited on completion"""
        return await self.initialize_payment(
            user_id,
            amount,
            "Credit purchase",
            purpose=PaymentPurpose.CREDIT_PURCHASE,
        )

    @log_async_operation("reconcile_payment")
    async def reconcile_payment(
        self,
        external_reference: str,
        outcome: Optional[GatewayStatus] = None,
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        """
        Apply the gateway outcome to a payment.

        CHARGED completes it, CANCELLED cancels it, anything else fails it;
        PENDING leaves it processing. A payment that is already terminal is
        returned untouched with ``replayed=True``.
        """
        payment = await self.get_by_reference(external_reference)
        if payment.is_terminal:
            logger.info(
                "Payment callback replayed",
                extra_data={"payment_id": payment.id, "status": payment.status.value},
            )
            return ReconcileResult(payment=payment, replayed=True)

        if outcome is None:
            outcome = await self.gateway.get_status(external_reference)
        if outcome == GatewayStatus.PENDING:
            return ReconcileResult(payment=payment)

        now = now or utcnow()
        replayed = False
        async with unit_of_work(self.db, "reconcile_payment"):
            booking = await self._lock_booking(payment.booking_id) if payment.booking_id else None
            payment = await self.get_by_reference(external_reference, for_update=True)

            if payment.is_terminal:
                replayed = True
            elif outcome == GatewayStatus.CHARGED:
                await self._complete(payment, booking, now)
            else:
                target = (
                    PaymentStatus.CANCELLED if outcome == GatewayStatus.CANCELLED
                    else PaymentStatus.FAILED
                )
                self._transition(payment, target)
                payment.failure_reason = f"Gateway reported {outcome.value}"
                if booking is not None and booking.payment_status == BookingPaymentStatus.PENDING:
                    booking.payment_status = BookingPaymentStatus.FAILED
                await self.activity.record(
                    payment.user_id,
                    ActivityType.PAYMENT_FAILED,
                    f"Payment {target.value}",
                    related_booking_id=payment.booking_id,
                    related_payment_id=payment.id,
                )

        if replayed:
            return ReconcileResult(payment=payment, replayed=True)

        event = (
            NotificationEvent.PAYMENT_COMPLETED if payment.status == PaymentStatus.COMPLETED
            else NotificationEvent.PAYMENT_FAILED
        )
        await self.outbox.notify(
            payment.user_id,
            event,
            {
                "payment_id": payment.id,
                "booking_id": payment.booking_id,
                "amount": str(payment.amount),
                "status": payment.status.value,
            },
        )
        return ReconcileResult(payment=payment)

    async def _complete(self, payment: Payment, booking: Optional[Booking], now: datetime) -> None:
        self._transition(payment, PaymentStatus.COMPLETED)
        payment.completed_at = now

        if payment.purpose == PaymentPurpose.CREDIT_PURCHASE:
            await self.ledger.credit(
                payment.user_id,
                payment.amount,
                CreditTransactionType.PURCHASE,
                f"Credit purchase via {self.gateway.gateway_name}",
                payment_id=payment.id,
            )
            activity_type = ActivityType.CREDIT_PURCHASED
        else:
            if booking is not None:
                if booking.status == BookingStatus.CANCELLED:
                    logger.warning(
                        "Payment completed for a cancelled booking",
                        extra_data={"payment_id": payment.id, "booking_id": booking.id},
                    )
                booking.payment_status = BookingPaymentStatus.COMPLETED
            activity_type = ActivityType.PAYMENT_COMPLETED

        await self.activity.record(
            payment.user_id,
            activity_type,
            f"Payment completed: {payment.amount} {payment.currency}",
            related_booking_id=payment.booking_id,
            related_payment_id=payment.id,
        )

    # ==================== credit ====================

    async def settle_with_credit(
        self,
        booking: Booking,
        now: Optional[datetime] = None,
    ) -> Payment:
        """
        Pay for ``booking`` out of the passenger's credit balance.

        Runs inside the caller's unit of work; the payment goes straight
        from pending to completed and never touches the gateway.
        """
        now = now or utcnow()
        payment = Payment(
            user_id=booking.passenger_id,
            booking_id=booking.id,
            amount=booking.total_price,
            currency=booking.currency,
            method=PaymentChannel.CREDIT,
            purpose=PaymentPurpose.BOOKING,
            status=PaymentStatus.PENDING,
            description=f"Trip booking #{booking.id}",
        )
        self.db.add(payment)
        await self.db.flush()

        await self.ledger.debit(
            booking.passenger_id,
            booking.total_price,
            f"Payment for booking #{booking.id}",
            booking_id=booking.id,
            payment_id=payment.id,
        )
        self._transition(payment, PaymentStatus.COMPLETED)
        payment.processed_at = now
        payment.completed_at = now
        return payment

    async def get_credit_payment_for_booking(
        self,
        booking_id: int,
        for_update: bool = False,
    ) -> Optional[Payment]:
        query = select(Payment).where(
            Payment.booking_id == booking_id,
            Payment.method == PaymentChannel.CREDIT,
            Payment.status == PaymentStatus.COMPLETED,
        )
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def apply_credit_refund(
        self,
        booking: Booking,
        amount: Decimal,
        reason: str,
        now: Optional[datetime] = None,
    ) -> CreditTransaction:
        """Return ``amount`` of a credit-settled booking to the passenger's balance"""
        payment = await self.get_credit_payment_for_booking(booking.id, for_update=True)
        if payment is None:
            raise InvalidStateError(
                "Booking has no settled credit payment",
                details={"booking_id": booking.id},
            )
        return await self._refund_to_ledger(payment, amount, reason, now or utcnow())

    async def _refund_to_ledger(
        self,
        payment: Payment,
        amount: Decimal,
        reason: str,
        now: datetime,
    ) -> CreditTransaction:
        if amount > payment.refundable_amount:
            raise InvalidAmountError(
                "Refund amount cannot exceed the unrefunded payment amount",
                details={
                    "payment_id": payment.id,
                    "requested": str(amount),
                    "refundable": str(payment.refundable_amount),
                },
            )
        entry = await self.ledger.credit(
            payment.user_id,
            amount,
            CreditTransactionType.REFUND,
            reason,
            booking_id=payment.booking_id,
            payment_id=payment.id,
        )
        payment.refunded_amount = payment.refunded_amount + amount
        payment.refunded_at = now
        payment.refund_reason = reason[:500]
        return entry

    # ==================== refunds ====================

    @log_async_operation("refund_payment")
    async def refund_payment(
        self,
        payment_id: int,
        amount: Decimal,
        reason: str,
        actor_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Payment:
        """
        Refund part of a completed payment.

        Gateway payments are refunded through the gateway while the payment
        row is locked; credit payments go back to the ledger. With an
        ``actor_id`` the caller must be the driver of the booked trip, or
        the buyer when refunding a credit purchase.
        """
        now = now or utcnow()
        peek = await self.get_payment(payment_id)
        amount = quantize_money(amount, peek.currency)
        if amount <= 0:
            raise InvalidAmountError("Refund amount must be positive")

        async with unit_of_work(self.db, "refund_payment"):
            booking = await self._lock_booking(peek.booking_id) if peek.booking_id else None
            payment = await self.get_payment(payment_id, for_update=True)

            if actor_id is not None:
                await self._check_refund_actor(payment, booking, actor_id)
            if payment.status != PaymentStatus.COMPLETED:
                raise InvalidStateError(
                    "Only completed payments can be refunded",
                    details={"payment_id": payment_id, "status": payment.status.value},
                )
            if amount > payment.refundable_amount:
                raise InvalidAmountError(
                    "Refund amount cannot exceed the unrefunded payment amount",
                    details={
                        "payment_id": payment_id,
                        "requested": str(amount),
                        "refundable": str(payment.refundable_amount),
                    },
                )

            if payment.method == PaymentChannel.CREDIT:
                await self._refund_to_ledger(payment, amount, reason, now)
            else:
                if payment.purpose == PaymentPurpose.CREDIT_PURCHASE:
                    # purchased credit leaves the balance before the money goes back
                    await self.ledger.debit(
                        payment.user_id,
                        amount,
                        f"Refund of credit purchase #{payment.id}",
                        payment_id=payment.id,
                    )
                await self.gateway.refund(payment.external_reference, amount, payment.currency, reason)
                payment.refunded_amount = payment.refunded_amount + amount
                payment.refunded_at = now
                payment.refund_reason = reason[:500]

            if booking is not None:
                booking.refund_amount = (booking.refund_amount or Decimal("0")) + amount
                booking.payment_status = (
                    BookingPaymentStatus.REFUNDED if payment.refundable_amount == 0
                    else BookingPaymentStatus.PARTIALLY_REFUNDED
                )

            await self.activity.record(
                payment.user_id,
                ActivityType.REFUND_ISSUED,
                f"Refund of {amount} {payment.currency}",
                related_booking_id=payment.booking_id,
                related_payment_id=payment.id,
                details={"reason": reason},
            )

        logger.info(
            "Payment refunded",
            extra_data={
                "payment_id": payment_id,
                "amount": str(amount),
                "refunded_amount": str(payment.refunded_amount),
            },
        )
        await self.outbox.notify(
            payment.user_id,
            NotificationEvent.REFUND_ISSUED,
            {"payment_id": payment.id, "amount": str(amount), "reason": reason},
        )
        return payment

    async def _check_refund_actor(
        self,
        payment: Payment,
        booking: Optional[Booking],
        actor_id: int,
    ) -> None:
        """The trip's driver refunds bookings; buyers refund their own unspent credit"""
        if payment.purpose == PaymentPurpose.CREDIT_PURCHASE and payment.user_id == actor_id:
            return
        if booking is not None:
            result = await self.db.execute(select(Trip.driver_id).where(Trip.id == booking.trip_id))
            if result.scalar_one_or_none() == actor_id:
                return
        raise UnauthorizedActionError("Not authorized to refund this payment", user_id=actor_id)

    # ==================== queries ====================

    async def list_user_payments(
        self,
        user_id: int,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def stale_processing_references(self, older_than: datetime) -> list[str]:
        """References of payments still processing since before ``older_than``"""
        result = await self.db.execute(
            select(Payment.external_reference).where(
                Payment.status == PaymentStatus.PROCESSING,
                Payment.external_reference.is_not(None),
                Payment.processed_at < older_than,
            )
        )
        return [ref for ref in result.scalars().all()]
