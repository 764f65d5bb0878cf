"""Payment verification engine for the simulated M-Pesa flow.

A payment is created `pending` with a 6-digit code and a fixed expiry window.
It leaves `pending` exactly once: `completed` on a correct code (or a
successful gateway callback), `expired` on timeout or after too many wrong
codes, `failed` when the gateway or the post-payment sequence rejects it.

Expiry is evaluated lazily: only `verify`, `resend` and the operator sweep
(`expire_stale`) move an overdue payment to `expired`.
"""

import hmac
import re
import secrets
import string
import time
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from math import ceil
from uuid import uuid4

from sqlalchemy import func, select, update

from gasmarket.common import state_machine as sm
from gasmarket.common.auth import Principal
from gasmarket.common.config import settings
from gasmarket.common.errors import (
    AlreadyPaid,
    AlreadyProcessed,
    AmountMismatch,
    AuthorizationError,
    CodeMismatch,
    InsufficientStock,
    InvalidPhone,
    OrderNotEligible,
    OrderNotFound,
    PaymentExpired,
    PaymentNotFound,
    TooManyAttempts,
    ValidationError,
)
from gasmarket.common.logging import logger, order_id_ctx, payment_id_ctx
from gasmarket.common.metrics import (
    payment_initiations_total,
    payment_verification_seconds,
    payment_verifications_total,
)
from gasmarket.common.outbox import enqueue_event
from gasmarket.common.timeutils import as_utc, utcnow
from gasmarket.common.tracing import tracer
from gasmarket.services.orchestrator.models import OutboxEvent
from gasmarket.services.orchestrator.service import OrderOrchestrator
from gasmarket.services.orders.models import Order
from gasmarket.services.payments.models import Payment

KENYAN_MOBILE_RE = re.compile(r"^254[17]\d{8}$")
REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


def normalize_phone(raw: str) -> str:
    """Normalize `07..`, `+2547..`, `2547..` or bare 9-digit input to `2547XXXXXXXX`."""

    digits = re.sub(r"\D", "", str(raw).strip())
    if digits.startswith("0"):
        digits = "254" + digits[1:]
    elif len(digits) == 9:
        digits = "254" + digits
    if not KENYAN_MOBILE_RE.match(digits):
        raise InvalidPhone()
    return digits


def generate_verification_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def generate_transaction_reference() -> str:
    suffix = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(9))
    return f"MPESA-{int(time.time() * 1000)}-{suffix}"


def payment_to_dict(payment: Payment, include_code: bool = False) -> dict:
    body = {
        "payment_id": payment.id,
        "order_id": payment.order_id,
        "amount": float(payment.amount),
        "phone_number": payment.phone_number,
        "payment_method": payment.payment_method,
        "status": payment.status,
        "transaction_reference": payment.transaction_reference,
        "verification_attempts": payment.verification_attempts,
        "expires_at": payment.expires_at,
        "verified_at": payment.verified_at,
        "failure_reason": payment.failure_reason,
        "created_at": payment.created_at,
    }
    if include_code and payment.status == sm.PAYMENT_PENDING and settings.payment_simulation_mode:
        body["verification_code"] = payment.verification_code
    return body


class PaymentVerificationEngine:
    """Owns the pending → completed/expired/failed flow of payments."""

    def __init__(self, session_factory, orchestrator: OrderOrchestrator, service_name: str = "payments") -> None:
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.service_name = service_name
        self.code_ttl = timedelta(seconds=settings.payment_code_ttl_seconds)
        self.max_attempts = settings.payment_max_verification_attempts

    def _finish(self, db, payment: Payment, new_status: str, **values) -> None:
        """Move a pending payment to a terminal status, guarded on `status='pending'`."""

        sm.validate_payment_transition(payment.status, new_status)
        changes = {Payment.status: new_status, Payment.updated_at: utcnow()}
        changes.update({getattr(Payment, key): value for key, value in values.items()})
        result = db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == sm.PAYMENT_PENDING)
            .values(changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadyProcessed("Payment was already processed by another request")
        payment.status = new_status
        for key, value in values.items():
            setattr(payment, key, value)
        logger.info("payment_status payment_id=%s status=%s", payment.id, new_status)

    def _expire_if_overdue(self, db, payment: Payment, now: datetime) -> bool:
        if as_utc(payment.expires_at) >= now:
            return False
        self._finish(db, payment, sm.PAYMENT_EXPIRED, failure_reason="Payment verification timeout")
        db.commit()
        payment_verifications_total.labels(service=self.service_name, result="expired").inc()
        return True

    def _customer_payment(self, db, principal: Principal, payment_id: str) -> Payment:
        payment = db.execute(
            select(Payment)
            .where(Payment.id == payment_id, Payment.customer_id == principal.user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if payment is None:
            raise PaymentNotFound()
        payment_id_ctx.set(payment.id)
        order_id_ctx.set(payment.order_id)
        return payment

    def _issue_code_event(self, db, payment: Payment, order_number: str | None = None) -> None:
        enqueue_event(
            db,
            OutboxEvent,
            "payments.code_issued",
            "payment",
            payment.id,
            {
                "order_id": payment.order_id,
                "order_number": order_number,
                "customer_id": payment.customer_id,
                "phone_number": payment.phone_number,
                "verification_code": payment.verification_code,
                "expires_at": as_utc(payment.expires_at).isoformat(),
            },
        )

    def _apply_completion(self, db, payment: Payment, **values) -> Order:
        """Complete the payment and run the order side of it in one transaction.

        When deferred stock is gone the whole unit is rolled back and the
        payment is marked failed instead.
        """

        self._finish(db, payment, sm.PAYMENT_COMPLETED, verified_at=utcnow(), **values)
        try:
            order = self.orchestrator.on_payment_verified(db, payment)
        except InsufficientStock as exc:
            db.rollback()
            payment = db.get(Payment, payment.id, with_for_update=True, populate_existing=True)
            self._finish(db, payment, sm.PAYMENT_FAILED, failure_reason=exc.message)
            enqueue_event(
                db,
                OutboxEvent,
                "payments.failed",
                "payment",
                payment.id,
                {"order_id": payment.order_id, "customer_id": payment.customer_id, "reason": exc.message},
            )
            db.commit()
            payment_verifications_total.labels(service=self.service_name, result="failed").inc()
            raise
        db.commit()
        payment_verifications_total.labels(service=self.service_name, result="completed").inc()
        created_at = as_utc(payment.created_at)
        if created_at is not None:
            payment_verification_seconds.labels(service=self.service_name).observe(
                max(0.0, (utcnow() - created_at).total_seconds())
            )
        return order

    @tracer.start_as_current_span("payments.initiate")
    def initiate(self, principal: Principal, order_id: str, phone_number: str, amount) -> Payment:
        """Create a pending payment with a fresh code for an order awaiting payment."""

        if not principal.is_customer:
            raise AuthorizationError("Only customers can pay for orders")
        phone = normalize_phone(phone_number)
        try:
            requested = Decimal(str(amount))
        except InvalidOperation as exc:
            raise ValidationError("Amount must be a number") from exc

        with self.session_factory() as db:
            order = db.execute(
                select(Order).where(Order.id == order_id, Order.customer_id == principal.user_id)
            ).scalar_one_or_none()
            if order is None:
                raise OrderNotFound("Order not found or payment cannot be initiated")
            order_id_ctx.set(order.id)
            if order.status != sm.PENDING_PAYMENT:
                raise OrderNotEligible(f"Payment cannot be initiated for an order that is {order.status}")
            completed = db.execute(
                select(Payment.id).where(Payment.order_id == order.id, Payment.status == sm.PAYMENT_COMPLETED)
            ).first()
            if completed is not None:
                raise AlreadyPaid()
            if requested != Decimal(order.grand_total):
                raise AmountMismatch(f"Amount ({amount}) does not match order total ({order.grand_total})")

            now = utcnow()
            payment = Payment(
                order_id=order.id,
                customer_id=principal.user_id,
                agent_id=order.agent_id,
                amount=Decimal(order.grand_total),
                phone_number=phone,
                payment_method="mpesa",
                verification_code=generate_verification_code(),
                status=sm.PAYMENT_PENDING,
                transaction_type="checkout",
                checkout_request_id=f"ws_CO_{int(now.timestamp() * 1000)}_{uuid4().hex[:8]}",
                verification_attempts=0,
                expires_at=now + self.code_ttl,
                metadata_={
                    "listing_id": order.listing_id,
                    "quantity": order.quantity,
                    "original_phone": phone_number,
                },
            )
            db.add(payment)
            db.flush()
            payment_id_ctx.set(payment.id)
            self._issue_code_event(db, payment, order.order_number)
            db.commit()

        payment_initiations_total.labels(service=self.service_name).inc()
        logger.info("payment_initiated payment_id=%s order_id=%s amount=%s", payment.id, order_id, payment.amount)
        return payment

    @tracer.start_as_current_span("payments.verify")
    def verify(self, principal: Principal, payment_id: str, code: str) -> tuple[Payment, Order]:
        """Check a submitted code; on success complete the payment and the order step."""

        if not principal.is_customer:
            raise AuthorizationError("Only customers can verify payments")
        with self.session_factory() as db:
            payment = self._customer_payment(db, principal, payment_id)
            if payment.status != sm.PAYMENT_PENDING:
                raise AlreadyProcessed(f"Payment is already {payment.status}")
            now = utcnow()
            if self._expire_if_overdue(db, payment, now):
                raise PaymentExpired()

            # Bytes so non-ASCII input counts as a plain mismatch.
            if not hmac.compare_digest(payment.verification_code.encode(), str(code).strip().encode()):
                attempts = (payment.verification_attempts or 0) + 1
                payment.verification_attempts = attempts
                payment.last_attempt_at = now
                attempts_left = max(0, self.max_attempts - attempts)
                if attempts >= self.max_attempts:
                    self._finish(
                        db, payment, sm.PAYMENT_EXPIRED, failure_reason="Too many failed verification attempts"
                    )
                    db.commit()
                    payment_verifications_total.labels(service=self.service_name, result="locked").inc()
                    raise TooManyAttempts(attempts_left=0)
                db.commit()
                payment_verifications_total.labels(service=self.service_name, result="mismatch").inc()
                raise CodeMismatch(
                    f"Invalid verification code. {attempts_left} attempt(s) left.",
                    attempts_left=attempts_left,
                )

            if self._paid_elsewhere(db, payment):
                self._finish(db, payment, sm.PAYMENT_FAILED, failure_reason="Order already paid by another payment")
                db.commit()
                raise AlreadyPaid()

            order = self._apply_completion(db, payment, transaction_reference=generate_transaction_reference())
            return payment, order

    def _paid_elsewhere(self, db, payment: Payment) -> bool:
        return (
            db.execute(
                select(Payment.id).where(
                    Payment.order_id == payment.order_id,
                    Payment.status == sm.PAYMENT_COMPLETED,
                    Payment.id != payment.id,
                )
            ).first()
            is not None
        )

    def resend(self, principal: Principal, payment_id: str) -> Payment:
        """Rotate the code of a live pending payment; expiry and attempts are kept."""

        if not principal.is_customer:
            raise AuthorizationError("Only customers can request verification codes")
        with self.session_factory() as db:
            payment = self._customer_payment(db, principal, payment_id)
            if payment.status != sm.PAYMENT_PENDING:
                raise PaymentNotFound("Payment not found or already processed")
            if self._expire_if_overdue(db, payment, utcnow()):
                raise PaymentExpired("Payment has expired. Please restart payment process.")
            old_code = payment.verification_code
            new_code = generate_verification_code()
            while new_code == old_code:
                new_code = generate_verification_code()
            payment.verification_code = new_code
            self._issue_code_event(db, payment)
            db.commit()
            logger.info("verification_code_rotated payment_id=%s", payment.id)
            return payment

    def status(self, principal: Principal, order_id: str) -> Payment:
        """Latest payment the customer made for an order."""

        with self.session_factory() as db:
            payment = db.execute(
                select(Payment)
                .where(Payment.order_id == order_id, Payment.customer_id == principal.user_id)
                .order_by(Payment.created_at.desc(), Payment.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            if payment is None:
                raise PaymentNotFound("No payment found for this order")
            return payment

    def payments_for_order(self, principal: Principal, order_id: str) -> list[Payment]:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFound("Order not found")
            if principal.is_customer and order.customer_id != principal.user_id:
                raise AuthorizationError("You can only view payments for your own orders")
            if principal.is_agent and order.agent_id != principal.user_id:
                raise AuthorizationError("You can only view payments for your own agent orders")
            return list(
                db.execute(
                    select(Payment).where(Payment.order_id == order_id).order_by(Payment.created_at.desc())
                ).scalars()
            )

    def list_payments(
        self, principal: Principal, view: str, status: str | None = None, page: int = 1, limit: int = 20
    ) -> dict:
        if view == "agent" and not principal.is_agent:
            raise AuthorizationError("Only agents can view their payments")
        if view == "customer" and not principal.is_customer:
            raise AuthorizationError("Only customers can view their payments")
        owner_column = Payment.agent_id if view == "agent" else Payment.customer_id
        page = max(1, page)
        limit = max(1, min(limit, 100))
        with self.session_factory() as db:
            conditions = [owner_column == principal.user_id]
            if status:
                conditions.append(Payment.status == status)
            total = db.execute(select(func.count()).select_from(Payment).where(*conditions)).scalar_one()
            rows = db.execute(
                select(Payment)
                .where(*conditions)
                .order_by(Payment.created_at.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            ).scalars().all()
            return {
                "payments": [payment_to_dict(p) for p in rows],
                "pagination": {
                    "total": total,
                    "page": page,
                    "limit": limit,
                    "total_pages": ceil(total / limit) if total else 0,
                },
            }

    @tracer.start_as_current_span("payments.mpesa_callback")
    def handle_callback(self, body: dict) -> dict:
        """Apply an M-Pesa STK callback; the gateway always gets a ResultCode back."""

        try:
            stk = (body.get("Body") or {}).get("stkCallback")
            if stk:
                self._apply_stk_callback(stk)
            return {"ResultCode": 0, "ResultDesc": "Success"}
        except Exception as exc:
            logger.exception("mpesa_callback_failed error=%s", exc)
            return {"ResultCode": 1, "ResultDesc": "Failed to process callback"}

    def _apply_stk_callback(self, stk: dict) -> None:
        checkout_request_id = stk.get("CheckoutRequestID")
        with self.session_factory() as db:
            payment = db.execute(
                select(Payment)
                .where(Payment.checkout_request_id == checkout_request_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if payment is None or payment.status != sm.PAYMENT_PENDING:
                logger.warning(
                    "mpesa_callback_ignored checkout_request_id=%s status=%s",
                    checkout_request_id,
                    payment.status if payment else None,
                )
                return
            payment_id_ctx.set(payment.id)
            metadata = {**(payment.metadata_ or {}), "callback": stk}

            if int(stk.get("ResultCode", 1)) != 0:
                self._finish(db, payment, sm.PAYMENT_FAILED, failure_reason=stk.get("ResultDesc"), metadata_=metadata)
                enqueue_event(
                    db,
                    OutboxEvent,
                    "payments.failed",
                    "payment",
                    payment.id,
                    {
                        "order_id": payment.order_id,
                        "customer_id": payment.customer_id,
                        "reason": stk.get("ResultDesc"),
                    },
                )
                db.commit()
                payment_verifications_total.labels(service=self.service_name, result="failed").inc()
                return

            if self._paid_elsewhere(db, payment):
                self._finish(
                    db, payment, sm.PAYMENT_FAILED, failure_reason="Order already paid by another payment", metadata_=metadata
                )
                db.commit()
                payment_verifications_total.labels(service=self.service_name, result="duplicate").inc()
                logger.warning("mpesa_callback_duplicate_payment payment_id=%s order_id=%s", payment.id, payment.order_id)
                return

            items = {
                item.get("Name"): item.get("Value")
                for item in (stk.get("CallbackMetadata") or {}).get("Item", [])
            }
            receipt = items.get("MpesaReceiptNumber")
            try:
                self._apply_completion(
                    db,
                    payment,
                    mpesa_receipt_number=receipt,
                    transaction_reference=f"MPESA-{receipt}" if receipt else generate_transaction_reference(),
                    metadata_=metadata,
                )
            except InsufficientStock:
                logger.warning("mpesa_callback_payment_failed payment_id=%s reason=insufficient_stock", payment.id)

    def expire_stale(self, now: datetime | None = None) -> int:
        """Expire every pending payment past its window; returns how many moved."""

        now = now or utcnow()
        with self.session_factory() as db:
            overdue = db.execute(
                select(Payment).where(Payment.status == sm.PAYMENT_PENDING, Payment.expires_at < now)
            ).scalars().all()
            for payment in overdue:
                self._finish(db, payment, sm.PAYMENT_EXPIRED, failure_reason="Payment verification timeout")
            db.commit()
        if overdue:
            logger.info("stale_payments_expired count=%s", len(overdue))
        return len(overdue)
