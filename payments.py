"""
Payment lifecycle of a bill participant.

    pending -> scheduled -> completed | completed_scheduled | completed_late
    pending -> completed | completed_scheduled | completed_late | failed

``completed*`` and ``failed`` are terminal. Every attempt runs in one
transaction: the participant row is locked, and the final status write is a
compare-and-set on the open states, so two racing attempts cannot both settle.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from sqlalchemy import update
from sqlmodel import Session, select

from access import PinVerifier
from compute import DeadlineState, deadline_state, to_dec, within_tolerance
from config import Settings
from db import transactional
from errors import (ConflictError, DeadlineExpiredError, InsufficientFundsError, NotFoundError, UnauthorizedError,
                    ValidationError)
from models import (Bill, BillParticipant, BillStatus, OPEN_STATUSES, Payment, PaymentStatus, PaymentType,
                    ScheduleStatus, ScheduledPayment, SETTLED_STATUSES, User, utcnow)
from settlement import SettlementSimulator

logger = logging.getLogger(__name__)


class PaymentStateMachine:
    def __init__(self, session: Session, verifier=None, settings: Optional[Settings] = None,
                 clock: Callable[[], datetime] = utcnow, simulator: Optional[SettlementSimulator] = None):
        self.session = session
        self.verifier = verifier or PinVerifier(session)
        self.settings = settings or Settings()
        self.clock = clock
        self.simulator = simulator or SettlementSimulator(session)

    # ---------- helpers ----------
    def deadline_for(self, bill: Bill, now: Optional[datetime] = None) -> DeadlineState:
        return deadline_state(
            bill.created_at,
            bill.max_payment_date,
            bill.allow_scheduled_payment,
            now or self.clock(),
            self.settings.payment_window_hours,
        )

    def _load(self, participant_id: int) -> Tuple[BillParticipant, Bill]:
        participant = self.session.exec(
            select(BillParticipant).where(BillParticipant.id == participant_id).with_for_update()
        ).first()
        if participant is None:
            raise NotFoundError(f"Participant {participant_id} not found")
        bill = self.session.get(Bill, participant.bill_id)
        if bill is None:
            raise NotFoundError("Bill not found")
        return participant, bill

    def _ensure_open(self, participant: BillParticipant) -> None:
        if participant.payment_status in SETTLED_STATUSES:
            raise ConflictError("This share has already been paid")
        if participant.payment_status == PaymentStatus.failed:
            raise ConflictError("The payment window for this share is closed")

    def _ensure_credential(self, participant: BillParticipant, credential: str) -> None:
        if not credential or not self.verifier.verify(participant.user_id, credential):
            raise UnauthorizedError("Invalid PIN")

    def _check_amount(self, participant: BillParticipant, amount) -> Decimal:
        amount = to_dec(amount)
        if to_dec(participant.amount_share) <= 0:
            raise ValidationError("Nothing is owed on this share")
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        if not within_tolerance(amount, participant.amount_share, self.settings.rounding_tolerance):
            raise ValidationError(
                f"Amount {amount} does not match the share owed {to_dec(participant.amount_share)}; "
                f"delta {amount - to_dec(participant.amount_share)}"
            )
        return amount

    def _check_schedule(self, bill: Bill, state: DeadlineState, scheduled_date: datetime, now: datetime) -> None:
        if not bill.allow_scheduled_payment:
            raise ValidationError("Scheduled payment not allowed for this bill")
        if scheduled_date <= now:
            raise ValidationError("Scheduled date must be in the future")
        if scheduled_date > state.deadline:
            raise ValidationError(f"Scheduled date is after the payment deadline {state.deadline.isoformat()}")

    def _mark_failed(self, participant: BillParticipant, bill: Bill, expire_bill: bool) -> None:
        participant.payment_status = PaymentStatus.failed
        self.session.add(participant)
        if expire_bill and bill.status == BillStatus.active:
            bill.status = BillStatus.expired
            self.session.add(bill)
        self.session.commit()
        logger.info(f"Participant {participant.id} on bill {bill.id} marked failed")

    def _expire_if_due(self, participant: BillParticipant, bill: Bill, state: DeadlineState) -> None:
        if state.is_expired:
            self._mark_failed(participant, bill, expire_bill=True)
            raise DeadlineExpiredError(f"Payment deadline passed at {state.deadline.isoformat()}")

    def _set_status(self, participant: BillParticipant, new_status: PaymentStatus, paid_at=None) -> None:
        values = {"payment_status": new_status}
        if paid_at is not None:
            values["paid_at"] = paid_at
        result = self.session.connection().execute(
            update(BillParticipant)
            .where(BillParticipant.id == participant.id, BillParticipant.payment_status.in_(OPEN_STATUSES))
            .values(**values)
        )
        if result.rowcount != 1:
            raise ConflictError("This share was settled by a concurrent request")
        self.session.expire(participant)

    def _complete_bill_if_settled(self, bill: Bill) -> None:
        rows = self.session.exec(
            select(BillParticipant.payment_status, BillParticipant.amount_share)
            .where(BillParticipant.bill_id == bill.id)
        ).all()
        # a zero share owes nothing and never blocks completion
        if rows and all(status in SETTLED_STATUSES or to_dec(share) <= 0 for status, share in rows):
            bill.status = BillStatus.completed
            self.session.add(bill)
            logger.info(f"Bill {bill.id} fully settled")

    # ---------- operations ----------
    def verify_credential(self, user_id: int, pin: str) -> bool:
        return bool(pin) and self.verifier.verify(user_id, pin)

    @transactional
    def attempt_payment(self, participant_id: int, amount, credential: str,
                        scheduled_date: Optional[datetime] = None) -> Payment:
        participant, bill = self._load(participant_id)
        self._ensure_open(participant)
        self._ensure_credential(participant, credential)
        now = self.clock()
        state = self.deadline_for(bill, now)
        self._expire_if_due(participant, bill, state)
        amount = self._check_amount(participant, amount)
        scheduled = scheduled_date is not None
        if scheduled:
            self._check_schedule(bill, state, scheduled_date, now)

        payer = self.session.get(User, participant.user_id)
        host = self.session.get(User, bill.host_id)
        try:
            receipt = self.simulator.transfer(
                payer.account_number if payer else None,
                host.account_number if host else None,
                amount,
                scheduled=scheduled,
            )
        except InsufficientFundsError:
            self.session.rollback()
            if self.settings.fail_on_insufficient_funds:
                participant, bill = self._load(participant_id)
                self._mark_failed(participant, bill, expire_bill=False)
            raise

        if scheduled:
            new_status = PaymentStatus.completed_scheduled
        elif now > state.default_deadline:
            new_status = PaymentStatus.completed_late
        else:
            new_status = PaymentStatus.completed
        self._set_status(participant, new_status, paid_at=now)

        payment = Payment(
            bill_id=bill.id,
            user_id=participant.user_id,
            participant_id=participant.id,
            amount=amount,
            payment_type=PaymentType.scheduled if scheduled else PaymentType.instant,
            status=new_status,
            transaction_id=receipt.transaction_id,
            reference_number=receipt.reference_number,
            scheduled_date=scheduled_date,
            paid_at=now,
        )
        self.session.add(payment)
        for intent in self.session.exec(
            select(ScheduledPayment).where(
                ScheduledPayment.participant_id == participant.id,
                ScheduledPayment.status == ScheduleStatus.scheduled,
            )
        ).all():
            intent.status = ScheduleStatus.executed
            self.session.add(intent)
        self._complete_bill_if_settled(bill)
        self.session.commit()
        self.session.refresh(payment)
        logger.info(f"Participant {participant.id} paid {amount} on bill {bill.id} ({new_status.value})")
        return payment

    @transactional
    def schedule_payment(self, participant_id: int, amount, credential: str,
                         scheduled_date: datetime) -> ScheduledPayment:
        """Record a future-dated intent. No money moves until the share is paid."""
        participant, bill = self._load(participant_id)
        self._ensure_open(participant)
        if participant.payment_status == PaymentStatus.scheduled:
            raise ConflictError("A payment is already scheduled for this share")
        self._ensure_credential(participant, credential)
        now = self.clock()
        state = self.deadline_for(bill, now)
        self._expire_if_due(participant, bill, state)
        if scheduled_date is None:
            raise ValidationError("Scheduled date required")
        self._check_schedule(bill, state, scheduled_date, now)
        amount = self._check_amount(participant, amount)

        intent = ScheduledPayment(
            bill_id=bill.id,
            user_id=participant.user_id,
            participant_id=participant.id,
            amount=amount,
            scheduled_date=scheduled_date,
            pin_verified_at=now,
            created_at=now,
        )
        self.session.add(intent)
        self._set_status(participant, PaymentStatus.scheduled)
        self.session.commit()
        self.session.refresh(intent)
        logger.info(f"Participant {participant.id} scheduled {amount} for {scheduled_date.isoformat()}")
        return intent

    def payment_history(self, user_id: int) -> List[Payment]:
        return list(self.session.exec(
            select(Payment).where(Payment.user_id == user_id).order_by(Payment.paid_at.desc())
        ).all())

    def scheduled_payments(self, user_id: int) -> List[ScheduledPayment]:
        return list(self.session.exec(
            select(ScheduledPayment).where(ScheduledPayment.user_id == user_id)
            .order_by(ScheduledPayment.scheduled_date)
        ).all())
