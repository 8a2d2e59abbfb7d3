import logging
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from sqlmodel import Session, select

from compute import TOLERANCE, ZERO, Breakdown, round2, split_evenly, to_dec, within_tolerance
from errors import ConflictError, ValidationError
from models import (Bill, BillParticipant, ItemAssignment, PaymentStatus, ScheduledPayment, SETTLED_STATUSES,
                    utcnow)

logger = logging.getLogger(__name__)


class ParticipantLedger:
    """
    Owns the participant rows of a bill.

    Nothing here commits: callers group ledger writes with the rest of their
    transaction and commit once.
    """

    def __init__(self, session: Session, tolerance: Decimal = TOLERANCE, clock: Callable = utcnow):
        self.session = session
        self.tolerance = tolerance
        self.clock = clock

    def participants(self, bill_id: int) -> List[BillParticipant]:
        return list(self.session.exec(
            select(BillParticipant).where(BillParticipant.bill_id == bill_id).order_by(BillParticipant.id)
        ).all())

    def find(self, bill_id: int, user_id: int) -> Optional[BillParticipant]:
        return self.session.exec(
            select(BillParticipant).where(BillParticipant.bill_id == bill_id, BillParticipant.user_id == user_id)
        ).first()

    def _row(self, bill: Bill, user_id: int, breakdown: Breakdown, status: PaymentStatus) -> BillParticipant:
        row = BillParticipant(
            bill_id=bill.id,
            user_id=user_id,
            amount_share=breakdown.share,
            subtotal=round2(breakdown.subtotal),
            tax_amount=round2(breakdown.tax_amount),
            service_amount=round2(breakdown.service_amount),
            discount_amount=round2(breakdown.discount_amount),
            payment_status=status,
        )
        return row

    def admit_host(self, bill: Bill, breakdown: Breakdown) -> BillParticipant:
        # the host advanced the money, so their row starts settled
        if self.find(bill.id, bill.host_id) is not None:
            raise ConflictError("Host is already a participant of this bill")
        now = self.clock()
        row = self._row(bill, bill.host_id, breakdown, PaymentStatus.completed)
        row.paid_at = now
        row.joined_at = now
        self.session.add(row)
        self.session.flush()
        return row

    def admit_participant(self, bill: Bill, user_id: int, breakdown: Breakdown, joined: bool = False) -> BillParticipant:
        if self.find(bill.id, user_id) is not None:
            raise ConflictError(f"User {user_id} is already a participant of this bill")
        row = self._row(bill, user_id, breakdown, PaymentStatus.pending)
        if joined:
            row.joined_at = self.clock()
        self.session.add(row)
        self.session.flush()
        logger.info(f"Participant {row.id} (user {user_id}) admitted to bill {bill.id}, share {row.amount_share}")
        return row

    def reconcile(self, bill: Bill) -> Decimal:
        """Check that the shares add up to the bill total. Returns the sum."""
        total = sum((to_dec(p.amount_share) for p in self.participants(bill.id)), ZERO)
        if not within_tolerance(total, bill.total_amount, self.tolerance):
            delta = total - to_dec(bill.total_amount)
            logger.warning(f"Bill {bill.id} does not reconcile: shares {total} vs total {bill.total_amount}")
            raise ValidationError(
                f"Participant shares sum to {total} but bill total is {to_dec(bill.total_amount)}; delta {delta}"
            )
        return total

    def recompute_equal_split(self, bill: Bill) -> Dict[int, Decimal]:
        """
        Overwrite every share with total / count. Used for ad-hoc joins on
        bills without item assignments.
        """
        rows = self.participants(bill.id)
        ids = [p.id for p in rows]
        shares = split_evenly(bill.total_amount, ids)
        subtotals = split_evenly(bill.sub_total, ids)
        taxes = split_evenly(bill.tax_amount, ids)
        services = split_evenly(bill.service_amount, ids)
        discounts = split_evenly(bill.discount_amount, ids)
        for p in rows:
            p.amount_share = shares[p.id]
            p.subtotal = subtotals[p.id]
            p.tax_amount = taxes[p.id]
            p.service_amount = services[p.id]
            p.discount_amount = discounts[p.id]
            self.session.add(p)
        bill.split_method = "equal"
        self.session.add(bill)
        self.session.flush()
        logger.info(f"Bill {bill.id} re-split equally across {len(rows)} participants")
        return shares

    def remove_participant(self, bill: Bill, participant: BillParticipant) -> None:
        if participant.user_id == bill.host_id:
            raise ValidationError("The host cannot be removed from a bill")
        if participant.payment_status in SETTLED_STATUSES:
            raise ConflictError("A participant who already paid cannot be removed")
        # the host already advanced the money, so an unpaid share falls back to them
        host = self.find(bill.id, bill.host_id)
        host.amount_share = round2(to_dec(host.amount_share) + to_dec(participant.amount_share))
        host.subtotal = round2(to_dec(host.subtotal) + to_dec(participant.subtotal))
        host.tax_amount = round2(to_dec(host.tax_amount) + to_dec(participant.tax_amount))
        host.service_amount = round2(to_dec(host.service_amount) + to_dec(participant.service_amount))
        host.discount_amount = round2(to_dec(host.discount_amount) + to_dec(participant.discount_amount))
        self.session.add(host)
        for a in self.session.exec(
            select(ItemAssignment).where(ItemAssignment.participant_id == participant.id)
        ).all():
            self.session.delete(a)
        for s in self.session.exec(
            select(ScheduledPayment).where(ScheduledPayment.participant_id == participant.id)
        ).all():
            self.session.delete(s)
        self.session.delete(participant)
        self.session.flush()
        logger.info(f"Participant {participant.id} removed from bill {bill.id}; share moved to host")
