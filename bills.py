"""
Bill service: the operations the HTTP layer exposes.

Bill creation stores the bill, its items, every participant (host first, pre-settled),
the item assignments and the host's payment in one transaction. The participant
breakdowns come from the caller; they are checked against the items and fees,
never silently recomputed.
"""
import logging
import secrets
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from sqlalchemy import or_
from sqlmodel import Session, select

from access import InvitationAdmission
from compute import (ZERO, Breakdown, FeeAmounts, allocate_fees, compute_fees, items_subtotal, reconcile_items,
                     round2, to_dec, validate_breakdowns, within_tolerance)
from config import Settings
from db import transactional
from errors import ConflictError, DeadlineExpiredError, ForbiddenError, NotFoundError, ValidationError
from ledger import ParticipantLedger
from models import (AssignmentIn, Bill, BillInvitation, BillItem, BillItemBase, BillParticipant, BillStatus,
                    BreakdownIn, FeeConfig, ItemAssignment, Payment, PaymentStatus, PaymentType, ScheduleStatus,
                    ScheduledPayment, SETTLED_STATUSES, User, utcnow)
from payments import PaymentStateMachine
from settlement import new_transaction_id

logger = logging.getLogger(__name__)


def _breakdown(b: BreakdownIn) -> Breakdown:
    return Breakdown(
        subtotal=round2(b.subtotal),
        tax_amount=round2(b.tax_amount),
        service_amount=round2(b.service_amount),
        discount_amount=round2(b.discount_amount),
        amount_share=round2(b.amount_share) if b.amount_share is not None else None,
    )


def _item_table(items) -> Dict[int, dict]:
    return {i: {"price": it.price, "quantity": it.quantity, "is_sharing": it.is_sharing} for i, it in enumerate(items)}


class BillService:
    def __init__(self, session: Session, admission=None, settings: Optional[Settings] = None,
                 clock: Callable[[], datetime] = utcnow, payments: Optional[PaymentStateMachine] = None):
        self.session = session
        self.settings = settings or Settings()
        self.clock = clock
        self.admission = admission or InvitationAdmission(session)
        self.ledger = ParticipantLedger(session, self.settings.rounding_tolerance, clock)
        self.payments = payments or PaymentStateMachine(session, settings=self.settings, clock=clock)

    # ---------- lookups ----------
    def _bill(self, bill_id: int) -> Bill:
        bill = self.session.get(Bill, bill_id)
        if bill is None:
            raise NotFoundError("Bill not found")
        return bill

    def _host_bill(self, bill_id: int, host_id: int) -> Bill:
        bill = self._bill(bill_id)
        if bill.host_id != host_id:
            raise ForbiddenError("Only the bill host can do this")
        return bill

    def _user(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def _items(self, bill_id: int) -> List[BillItem]:
        return list(self.session.exec(select(BillItem).where(BillItem.bill_id == bill_id).order_by(BillItem.id)).all())

    def _assignments(self, bill_id: int) -> List[ItemAssignment]:
        return list(self.session.exec(
            select(ItemAssignment).where(ItemAssignment.bill_id == bill_id).order_by(ItemAssignment.id)
        ).all())

    def _new_code(self) -> str:
        while True:
            code = f"B{secrets.randbelow(10 ** 6):06d}"
            if self.session.exec(select(Bill).where(Bill.bill_code == code)).first() is None:
                return code

    # ---------- quote ----------
    def quote(self, items: List[BillItemBase], fee_config: FeeConfig,
              assignments: Dict[int, List[AssignmentIn]]) -> Dict[int, Breakdown]:
        """
        Proportional breakdowns for a prospective bill.
        assignments: user_id -> items assigned to them. Unassigned value stays with no one.
        """
        table = _item_table(items)
        reconciled = reconcile_items(table, [
            {"item": a.item_index, "participant": user_id, "quantity_assigned": a.quantity, "amount_assigned": a.amount}
            for user_id, assigned in assignments.items() for a in assigned
        ], self.settings.rounding_tolerance)
        subtotal = items_subtotal(table)
        fees = compute_fees(subtotal, fee_config.tax_pct, fee_config.service_pct, fee_config.discount_pct,
                            fee_config.discount_nominal)
        subtotals = {user_id: reconciled.subtotals.get(user_id, ZERO) for user_id in assignments}
        # fees follow the share of the whole bill subtotal, so scale against it
        unassigned = max(subtotal - sum(subtotals.values(), ZERO), ZERO)
        weights = dict(subtotals)
        weights[None] = unassigned
        allocated = allocate_fees(weights, fees)
        allocated.pop(None)
        return allocated

    # ---------- create ----------
    @transactional
    def create_bill(self, host_id: int, bill_name: str, items: List[BillItemBase], fee_config: FeeConfig,
                    breakdowns: List[BreakdownIn], currency: Optional[str] = None,
                    max_payment_date: Optional[datetime] = None, allow_scheduled_payment: bool = True) -> Bill:
        host = self._user(host_id)
        if not bill_name:
            raise ValidationError("Bill name required")
        if not items:
            raise ValidationError("At least one item required")
        for i, it in enumerate(items):
            if to_dec(it.price) < 0 or it.quantity < 1:
                raise ValidationError(f"Item #{i} needs a non-negative price and a quantity of at least 1")
        seen = set()
        for b in breakdowns:
            if b.user_id in seen:
                raise ValidationError(f"User {b.user_id} appears twice in the breakdowns")
            seen.add(b.user_id)
            self._user(b.user_id)

        table = _item_table(items)
        subtotal = items_subtotal(table)
        fees = compute_fees(subtotal, fee_config.tax_pct, fee_config.service_pct, fee_config.discount_pct,
                            fee_config.discount_nominal)
        total = fees.total_for(subtotal)
        flat = [
            {"item": a.item_index, "participant": b.user_id, "quantity_assigned": a.quantity, "amount_assigned": a.amount}
            for b in breakdowns for a in b.items
        ]
        reconciled = reconcile_items(table, flat, self.settings.rounding_tolerance)
        for b in breakdowns:
            if b.items and not within_tolerance(b.subtotal, reconciled.subtotals.get(b.user_id, ZERO),
                                                self.settings.rounding_tolerance):
                raise ValidationError(
                    f"Subtotal {to_dec(b.subtotal)} for user {b.user_id} does not match assigned items "
                    f"({reconciled.subtotals.get(b.user_id, ZERO)})"
                )

        by_user = {b.user_id: _breakdown(b) for b in breakdowns}
        if host_id not in by_user:
            by_user[host_id] = self._remainder(subtotal, fees, list(by_user.values()))
        validate_breakdowns(list(by_user.values()), subtotal, fees, total, self.settings.rounding_tolerance)

        bill = Bill(
            bill_name=bill_name,
            bill_code=self._new_code(),
            host_id=host.id,
            currency=currency or self.settings.default_currency,
            total_amount=total,
            sub_total=subtotal,
            tax_pct=to_dec(fee_config.tax_pct),
            tax_amount=fees.tax_amount,
            service_pct=to_dec(fee_config.service_pct),
            service_amount=fees.service_amount,
            discount_pct=to_dec(fee_config.discount_pct),
            discount_amount=fees.discount_amount,
            max_payment_date=max_payment_date,
            allow_scheduled_payment=allow_scheduled_payment,
            split_method="custom",
            status=BillStatus.active,
            created_at=self.clock(),
        )
        self.session.add(bill)
        self.session.flush()
        item_rows = [BillItem(bill_id=bill.id, **it.model_dump()) for it in items]
        self.session.add_all(item_rows)
        self.session.flush()

        host_row = self.ledger.admit_host(bill, by_user[host_id])
        rows = {host_id: host_row}
        for b in breakdowns:
            if b.user_id != host_id:
                rows[b.user_id] = self.ledger.admit_participant(bill, b.user_id, by_user[b.user_id])
        for entry, amount in zip(flat, reconciled.amounts):
            self.session.add(ItemAssignment(
                bill_id=bill.id,
                item_id=item_rows[entry["item"]].id,
                participant_id=rows[entry["participant"]].id,
                quantity_assigned=to_dec(entry["quantity_assigned"]),
                amount_assigned=amount,
            ))
        if host_row.amount_share > 0:
            self.session.add(Payment(
                bill_id=bill.id,
                user_id=host_id,
                participant_id=host_row.id,
                amount=host_row.amount_share,
                payment_type=PaymentType.instant,
                status=PaymentStatus.completed,
                transaction_id=new_transaction_id(now=bill.created_at),
                paid_at=host_row.paid_at,
            ))
        self.ledger.reconcile(bill)
        self.session.commit()
        self.session.refresh(bill)
        logger.info(f"Bill {bill.id} ({bill.bill_code}) created by user {host_id}: total {bill.total_amount}, "
                    f"{len(rows)} participants")
        return bill

    def _remainder(self, subtotal: Decimal, fees: FeeAmounts, others: List[Breakdown]) -> Breakdown:
        # the host covers whatever the other breakdowns leave over
        rest = Breakdown(
            subtotal=round2(subtotal - sum((b.subtotal for b in others), ZERO)),
            tax_amount=round2(fees.tax_amount - sum((b.tax_amount for b in others), ZERO)),
            service_amount=round2(fees.service_amount - sum((b.service_amount for b in others), ZERO)),
            discount_amount=round2(fees.discount_amount - sum((b.discount_amount for b in others), ZERO)),
        )
        if min(rest.subtotal, rest.tax_amount, rest.service_amount, rest.discount_amount) < -self.settings.rounding_tolerance:
            raise ValidationError("Participant breakdowns exceed the bill totals")
        return rest

    # ---------- join ----------
    @transactional
    def join_bill(self, bill_code: str, user_id: int) -> dict:
        if not bill_code:
            raise ValidationError("Bill code required")
        bill = self.session.exec(select(Bill).where(Bill.bill_code == bill_code)).first()
        if bill is None:
            raise NotFoundError("Bill not found")
        if bill.status != BillStatus.active:
            raise ValidationError("Bill is no longer active")
        self._user(user_id)
        state = self.payments.deadline_for(bill)
        if state.is_expired:
            raise DeadlineExpiredError("The payment window for this bill has closed")

        existing = self.ledger.find(bill.id, user_id)
        if existing is not None:
            if existing.joined_at is not None:
                raise ConflictError("Already joined this bill")
            # added by the host with an assignment: joining only confirms it
            existing.joined_at = self.clock()
            self.session.add(existing)
            participant = existing
        else:
            if not self.admission.may_join(bill, user_id):
                raise ForbiddenError("You can only join bills from friends or if you were invited")
            participant = self.ledger.admit_participant(bill, user_id, Breakdown(subtotal=ZERO), joined=True)
            if not self._assignments(bill.id):
                self.ledger.recompute_equal_split(bill)
        self.ledger.reconcile(bill)
        self.session.commit()
        self.session.refresh(participant)
        count = len(self.ledger.participants(bill.id))
        logger.info(f"User {user_id} joined bill {bill.id}; share {participant.amount_share}")
        return {
            "bill_id": bill.id,
            "bill_name": bill.bill_name,
            "participant_id": participant.id,
            "total_amount": to_dec(bill.total_amount),
            "your_share": to_dec(participant.amount_share),
            "total_participants": count,
            "max_payment_date": bill.max_payment_date,
            "allow_scheduled_payment": bill.allow_scheduled_payment,
        }

    # ---------- host operations ----------
    @transactional
    def invite(self, bill_id: int, host_id: int, user_ids: List[int]) -> dict:
        if not user_ids:
            raise ValidationError("User IDs required")
        bill = self._host_bill(bill_id, host_id)
        results = {"invited": [], "failed": []}
        for user_id in user_ids:
            user = self.session.get(User, user_id)
            if user is None:
                results["failed"].append({"user_id": user_id, "reason": "User not found"})
                continue
            if self.ledger.find(bill.id, user_id) is not None:
                results["failed"].append({"user_id": user_id, "reason": "Already participant"})
                continue
            already = self.session.exec(
                select(BillInvitation).where(BillInvitation.bill_id == bill.id, BillInvitation.user_id == user_id)
            ).first()
            if already is None:
                self.session.add(BillInvitation(bill_id=bill.id, user_id=user_id, invited_by=host_id,
                                                created_at=self.clock()))
            results["invited"].append({"user_id": user_id, "name": user.name})
        self.session.commit()
        return results

    def _rebalance(self, bill: Bill, subtotals: Dict[int, Decimal]) -> None:
        """
        Give the participants in ``subtotals`` new breakdowns with fees in
        proportion to their subtotal. Rows not listed keep theirs; the host absorbs
        the rest, so the shares still add up to the bill total.
        """
        rows = self.ledger.participants(bill.id)
        host = next(p for p in rows if p.user_id == bill.host_id)
        fixed = [p for p in rows if p.id != host.id and p.id not in subtotals]
        remaining_sub = to_dec(bill.sub_total) - sum((to_dec(p.subtotal) for p in fixed), ZERO)
        host_sub = round2(remaining_sub - sum(subtotals.values(), ZERO))
        if host_sub < 0:
            raise ValidationError(f"Assignments exceed the bill subtotal by {-host_sub}")
        fees = FeeAmounts(
            tax_amount=round2(to_dec(bill.tax_amount) - sum((to_dec(p.tax_amount) for p in fixed), ZERO)),
            service_amount=round2(to_dec(bill.service_amount) - sum((to_dec(p.service_amount) for p in fixed), ZERO)),
            discount_amount=round2(to_dec(bill.discount_amount) - sum((to_dec(p.discount_amount) for p in fixed), ZERO)),
        )
        weights = dict(subtotals)
        weights[host.id] = host_sub
        allocated = allocate_fees(weights, fees)
        for p in rows:
            b = allocated.get(p.id)
            if b is None:
                continue
            p.subtotal = b.subtotal
            p.tax_amount = b.tax_amount
            p.service_amount = b.service_amount
            p.discount_amount = b.discount_amount
            p.amount_share = b.computed_share
            self.session.add(p)
        self.session.flush()

    def _reconciled_assignments(self, bill: Bill, wanted: List[dict]):
        items = self._items(bill.id)
        item_table = {it.id: {"price": it.price, "quantity": it.quantity, "is_sharing": it.is_sharing} for it in items}
        return reconcile_items(item_table, wanted, self.settings.rounding_tolerance)

    def _item_id(self, bill: Bill, item_index: int) -> int:
        items = self._items(bill.id)
        if item_index < 0 or item_index >= len(items):
            raise NotFoundError(f"Item #{item_index} does not belong to this bill")
        return items[item_index].id

    @transactional
    def add_participant(self, bill_id: int, host_id: int, user_id: int, items: List[AssignmentIn]) -> BillParticipant:
        bill = self._host_bill(bill_id, host_id)
        if bill.status != BillStatus.active:
            raise ValidationError("Bill is no longer active")
        self._user(user_id)
        if self.ledger.find(bill.id, user_id) is not None:
            raise ConflictError("User is already a participant")
        existing = [
            {"item": a.item_id, "participant": a.participant_id, "quantity_assigned": a.quantity_assigned,
             "amount_assigned": a.amount_assigned}
            for a in self._assignments(bill.id)
        ]
        new = [
            {"item": self._item_id(bill, a.item_index), "participant": "new", "quantity_assigned": a.quantity,
             "amount_assigned": a.amount}
            for a in items
        ]
        reconciled = self._reconciled_assignments(bill, existing + new)
        participant = self.ledger.admit_participant(bill, user_id, Breakdown(subtotal=ZERO))
        for entry, amount in zip(new, reconciled.amounts[len(existing):]):
            self.session.add(ItemAssignment(
                bill_id=bill.id, item_id=entry["item"], participant_id=participant.id,
                quantity_assigned=to_dec(entry["quantity_assigned"]), amount_assigned=amount,
            ))
        self._rebalance(bill, {participant.id: reconciled.subtotals.get("new", ZERO)})
        self.ledger.reconcile(bill)
        self.session.commit()
        self.session.refresh(participant)
        return participant

    @transactional
    def assign_items(self, bill_id: int, host_id: int, assignments: List[dict]) -> Dict[int, Decimal]:
        """
        Replace every item assignment of the bill.
        assignments: list of {participant_id, item_index, quantity, amount (opt)}
        Open participants get breakdowns from their new assignments; paid ones must keep theirs.
        """
        bill = self._host_bill(bill_id, host_id)
        rows = {p.id: p for p in self.ledger.participants(bill.id)}
        wanted = []
        for a in assignments:
            if a["participant_id"] not in rows:
                raise NotFoundError(f"Participant {a['participant_id']} is not on this bill")
            wanted.append({"item": self._item_id(bill, a["item_index"]), "participant": a["participant_id"],
                          "quantity_assigned": a["quantity"], "amount_assigned": a.get("amount")})
        reconciled = self._reconciled_assignments(bill, wanted)

        subtotals = {}
        for p in rows.values():
            if p.user_id == bill.host_id:
                continue
            new_sub = reconciled.subtotals.get(p.id, ZERO)
            if p.payment_status in SETTLED_STATUSES:
                if not within_tolerance(new_sub, p.subtotal, self.settings.rounding_tolerance):
                    raise ConflictError(f"Participant {p.id} already paid; their items cannot change")
                continue
            subtotals[p.id] = new_sub

        for a in self._assignments(bill.id):
            self.session.delete(a)
        self.session.flush()
        for entry, amount in zip(wanted, reconciled.amounts):
            self.session.add(ItemAssignment(
                bill_id=bill.id, item_id=entry["item"], participant_id=entry["participant"],
                quantity_assigned=to_dec(entry["quantity_assigned"]), amount_assigned=amount,
            ))
        self._rebalance(bill, subtotals)
        bill.split_method = "custom"
        self.session.add(bill)
        self.ledger.reconcile(bill)
        self.session.commit()
        logger.info(f"Bill {bill.id}: {len(wanted)} item assignments replaced")
        return {p.id: to_dec(p.amount_share) for p in self.ledger.participants(bill.id)}

    @transactional
    def remove_participant(self, bill_id: int, host_id: int, participant_id: int) -> None:
        bill = self._host_bill(bill_id, host_id)
        participant = self.session.get(BillParticipant, participant_id)
        if participant is None or participant.bill_id != bill.id:
            raise NotFoundError("Participant not found")
        self.ledger.remove_participant(bill, participant)
        self.ledger.reconcile(bill)
        self.session.commit()

    # ---------- views ----------
    def get_bill_settlement_view(self, bill_id: int, user_id: Optional[int] = None) -> dict:
        bill = self._bill(bill_id)
        state = self.payments.deadline_for(bill)
        participants = self.ledger.participants(bill.id)
        users = {u.id: u for u in self.session.exec(
            select(User).where(User.id.in_([p.user_id for p in participants] or [0]))
        ).all()}
        assignments = self._assignments(bill.id)
        by_participant = {p.id: p for p in participants}
        scheduled = self.session.exec(
            select(ScheduledPayment).where(ScheduledPayment.bill_id == bill.id,
                                           ScheduledPayment.status == ScheduleStatus.scheduled)
        ).all()
        # settled shares rather than payment rows: the host row is re-split after creation
        settled = [p for p in participants if p.payment_status in SETTLED_STATUSES]
        total_paid = round2(sum((to_dec(p.amount_share) for p in settled), ZERO))
        total_scheduled = round2(sum((to_dec(s.amount) for s in scheduled), ZERO))
        mine = next((p for p in participants if p.user_id == user_id), None) if user_id is not None else None

        def name_of(p):
            u = users.get(p.user_id)
            return u.name if u else None

        return {
            "bill_id": bill.id,
            "bill_code": bill.bill_code,
            "bill_name": bill.bill_name,
            "currency": bill.currency,
            "status": bill.status.value,
            "split_method": bill.split_method,
            "total_amount": to_dec(bill.total_amount),
            "sub_total": to_dec(bill.sub_total),
            "tax_pct": to_dec(bill.tax_pct),
            "tax_amount": to_dec(bill.tax_amount),
            "service_pct": to_dec(bill.service_pct),
            "service_amount": to_dec(bill.service_amount),
            "discount_pct": to_dec(bill.discount_pct),
            "discount_amount": to_dec(bill.discount_amount),
            "allow_scheduled_payment": bill.allow_scheduled_payment,
            "max_payment_date": bill.max_payment_date,
            "created_at": bill.created_at,
            "deadline": state.deadline,
            "is_expired": state.is_expired,
            "host_id": bill.host_id,
            "items": [
                {
                    "item_id": it.id,
                    "item_name": it.item_name,
                    "price": to_dec(it.price),
                    "quantity": it.quantity,
                    "is_sharing": it.is_sharing,
                    "assignments": [
                        {
                            "participant_id": a.participant_id,
                            "name": name_of(by_participant[a.participant_id]),
                            "quantity": to_dec(a.quantity_assigned),
                            "amount": to_dec(a.amount_assigned),
                        }
                        for a in assignments if a.item_id == it.id
                    ],
                }
                for it in self._items(bill.id)
            ],
            "participants": [
                {
                    "participant_id": p.id,
                    "user_id": p.user_id,
                    "name": name_of(p),
                    "is_host": p.user_id == bill.host_id,
                    "amount_share": to_dec(p.amount_share),
                    "subtotal": to_dec(p.subtotal),
                    "tax_amount": to_dec(p.tax_amount),
                    "service_amount": to_dec(p.service_amount),
                    "discount_amount": to_dec(p.discount_amount),
                    "payment_status": p.payment_status.value,
                    "paid_at": p.paid_at,
                    "joined_at": p.joined_at,
                }
                for p in participants
            ],
            "payment_summary": {
                "total_paid": total_paid,
                "total_scheduled": total_scheduled,
                "remaining_amount": round2(to_dec(bill.total_amount) - total_paid),
                "completed_payments": len(settled),
                "scheduled_payments": len(scheduled),
            },
            "your_share": to_dec(mine.amount_share) if mine else ZERO,
            "your_status": mine.payment_status.value if mine else "not_participant",
        }

    def get_assignments(self, bill_id: int, user_id: int) -> dict:
        bill = self._bill(bill_id)
        mine = self.ledger.find(bill.id, user_id)
        if mine is None and bill.host_id != user_id:
            # non-members cannot tell the bill exists
            raise NotFoundError("Bill not found")
        view = self.get_bill_settlement_view(bill_id, user_id)
        your_items = [
            {"item_name": it["item_name"], "quantity": a["quantity"], "amount": a["amount"]}
            for it in view["items"] for a in it["assignments"]
            if mine is not None and a["participant_id"] == mine.id
        ]
        return {
            "bill_id": bill.id,
            "bill_name": bill.bill_name,
            "total_amount": view["total_amount"],
            "your_share": view["your_share"],
            "your_items": your_items,
            "all_items": view["items"],
            "participants": [
                {k: p[k] for k in ("participant_id", "name", "amount_share", "payment_status")}
                for p in view["participants"]
            ],
        }

    def list_bills(self, user_id: int) -> List[dict]:
        """Bills the user hosts or takes part in, newest first."""
        self._user(user_id)
        joined = select(BillParticipant.bill_id).where(BillParticipant.user_id == user_id)
        bills = self.session.exec(
            select(Bill).where(or_(Bill.host_id == user_id, Bill.id.in_(joined)))
            .order_by(Bill.created_at.desc(), Bill.id.desc())
        ).all()
        mine = {p.bill_id: p for p in self.session.exec(
            select(BillParticipant).where(BillParticipant.user_id == user_id)
        ).all()}
        hosts = {u.id: u for u in self.session.exec(
            select(User).where(User.id.in_([b.host_id for b in bills] or [0]))
        ).all()}
        out = []
        for bill in bills:
            p = mine.get(bill.id)
            state = self.payments.deadline_for(bill)
            out.append({
                "bill_id": bill.id,
                "bill_code": bill.bill_code,
                "bill_name": bill.bill_name,
                "currency": bill.currency,
                "total_amount": to_dec(bill.total_amount),
                "status": bill.status.value,
                "is_host": bill.host_id == user_id,
                "host_name": hosts[bill.host_id].name if bill.host_id in hosts else None,
                "your_share": to_dec(p.amount_share) if p else ZERO,
                "payment_status": p.payment_status.value if p else "not_participant",
                "deadline": state.deadline,
                "is_expired": state.is_expired,
                "created_at": bill.created_at,
            })
        return out
