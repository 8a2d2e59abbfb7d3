from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Dict, Hashable, List, Optional, Sequence

from errors import NotFoundError, ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
TOLERANCE = Decimal("1")
FULL_SHARE = Decimal("1")
# storage scale of percentage and shared-fraction columns
PCT_PLACES = 4
FRACTION_PLACES = 6

def to_dec(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    if x is None:
        return ZERO
    return Decimal(str(x))

def round2(d: Decimal) -> Decimal:
    return to_dec(d).quantize(CENT, rounding=ROUND_HALF_UP)

def within_tolerance(a, b, tolerance: Decimal = TOLERANCE) -> bool:
    return abs(to_dec(a) - to_dec(b)) <= tolerance

def fits_places(d: Decimal, places: int) -> bool:
    d = to_dec(d)
    return d == d.quantize(Decimal(1).scaleb(-places))

# ============== Fee Allocator ==============
@dataclass(frozen=True)
class FeeAmounts:
    tax_amount: Decimal
    service_amount: Decimal
    discount_amount: Decimal

    def total_for(self, subtotal: Decimal) -> Decimal:
        return round2(to_dec(subtotal) + self.tax_amount + self.service_amount - self.discount_amount)

@dataclass(frozen=True)
class Breakdown:
    subtotal: Decimal
    tax_amount: Decimal = ZERO
    service_amount: Decimal = ZERO
    discount_amount: Decimal = ZERO
    amount_share: Optional[Decimal] = None

    @property
    def computed_share(self) -> Decimal:
        return round2(self.subtotal + self.tax_amount + self.service_amount - self.discount_amount)

    @property
    def share(self) -> Decimal:
        return round2(self.amount_share) if self.amount_share is not None else self.computed_share

def compute_fees(subtotal, tax_pct=0, service_pct=0, discount_pct=0, discount_nominal=None) -> FeeAmounts:
    """
    Absolute fee amounts for a bill subtotal.
    A nominal discount, when given, wins over discount_pct.
    """
    subtotal = to_dec(subtotal)
    pcts = {"tax_pct": to_dec(tax_pct), "service_pct": to_dec(service_pct), "discount_pct": to_dec(discount_pct)}
    for name, pct in pcts.items():
        if pct < 0:
            raise ValidationError(f"{name} must be >= 0, got {pct}")
        if not fits_places(pct, PCT_PLACES):
            raise ValidationError(f"{name} allows at most {PCT_PLACES} decimal places, got {pct}")
    if subtotal < 0:
        raise ValidationError(f"subtotal must be >= 0, got {subtotal}")
    if discount_nominal is not None:
        discount = round2(discount_nominal)
        if discount < 0:
            raise ValidationError(f"discount amount must be >= 0, got {discount}")
    else:
        discount = round2(subtotal * pcts["discount_pct"] / 100)
    fees = FeeAmounts(
        tax_amount=round2(subtotal * pcts["tax_pct"] / 100),
        service_amount=round2(subtotal * pcts["service_pct"] / 100),
        discount_amount=discount,
    )
    charged = subtotal + fees.tax_amount + fees.service_amount
    if discount > charged:
        raise ValidationError(f"discount {discount} exceeds the bill before discount {round2(charged)}")
    return fees

def apportion(amount, weights: Dict[Hashable, Decimal]) -> Dict[Hashable, Decimal]:
    """
    Split amount across weights proportionally, to the cent.
    Leftover cents go to the largest fractional remainders so the parts sum to amount exactly.
    """
    amount = round2(amount)
    total_weight = sum((to_dec(w) for w in weights.values()), ZERO)
    if amount == 0 or total_weight == 0:
        return {k: ZERO for k in weights}
    cents = int((amount * 100).to_integral_value())
    raw = {k: Decimal(cents) * to_dec(w) / total_weight for k, w in weights.items()}
    floors = {k: int(r.to_integral_value(rounding=ROUND_FLOOR)) for k, r in raw.items()}
    leftover = cents - sum(floors.values())
    by_remainder = sorted(weights, key=lambda k: raw[k] - floors[k], reverse=True)
    for k in by_remainder[:leftover]:
        floors[k] += 1
    return {k: (Decimal(v) / 100).quantize(CENT) for k, v in floors.items()}

def allocate_fees(participant_subtotals: Dict[Hashable, Decimal], fees: FeeAmounts) -> Dict[Hashable, Breakdown]:
    """
    participant_subtotals: key -> assigned subtotal
    Each fee is shared in proportion to participant_subtotal / bill_subtotal.
    Returns key -> Breakdown whose components sum exactly to the bill figures.
    """
    subtotals = {k: round2(v) for k, v in participant_subtotals.items()}
    if sum(subtotals.values(), ZERO) == 0 and (fees.tax_amount or fees.service_amount or fees.discount_amount):
        raise ValidationError("Cannot allocate fees over a zero subtotal")
    tax = apportion(fees.tax_amount, subtotals)
    service = apportion(fees.service_amount, subtotals)
    discount = apportion(fees.discount_amount, subtotals)
    return {
        k: Breakdown(subtotal=subtotals[k], tax_amount=tax[k], service_amount=service[k], discount_amount=discount[k])
        for k in subtotals
    }

def validate_breakdowns(breakdowns: Sequence[Breakdown], subtotal, fees: FeeAmounts, total_amount,
                        tolerance: Decimal = TOLERANCE) -> None:
    """
    Reject a bill whose participant breakdowns do not add up to the bill figures.
    Raises ValidationError naming the mismatched field and the observed delta.
    """
    subtotal = to_dec(subtotal)
    total_amount = to_dec(total_amount)
    expected_total = fees.total_for(subtotal)
    if not within_tolerance(total_amount, expected_total, tolerance):
        raise ValidationError(
            f"totalAmount {total_amount} != subTotal + tax + service - discount ({expected_total}); "
            f"delta {total_amount - expected_total}"
        )
    for i, b in enumerate(breakdowns):
        if b.amount_share is not None and not within_tolerance(b.amount_share, b.computed_share, tolerance):
            raise ValidationError(
                f"Breakdown #{i} amountShare {b.amount_share} does not match its components "
                f"({b.computed_share}); delta {to_dec(b.amount_share) - b.computed_share}"
            )
    expected = {
        "subtotal": subtotal,
        "taxAmount": fees.tax_amount,
        "serviceAmount": fees.service_amount,
        "discountAmount": fees.discount_amount,
        "amountShare": total_amount,
    }
    observed = {
        "subtotal": sum((to_dec(b.subtotal) for b in breakdowns), ZERO),
        "taxAmount": sum((to_dec(b.tax_amount) for b in breakdowns), ZERO),
        "serviceAmount": sum((to_dec(b.service_amount) for b in breakdowns), ZERO),
        "discountAmount": sum((to_dec(b.discount_amount) for b in breakdowns), ZERO),
        "amountShare": sum((b.share for b in breakdowns), ZERO),
    }
    for field_name, want in expected.items():
        got = observed[field_name]
        if not within_tolerance(got, want, tolerance):
            raise ValidationError(
                f"Participant {field_name} sums to {got} but bill {field_name} is {want}; delta {got - want}"
            )

# ============== Item Assignment Reconciler ==============
@dataclass(frozen=True)
class ReconciledItems:
    subtotals: Dict[Hashable, Decimal]
    amounts: List[Decimal]  # aligned with the input assignments

def reconcile_items(items: Dict[Hashable, dict], assignments: List[dict],
                    tolerance: Decimal = TOLERANCE) -> ReconciledItems:
    """
    items: item_ref -> {price, quantity, is_sharing}
    assignments: list of {item, participant, quantity_assigned, amount_assigned (opt)}
    Non-shared items are split by whole units; shared items by a fraction of the item total.
    An unassigned remainder of a shared item belongs to no one.
    Returns per-participant subtotals and the amount of each assignment.
    """
    assigned_qty: Dict[Hashable, Decimal] = {ref: ZERO for ref in items}
    assigned_amt: Dict[Hashable, Decimal] = {ref: ZERO for ref in items}
    subtotals: Dict[Hashable, Decimal] = {}
    amounts: List[Decimal] = []
    for a in assignments:
        ref = a["item"]
        item = items.get(ref)
        if item is None:
            raise NotFoundError(f"Item {ref!r} does not belong to this bill")
        price = to_dec(item["price"])
        quantity = to_dec(item["quantity"])
        qty = to_dec(a["quantity_assigned"])
        if qty < 0:
            raise ValidationError(f"Assigned quantity for item {ref!r} must be >= 0, got {qty}")
        if item.get("is_sharing"):
            if qty > FULL_SHARE:
                raise ValidationError(f"Share of shared item {ref!r} must be within [0, 1], got {qty}")
            if not fits_places(qty, FRACTION_PLACES):
                raise ValidationError(
                    f"Share of shared item {ref!r} allows at most {FRACTION_PLACES} decimal places, got {qty}"
                )
            amount = round2(price * quantity * qty)
        else:
            if qty != qty.to_integral_value():
                raise ValidationError(f"Item {ref!r} is not shared; assigned quantity must be whole, got {qty}")
            amount = round2(price * qty)
        given = a.get("amount_assigned")
        if given is not None and not within_tolerance(given, amount, tolerance):
            raise ValidationError(
                f"Assigned amount {to_dec(given)} for item {ref!r} should be {amount}; delta {to_dec(given) - amount}"
            )
        assigned_qty[ref] += qty
        assigned_amt[ref] += amount
        amounts.append(amount)
        key = a["participant"]
        subtotals[key] = round2(subtotals.get(key, ZERO) + amount)

    for ref, item in items.items():
        cap = FULL_SHARE if item.get("is_sharing") else to_dec(item["quantity"])
        if assigned_qty[ref] > cap:
            raise ValidationError(f"Item {ref!r} over-assigned: {assigned_qty[ref]} of {cap}")
        item_total = round2(to_dec(item["price"]) * to_dec(item["quantity"]))
        if assigned_amt[ref] > item_total + tolerance:
            raise ValidationError(
                f"Item {ref!r} assignments total {assigned_amt[ref]} exceed item total {item_total}; "
                f"delta {assigned_amt[ref] - item_total}"
            )
    return ReconciledItems(subtotals=subtotals, amounts=amounts)

def items_subtotal(items: Dict[Hashable, dict]) -> Decimal:
    return round2(sum((to_dec(i["price"]) * to_dec(i["quantity"]) for i in items.values()), ZERO))

# ============== Equal split ==============
def split_evenly(total_amount, keys: List[Hashable]) -> Dict[Hashable, Decimal]:
    """
    Equal split of total_amount across keys.
    The last key absorbs the rounding difference so the shares sum to the total.
    """
    total_amount = to_dec(total_amount)
    n = len(keys)
    if n == 0:
        raise ValidationError("No participants to split among.")
    per = round2(total_amount / n)
    shares = {k: per for k in keys}
    last = keys[-1]
    diff = round2(total_amount - sum(shares.values()))
    shares[last] = round2(shares[last] + diff)
    return shares

# ============== Deadline Policy ==============
@dataclass(frozen=True)
class DeadlineState:
    default_deadline: datetime
    deadline: datetime
    is_expired: bool

def payment_deadline(created_at: datetime, max_payment_date: Optional[datetime], allow_scheduled_payment: bool,
                     window_hours: int = 24) -> datetime:
    default_deadline = created_at + timedelta(hours=window_hours)
    if allow_scheduled_payment and max_payment_date:
        return max_payment_date
    return default_deadline

def deadline_state(created_at: datetime, max_payment_date: Optional[datetime], allow_scheduled_payment: bool,
                   now: datetime, window_hours: int = 24) -> DeadlineState:
    deadline = payment_deadline(created_at, max_payment_date, allow_scheduled_payment, window_hours)
    return DeadlineState(
        default_deadline=created_at + timedelta(hours=window_hours),
        deadline=deadline,
        is_expired=now > deadline,
    )
