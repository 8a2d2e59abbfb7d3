from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from compute import (Breakdown, FeeAmounts, allocate_fees, apportion, compute_fees, deadline_state, items_subtotal,
                     reconcile_items, split_evenly, validate_breakdowns)
from errors import NotFoundError, ValidationError

D = Decimal


class TestComputeFees:
    def test_percentages_of_subtotal(self):
        fees = compute_fees(D("360000"), tax_pct=10, service_pct=5, discount_pct=2)
        assert fees.tax_amount == D("36000.00")
        assert fees.service_amount == D("18000.00")
        assert fees.discount_amount == D("7200.00")
        assert fees.total_for(D("360000")) == D("406800.00")

    def test_nominal_discount_wins_over_percentage(self):
        fees = compute_fees(D("100000"), discount_pct=50, discount_nominal=D("5000"))
        assert fees.discount_amount == D("5000.00")

    def test_rounds_half_up_to_cents(self):
        fees = compute_fees(D("0.05"), tax_pct=10)
        assert fees.tax_amount == D("0.01")

    def test_negative_percentage_rejected(self):
        with pytest.raises(ValidationError) as exc:
            compute_fees(D("100"), tax_pct=-1)
        assert "tax_pct" in exc.value.message

    def test_negative_subtotal_rejected(self):
        with pytest.raises(ValidationError):
            compute_fees(D("-1"))

    def test_discount_larger_than_bill_rejected(self):
        with pytest.raises(ValidationError) as exc:
            compute_fees(D("100"), discount_nominal=D("500"))
        assert "exceeds" in exc.value.message
        with pytest.raises(ValidationError):
            compute_fees(D("100"), discount_pct=D("101"))

    def test_discount_may_cover_the_whole_bill(self):
        fees = compute_fees(D("100"), tax_pct=10, discount_nominal=D("110"))
        assert fees.total_for(D("100")) == D("0.00")

    def test_percentage_keeps_four_places(self):
        fees = compute_fees(D("1000"), tax_pct=D("10.125"))
        assert fees.tax_amount == D("101.25")
        with pytest.raises(ValidationError) as exc:
            compute_fees(D("1000"), tax_pct=D("10.12345"))
        assert "decimal places" in exc.value.message


class TestAllocation:
    def test_apportion_sums_exactly(self):
        parts = apportion(D("10.00"), {"a": D("50"), "b": D("50"), "c": D("50")})
        assert sum(parts.values()) == D("10.00")
        assert sorted(parts.values()) == [D("3.33"), D("3.33"), D("3.34")]

    def test_apportion_zero_weights(self):
        assert apportion(D("10"), {"a": D("0"), "b": D("0")}) == {"a": D("0.00"), "b": D("0.00")}

    def test_fees_follow_subtotal_ratio(self):
        fees = compute_fees(D("360000"), tax_pct=10)
        result = allocate_fees({"andra": D("120000"), "aulia": D("180000"), "ilham": D("60000")}, fees)
        assert result["andra"].tax_amount == D("12000.00")
        assert result["aulia"].tax_amount == D("18000.00")
        assert result["ilham"].tax_amount == D("6000.00")
        assert result["aulia"].computed_share == D("198000.00")

    def test_uneven_fees_still_reconcile(self):
        fees = compute_fees(D("100"), tax_pct=D("11"), service_pct=D("7.5"), discount_nominal=D("3.33"))
        result = allocate_fees({"a": D("33.33"), "b": D("33.33"), "c": D("33.34")}, fees)
        assert sum(b.tax_amount for b in result.values()) == fees.tax_amount
        assert sum(b.service_amount for b in result.values()) == fees.service_amount
        assert sum(b.discount_amount for b in result.values()) == fees.discount_amount
        assert sum(b.computed_share for b in result.values()) == fees.total_for(D("100"))

    def test_fees_over_zero_subtotal_rejected(self):
        with pytest.raises(ValidationError):
            allocate_fees({"a": D("0")}, FeeAmounts(D("10"), D("0"), D("0")))


class TestValidateBreakdowns:
    fees = FeeAmounts(tax_amount=D("36000"), service_amount=D("0"), discount_amount=D("0"))

    def breakdowns(self, **override):
        rows = [
            Breakdown(subtotal=D("120000"), tax_amount=D("12000")),
            Breakdown(subtotal=D("180000"), tax_amount=D("18000")),
            Breakdown(subtotal=D("60000"), tax_amount=D("6000")),
        ]
        if override:
            rows[1] = Breakdown(**{"subtotal": D("180000"), "tax_amount": D("18000"), **override})
        return rows

    def test_consistent_breakdowns_pass(self):
        validate_breakdowns(self.breakdowns(), D("360000"), self.fees, D("396000"))

    def test_tax_mismatch_names_field_and_delta(self):
        with pytest.raises(ValidationError) as exc:
            validate_breakdowns(self.breakdowns(tax_amount=D("17000")), D("360000"), self.fees, D("396000"))
        assert "taxAmount" in exc.value.message
        assert "-1000" in exc.value.message

    def test_within_tolerance_accepted(self):
        validate_breakdowns(self.breakdowns(tax_amount=D("18000.50")), D("360000"), self.fees, D("396000"))

    def test_share_inconsistent_with_components(self):
        rows = self.breakdowns(amount_share=D("190000"))
        with pytest.raises(ValidationError) as exc:
            validate_breakdowns(rows, D("360000"), self.fees, D("396000"))
        assert "amountShare" in exc.value.message

    def test_total_must_match_subtotal_and_fees(self):
        with pytest.raises(ValidationError) as exc:
            validate_breakdowns(self.breakdowns(), D("360000"), self.fees, D("400000"))
        assert "totalAmount" in exc.value.message


class TestReconcileItems:
    items = {
        "fish": {"price": D("180000"), "quantity": 1, "is_sharing": False},
        "tea": {"price": D("20000"), "quantity": 3, "is_sharing": False},
        "pizza": {"price": D("120000"), "quantity": 1, "is_sharing": True},
    }

    def test_units_and_shares(self):
        result = reconcile_items(self.items, [
            {"item": "fish", "participant": "a", "quantity_assigned": 1},
            {"item": "tea", "participant": "b", "quantity_assigned": 2},
            {"item": "tea", "participant": "a", "quantity_assigned": 1},
            {"item": "pizza", "participant": "a", "quantity_assigned": D("0.5")},
            {"item": "pizza", "participant": "b", "quantity_assigned": D("0.25")},
            {"item": "pizza", "participant": "c", "quantity_assigned": D("0.25")},
        ])
        assert result.subtotals == {"a": D("260000.00"), "b": D("70000.00"), "c": D("30000.00")}
        assert result.amounts[3:] == [D("60000.00"), D("30000.00"), D("30000.00")]

    def test_shared_item_conserves_its_total(self):
        result = reconcile_items(self.items, [
            {"item": "pizza", "participant": p, "quantity_assigned": D("0.3333")} for p in "ab"
        ] + [{"item": "pizza", "participant": "c", "quantity_assigned": D("0.3334")}])
        assert sum(result.subtotals.values()) == D("120000.00")

    def test_share_above_one_rejected(self):
        with pytest.raises(ValidationError):
            reconcile_items(self.items, [{"item": "pizza", "participant": "a", "quantity_assigned": D("1.5")}])

    def test_six_place_shares_accepted(self):
        result = reconcile_items(self.items, [
            {"item": "pizza", "participant": p, "quantity_assigned": D("0.333333")} for p in "ab"
        ] + [{"item": "pizza", "participant": "c", "quantity_assigned": D("0.333334")}])
        assert result.subtotals["c"] == D("40000.08")

    def test_share_finer_than_six_places_rejected(self):
        with pytest.raises(ValidationError) as exc:
            reconcile_items(self.items, [{"item": "pizza", "participant": "a", "quantity_assigned": D("0.3333333")}])
        assert "decimal places" in exc.value.message

    def test_shares_summing_above_one_rejected(self):
        with pytest.raises(ValidationError) as exc:
            reconcile_items(self.items, [
                {"item": "pizza", "participant": "a", "quantity_assigned": D("0.6")},
                {"item": "pizza", "participant": "b", "quantity_assigned": D("0.6")},
            ])
        assert "over-assigned" in exc.value.message

    def test_over_assigned_units_rejected(self):
        with pytest.raises(ValidationError):
            reconcile_items(self.items, [
                {"item": "tea", "participant": "a", "quantity_assigned": 2},
                {"item": "tea", "participant": "b", "quantity_assigned": 2},
            ])

    def test_fractional_units_on_unshared_item_rejected(self):
        with pytest.raises(ValidationError):
            reconcile_items(self.items, [{"item": "tea", "participant": "a", "quantity_assigned": D("1.5")}])

    def test_amount_must_match_units(self):
        with pytest.raises(ValidationError) as exc:
            reconcile_items(self.items, [
                {"item": "tea", "participant": "a", "quantity_assigned": 2, "amount_assigned": D("30000")},
            ])
        assert "delta" in exc.value.message

    def test_unknown_item(self):
        with pytest.raises(NotFoundError):
            reconcile_items(self.items, [{"item": "cake", "participant": "a", "quantity_assigned": 1}])

    def test_items_subtotal(self):
        assert items_subtotal(self.items) == D("360000.00")


def test_split_evenly_last_absorbs_rounding():
    shares = split_evenly(D("100"), ["a", "b", "c"])
    assert shares == {"a": D("33.33"), "b": D("33.33"), "c": D("33.34")}


def test_split_evenly_needs_participants():
    with pytest.raises(ValidationError):
        split_evenly(D("100"), [])


class TestDeadline:
    created = datetime(2025, 3, 15, 12, 0, 0)

    def test_default_window(self):
        state = deadline_state(self.created, None, True, self.created)
        assert state.deadline == self.created + timedelta(hours=24)
        assert not state.is_expired

    def test_boundary_is_inclusive(self):
        deadline = self.created + timedelta(hours=24)
        assert not deadline_state(self.created, None, True, deadline).is_expired
        assert deadline_state(self.created, None, True, deadline + timedelta(milliseconds=1)).is_expired

    def test_max_date_extends_when_scheduling_allowed(self):
        max_date = self.created + timedelta(days=3)
        state = deadline_state(self.created, max_date, True, self.created + timedelta(hours=30))
        assert state.deadline == max_date
        assert state.default_deadline == self.created + timedelta(hours=24)
        assert not state.is_expired

    def test_max_date_ignored_without_scheduling(self):
        max_date = self.created + timedelta(days=3)
        state = deadline_state(self.created, max_date, False, self.created + timedelta(hours=30))
        assert state.deadline == self.created + timedelta(hours=24)
        assert state.is_expired

    def test_custom_window(self):
        state = deadline_state(self.created, None, True, self.created, window_hours=48)
        assert state.deadline == self.created + timedelta(hours=48)
