"""Tests for the fee balance recompute rule."""

import pytest

from fee_settlement.database import FeeStatus
from fee_settlement.ledger import Balance, compute_balance, derive_status, total_of


class TestComputeBalance:
    """Tests for compute_balance."""

    def test_no_payments_is_pending(self):
        balance = compute_balance(60000, [])
        assert balance == Balance(
            total_amount=60000,
            paid_amount=0,
            due_amount=60000,
            status=FeeStatus.PENDING,
        )

    def test_partial_payment(self):
        balance = compute_balance(60000, [20000])
        assert balance.paid_amount == 20000
        assert balance.due_amount == 40000
        assert balance.status == FeeStatus.PARTIAL

    def test_exact_payment_is_paid(self):
        balance = compute_balance(60000, [20000, 40000])
        assert balance.paid_amount == 60000
        assert balance.due_amount == 0
        assert balance.status == FeeStatus.PAID

    def test_one_short_stays_partial(self):
        balance = compute_balance(60000, [59999])
        assert balance.due_amount == 1
        assert balance.status == FeeStatus.PARTIAL

    def test_overpayment_is_clamped(self):
        balance = compute_balance(60000, [50000, 50000])
        assert balance.paid_amount == 60000
        assert balance.due_amount == 0
        assert balance.status == FeeStatus.PAID

    def test_accepts_generator(self):
        amounts = (a for a in [10000, 5000])
        assert compute_balance(60000, amounts).paid_amount == 15000

    def test_same_input_same_result(self):
        """Recompute is a pure function of its inputs."""
        assert compute_balance(80000, [20000, 30000]) == compute_balance(80000, [30000, 20000])


class TestDeriveStatus:

    @pytest.mark.parametrize("paid,total,expected", [
        (0, 100, FeeStatus.PENDING),
        (1, 100, FeeStatus.PARTIAL),
        (99, 100, FeeStatus.PARTIAL),
        (100, 100, FeeStatus.PAID),
    ])
    def test_status_boundaries(self, paid, total, expected):
        assert derive_status(paid, total) == expected


class TestTotalOf:

    def test_sums_components(self):
        assert total_of([{"name": "Tuition", "amount": 60000}, {"name": "Bus", "amount": 1500}]) == 61500

    def test_rejects_non_positive_component(self):
        with pytest.raises(ValueError, match="Library"):
            total_of([{"name": "Tuition", "amount": 60000}, {"name": "Library", "amount": 0}])
