"""Tests for greedy debt simplification."""

import pytest

from split_ledger.exceptions import ConsistencyError
from split_ledger.models import PairwiseBalance
from split_ledger.simplifier import (
    get_simplification_stats,
    net_balances_from_pairs,
    original_debts,
    simplify_debts,
    simplify_pairwise,
    validate_simplification,
)


def as_tuples(transfers):
    return [(t.from_user, t.to_user, t.amount_cents) for t in transfers]


class TestSimplifyDebts:
    """Test the greedy matcher."""

    def test_two_debtors_one_creditor(self):
        transfers = simplify_debts({"A": -3000, "B": -2000, "C": 5000})
        assert as_tuples(transfers) == [("A", "C", 3000), ("B", "C", 2000)]

    def test_largest_matched_first(self):
        transfers = simplify_debts({"A": -1000, "B": -4000, "C": 2000, "D": 3000})
        assert as_tuples(transfers) == [
            ("B", "D", 3000),
            ("B", "C", 1000),
            ("A", "C", 1000),
        ]

    def test_ties_keep_input_order(self):
        assert as_tuples(simplify_debts({"A": -1000, "B": -1000, "C": 2000})) == [
            ("A", "C", 1000),
            ("B", "C", 1000),
        ]
        assert as_tuples(simplify_debts({"X": 1000, "Y": 1000, "Z": -2000})) == [
            ("Z", "X", 1000),
            ("Z", "Y", 1000),
        ]

    def test_unbalanced_input_rejected(self):
        with pytest.raises(ConsistencyError):
            simplify_debts({"A": -3000, "C": 5000})

    def test_one_cent_discrepancy_tolerated(self):
        assert as_tuples(simplify_debts({"A": -1000, "B": 1001})) == [("A", "B", 1000)]

    def test_single_cents_are_settled(self):
        """Small balances are matched in exact cents and none is left over."""
        assert as_tuples(simplify_debts({"a": -1, "b": 1})) == [("a", "b", 1)]

        balances = {"A": -1, "B": -1, "C": 2}
        transfers = simplify_debts(balances)
        assert as_tuples(transfers) == [("A", "C", 1), ("B", "C", 1)]
        assert validate_simplification(balances, transfers, tolerance_cents=0)

    def test_nothing_to_settle(self):
        assert simplify_debts({}) == []
        assert simplify_debts({"A": 0, "B": 0}) == []

    def test_guarantees(self):
        balances = {"A": -500, "B": -700, "C": 300, "D": 400, "E": 500}

        transfers = simplify_debts(balances)

        nonzero = sum(1 for b in balances.values() if b != 0)
        assert len(transfers) <= nonzero - 1
        assert all(t.amount_cents > 0 for t in transfers)
        assert sum(t.amount_cents for t in transfers) == sum(
            b for b in balances.values() if b > 0
        )
        assert validate_simplification(balances, transfers)

    def test_deterministic(self):
        balances = {"A": -500, "B": -700, "C": 300, "D": 400, "E": 500}
        assert simplify_debts(balances) == simplify_debts(balances)


class TestPairwiseSimplification:
    """Test simplification of pairwise balances."""

    @pytest.fixture
    def chain(self):
        """B owes A 10, C owes B 10."""
        return [
            PairwiseBalance.from_amount("A", "B", 1000),
            PairwiseBalance.from_amount("A", "C", 0),
            PairwiseBalance.from_amount("B", "C", 1000),
        ]

    def test_original_debts(self, chain):
        assert as_tuples(original_debts(chain)) == [("B", "A", 1000), ("C", "B", 1000)]

    def test_original_debts_negative_amount(self):
        pairs = [PairwiseBalance.from_amount("A", "B", -250)]
        assert as_tuples(original_debts(pairs)) == [("A", "B", 250)]

    def test_net_balances(self, chain):
        assert net_balances_from_pairs(chain) == {"A": 1000, "B": 0, "C": -1000}

    def test_chain_collapses(self, chain):
        result = simplify_pairwise(chain, group_id="g")

        assert as_tuples(result.simplified) == [("C", "A", 1000)]
        assert len(result.original) == 2
        assert result.group_id == "g"

    def test_stats(self, chain):
        stats = get_simplification_stats(simplify_pairwise(chain))

        assert stats.original_count == 2
        assert stats.simplified_count == 1
        assert stats.transactions_saved == 1
        assert stats.savings_percentage == 50
        assert stats.original_total_cents == 2000
        assert stats.simplified_total_cents == 1000

    def test_stats_with_no_debts(self):
        stats = get_simplification_stats(simplify_pairwise([]))
        assert stats.original_count == 0
        assert stats.savings_percentage == 0


class TestValidateSimplification:
    """Test plan validation."""

    def test_incomplete_plan(self):
        balances = {"A": -3000, "B": -2000, "C": 5000}
        transfers = simplify_debts(balances)[:1]
        assert not validate_simplification(balances, transfers)
