"""Tests for LedgerService layer."""

import logging
from decimal import Decimal

import pytest

from split_ledger.config import Settings
from split_ledger.db import Database
from split_ledger.exceptions import NotFoundError, StateError, ValidationError
from split_ledger.models import CustomSplit, EqualSplit, PairwiseBalance, PercentageSplit
from split_ledger.service import LedgerService


@pytest.fixture
def settings(tmp_path):
    """Create test settings."""
    return Settings(database_path=tmp_path / "test.db", require_relationship=False)


@pytest.fixture
def mock_db(settings):
    """Create a temporary database."""
    db = Database(settings.database_path)
    yield db
    db.close()


@pytest.fixture
def service(settings, mock_db):
    """Create a LedgerService instance."""
    return LedgerService(settings, mock_db)


@pytest.fixture
def trip(service):
    """A group where alice paid 90 for everyone and bob paid 30 for bob and carol."""
    service.create_group("trip", "Road trip", ["alice", "bob", "carol"])
    service.create_expense(
        "alice", Decimal("90.00"), ["alice", "bob", "carol"], group_id="trip"
    )
    service.create_expense("bob", Decimal("30.00"), ["bob", "carol"], group_id="trip")
    return service


def assert_cache_matches_ledger(service: LedgerService, user_a: str, user_b: str):
    cached = service.cache.get_pairwise(user_a, user_b)
    assert cached is not None
    assert cached.amount_cents == service.cache.compute_pairwise(user_a, user_b).amount_cents


class TestCreateExpense:
    """Test recording expenses."""

    def test_shares_and_payer_settled(self, service):
        expense = service.create_expense(
            "alice", Decimal("100.00"), ["alice", "bob", "carol"], description="Hotel"
        )

        assert expense.id is not None
        assert [p.share_cents for p in expense.participants] == [3334, 3333, 3333]
        assert expense.get_share("alice").settled
        assert not expense.get_share("bob").settled

        stored = service.db.get_expense(expense.id)
        assert stored is not None
        assert stored.participants == expense.participants

    def test_invalid_split_saves_nothing(self, service):
        with pytest.raises(ValidationError) as exc_info:
            service.create_expense(
                "alice",
                Decimal("100.00"),
                ["alice", "bob"],
                strategy=PercentageSplit(percentages=[60, 50]),
            )
        assert any("100" in m for m in exc_info.value.messages)
        assert service.db.fetch_shared_expenses(None) == []

    def test_payer_must_share_the_expense(self, service):
        with pytest.raises(ValidationError, match="Payer alice must be one of"):
            service.create_expense("alice", Decimal("20.00"), ["bob", "carol"])
        assert service.db.fetch_shared_expenses(None) == []

    def test_resplit_cannot_drop_payer(self, service):
        expense = service.create_expense("alice", Decimal("20.00"), ["alice", "bob"])
        with pytest.raises(ValidationError, match="Payer alice"):
            service.update_expense_split(expense.id, EqualSplit(), ["bob", "carol"])
        assert service.get_pairwise_balance("alice", "bob").amount_cents == 1000

    def test_group_membership_checked(self, service):
        service.create_group("trip", "Road trip", ["alice", "bob"])
        with pytest.raises(ValidationError, match="dave: Not an active member"):
            service.create_expense(
                "alice", Decimal("10.00"), ["alice", "dave"], group_id="trip"
            )

    def test_unknown_group(self, service):
        with pytest.raises(NotFoundError):
            service.create_expense("alice", Decimal("10.00"), ["alice", "bob"], group_id="x")

    def test_validate_split_accepts_identities(self, service):
        result = service.validate_split(
            Decimal("200"), CustomSplit(shares=[Decimal("250")]), ["alice"]
        )
        assert not result.is_valid
        assert any("250.00" in m and "200.00" in m for m in result.messages)


class TestIncrementalCache:
    """Incremental cache updates must equal a full recomputation."""

    def test_new_expenses_fold_into_cached_pair(self, service):
        service.create_expense("alice", Decimal("60.00"), ["alice", "bob"])
        assert service.get_pairwise_balance("alice", "bob").amount_cents == 3000

        service.create_expense("bob", Decimal("10.00"), ["alice", "bob"])
        service.create_expense(
            "alice",
            Decimal("9.99"),
            ["alice", "bob", "carol"],
            strategy=PercentageSplit(
                percentages=[Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
            ),
        )

        assert_cache_matches_ledger(service, "alice", "bob")
        assert service.cache.verify_pairwise("alice", "bob")

    def test_remove_and_restore(self, service):
        service.create_expense("alice", Decimal("60.00"), ["alice", "bob"])
        second = service.create_expense("alice", Decimal("20.00"), ["alice", "bob"])
        assert service.get_pairwise_balance("alice", "bob").amount_cents == 4000

        removed = service.remove_expense(second.id)
        assert not removed.active
        assert removed.deleted_at is not None
        assert service.get_pairwise_balance("alice", "bob").amount_cents == 3000
        assert_cache_matches_ledger(service, "alice", "bob")

        service.restore_expense(second.id)
        assert service.get_pairwise_balance("alice", "bob").amount_cents == 4000
        assert_cache_matches_ledger(service, "alice", "bob")

    def test_removed_expense_kept_in_history(self, service):
        expense = service.create_expense("alice", Decimal("60.00"), ["alice", "bob"])
        service.remove_expense(expense.id)

        stored = service.db.get_expense(expense.id)
        assert stored is not None
        assert not stored.active
        assert service.db.fetch_shared_expenses(["alice"]) == []

    def test_remove_twice(self, service):
        expense = service.create_expense("alice", Decimal("60.00"), ["alice", "bob"])
        service.remove_expense(expense.id)
        with pytest.raises(StateError, match="already deleted"):
            service.remove_expense(expense.id)

    def test_resplit(self, service):
        expense = service.create_expense("alice", Decimal("60.00"), ["alice", "bob"])
        assert service.get_pairwise_balance("alice", "bob").amount_cents == 3000

        updated = service.update_expense_split(
            expense.id, CustomSplit(shares=[Decimal("10.00"), Decimal("50.00")])
        )

        assert [p.share_cents for p in updated.participants] == [1000, 5000]
        assert updated.get_share("alice").settled
        assert service.get_pairwise_balance("alice", "bob").amount_cents == 5000
        assert_cache_matches_ledger(service, "alice", "bob")

    def test_resplit_with_new_participants(self, service):
        expense = service.create_expense("alice", Decimal("60.00"), ["alice", "bob"])
        service.get_pairwise_balance("alice", "bob")
        service.get_pairwise_balance("alice", "carol")

        service.update_expense_split(expense.id, EqualSplit(), ["alice", "bob", "carol"])

        assert service.get_pairwise_balance("alice", "bob").amount_cents == 2000
        assert service.get_pairwise_balance("alice", "carol").amount_cents == 2000
        assert_cache_matches_ledger(service, "alice", "carol")

    def test_resplit_deleted_expense(self, service):
        expense = service.create_expense("alice", Decimal("60.00"), ["alice", "bob"])
        service.remove_expense(expense.id)
        with pytest.raises(StateError):
            service.update_expense_split(expense.id, EqualSplit())

    def test_missing_expense(self, service):
        with pytest.raises(NotFoundError, match="Expense not found: 42"):
            service.remove_expense(42)

    def test_group_cache_follows_writes(self, trip):
        before = trip.get_group_balances("trip")
        assert before.as_mapping() == {"alice": 6000, "bob": -1500, "carol": -4500}

        extra = trip.create_expense(
            "carol", Decimal("45.00"), ["alice", "bob", "carol"], group_id="trip"
        )
        settlement = trip.create_settlement("carol", "alice", Decimal("20.00"), group_id="trip")
        trip.confirm_settlement(settlement.id, "alice")
        trip.remove_expense(extra.id)

        cached = trip.cache.get_group("trip")
        assert cached is not None
        assert cached.as_mapping() == trip.cache.compute_group("trip").as_mapping()
        assert trip.cache.verify_group("trip")

    def test_drift_is_overridden(self, service, caplog):
        service.create_expense("alice", Decimal("60.00"), ["alice", "bob"])
        service.db.save_pairwise_balance(PairwiseBalance.from_amount("alice", "bob", 1))

        with caplog.at_level(logging.WARNING):
            assert not service.cache.verify_pairwise("alice", "bob")

        assert "drift" in caplog.text
        assert service.cache.get_pairwise("alice", "bob").amount_cents == 3000

    def test_recompute_group_is_idempotent(self, trip):
        first = trip.recompute_group_balances("trip")
        second = trip.recompute_group_balances("trip")

        assert first.balances == second.balances
        assert second.last_updated >= first.last_updated


class TestSimplification:
    """Test settle-up plans."""

    def test_participant_plan(self, trip):
        result = trip.get_simplified_settlements(["alice", "bob", "carol"])

        assert result.balances == {"alice": 6000, "bob": -1500, "carol": -4500}
        assert [(t.from_user, t.to_user, t.amount_cents) for t in result.simplified] == [
            ("carol", "alice", 4500),
            ("bob", "alice", 1500),
        ]

        stats = trip.get_simplification_stats(result)
        assert stats.original_count == 3
        assert stats.simplified_count == 2
        assert stats.transactions_saved == 1

    def test_group_plan(self, trip):
        result = trip.get_group_simplified_settlements("trip")

        assert result.group_id == "trip"
        assert sum(result.balances.values()) == 0
        assert sum(t.amount_cents for t in result.simplified) == 6000

    def test_subset_is_closed(self, trip):
        """Debts with carol are left out when settling alice and bob only."""
        result = trip.get_simplified_settlements(["alice", "bob"])

        assert result.balances == {"alice": 3000, "bob": -3000}
        assert [(t.from_user, t.to_user, t.amount_cents) for t in result.simplified] == [
            ("bob", "alice", 3000)
        ]


class TestReports:
    """Test balance reports."""

    def test_detailed_balance(self, trip):
        breakdown = trip.get_detailed_balance("alice", "bob")

        assert breakdown.expense_count == 1
        assert breakdown.total_cents == 3000
        assert breakdown.b_owes_cents == 3000

    def test_user_summary(self, trip):
        summary = trip.get_user_summary("carol")

        assert summary.owed_by_user_cents == 4500
        assert summary.counterparty_balances == {"alice": -3000, "bob": -1500}

    def test_mark_participant_settled(self, trip):
        expense = trip.db.fetch_shared_expenses(["carol"])[0]

        updated = trip.mark_participant_settled(expense.id, "carol")

        assert updated.get_share("carol").settled
        assert trip.db.get_expense(expense.id).get_share("carol").settled
        with pytest.raises(NotFoundError):
            trip.mark_participant_settled(expense.id, "zed")


class TestRelationships:
    """Test friend requests."""

    def test_only_recipient_responds(self, service):
        service.request_relationship("alice", "bob")
        with pytest.raises(StateError, match="Only the recipient"):
            service.respond_to_relationship("alice", "bob", accept=True)

        relationship = service.respond_to_relationship("bob", "alice", accept=True)
        assert relationship.is_active

    def test_duplicate_request(self, service):
        service.request_relationship("alice", "bob")
        with pytest.raises(StateError, match="already exists"):
            service.request_relationship("bob", "alice")

    def test_cannot_befriend_self(self, service):
        with pytest.raises(ValidationError):
            service.request_relationship("alice", "alice")
