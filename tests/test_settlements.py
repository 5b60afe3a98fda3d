"""Tests for the settlement recorder state machine."""

import logging
from decimal import Decimal

import pytest

from split_ledger.config import Settings
from split_ledger.db import Database
from split_ledger.exceptions import NotFoundError, StateError, ValidationError
from split_ledger.service import LedgerService
from split_ledger.settlements import settlement_impact


@pytest.fixture
def settings(tmp_path):
    """Create test settings."""
    return Settings(database_path=tmp_path / "test.db")


@pytest.fixture
def db(settings):
    """Create a temporary database."""
    db = Database(settings.database_path)
    yield db
    db.close()


@pytest.fixture
def service(settings, db):
    """Create a LedgerService instance."""
    return LedgerService(settings, db)


def befriend(service: LedgerService, a: str, b: str):
    service.request_relationship(a, b)
    service.respond_to_relationship(b, a, accept=True)


@pytest.fixture
def friends(service):
    """alice paid 60 for alice and bob, so bob owes alice 30."""
    befriend(service, "alice", "bob")
    service.create_expense("alice", Decimal("60.00"), ["alice", "bob"], description="Dinner")
    return service


@pytest.fixture
def pending(friends):
    """A pending 30.00 settlement from bob to alice."""
    return friends.create_settlement("bob", "alice", Decimal("30.00"), payment_method="cash")


class TestCreateSettlement:
    """Test settlement creation preconditions."""

    def test_creates_pending(self, friends, pending):
        assert pending.id is not None
        assert pending.status == "pending"
        assert pending.amount_cents == 3000
        assert pending.payment_method == "cash"

        stored = friends.db.get_settlement(pending.id)
        assert stored is not None
        assert stored.status == "pending"

    def test_pending_settlement_does_not_change_balance(self, friends, pending):
        assert friends.get_pairwise_balance("alice", "bob").amount_cents == 3000

    def test_all_input_errors_reported(self, friends):
        with pytest.raises(ValidationError) as exc_info:
            friends.create_settlement(
                "alice", "alice", Decimal("0"), payment_method="cheque", notes="x" * 501
            )
        messages = exc_info.value.messages
        assert "Settlement amount must be positive" in messages
        assert "Payer and recipient cannot be the same user" in messages
        assert any("Invalid payment method" in m for m in messages)
        assert any("Notes cannot exceed 500" in m for m in messages)

    def test_requires_relationship(self, service):
        with pytest.raises(NotFoundError, match="No relationship"):
            service.create_settlement("bob", "carol", Decimal("10.00"))

    def test_requires_accepted_relationship(self, service):
        service.request_relationship("bob", "carol")
        with pytest.raises(StateError, match="must be accepted"):
            service.create_settlement("bob", "carol", Decimal("10.00"))

    def test_relationship_check_can_be_disabled(self, tmp_path, db):
        relaxed = LedgerService(
            Settings(database_path=tmp_path / "test.db", require_relationship=False), db
        )
        settlement = relaxed.create_settlement("bob", "carol", Decimal("10.00"))
        assert settlement.status == "pending"

    def test_group_settlement_needs_no_relationship(self, service):
        service.create_group("trip", "Trip", ["alice", "bob"])
        settlement = service.create_settlement(
            "bob", "alice", Decimal("5.00"), group_id="trip"
        )
        assert settlement.group_id == "trip"

    def test_unknown_group(self, service):
        with pytest.raises(NotFoundError, match="Group not found"):
            service.create_settlement("bob", "alice", Decimal("5.00"), group_id="nope")

    def test_overpayment_logs_warning(self, friends, caplog):
        with caplog.at_level(logging.WARNING):
            friends.create_settlement("bob", "alice", Decimal("50.00"))
        assert "exceeds" in caplog.text

    def test_overpayment_rejected_when_configured(self, tmp_path, db):
        strict = LedgerService(
            Settings(database_path=tmp_path / "test.db", reject_overpayment=True), db
        )
        befriend(strict, "alice", "bob")
        strict.create_expense("alice", Decimal("60.00"), ["alice", "bob"])

        with pytest.raises(ValidationError, match="exceeds"):
            strict.create_settlement("bob", "alice", Decimal("50.00"))
        assert strict.create_settlement("bob", "alice", Decimal("30.00")).is_pending


class TestConfirm:
    """Test confirming settlements."""

    def test_recipient_confirms(self, friends, pending):
        confirmed = friends.confirm_settlement(pending.id, "alice")

        assert confirmed.status == "confirmed"
        assert confirmed.confirmed_by == "alice"
        assert confirmed.confirmed_at is not None

    def test_confirm_settles_balance(self, friends, pending):
        friends.confirm_settlement(pending.id, "alice")

        cached = friends.cache.get_pairwise("alice", "bob")
        assert cached is not None
        assert cached.amount_cents == 0
        assert cached.direction == "settled"

    def test_non_recipient_cannot_confirm(self, friends, pending):
        with pytest.raises(StateError, match="Only the recipient"):
            friends.confirm_settlement(pending.id, "bob")

        stored = friends.db.get_settlement(pending.id)
        assert stored is not None
        assert stored.status == "pending"

    def test_repeated_confirm_is_noop(self, friends, pending):
        first = friends.confirm_settlement(pending.id, "alice")
        second = friends.confirm_settlement(pending.id, "alice")

        assert second.status == "confirmed"
        assert second.confirmed_at == first.confirmed_at
        assert friends.get_pairwise_balance("alice", "bob").amount_cents == 0

    def test_cannot_confirm_disputed(self, friends, pending):
        friends.dispute_settlement(pending.id, "bob", "Sent to wrong account")
        with pytest.raises(StateError, match="disputed"):
            friends.confirm_settlement(pending.id, "alice")

    def test_missing_settlement(self, friends):
        with pytest.raises(NotFoundError, match="Settlement not found: 999"):
            friends.confirm_settlement(999, "alice")

    def test_confirm_loses_race_to_dispute(self, friends, pending, monkeypatch):
        """A confirm that read a stale pending record never overrides a dispute."""
        stale = friends.db.get_settlement(pending.id)
        friends.dispute_settlement(pending.id, "bob", "Wrong amount")

        real_get = friends.db.get_settlement
        reads = iter([stale])
        monkeypatch.setattr(
            friends.db, "get_settlement", lambda sid: next(reads, None) or real_get(sid)
        )

        with pytest.raises(StateError, match="Cannot confirm a disputed settlement"):
            friends.confirm_settlement(pending.id, "alice")
        assert real_get(pending.id).status == "disputed"

    def test_concurrent_confirms_are_idempotent(self, friends, pending, monkeypatch):
        stale = friends.db.get_settlement(pending.id)
        friends.confirm_settlement(pending.id, "alice")

        real_get = friends.db.get_settlement
        reads = iter([stale])
        monkeypatch.setattr(
            friends.db, "get_settlement", lambda sid: next(reads, None) or real_get(sid)
        )

        result = friends.confirm_settlement(pending.id, "alice")
        assert result.status == "confirmed"

    def test_group_balance_recomputed(self, service):
        service.create_group("trip", "Trip", ["alice", "bob", "carol"])
        service.create_expense(
            "alice", Decimal("90.00"), ["alice", "bob", "carol"], group_id="trip"
        )
        assert service.get_group_balances("trip").get("bob") == -3000

        settlement = service.create_settlement(
            "bob", "alice", Decimal("30.00"), group_id="trip"
        )
        service.confirm_settlement(settlement.id, "alice")

        balances = service.get_group_balances("trip").as_mapping()
        assert balances == {"alice": 3000, "bob": 0, "carol": -3000}


class TestDispute:
    """Test disputing settlements."""

    def test_either_party_can_dispute(self, friends, pending):
        disputed = friends.dispute_settlement(pending.id, "alice", "  Never received  ")

        assert disputed.status == "disputed"
        assert disputed.disputed_by == "alice"
        assert disputed.dispute_reason == "Never received"
        assert disputed.disputed_at is not None

    def test_dispute_leaves_balance_unchanged(self, friends, pending):
        friends.dispute_settlement(pending.id, "bob", "Duplicate entry")
        assert friends.recompute_pairwise_balance("alice", "bob").amount_cents == 3000

    def test_reason_required(self, friends, pending):
        with pytest.raises(ValidationError, match="reason is required"):
            friends.dispute_settlement(pending.id, "bob", "   ")

    def test_outsider_cannot_dispute(self, friends, pending):
        with pytest.raises(StateError, match="payer or recipient"):
            friends.dispute_settlement(pending.id, "carol", "Not mine")

    def test_cannot_dispute_after_confirm(self, friends, pending):
        friends.confirm_settlement(pending.id, "alice")
        with pytest.raises(StateError, match="Cannot dispute a confirmed settlement"):
            friends.dispute_settlement(pending.id, "bob", "Changed my mind")

    def test_cannot_dispute_twice(self, friends, pending):
        friends.dispute_settlement(pending.id, "bob", "Wrong amount")
        with pytest.raises(StateError):
            friends.dispute_settlement(pending.id, "alice", "Agreed")


class TestQueries:
    """Test settlement listings and stats."""

    def test_pending_for_user(self, friends, pending):
        assert [s.id for s in friends.get_pending_settlements("alice")] == [pending.id]
        assert [s.id for s in friends.get_pending_settlements("bob")] == [pending.id]

        friends.confirm_settlement(pending.id, "alice")
        assert friends.get_pending_settlements("alice") == []

    def test_filter_by_status(self, friends, pending):
        second = friends.create_settlement("bob", "alice", Decimal("1.00"))
        friends.dispute_settlement(second.id, "alice", "No such payment")

        disputed = friends.get_settlements_for_user("bob", status="disputed")
        assert [s.id for s in disputed] == [second.id]

    def test_stats(self, friends, pending):
        friends.confirm_settlement(pending.id, "alice")
        other = friends.create_settlement("alice", "bob", Decimal("5.00"))
        friends.dispute_settlement(other.id, "bob", "Did not get it")
        friends.create_settlement("bob", "alice", Decimal("2.00"))

        stats = friends.get_settlement_stats("bob")

        assert stats.total == 3
        assert stats.pending == 1
        assert stats.confirmed == 1
        assert stats.disputed == 1
        assert stats.total_paid_cents == 3200
        assert stats.total_received_cents == 500
        assert stats.average_days_to_confirm == 0

    def test_settlements_between(self, friends, pending):
        befriend(friends, "bob", "carol")
        friends.create_settlement("bob", "carol", Decimal("1.00"))

        between = friends.settlements.get_settlements_between("alice", "bob")
        assert [s.id for s in between] == [pending.id]

    def test_impact(self, pending):
        assert settlement_impact(pending) == {"bob": 3000, "alice": -3000}
