"""SQLite database operations for SplitLedger."""

import json
import sqlite3
from collections.abc import Collection
from datetime import UTC, datetime
from pathlib import Path

from pydantic import TypeAdapter

from .models import (
    Group,
    GroupBalance,
    GroupMember,
    LedgerFilters,
    MemberBalance,
    PairwiseBalance,
    ParticipantShare,
    Relationship,
    RelationshipStatus,
    Settlement,
    SettlementStatus,
    SharedExpense,
    SplitStrategy,
    utcnow,
)

_split_adapter: TypeAdapter[SplitStrategy] = TypeAdapter(SplitStrategy)
_participants_adapter = TypeAdapter(list[ParticipantShare])


def _iso(value: datetime | None) -> str | None:
    """Normalize to UTC ISO-8601 so stored timestamps compare as strings."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _placeholders(values: Collection[str]) -> str:
    return ", ".join("?" for _ in values)


class Database:
    """SQLite database manager."""

    def __init__(self, db_path: Path | str):
        """Initialize database connection."""
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        cursor = self.conn.cursor()

        # Shared expenses (split and shares stored as pydantic JSON)
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS shared_expenses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                payer TEXT NOT NULL,
                amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
                split_json TEXT NOT NULL,
                participants_json TEXT NOT NULL,
                group_id TEXT,
                description TEXT NOT NULL DEFAULT '',
                category TEXT,
                date TIMESTAMP NOT NULL,
                active INTEGER NOT NULL DEFAULT 1,
                deleted_at TIMESTAMP,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP
            )
        """
        )

        # Everyone involved in an expense (payer included), for lookups
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS expense_participants (
                expense_id INTEGER NOT NULL REFERENCES shared_expenses(id),
                identity TEXT NOT NULL,
                PRIMARY KEY (expense_id, identity)
            )
        """
        )
        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_expense_participants_identity
            ON expense_participants (identity)
        """
        )

        # Settlements
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS settlements (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                payer TEXT NOT NULL,
                recipient TEXT NOT NULL,
                amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
                status TEXT NOT NULL DEFAULT 'pending',
                payment_method TEXT NOT NULL,
                notes TEXT,
                date TIMESTAMP NOT NULL,
                created_at TIMESTAMP NOT NULL,
                confirmed_at TIMESTAMP,
                confirmed_by TEXT,
                disputed_at TIMESTAMP,
                disputed_by TEXT,
                dispute_reason TEXT,
                group_id TEXT,
                related_expense_ids TEXT NOT NULL DEFAULT '[]'
            )
        """
        )

        # Peer relationships
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS relationships (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                requester TEXT NOT NULL,
                recipient TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                requested_at TIMESTAMP NOT NULL,
                responded_at TIMESTAMP,
                UNIQUE (requester, recipient)
            )
        """
        )

        # Groups
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS groups (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL
            )
        """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS group_members (
                group_id TEXT NOT NULL REFERENCES groups(id),
                identity TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1,
                position INTEGER NOT NULL,
                PRIMARY KEY (group_id, identity)
            )
        """
        )

        # Config table
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        # Derived balance caches
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS pairwise_balances (
                user_a TEXT NOT NULL,
                user_b TEXT NOT NULL,
                amount_cents INTEGER NOT NULL,
                direction TEXT NOT NULL,
                last_updated TIMESTAMP NOT NULL,
                PRIMARY KEY (user_a, user_b)
            )
        """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS group_balances (
                group_id TEXT NOT NULL,
                member TEXT NOT NULL,
                net_balance_cents INTEGER NOT NULL,
                position INTEGER NOT NULL,
                last_updated TIMESTAMP NOT NULL,
                PRIMARY KEY (group_id, member)
            )
        """
        )

        self.conn.commit()

    def close(self):
        """Close database connection."""
        self.conn.close()

    # ========================================================================
    # Config operations
    # ========================================================================

    def get_config(self, key: str) -> str | None:
        """Get a config value by key."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT value FROM config WHERE key = ?", (key,))
        row = cursor.fetchone()
        return str(row["value"]) if row else None

    def set_config(self, key: str, value: str):
        """Set a config value."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO config (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, _iso(utcnow())),
        )
        self.conn.commit()

    def get_current_user(self) -> str | None:
        """Identity the CLI acts as."""
        return self.get_config("current_user")

    def set_current_user(self, identity: str):
        self.set_config("current_user", identity)

    # ========================================================================
    # Shared expense operations
    # ========================================================================

    def _expense_from_row(self, row: sqlite3.Row) -> SharedExpense:
        return SharedExpense(
            id=row["id"],
            payer=row["payer"],
            amount_cents=row["amount_cents"],
            split=_split_adapter.validate_json(row["split_json"]),
            participants=_participants_adapter.validate_json(row["participants_json"]),
            group_id=row["group_id"],
            description=row["description"],
            category=row["category"],
            date=datetime.fromisoformat(row["date"]),
            active=bool(row["active"]),
            deleted_at=_dt(row["deleted_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    def _write_expense_participants(self, cursor: sqlite3.Cursor, expense: SharedExpense):
        cursor.execute(
            "DELETE FROM expense_participants WHERE expense_id = ?", (expense.id,)
        )
        cursor.executemany(
            "INSERT INTO expense_participants (expense_id, identity) VALUES (?, ?)",
            [
                (expense.id, identity)
                for identity in dict.fromkeys([expense.payer, *expense.identities])
            ],
        )

    def save_expense(self, expense: SharedExpense) -> int:
        """Save a new shared expense and return its ID."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO shared_expenses (
                payer, amount_cents, split_json, participants_json, group_id,
                description, category, date, active, deleted_at, created_at,
                updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                expense.payer,
                expense.amount_cents,
                expense.split.model_dump_json(),
                _participants_adapter.dump_json(expense.participants).decode(),
                expense.group_id,
                expense.description,
                expense.category,
                _iso(expense.date),
                int(expense.active),
                _iso(expense.deleted_at),
                _iso(expense.created_at),
                _iso(expense.updated_at),
            ),
        )
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Failed to insert expense record")
        expense.id = row_id
        self._write_expense_participants(cursor, expense)
        self.conn.commit()
        return row_id

    def update_expense(self, expense: SharedExpense):
        """Overwrite an existing expense record."""
        if expense.id is None:
            raise ValueError("Cannot update an expense without an ID")
        cursor = self.conn.cursor()
        cursor.execute(
            """
            UPDATE shared_expenses SET
                payer = ?, amount_cents = ?, split_json = ?,
                participants_json = ?, group_id = ?, description = ?,
                category = ?, date = ?, active = ?, deleted_at = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                expense.payer,
                expense.amount_cents,
                expense.split.model_dump_json(),
                _participants_adapter.dump_json(expense.participants).decode(),
                expense.group_id,
                expense.description,
                expense.category,
                _iso(expense.date),
                int(expense.active),
                _iso(expense.deleted_at),
                _iso(expense.updated_at),
                expense.id,
            ),
        )
        self._write_expense_participants(cursor, expense)
        self.conn.commit()

    def get_expense(self, expense_id: int) -> SharedExpense | None:
        """Get an expense by ID, including soft-deleted ones."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM shared_expenses WHERE id = ?", (expense_id,))
        row = cursor.fetchone()
        return self._expense_from_row(row) if row else None

    def fetch_shared_expenses(
        self,
        participants: Collection[str] | None,
        filters: LedgerFilters | None = None,
    ) -> list[SharedExpense]:
        """Active expenses involving any of the participants, oldest first."""
        filters = filters or LedgerFilters()
        clauses = ["active = 1"]
        params: list = []

        if participants is not None:
            if not participants:
                return []
            clauses.append(
                "id IN (SELECT expense_id FROM expense_participants "
                f"WHERE identity IN ({_placeholders(participants)}))"
            )
            params.extend(participants)
        if filters.group_id is not None:
            clauses.append("group_id = ?")
            params.append(filters.group_id)
        if filters.category is not None:
            clauses.append("category = ?")
            params.append(filters.category)
        if filters.start_date is not None:
            clauses.append("date >= ?")
            params.append(_iso(filters.start_date))
        if filters.end_date is not None:
            clauses.append("date <= ?")
            params.append(_iso(filters.end_date))

        cursor = self.conn.cursor()
        cursor.execute(
            f"SELECT * FROM shared_expenses WHERE {' AND '.join(clauses)} "
            "ORDER BY date, id",
            params,
        )
        return [self._expense_from_row(row) for row in cursor.fetchall()]

    # ========================================================================
    # Settlement operations
    # ========================================================================

    def _settlement_from_row(self, row: sqlite3.Row) -> Settlement:
        return Settlement(
            id=row["id"],
            payer=row["payer"],
            recipient=row["recipient"],
            amount_cents=row["amount_cents"],
            status=row["status"],
            payment_method=row["payment_method"],
            notes=row["notes"],
            date=datetime.fromisoformat(row["date"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            confirmed_at=_dt(row["confirmed_at"]),
            confirmed_by=row["confirmed_by"],
            disputed_at=_dt(row["disputed_at"]),
            disputed_by=row["disputed_by"],
            dispute_reason=row["dispute_reason"],
            group_id=row["group_id"],
            related_expense_ids=json.loads(row["related_expense_ids"]),
        )

    def save_settlement(self, settlement: Settlement) -> int:
        """Save a new settlement and return its ID."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO settlements (
                payer, recipient, amount_cents, status, payment_method, notes,
                date, created_at, confirmed_at, confirmed_by, disputed_at,
                disputed_by, dispute_reason, group_id, related_expense_ids
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                settlement.payer,
                settlement.recipient,
                settlement.amount_cents,
                settlement.status,
                settlement.payment_method,
                settlement.notes,
                _iso(settlement.date),
                _iso(settlement.created_at),
                _iso(settlement.confirmed_at),
                settlement.confirmed_by,
                _iso(settlement.disputed_at),
                settlement.disputed_by,
                settlement.dispute_reason,
                settlement.group_id,
                json.dumps(settlement.related_expense_ids),
            ),
        )
        self.conn.commit()
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Failed to insert settlement record")
        settlement.id = row_id
        return row_id

    def get_settlement(self, settlement_id: int) -> Settlement | None:
        """Get a settlement by ID."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM settlements WHERE id = ?", (settlement_id,))
        row = cursor.fetchone()
        return self._settlement_from_row(row) if row else None

    def transition_settlement(
        self, settlement: Settlement, expected_status: SettlementStatus = "pending"
    ) -> bool:
        """
        Persist a status transition if the stored status is still ``expected_status``.

        Returns:
            False if another writer changed the record first
        """
        cursor = self.conn.cursor()
        cursor.execute(
            """
            UPDATE settlements SET
                status = ?, confirmed_at = ?, confirmed_by = ?,
                disputed_at = ?, disputed_by = ?, dispute_reason = ?
            WHERE id = ? AND status = ?
            """,
            (
                settlement.status,
                _iso(settlement.confirmed_at),
                settlement.confirmed_by,
                _iso(settlement.disputed_at),
                settlement.disputed_by,
                settlement.dispute_reason,
                settlement.id,
                expected_status,
            ),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def _query_settlements(
        self,
        clauses: list[str],
        params: list,
        filters: LedgerFilters | None,
    ) -> list[Settlement]:
        filters = filters or LedgerFilters()
        if filters.group_id is not None:
            clauses.append("group_id = ?")
            params.append(filters.group_id)
        if filters.start_date is not None:
            clauses.append("date >= ?")
            params.append(_iso(filters.start_date))
        if filters.end_date is not None:
            clauses.append("date <= ?")
            params.append(_iso(filters.end_date))

        where = " AND ".join(clauses) if clauses else "1 = 1"
        cursor = self.conn.cursor()
        cursor.execute(
            f"SELECT * FROM settlements WHERE {where} ORDER BY date DESC, id DESC",
            params,
        )
        return [self._settlement_from_row(row) for row in cursor.fetchall()]

    def fetch_confirmed_settlements(
        self,
        participants: Collection[str] | None,
        filters: LedgerFilters | None = None,
    ) -> list[Settlement]:
        """Confirmed settlements paid or received by any of the participants."""
        clauses = ["status = 'confirmed'"]
        params: list = []
        if participants is not None:
            if not participants:
                return []
            marks = _placeholders(participants)
            clauses.append(f"(payer IN ({marks}) OR recipient IN ({marks}))")
            params.extend([*participants, *participants])
        return self._query_settlements(clauses, params, filters)

    def list_settlements_for_user(
        self,
        user: str,
        status: SettlementStatus | None = None,
        filters: LedgerFilters | None = None,
    ) -> list[Settlement]:
        """All settlements a user paid or received, newest first."""
        clauses = ["(payer = ? OR recipient = ?)"]
        params: list = [user, user]
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        return self._query_settlements(clauses, params, filters)

    # ========================================================================
    # Relationship operations
    # ========================================================================

    def _relationship_from_row(self, row: sqlite3.Row) -> Relationship:
        return Relationship(
            id=row["id"],
            requester=row["requester"],
            recipient=row["recipient"],
            status=row["status"],
            requested_at=datetime.fromisoformat(row["requested_at"]),
            responded_at=_dt(row["responded_at"]),
        )

    def save_relationship(self, relationship: Relationship) -> int:
        """Save a relationship (one per pair, in either direction)."""
        existing = self.get_relationship(relationship.requester, relationship.recipient)
        if existing is not None:
            raise ValueError(
                f"Relationship already exists between {relationship.requester} "
                f"and {relationship.recipient}"
            )
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO relationships (
                requester, recipient, status, requested_at, responded_at
            ) VALUES (?, ?, ?, ?, ?)
            """,
            (
                relationship.requester,
                relationship.recipient,
                relationship.status,
                _iso(relationship.requested_at),
                _iso(relationship.responded_at),
            ),
        )
        self.conn.commit()
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Failed to insert relationship record")
        relationship.id = row_id
        return row_id

    def get_relationship(self, user_a: str, user_b: str) -> Relationship | None:
        """Get the relationship between two users, whoever requested it."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT * FROM relationships
            WHERE (requester = ? AND recipient = ?)
               OR (requester = ? AND recipient = ?)
            """,
            (user_a, user_b, user_b, user_a),
        )
        row = cursor.fetchone()
        return self._relationship_from_row(row) if row else None

    def set_relationship_status(self, relationship_id: int, status: RelationshipStatus):
        """Record a response to a relationship request."""
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE relationships SET status = ?, responded_at = ? WHERE id = ?",
            (status, _iso(utcnow()), relationship_id),
        )
        self.conn.commit()

    # ========================================================================
    # Group operations
    # ========================================================================

    def save_group(self, group: Group):
        """Create or replace a group and its member list."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO groups (id, name, created_at) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET name = excluded.name
            """,
            (group.id, group.name, _iso(group.created_at)),
        )
        cursor.execute("DELETE FROM group_members WHERE group_id = ?", (group.id,))
        cursor.executemany(
            """
            INSERT INTO group_members (group_id, identity, active, position)
            VALUES (?, ?, ?, ?)
            """,
            [
                (group.id, member.identity, int(member.active), position)
                for position, member in enumerate(group.members)
            ],
        )
        self.conn.commit()

    def get_group(self, group_id: str) -> Group | None:
        """Get a group with its members in insertion order."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM groups WHERE id = ?", (group_id,))
        row = cursor.fetchone()
        if not row:
            return None

        cursor.execute(
            """
            SELECT identity, active FROM group_members
            WHERE group_id = ? ORDER BY position
            """,
            (group_id,),
        )
        members = [
            GroupMember(identity=m["identity"], active=bool(m["active"]))
            for m in cursor.fetchall()
        ]
        return Group(
            id=row["id"],
            name=row["name"],
            members=members,
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def list_groups(self) -> list[Group]:
        """All groups, oldest first."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT id FROM groups ORDER BY created_at, id")
        groups = [self.get_group(row["id"]) for row in cursor.fetchall()]
        return [g for g in groups if g is not None]

    # ========================================================================
    # Balance cache operations
    # ========================================================================

    def get_pairwise_balance(self, user_a: str, user_b: str) -> PairwiseBalance | None:
        """Get a cached pairwise balance, oriented as (user_a, user_b)."""
        first, second = sorted((user_a, user_b))
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT user_a, user_b, amount_cents, direction, last_updated
            FROM pairwise_balances WHERE user_a = ? AND user_b = ?
            """,
            (first, second),
        )
        row = cursor.fetchone()
        if not row:
            return None

        cached = PairwiseBalance(
            user_a=row["user_a"],
            user_b=row["user_b"],
            amount_cents=row["amount_cents"],
            direction=row["direction"],
            last_updated=datetime.fromisoformat(row["last_updated"]),
        )
        return cached.oriented(user_a)

    def save_pairwise_balance(self, balance: PairwiseBalance):
        """Overwrite the cached balance of a pair."""
        canonical = balance.oriented(min(balance.user_a, balance.user_b))
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO pairwise_balances (
                user_a, user_b, amount_cents, direction, last_updated
            ) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_a, user_b) DO UPDATE SET
                amount_cents = excluded.amount_cents,
                direction = excluded.direction,
                last_updated = excluded.last_updated
            """,
            (
                canonical.user_a,
                canonical.user_b,
                canonical.amount_cents,
                canonical.direction,
                _iso(canonical.last_updated),
            ),
        )
        self.conn.commit()

    def get_group_balance(self, group_id: str) -> GroupBalance | None:
        """Get the cached net balances of a group."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT member, net_balance_cents, last_updated FROM group_balances
            WHERE group_id = ? ORDER BY position
            """,
            (group_id,),
        )
        rows = cursor.fetchall()
        if not rows:
            return None

        return GroupBalance(
            group_id=group_id,
            balances=[
                MemberBalance(member=r["member"], net_balance_cents=r["net_balance_cents"])
                for r in rows
            ],
            last_updated=max(datetime.fromisoformat(r["last_updated"]) for r in rows),
        )

    def save_group_balance(self, balance: GroupBalance):
        """Replace the cached net balances of a group in one commit."""
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM group_balances WHERE group_id = ?", (balance.group_id,))
        cursor.executemany(
            """
            INSERT INTO group_balances (
                group_id, member, net_balance_cents, position, last_updated
            ) VALUES (?, ?, ?, ?, ?)
            """,
            [
                (
                    balance.group_id,
                    b.member,
                    b.net_balance_cents,
                    position,
                    _iso(balance.last_updated),
                )
                for position, b in enumerate(balance.balances)
            ],
        )
        self.conn.commit()
