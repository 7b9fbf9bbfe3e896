"""
Repository pattern for data access.

Handles SQL for limit definitions and entity usage pivots.
Table and column names come from LimiterConfig, which validates them
as plain SQL identifiers before they are interpolated here.
"""

import sqlite3
from datetime import datetime
from typing import List, Optional, Tuple

from ..config.loader import DEFAULT_CONFIG, LimiterConfig
from ..core.reset import ResetFrequency
from .db import get_connection
from .models import LimitDefinition, UsagePivot


def initialize_schema(config: LimiterConfig = DEFAULT_CONFIG) -> None:
    """Create the limits and pivot tables if they don't exist.

    The unique index on (name, COALESCE(plan, '')) keeps a limit without
    a plan distinct from every named plan. Pivots are removed together
    with their limit.

    Args:
        config: Limiter configuration naming the database and tables
    """
    limits = config.limits_table_name
    pivots = config.pivot_table_name
    type_col = config.model_type_column
    id_col = config.model_id_column

    conn = get_connection(config.db_path, config.db_timeout)
    try:
        conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS {limits} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                plan TEXT,
                allowed_amount REAL NOT NULL CHECK (allowed_amount >= 0),
                reset_frequency TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS {limits}_name_plan_unique
                ON {limits} (name, COALESCE(plan, ''));

            CREATE TABLE IF NOT EXISTS {pivots} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                limit_id INTEGER NOT NULL
                    REFERENCES {limits} (id) ON DELETE CASCADE,
                {type_col} TEXT NOT NULL,
                {id_col} TEXT NOT NULL,
                used_amount REAL NOT NULL DEFAULT 0,
                extra_amount REAL NOT NULL DEFAULT 0,
                extra_used_amount REAL NOT NULL DEFAULT 0,
                last_reset TEXT,
                next_reset TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (limit_id, {type_col}, {id_col})
            );

            CREATE INDEX IF NOT EXISTS {pivots}_next_reset_index
                ON {pivots} (next_reset);
        """)
        conn.commit()
    finally:
        conn.close()


def _row_to_limit(row: sqlite3.Row) -> LimitDefinition:
    frequency = row["reset_frequency"]
    return LimitDefinition(
        id=row["id"],
        name=row["name"],
        plan=row["plan"],
        allowed_amount=float(row["allowed_amount"]),
        reset_frequency=ResetFrequency(frequency) if frequency else None
    )


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class LimitRepository:
    """Repository for limit definition rows."""

    def __init__(self, config: LimiterConfig = DEFAULT_CONFIG):
        self.config = config
        self.table = config.limits_table_name

    def connect(self) -> sqlite3.Connection:
        return get_connection(self.config.db_path, self.config.db_timeout)

    def fetch_all(self) -> List[LimitDefinition]:
        """Get every limit definition ordered by id.

        Returns:
            All limits projected to id, name, plan, allowed amount and frequency
        """
        conn = self.connect()
        try:
            cursor = conn.execute(f"""
                SELECT id, name, plan, allowed_amount, reset_frequency
                FROM {self.table}
                ORDER BY id
            """)
            return [_row_to_limit(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def find(self, conn: sqlite3.Connection, name: str, plan: Optional[str]) -> Optional[LimitDefinition]:
        """Find a limit by exact (name, plan) on an open connection."""
        cursor = conn.execute(f"""
            SELECT id, name, plan, allowed_amount, reset_frequency
            FROM {self.table}
            WHERE name = ? AND plan IS ?
        """, (name, plan))
        row = cursor.fetchone()
        return _row_to_limit(row) if row else None

    def find_by_id(self, conn: sqlite3.Connection, limit_id: int) -> Optional[LimitDefinition]:
        cursor = conn.execute(f"""
            SELECT id, name, plan, allowed_amount, reset_frequency
            FROM {self.table}
            WHERE id = ?
        """, (limit_id,))
        row = cursor.fetchone()
        return _row_to_limit(row) if row else None

    def insert(
        self,
        conn: sqlite3.Connection,
        name: str,
        plan: Optional[str],
        allowed_amount: float,
        reset_frequency: Optional[ResetFrequency]
    ) -> LimitDefinition:
        """Insert a new limit definition on an open connection."""
        now = datetime.now().isoformat()
        cursor = conn.execute(f"""
            INSERT INTO {self.table}
            (name, plan, allowed_amount, reset_frequency, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            name,
            plan,
            allowed_amount,
            reset_frequency.value if reset_frequency else None,
            now,
            now
        ))
        return LimitDefinition(
            id=cursor.lastrowid,
            name=name,
            plan=plan,
            allowed_amount=float(allowed_amount),
            reset_frequency=reset_frequency
        )

    def update_allowed_amount(self, conn: sqlite3.Connection, limit_id: int, delta: float) -> None:
        """Add delta to the stored allowance of a limit."""
        conn.execute(f"""
            UPDATE {self.table}
            SET allowed_amount = allowed_amount + ?, updated_at = ?
            WHERE id = ?
        """, (delta, datetime.now().isoformat(), limit_id))

    def delete(self, conn: sqlite3.Connection, limit_id: int) -> int:
        """Delete a limit row; its pivots cascade. Returns the row count."""
        cursor = conn.execute(f"DELETE FROM {self.table} WHERE id = ?", (limit_id,))
        return cursor.rowcount


class PivotRepository:
    """Repository for entity usage pivots.

    Every method works on a caller-supplied connection so that the
    ledger can keep the read and the write in one transaction.
    """

    def __init__(self, config: LimiterConfig = DEFAULT_CONFIG):
        self.config = config
        self.table = config.pivot_table_name
        self.type_col = config.model_type_column
        self.id_col = config.model_id_column

    def connect(self) -> sqlite3.Connection:
        return get_connection(self.config.db_path, self.config.db_timeout)

    def _select(self) -> str:
        return f"""
            SELECT limit_id, {self.type_col} AS model_type, {self.id_col} AS model_id,
                   used_amount, extra_amount, extra_used_amount,
                   last_reset, next_reset
            FROM {self.table}
        """

    @staticmethod
    def _row_to_pivot(row: sqlite3.Row) -> UsagePivot:
        return UsagePivot(
            limit_id=row["limit_id"],
            model_type=row["model_type"],
            model_id=row["model_id"],
            used_amount=float(row["used_amount"]),
            extra_amount=float(row["extra_amount"]),
            extra_used_amount=float(row["extra_used_amount"]),
            last_reset=_parse_timestamp(row["last_reset"]),
            next_reset=_parse_timestamp(row["next_reset"])
        )

    def get(self, conn: sqlite3.Connection, model_type: str, model_id: str, limit_id: int) -> Optional[UsagePivot]:
        cursor = conn.execute(
            self._select() + f" WHERE limit_id = ? AND {self.type_col} = ? AND {self.id_col} = ?",
            (limit_id, model_type, model_id)
        )
        row = cursor.fetchone()
        return self._row_to_pivot(row) if row else None

    def list_for_model(self, conn: sqlite3.Connection, model_type: str, model_id: str) -> List[UsagePivot]:
        cursor = conn.execute(
            self._select() + f" WHERE {self.type_col} = ? AND {self.id_col} = ? ORDER BY limit_id",
            (model_type, model_id)
        )
        return [self._row_to_pivot(row) for row in cursor.fetchall()]

    def list_due(self, conn: sqlite3.Connection, moment: datetime) -> List[Tuple[UsagePivot, Optional[ResetFrequency]]]:
        """Pivots whose next reset is at or before moment, with their limit's reset frequency.

        The frequency is read from the limits table on the same connection,
        so limits created after any cached snapshot are still rescheduled.
        """
        cursor = conn.execute(f"""
            SELECT p.limit_id, p.{self.type_col} AS model_type, p.{self.id_col} AS model_id,
                   p.used_amount, p.extra_amount, p.extra_used_amount,
                   p.last_reset, p.next_reset, l.reset_frequency
            FROM {self.table} p
            JOIN {self.config.limits_table_name} l ON l.id = p.limit_id
            WHERE p.next_reset IS NOT NULL AND p.next_reset <= ?
            ORDER BY p.limit_id
        """, (moment.isoformat(),))
        return [
            (self._row_to_pivot(row), ResetFrequency(row["reset_frequency"]) if row["reset_frequency"] else None)
            for row in cursor.fetchall()
        ]

    def insert(self, conn: sqlite3.Connection, pivot: UsagePivot) -> None:
        now = datetime.now().isoformat()
        conn.execute(f"""
            INSERT INTO {self.table}
            (limit_id, {self.type_col}, {self.id_col}, used_amount, extra_amount,
             extra_used_amount, last_reset, next_reset, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            pivot.limit_id,
            pivot.model_type,
            pivot.model_id,
            pivot.used_amount,
            pivot.extra_amount,
            pivot.extra_used_amount,
            pivot.last_reset.isoformat() if pivot.last_reset else None,
            pivot.next_reset.isoformat() if pivot.next_reset else None,
            now,
            now
        ))

    def update(self, conn: sqlite3.Connection, pivot: UsagePivot) -> None:
        """Write every mutable counter and reset timestamp of a pivot."""
        conn.execute(f"""
            UPDATE {self.table}
            SET used_amount = ?, extra_amount = ?, extra_used_amount = ?,
                last_reset = ?, next_reset = ?, updated_at = ?
            WHERE limit_id = ? AND {self.type_col} = ? AND {self.id_col} = ?
        """, (
            pivot.used_amount,
            pivot.extra_amount,
            pivot.extra_used_amount,
            pivot.last_reset.isoformat() if pivot.last_reset else None,
            pivot.next_reset.isoformat() if pivot.next_reset else None,
            datetime.now().isoformat(),
            pivot.limit_id,
            pivot.model_type,
            pivot.model_id
        ))

    def delete(self, conn: sqlite3.Connection, model_type: str, model_id: str, limit_id: int) -> int:
        cursor = conn.execute(
            f"DELETE FROM {self.table} WHERE limit_id = ? AND {self.type_col} = ? AND {self.id_col} = ?",
            (limit_id, model_type, model_id)
        )
        return cursor.rowcount
