"""
SiriusTrack — Tracker Database.

Segments, milestones, todos, habits and discussion notes persist in a
local SQLite file. Every write that touches more than one table (a state flip
plus its activity point, a delete plus its ledger cleanup) runs inside one
`BEGIN IMMEDIATE` transaction via `TrackerDB.transaction()`.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

from siriustrack.core import ledger
from siriustrack.core.dates import now_in, parse_iso_date
from siriustrack.core.errors import (
    NotFoundError,
    StorageUnavailableError,
    TrackerError,
    ValidationError,
)
from siriustrack.data.models import (
    AchievementLevel,
    ActivityPoint,
    DiscussionItem,
    DiscussionMemo,
    HabitCompletion,
    HabitTodo,
    Milestone,
    MilestoneStatus,
    OverallPurpose,
    Segment,
    SourceKind,
    Todo,
    TodoKind,
)

logger = logging.getLogger(__name__)

DEFAULT_SEGMENT_COLOR = "#6e6e73"
SQLITE_BUSY_TIMEOUT = 5.0

# Monotonic expiry for store calls made in the current context
_deadline: ContextVar[float | None] = ContextVar("siriustrack_db_deadline", default=None)


@contextmanager
def deadline(seconds: float | None) -> Iterator[None]:
    """Bound every store call made inside this block.

    The bound follows the context into `asyncio.to_thread` workers. A
    statement still running at expiry is interrupted, and a transaction that
    reaches COMMIT after expiry is rolled back; both raise
    StorageUnavailableError. `None` or 0 means unbounded.
    """
    token = _deadline.set(time.monotonic() + seconds if seconds else None)
    try:
        yield
    finally:
        _deadline.reset(token)


def _deadline_passed() -> bool:
    expires = _deadline.get()
    return expires is not None and time.monotonic() >= expires


_SCHEMA = """
CREATE TABLE IF NOT EXISTS overall_purpose (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    title        TEXT NOT NULL,
    description  TEXT,
    goal         TEXT,
    created_at   TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS segments (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    name          TEXT NOT NULL,
    overall_goal  TEXT,
    color         TEXT DEFAULT '#6e6e73',
    created_at    TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS milestones (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    segment_id         INTEGER NOT NULL,
    title              TEXT NOT NULL,
    target_date        TEXT NOT NULL,
    status             TEXT DEFAULT 'pending',
    achievement_level  TEXT DEFAULT 'pending',
    display_order      INTEGER DEFAULT 0,
    completed_at       TEXT,
    created_at         TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (segment_id) REFERENCES segments(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS todos (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    segment_id         INTEGER NOT NULL,
    title              TEXT NOT NULL,
    completed          INTEGER DEFAULT 0,
    achievement_level  TEXT DEFAULT 'pending',
    date               TEXT NOT NULL,
    type               TEXT DEFAULT 'daily',
    display_order      INTEGER DEFAULT 0,
    habit_todo_id      INTEGER,
    is_from_habit      INTEGER DEFAULT 0,
    completed_at       TEXT,
    created_at         TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (segment_id) REFERENCES segments(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS discussion_items (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    segment_id     INTEGER NOT NULL,
    content        TEXT NOT NULL,
    resolved       INTEGER DEFAULT 0,
    display_order  INTEGER DEFAULT 0,
    created_at     TEXT DEFAULT CURRENT_TIMESTAMP,
    resolved_at    TEXT,
    FOREIGN KEY (segment_id) REFERENCES segments(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS discussion_memos (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    discussion_item_id  INTEGER NOT NULL,
    memo                TEXT NOT NULL,
    created_at          TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (discussion_item_id) REFERENCES discussion_items(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS evaluations (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    segment_id            INTEGER NOT NULL,
    date                  TEXT NOT NULL,
    achievement_score     REAL DEFAULT 0,
    goal_design_score     REAL DEFAULT 0,
    consistency_score     REAL DEFAULT 0,
    total_todos           INTEGER DEFAULT 0,
    completed_todos       INTEGER DEFAULT 0,
    total_milestones      INTEGER DEFAULT 0,
    evaluated_milestones  INTEGER DEFAULT 0,
    overdue_tasks         INTEGER DEFAULT 0,
    on_time_tasks         INTEGER DEFAULT 0,
    evaluated_tasks       INTEGER DEFAULT 0,
    created_at            TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (segment_id) REFERENCES segments(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS carryover_records (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    segment_id         INTEGER NOT NULL,
    original_todo_id   INTEGER NOT NULL,
    original_title     TEXT NOT NULL,
    original_date      TEXT NOT NULL,
    carried_over_date  TEXT NOT NULL,
    created_at         TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (segment_id) REFERENCES segments(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS habit_todos (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    segment_id      INTEGER NOT NULL,
    title           TEXT NOT NULL,
    active          INTEGER DEFAULT 1,
    created_at      TEXT DEFAULT CURRENT_TIMESTAMP,
    deactivated_at  TEXT,
    FOREIGN KEY (segment_id) REFERENCES segments(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS habit_todo_completions (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    habit_todo_id  INTEGER NOT NULL,
    segment_id     INTEGER NOT NULL,
    date           TEXT NOT NULL,
    completed      INTEGER DEFAULT 0,
    completed_at   TEXT,
    created_at     TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (habit_todo_id) REFERENCES habit_todos(id) ON DELETE CASCADE,
    FOREIGN KEY (segment_id) REFERENCES segments(id) ON DELETE CASCADE,
    UNIQUE(habit_todo_id, date)
);

CREATE TABLE IF NOT EXISTS activity_points (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    segment_id   INTEGER NOT NULL,
    date         TEXT NOT NULL,
    points       INTEGER NOT NULL,
    source_type  TEXT NOT NULL,
    source_id    INTEGER NOT NULL,
    description  TEXT,
    created_at   TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (segment_id) REFERENCES segments(id) ON DELETE CASCADE
);
"""

# Columns added after the first release: (table, column, DDL)
_MIGRATIONS = [
    ("overall_purpose", "goal", "TEXT"),
    ("milestones", "display_order", "INTEGER DEFAULT 0"),
    ("milestones", "achievement_level", "TEXT DEFAULT 'pending'"),
    ("milestones", "completed_at", "TEXT"),
    ("todos", "display_order", "INTEGER DEFAULT 0"),
    ("todos", "achievement_level", "TEXT DEFAULT 'pending'"),
    ("todos", "completed_at", "TEXT"),
    ("todos", "habit_todo_id", "INTEGER"),
    ("todos", "is_from_habit", "INTEGER DEFAULT 0"),
    ("discussion_items", "display_order", "INTEGER DEFAULT 0"),
    ("evaluations", "evaluated_milestones", "INTEGER DEFAULT 0"),
    ("evaluations", "overdue_tasks", "INTEGER DEFAULT 0"),
    ("evaluations", "on_time_tasks", "INTEGER DEFAULT 0"),
    ("evaluations", "evaluated_tasks", "INTEGER DEFAULT 0"),
]


def _rollback(conn: sqlite3.Connection) -> None:
    # The rollback itself must not be interrupted by an expired deadline.
    conn.set_progress_handler(None, 0)
    try:
        conn.execute("ROLLBACK")
    except sqlite3.Error as exc:
        logger.error("Rollback failed: %s", exc)


def _require_text(value: str | None, field_name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field_name} is required")
    return str(value).strip()


def _coerce_level(level: AchievementLevel | str) -> AchievementLevel:
    try:
        level = AchievementLevel(level)
    except ValueError as exc:
        raise ValidationError(f"Unknown achievement level: {level!r}") from exc
    if level not in (AchievementLevel.PENDING, AchievementLevel.ACHIEVED):
        raise ValidationError(f"Achievement level {level.value!r} cannot be set directly")
    return level


def _coerce_kind(kind: TodoKind | str) -> TodoKind:
    try:
        return TodoKind(kind)
    except ValueError as exc:
        raise ValidationError(f"Unknown todo kind: {kind!r}") from exc


def _now() -> str:
    from siriustrack.config import settings
    return now_in(settings.TIMEZONE)


class TrackerDB:
    """SQLite-backed storage for the whole tracker."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from siriustrack.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @property
    def path(self) -> str:
        return self._db_path

    # ------------------------------------------------------------------
    # Connections & transactions
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        expires = _deadline.get()
        busy_timeout = SQLITE_BUSY_TIMEOUT
        if expires is not None:
            busy_timeout = max(expires - time.monotonic(), 0.0)
        try:
            conn = sqlite3.connect(self._db_path, isolation_level=None, timeout=busy_timeout)
            conn.row_factory = sqlite3.Row
            if expires is not None:
                conn.set_progress_handler(_deadline_passed, 1000)
            conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as exc:
            logger.error("Cannot open database %s: %s", self._db_path, exc)
            raise StorageUnavailableError(f"Cannot open database: {exc}") from exc
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside BEGIN IMMEDIATE; commit or roll back fully."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            if _deadline_passed():
                logger.error("Deadline passed before commit, transaction rolled back")
                raise StorageUnavailableError("Store call exceeded its deadline")
            conn.execute("COMMIT")
        except sqlite3.IntegrityError as exc:
            _rollback(conn)
            logger.error("Constraint violation, transaction rolled back: %s", exc)
            raise TrackerError(f"Constraint violation: {exc}") from exc
        except sqlite3.Error as exc:
            _rollback(conn)
            logger.error("Database error, transaction rolled back: %s", exc)
            raise StorageUnavailableError(f"Database error: {exc}") from exc
        except BaseException:
            _rollback(conn)
            raise
        finally:
            conn.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        """Yield an autocommit connection for read-only queries."""
        conn = self._connect()
        try:
            yield conn
        except sqlite3.Error as exc:
            logger.error("Database error: %s", exc)
            raise StorageUnavailableError(f"Database error: {exc}") from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Create all tables if they don't exist, and migrate older schemas."""
        conn = self._connect()
        try:
            conn.executescript(_SCHEMA)
            for table, column, ddl in _MIGRATIONS:
                existing_cols = {
                    row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()
                }
                if column not in existing_cols:
                    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
                    logger.info("Migrated %s: added column %s", table, column)

            # Older databases could hold duplicate snapshots/points; keep the newest.
            conn.executescript("""
                BEGIN;
                DELETE FROM evaluations WHERE id NOT IN (
                    SELECT MAX(id) FROM evaluations GROUP BY segment_id, date
                );
                DELETE FROM activity_points WHERE id NOT IN (
                    SELECT MIN(id) FROM activity_points GROUP BY source_type, source_id, date
                );
                CREATE UNIQUE INDEX IF NOT EXISTS idx_evaluations_segment_date
                    ON evaluations(segment_id, date);
                CREATE UNIQUE INDEX IF NOT EXISTS idx_activity_points_source
                    ON activity_points(source_type, source_id, date);
                CREATE INDEX IF NOT EXISTS idx_todos_segment_date
                    ON todos(segment_id, date);
                CREATE INDEX IF NOT EXISTS idx_carryover_date
                    ON carryover_records(carried_over_date);
                COMMIT;
            """)
        except sqlite3.Error as exc:
            logger.error("Schema initialization failed for %s: %s", self._db_path, exc)
            raise StorageUnavailableError(f"Cannot initialize database: {exc}") from exc
        finally:
            conn.close()
        logger.debug("Tracker tables initialized at %s", self._db_path)

    # ------------------------------------------------------------------
    # Row mappers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_segment(row: sqlite3.Row) -> Segment:
        return Segment(
            id=row["id"],
            name=row["name"],
            overall_goal=row["overall_goal"] or "",
            color=row["color"] or DEFAULT_SEGMENT_COLOR,
            created_at=row["created_at"] or "",
        )

    @staticmethod
    def _row_to_todo(row: sqlite3.Row) -> Todo:
        return Todo(
            id=row["id"],
            segment_id=row["segment_id"],
            title=row["title"],
            date=row["date"],
            kind=TodoKind(row["type"] or "daily"),
            completed=bool(row["completed"]),
            achievement_level=AchievementLevel(row["achievement_level"] or "pending"),
            display_order=row["display_order"] or 0,
            habit_todo_id=row["habit_todo_id"],
            is_from_habit=bool(row["is_from_habit"]),
            completed_at=row["completed_at"],
            created_at=row["created_at"] or "",
        )

    @staticmethod
    def _row_to_milestone(row: sqlite3.Row) -> Milestone:
        return Milestone(
            id=row["id"],
            segment_id=row["segment_id"],
            title=row["title"],
            target_date=row["target_date"],
            status=MilestoneStatus(row["status"] or "pending"),
            achievement_level=AchievementLevel(row["achievement_level"] or "pending"),
            display_order=row["display_order"] or 0,
            completed_at=row["completed_at"],
            created_at=row["created_at"] or "",
        )

    @staticmethod
    def _row_to_habit(row: sqlite3.Row) -> HabitTodo:
        return HabitTodo(
            id=row["id"],
            segment_id=row["segment_id"],
            title=row["title"],
            active=bool(row["active"]),
            created_at=row["created_at"] or "",
            deactivated_at=row["deactivated_at"],
        )

    @staticmethod
    def _row_to_discussion(row: sqlite3.Row) -> DiscussionItem:
        return DiscussionItem(
            id=row["id"],
            segment_id=row["segment_id"],
            content=row["content"],
            resolved=bool(row["resolved"]),
            display_order=row["display_order"] or 0,
            created_at=row["created_at"] or "",
            resolved_at=row["resolved_at"],
        )

    @staticmethod
    def _row_to_memo(row: sqlite3.Row) -> DiscussionMemo:
        return DiscussionMemo(
            id=row["id"],
            discussion_item_id=row["discussion_item_id"],
            memo=row["memo"],
            created_at=row["created_at"] or "",
        )

    # ------------------------------------------------------------------
    # Shared helpers (run on an open connection)
    # ------------------------------------------------------------------

    @staticmethod
    def require_segment(conn: sqlite3.Connection, segment_id: int) -> None:
        row = conn.execute("SELECT 1 FROM segments WHERE id = ?", (segment_id,)).fetchone()
        if row is None:
            raise NotFoundError("segment", segment_id)

    @staticmethod
    def _fetch_todo(conn: sqlite3.Connection, todo_id: int) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM todos WHERE id = ?", (todo_id,)).fetchone()
        if row is None:
            raise NotFoundError("todo", todo_id)
        return row

    @staticmethod
    def _fetch_milestone(conn: sqlite3.Connection, milestone_id: int) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM milestones WHERE id = ?", (milestone_id,)).fetchone()
        if row is None:
            raise NotFoundError("milestone", milestone_id)
        return row

    @staticmethod
    def _fetch_habit(conn: sqlite3.Connection, habit_id: int) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM habit_todos WHERE id = ?", (habit_id,)).fetchone()
        if row is None:
            raise NotFoundError("habit", habit_id)
        return row

    @staticmethod
    def next_todo_order(
        conn: sqlite3.Connection, segment_id: int, date: str, kind: TodoKind,
    ) -> int:
        row = conn.execute(
            """
            SELECT COALESCE(MAX(display_order), 0) + 1 AS next_order
            FROM todos WHERE segment_id = ? AND date = ? AND type = ?
            """,
            (segment_id, date, kind.value),
        ).fetchone()
        return row["next_order"]

    def _reorder(
        self, table: str, entity: str, orders: list[tuple[int, int]],
    ) -> int:
        """Apply (id, display_order) pairs atomically; an unknown id aborts all."""
        with self.transaction() as conn:
            for row_id, display_order in orders:
                cursor = conn.execute(
                    f"UPDATE {table} SET display_order = ? WHERE id = ?",
                    (int(display_order), row_id),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError(entity, row_id)
        logger.info("Reordered %d %s row(s)", len(orders), table)
        return len(orders)

    # ------------------------------------------------------------------
    # Overall purpose
    # ------------------------------------------------------------------

    def get_overall_purpose(self) -> OverallPurpose | None:
        with self.reader() as conn:
            row = conn.execute(
                "SELECT * FROM overall_purpose ORDER BY created_at DESC, id DESC LIMIT 1"
            ).fetchone()
        if row is None:
            return None
        return OverallPurpose(
            id=row["id"],
            title=row["title"],
            description=row["description"] or "",
            goal=row["goal"] or "",
            created_at=row["created_at"] or "",
        )

    def save_overall_purpose(
        self, title: str, description: str = "", goal: str = "",
    ) -> OverallPurpose:
        """Create or replace the single overall-purpose statement."""
        title = _require_text(title, "title")
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO overall_purpose (id, title, description, goal) VALUES (1, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    description = excluded.description,
                    goal = excluded.goal,
                    created_at = CURRENT_TIMESTAMP
                """,
                (title, description, goal),
            )
        logger.info("Overall purpose saved: '%s'", title)
        return self.get_overall_purpose()

    # ------------------------------------------------------------------
    # Segments
    # ------------------------------------------------------------------

    def add_segment(
        self, name: str, overall_goal: str = "", color: str = DEFAULT_SEGMENT_COLOR,
    ) -> Segment:
        """Create a new tracked life-area."""
        name = _require_text(name, "name")
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO segments (name, overall_goal, color) VALUES (?, ?, ?)",
                (name, overall_goal, color),
            )
            segment_id = cursor.lastrowid
        logger.info("Segment added: #%d '%s'", segment_id, name)
        return self.get_segment(segment_id)

    def get_segment(self, segment_id: int) -> Segment | None:
        with self.reader() as conn:
            row = conn.execute("SELECT * FROM segments WHERE id = ?", (segment_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_segment(row)

    def list_segments(self) -> list[Segment]:
        with self.reader() as conn:
            rows = conn.execute("SELECT * FROM segments ORDER BY created_at, id").fetchall()
        return [self._row_to_segment(r) for r in rows]

    def update_segment(
        self, segment_id: int, name: str, overall_goal: str = "", color: str = DEFAULT_SEGMENT_COLOR,
    ) -> Segment:
        """Rename a segment and/or edit its goal and color."""
        name = _require_text(name, "name")
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE segments SET name = ?, overall_goal = ?, color = ? WHERE id = ?",
                (name, overall_goal, color, segment_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("segment", segment_id)
        logger.info("Segment #%d updated", segment_id)
        return self.get_segment(segment_id)

    def delete_segment(self, segment_id: int) -> bool:
        """Delete a segment; foreign keys cascade to every child row."""
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM segments WHERE id = ?", (segment_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Segment #%d deleted with all child rows", segment_id)
        return deleted

    # ------------------------------------------------------------------
    # Todos
    # ------------------------------------------------------------------

    def add_todo(
        self, segment_id: int, title: str, date: str, kind: TodoKind | str = TodoKind.DAILY,
    ) -> Todo:
        """Insert a todo at the end of its segment/date/kind list."""
        title = _require_text(title, "title")
        parse_iso_date(date)
        kind = _coerce_kind(kind)

        with self.transaction() as conn:
            self.require_segment(conn, segment_id)
            order = self.next_todo_order(conn, segment_id, date, kind)
            cursor = conn.execute(
                """
                INSERT INTO todos (segment_id, title, date, type, display_order)
                VALUES (?, ?, ?, ?, ?)
                """,
                (segment_id, title, date, kind.value, order),
            )
            todo_id = cursor.lastrowid
        logger.info("Todo added: #%d '%s' (%s, %s)", todo_id, title, kind.value, date)
        return self.get_todo(todo_id)

    def get_todo(self, todo_id: int) -> Todo | None:
        with self.reader() as conn:
            row = conn.execute("SELECT * FROM todos WHERE id = ?", (todo_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_todo(row)

    def list_todos(self, segment_id: int, date: str) -> list[Todo]:
        """Todos of one day. Habit-generated rows report their habit completion state."""
        with self.reader() as conn:
            rows = conn.execute(
                """
                SELECT
                    t.id, t.segment_id, t.title, t.date, t.type, t.display_order,
                    t.created_at, t.achievement_level, t.habit_todo_id, t.is_from_habit,
                    CASE WHEN t.habit_todo_id IS NOT NULL THEN COALESCE(htc.completed, 0)
                         ELSE t.completed END AS completed,
                    CASE WHEN t.habit_todo_id IS NOT NULL THEN htc.completed_at
                         ELSE t.completed_at END AS completed_at
                FROM todos t
                LEFT JOIN habit_todo_completions htc
                    ON t.habit_todo_id = htc.habit_todo_id AND t.date = htc.date
                WHERE t.segment_id = ? AND t.date = ?
                ORDER BY t.display_order, t.created_at, t.id
                """,
                (segment_id, date),
            ).fetchall()
        return [self._row_to_todo(r) for r in rows]

    def list_todos_in_range(self, segment_id: int, start: str, end: str) -> list[Todo]:
        """Todos of a segment with start <= date <= end, newest first."""
        with self.reader() as conn:
            rows = conn.execute(
                """
                SELECT * FROM todos WHERE segment_id = ? AND date >= ? AND date <= ?
                ORDER BY date DESC, display_order
                """,
                (segment_id, start, end),
            ).fetchall()
        return [self._row_to_todo(r) for r in rows]

    def _write_todo_state(
        self, conn: sqlite3.Connection, todo_id: int, achieved: bool,
    ) -> None:
        level = AchievementLevel.ACHIEVED if achieved else AchievementLevel.PENDING
        conn.execute(
            "UPDATE todos SET completed = ?, achievement_level = ?, completed_at = ? WHERE id = ?",
            (int(achieved), level.value, _now() if achieved else None, todo_id),
        )

    def toggle_todo(self, todo_id: int) -> Todo:
        """Flip a todo between done and not done, awarding/revoking its point.

        A habit-generated todo flips its habit's completion for that day
        instead, so the point is credited to the habit.
        """
        with self.transaction() as conn:
            row = self._fetch_todo(conn, todo_id)
            if row["habit_todo_id"] is not None:
                now_completed = self._flip_habit_completion(
                    conn, row["habit_todo_id"], row["segment_id"], row["date"],
                )
                self._mirror_habit_todos(conn, row["habit_todo_id"], row["date"], now_completed)
            else:
                now_completed = not bool(row["completed"])
                self._write_todo_state(conn, todo_id, now_completed)
                ledger.record_activity_transition(
                    conn, SourceKind(row["type"]), todo_id, row["segment_id"], row["date"],
                    became_achieved=now_completed,
                )
        logger.info("Todo #%d toggled → %s", todo_id, "done" if now_completed else "open")
        return self.get_todo(todo_id)

    def set_todo_achievement(self, todo_id: int, level: AchievementLevel | str) -> Todo:
        """Set a todo to pending or achieved, keeping `completed` in sync."""
        level = _coerce_level(level)
        with self.transaction() as conn:
            row = self._fetch_todo(conn, todo_id)
            was_achieved = row["achievement_level"] == AchievementLevel.ACHIEVED.value
            is_achieved = level is AchievementLevel.ACHIEVED
            self._write_todo_state(conn, todo_id, is_achieved)
            if was_achieved == is_achieved:
                pass
            elif row["habit_todo_id"] is not None:
                self._set_habit_completion(
                    conn, row["habit_todo_id"], row["segment_id"], row["date"], is_achieved,
                )
                self._mirror_habit_todos(conn, row["habit_todo_id"], row["date"], is_achieved)
            else:
                ledger.record_activity_transition(
                    conn, SourceKind(row["type"]), todo_id, row["segment_id"], row["date"],
                    became_achieved=is_achieved,
                )
        logger.info("Todo #%d achievement set to %s", todo_id, level.value)
        return self.get_todo(todo_id)

    def delete_todo(self, todo_id: int) -> None:
        """Delete a todo together with the point it earned."""
        with self.transaction() as conn:
            row = self._fetch_todo(conn, todo_id)
            ledger.remove_points_for_source(conn, SourceKind(row["type"]), todo_id, row["date"])
            conn.execute("DELETE FROM todos WHERE id = ?", (todo_id,))
        logger.info("Todo #%d deleted", todo_id)

    def delete_todos_for_date(
        self, segment_id: int, date: str, uncompleted_only: bool = False,
    ) -> int:
        """Bulk-delete a segment's todos for one day. Returns the number deleted."""
        parse_iso_date(date)
        query = "SELECT id, type, date FROM todos WHERE segment_id = ? AND date = ?"
        if uncompleted_only:
            query += " AND completed = 0"

        with self.transaction() as conn:
            rows = conn.execute(query, (segment_id, date)).fetchall()
            for row in rows:
                ledger.remove_points_for_source(
                    conn, SourceKind(row["type"]), row["id"], row["date"],
                )
                conn.execute("DELETE FROM todos WHERE id = ?", (row["id"],))
        logger.info(
            "Deleted %d %stodo(s) of segment #%d on %s",
            len(rows), "uncompleted " if uncompleted_only else "", segment_id, date,
        )
        return len(rows)

    def reorder_todos(self, orders: list[tuple[int, int]]) -> int:
        """Set display_order from (todo_id, display_order) pairs."""
        return self._reorder("todos", "todo", orders)

    # ------------------------------------------------------------------
    # Milestones
    # ------------------------------------------------------------------

    def add_milestone(self, segment_id: int, title: str, target_date: str) -> Milestone:
        title = _require_text(title, "title")
        parse_iso_date(target_date, "target_date")

        with self.transaction() as conn:
            self.require_segment(conn, segment_id)
            order = conn.execute(
                "SELECT COALESCE(MAX(display_order), 0) + 1 FROM milestones WHERE segment_id = ?",
                (segment_id,),
            ).fetchone()[0]
            cursor = conn.execute(
                """
                INSERT INTO milestones (segment_id, title, target_date, display_order)
                VALUES (?, ?, ?, ?)
                """,
                (segment_id, title, target_date, order),
            )
            milestone_id = cursor.lastrowid
        logger.info("Milestone added: #%d '%s' due %s", milestone_id, title, target_date)
        return self.get_milestone(milestone_id)

    def get_milestone(self, milestone_id: int) -> Milestone | None:
        with self.reader() as conn:
            row = conn.execute(
                "SELECT * FROM milestones WHERE id = ?", (milestone_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_milestone(row)

    def list_milestones(self, segment_id: int) -> list[Milestone]:
        with self.reader() as conn:
            rows = conn.execute(
                """
                SELECT * FROM milestones WHERE segment_id = ?
                ORDER BY display_order, target_date
                """,
                (segment_id,),
            ).fetchall()
        return [self._row_to_milestone(r) for r in rows]

    def set_milestone_achievement(
        self, milestone_id: int, level: AchievementLevel | str,
    ) -> Milestone:
        """Set a milestone to pending or achieved; the point is dated on its target date."""
        level = _coerce_level(level)
        with self.transaction() as conn:
            row = self._fetch_milestone(conn, milestone_id)
            was_achieved = row["achievement_level"] == AchievementLevel.ACHIEVED.value
            is_achieved = level is AchievementLevel.ACHIEVED
            status = MilestoneStatus.COMPLETED if is_achieved else MilestoneStatus.PENDING
            conn.execute(
                """
                UPDATE milestones SET achievement_level = ?, status = ?, completed_at = ?
                WHERE id = ?
                """,
                (level.value, status.value, _now() if is_achieved else None, milestone_id),
            )
            if was_achieved != is_achieved:
                ledger.record_activity_transition(
                    conn, SourceKind.MILESTONE, milestone_id, row["segment_id"],
                    row["target_date"], became_achieved=is_achieved,
                )
        logger.info("Milestone #%d achievement set to %s", milestone_id, level.value)
        return self.get_milestone(milestone_id)

    def set_milestone_status(
        self, milestone_id: int, status: MilestoneStatus | str,
    ) -> Milestone:
        """Mark a milestone completed or pending; same effect as the matching achievement level."""
        try:
            status = MilestoneStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown milestone status: {status!r}") from exc
        level = (
            AchievementLevel.ACHIEVED if status is MilestoneStatus.COMPLETED
            else AchievementLevel.PENDING
        )
        return self.set_milestone_achievement(milestone_id, level)

    def reorder_milestones(self, orders: list[tuple[int, int]]) -> int:
        return self._reorder("milestones", "milestone", orders)

    def delete_milestone(self, milestone_id: int) -> None:
        with self.transaction() as conn:
            row = self._fetch_milestone(conn, milestone_id)
            ledger.remove_points_for_source(
                conn, SourceKind.MILESTONE, milestone_id, row["target_date"],
            )
            conn.execute("DELETE FROM milestones WHERE id = ?", (milestone_id,))
        logger.info("Milestone #%d deleted", milestone_id)

    def delete_milestones_for_segment(self, segment_id: int) -> int:
        """Bulk-delete every milestone of a segment, with their points."""
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT id, target_date FROM milestones WHERE segment_id = ?", (segment_id,)
            ).fetchall()
            for row in rows:
                ledger.remove_points_for_source(
                    conn, SourceKind.MILESTONE, row["id"], row["target_date"],
                )
            conn.execute("DELETE FROM milestones WHERE segment_id = ?", (segment_id,))
        logger.info("Deleted %d milestone(s) of segment #%d", len(rows), segment_id)
        return len(rows)

    # ------------------------------------------------------------------
    # Habits
    # ------------------------------------------------------------------

    def add_habit(self, segment_id: int, title: str) -> HabitTodo:
        title = _require_text(title, "title")
        with self.transaction() as conn:
            self.require_segment(conn, segment_id)
            cursor = conn.execute(
                "INSERT INTO habit_todos (segment_id, title) VALUES (?, ?)",
                (segment_id, title),
            )
            habit_id = cursor.lastrowid
        logger.info("Habit added: #%d '%s'", habit_id, title)
        return self.get_habit(habit_id)

    def get_habit(self, habit_id: int) -> HabitTodo | None:
        with self.reader() as conn:
            row = conn.execute("SELECT * FROM habit_todos WHERE id = ?", (habit_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_habit(row)

    def list_habits(self, segment_id: int, active_only: bool = True) -> list[HabitTodo]:
        query = "SELECT * FROM habit_todos WHERE segment_id = ?"
        if active_only:
            query += " AND active = 1 ORDER BY created_at, id"
        else:
            query += " ORDER BY active DESC, created_at, id"
        with self.reader() as conn:
            rows = conn.execute(query, (segment_id,)).fetchall()
        return [self._row_to_habit(r) for r in rows]

    def rename_habit(self, habit_id: int, title: str) -> HabitTodo:
        title = _require_text(title, "title")
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE habit_todos SET title = ? WHERE id = ?", (title, habit_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("habit", habit_id)
        return self.get_habit(habit_id)

    def deactivate_habit(self, habit_id: int) -> HabitTodo:
        """Stop generating daily todos for a habit; its history is kept."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE habit_todos SET active = 0, deactivated_at = ? WHERE id = ?",
                (_now(), habit_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("habit", habit_id)
        logger.info("Habit #%d deactivated", habit_id)
        return self.get_habit(habit_id)

    def reactivate_habit(self, habit_id: int) -> HabitTodo:
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE habit_todos SET active = 1, deactivated_at = NULL WHERE id = ?",
                (habit_id,),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("habit", habit_id)
        logger.info("Habit #%d reactivated", habit_id)
        return self.get_habit(habit_id)

    def delete_habit(self, habit_id: int) -> dict:
        """Delete a habit, its generated todos, its completions and all its points."""
        with self.transaction() as conn:
            self._fetch_habit(conn, habit_id)
            points = ledger.remove_points_for_source(conn, SourceKind.HABIT, habit_id)

            generated = conn.execute(
                "SELECT id, type, date FROM todos WHERE habit_todo_id = ?", (habit_id,)
            ).fetchall()
            for row in generated:
                points += ledger.remove_points_for_source(
                    conn, SourceKind(row["type"]), row["id"], row["date"],
                )
            completions = conn.execute(
                "DELETE FROM habit_todo_completions WHERE habit_todo_id = ?", (habit_id,)
            ).rowcount
            todos = conn.execute(
                "DELETE FROM todos WHERE habit_todo_id = ?", (habit_id,)
            ).rowcount
            conn.execute("DELETE FROM habit_todos WHERE id = ?", (habit_id,))

        logger.info(
            "Habit #%d deleted (%d todos, %d completions, %d points)",
            habit_id, todos, completions, points,
        )
        return {"todos": todos, "completions": completions, "activity_points": points}

    def generate_habit_todos(self, segment_id: int, date: str) -> dict:
        """Create today's todo for every active habit that doesn't have one yet.

        Returns {"generated": n, "skipped": m}.
        """
        parse_iso_date(date)
        generated = skipped = 0
        with self.transaction() as conn:
            habits = conn.execute(
                "SELECT * FROM habit_todos WHERE segment_id = ? AND active = 1 ORDER BY id",
                (segment_id,),
            ).fetchall()
            for habit in habits:
                existing = conn.execute(
                    "SELECT 1 FROM todos WHERE segment_id = ? AND date = ? AND habit_todo_id = ?",
                    (segment_id, date, habit["id"]),
                ).fetchone()
                if existing is not None:
                    skipped += 1
                    continue
                order = self.next_todo_order(conn, segment_id, date, TodoKind.DAILY)
                # The habit may already have been completed for this day.
                done = conn.execute(
                    """
                    SELECT completed_at FROM habit_todo_completions
                    WHERE habit_todo_id = ? AND date = ? AND completed = 1
                    """,
                    (habit["id"], date),
                ).fetchone()
                level = AchievementLevel.ACHIEVED if done else AchievementLevel.PENDING
                conn.execute(
                    """
                    INSERT INTO todos
                        (segment_id, title, date, type, display_order, habit_todo_id,
                         is_from_habit, completed, achievement_level, completed_at)
                    VALUES (?, ?, ?, 'daily', ?, ?, 1, ?, ?, ?)
                    """,
                    (
                        segment_id, habit["title"], date, order, habit["id"],
                        int(done is not None), level.value,
                        done["completed_at"] if done else None,
                    ),
                )
                generated += 1
        logger.info(
            "Habit todos for segment #%d on %s: %d generated, %d skipped",
            segment_id, date, generated, skipped,
        )
        return {"generated": generated, "skipped": skipped}

    @staticmethod
    def _habit_completed(conn: sqlite3.Connection, habit_id: int, date: str) -> bool:
        row = conn.execute(
            "SELECT completed FROM habit_todo_completions WHERE habit_todo_id = ? AND date = ?",
            (habit_id, date),
        ).fetchone()
        return row is not None and bool(row["completed"])

    def _set_habit_completion(
        self, conn: sqlite3.Connection, habit_id: int, segment_id: int, date: str, completed: bool,
    ) -> None:
        conn.execute(
            """
            INSERT INTO habit_todo_completions
                (habit_todo_id, segment_id, date, completed, completed_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(habit_todo_id, date)
            DO UPDATE SET completed = excluded.completed, completed_at = excluded.completed_at
            """,
            (habit_id, segment_id, date, int(completed), _now() if completed else None),
        )
        ledger.record_activity_transition(
            conn, SourceKind.HABIT, habit_id, segment_id, date, became_achieved=completed,
        )

    def _flip_habit_completion(
        self, conn: sqlite3.Connection, habit_id: int, segment_id: int, date: str,
    ) -> bool:
        now_completed = not self._habit_completed(conn, habit_id, date)
        self._set_habit_completion(conn, habit_id, segment_id, date, now_completed)
        return now_completed

    def _mirror_habit_todos(
        self, conn: sqlite3.Connection, habit_id: int, date: str, completed: bool,
    ) -> None:
        rows = conn.execute(
            "SELECT id FROM todos WHERE habit_todo_id = ? AND date = ?", (habit_id, date),
        ).fetchall()
        for row in rows:
            self._write_todo_state(conn, row["id"], completed)

    def toggle_habit_completion(self, habit_id: int, segment_id: int, date: str) -> bool:
        """Flip a habit's completion for one day. Returns the new completed state.

        `segment_id` must be the habit's own segment; the point is credited there.
        """
        parse_iso_date(date)
        with self.transaction() as conn:
            habit = self._fetch_habit(conn, habit_id)
            if habit["segment_id"] != segment_id:
                raise ValidationError(
                    f"Habit #{habit_id} belongs to segment #{habit['segment_id']}, not #{segment_id}"
                )
            now_completed = self._flip_habit_completion(conn, habit_id, segment_id, date)
            self._mirror_habit_todos(conn, habit_id, date, now_completed)
        logger.info("Habit #%d on %s → %s", habit_id, date, "done" if now_completed else "open")
        return now_completed

    def list_habit_completions(self, segment_id: int, date: str) -> list[HabitCompletion]:
        with self.reader() as conn:
            rows = conn.execute(
                """
                SELECT htc.*, ht.title FROM habit_todo_completions htc
                JOIN habit_todos ht ON htc.habit_todo_id = ht.id
                WHERE htc.segment_id = ? AND htc.date = ?
                """,
                (segment_id, date),
            ).fetchall()
        return [
            HabitCompletion(
                habit_todo_id=r["habit_todo_id"],
                segment_id=r["segment_id"],
                date=r["date"],
                completed=bool(r["completed"]),
                completed_at=r["completed_at"],
                title=r["title"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Discussion items
    # ------------------------------------------------------------------

    def add_discussion_item(self, segment_id: int, content: str) -> DiscussionItem:
        content = _require_text(content, "content")
        with self.transaction() as conn:
            self.require_segment(conn, segment_id)
            order = conn.execute(
                "SELECT COALESCE(MAX(display_order), 0) + 1 FROM discussion_items WHERE segment_id = ?",
                (segment_id,),
            ).fetchone()[0]
            cursor = conn.execute(
                "INSERT INTO discussion_items (segment_id, content, display_order) VALUES (?, ?, ?)",
                (segment_id, content, order),
            )
            item_id = cursor.lastrowid
            row = conn.execute("SELECT * FROM discussion_items WHERE id = ?", (item_id,)).fetchone()
        logger.info("Discussion item #%d added to segment #%d", item_id, segment_id)
        return self._row_to_discussion(row)

    def list_discussion_items(self, segment_id: int) -> list[DiscussionItem]:
        with self.reader() as conn:
            rows = conn.execute(
                """
                SELECT * FROM discussion_items WHERE segment_id = ?
                ORDER BY display_order, created_at DESC
                """,
                (segment_id,),
            ).fetchall()
        return [self._row_to_discussion(r) for r in rows]

    def resolve_discussion_item(self, item_id: int, resolved: bool = True) -> DiscussionItem:
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE discussion_items SET resolved = ?, resolved_at = ? WHERE id = ?",
                (int(resolved), _now() if resolved else None, item_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("discussion item", item_id)
            row = conn.execute("SELECT * FROM discussion_items WHERE id = ?", (item_id,)).fetchone()
        return self._row_to_discussion(row)

    def toggle_discussion_item(self, item_id: int) -> DiscussionItem:
        with self.reader() as conn:
            row = conn.execute(
                "SELECT resolved FROM discussion_items WHERE id = ?", (item_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError("discussion item", item_id)
        return self.resolve_discussion_item(item_id, resolved=not bool(row["resolved"]))

    def delete_discussion_item(self, item_id: int) -> None:
        """Delete one discussion item; its memos cascade."""
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM discussion_items WHERE id = ?", (item_id,))
            if cursor.rowcount == 0:
                raise NotFoundError("discussion item", item_id)
        logger.info("Discussion item #%d deleted", item_id)

    def reorder_discussion_items(self, orders: list[tuple[int, int]]) -> int:
        return self._reorder("discussion_items", "discussion item", orders)

    def add_discussion_memo(self, item_id: int, memo: str) -> DiscussionMemo:
        memo = _require_text(memo, "memo")
        with self.transaction() as conn:
            if conn.execute(
                "SELECT 1 FROM discussion_items WHERE id = ?", (item_id,)
            ).fetchone() is None:
                raise NotFoundError("discussion item", item_id)
            cursor = conn.execute(
                "INSERT INTO discussion_memos (discussion_item_id, memo) VALUES (?, ?)",
                (item_id, memo),
            )
            row = conn.execute(
                "SELECT * FROM discussion_memos WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
        return self._row_to_memo(row)

    def save_discussion_memo(
        self, item_id: int, memo: str, resolved: bool,
    ) -> DiscussionItem:
        """Overwrite the item's latest memo (or add the first) and set its resolved flag.

        A blank memo leaves the memos untouched and only updates the flag.
        """
        memo = (memo or "").strip()
        with self.transaction() as conn:
            if conn.execute(
                "SELECT 1 FROM discussion_items WHERE id = ?", (item_id,)
            ).fetchone() is None:
                raise NotFoundError("discussion item", item_id)
            if memo:
                latest = conn.execute(
                    """
                    SELECT id FROM discussion_memos WHERE discussion_item_id = ?
                    ORDER BY created_at DESC, id DESC LIMIT 1
                    """,
                    (item_id,),
                ).fetchone()
                if latest is None:
                    conn.execute(
                        "INSERT INTO discussion_memos (discussion_item_id, memo) VALUES (?, ?)",
                        (item_id, memo),
                    )
                else:
                    conn.execute(
                        "UPDATE discussion_memos SET memo = ?, created_at = CURRENT_TIMESTAMP WHERE id = ?",
                        (memo, latest["id"]),
                    )
            conn.execute(
                "UPDATE discussion_items SET resolved = ?, resolved_at = ? WHERE id = ?",
                (int(resolved), _now() if resolved else None, item_id),
            )
            row = conn.execute("SELECT * FROM discussion_items WHERE id = ?", (item_id,)).fetchone()
        logger.info("Discussion item #%d memo saved (resolved=%s)", item_id, resolved)
        return self._row_to_discussion(row)

    def list_discussion_memos(self, item_id: int) -> list[DiscussionMemo]:
        """Memos of one item, newest first."""
        with self.reader() as conn:
            rows = conn.execute(
                """
                SELECT * FROM discussion_memos WHERE discussion_item_id = ?
                ORDER BY created_at DESC, id DESC
                """,
                (item_id,),
            ).fetchall()
        return [self._row_to_memo(r) for r in rows]

    def delete_discussions_for_segment(self, segment_id: int) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM discussion_items WHERE segment_id = ?", (segment_id,),
            )
        logger.info("Deleted %d discussion item(s) of segment #%d", cursor.rowcount, segment_id)
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Activity points
    # ------------------------------------------------------------------

    def record_activity_transition(
        self,
        source_kind: SourceKind | str,
        source_id: int,
        segment_id: int,
        date: str,
        became_achieved: bool,
    ) -> None:
        """Award or revoke one source's point in its own transaction."""
        try:
            source_kind = SourceKind(source_kind)
        except ValueError as exc:
            raise ValidationError(f"Unknown source kind: {source_kind!r}") from exc
        parse_iso_date(date)
        with self.transaction() as conn:
            self.require_segment(conn, segment_id)
            ledger.record_activity_transition(
                conn, source_kind, source_id, segment_id, date, became_achieved,
            )

    def list_activity_points(
        self,
        segment_id: int | None = None,
        source_kind: SourceKind | None = None,
        source_id: int | None = None,
    ) -> list[ActivityPoint]:
        conditions: list[str] = []
        params: list = []
        if segment_id is not None:
            conditions.append("segment_id = ?")
            params.append(segment_id)
        if source_kind is not None:
            conditions.append("source_type = ?")
            params.append(source_kind.value)
        if source_id is not None:
            conditions.append("source_id = ?")
            params.append(source_id)

        query = "SELECT * FROM activity_points"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY date, id"

        with self.reader() as conn:
            rows = conn.execute(query, params).fetchall()
        return [ledger.row_to_activity_point(r) for r in rows]

    def total_points(self, segment_id: int | None = None) -> int:
        """All points ever earned, optionally for a single segment."""
        with self.reader() as conn:
            return ledger.sum_points(conn, segment_id=segment_id)
