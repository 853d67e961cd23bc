"""
ForgeFlow — SQLite stores.

Quests, todos and the player profile persist across bot restarts. Each
save is a single upsert in its own transaction, so a read-modify-write of
one entity is atomic as long as the caller serializes writers per entity
(the mission coordinator does).
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from forgeflow.data.models import (
    FocusSession,
    PlayerProfile,
    Quest,
    QuestDifficulty,
    ReminderOffset,
    SubQuest,
    TodoItem,
    TodoPriority,
)

logger = logging.getLogger(__name__)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _join(values: list[str]) -> str:
    return ",".join(values)


def _split(raw: str | None) -> list[str]:
    return [v for v in (raw or "").split(",") if v]


class _SQLiteStore:
    """Connection plumbing shared by the stores below."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from forgeflow.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        raise NotImplementedError


class QuestDB(_SQLiteStore):
    """SQLite-backed storage for quests, their sub-quests and the focus-session log."""

    def _init_db(self) -> None:
        """Create the quest tables if missing, and migrate schema."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS quests (
                    id               TEXT    PRIMARY KEY,
                    title            TEXT    NOT NULL,
                    details          TEXT    NOT NULL DEFAULT '',
                    is_boss_quest    INTEGER NOT NULL DEFAULT 0,
                    is_timer_active  INTEGER NOT NULL DEFAULT 0,
                    last_started_at  TEXT,
                    time_spent       REAL    NOT NULL DEFAULT 0,
                    is_completed     INTEGER NOT NULL DEFAULT 0,
                    completed_at     TEXT,
                    created_at       TEXT    NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS focus_sessions (
                    id           INTEGER PRIMARY KEY AUTOINCREMENT,
                    quest_id     TEXT    NOT NULL,
                    quest_title  TEXT    NOT NULL,
                    duration     REAL    NOT NULL,
                    ended_at     TEXT    NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS subquests (
                    id               TEXT    PRIMARY KEY,
                    quest_id         TEXT    NOT NULL,
                    title            TEXT    NOT NULL,
                    difficulty       TEXT    NOT NULL DEFAULT 'routine',
                    is_completed     INTEGER NOT NULL DEFAULT 0,
                    is_timer_active  INTEGER NOT NULL DEFAULT 0,
                    last_started_at  TEXT,
                    time_spent       REAL    NOT NULL DEFAULT 0,
                    reward_claimed   INTEGER NOT NULL DEFAULT 0,
                    created_at       TEXT    NOT NULL
                )
            """)
            # Migrate existing DBs: add new columns if missing
            existing_cols = {
                row[1] for row in conn.execute("PRAGMA table_info(quests)").fetchall()
            }
            if "notification_ids" not in existing_cols:
                conn.execute(
                    "ALTER TABLE quests ADD COLUMN notification_ids TEXT NOT NULL DEFAULT ''"
                )
            if "subquest_bonus_claimed" not in existing_cols:
                conn.execute(
                    "ALTER TABLE quests ADD COLUMN subquest_bonus_claimed INTEGER NOT NULL DEFAULT 0"
                )
        logger.debug("Quest tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_quest(row: sqlite3.Row) -> Quest:
        return Quest(
            id=row["id"],
            title=row["title"],
            details=row["details"],
            is_boss_quest=bool(row["is_boss_quest"]),
            is_timer_active=bool(row["is_timer_active"]),
            last_started_at=_from_iso(row["last_started_at"]),
            time_spent=row["time_spent"],
            is_completed=bool(row["is_completed"]),
            completed_at=_from_iso(row["completed_at"]),
            created_at=_from_iso(row["created_at"]),
            notification_ids=_split(row["notification_ids"]),
            subquest_bonus_claimed=bool(row["subquest_bonus_claimed"]),
        )

    def add_quest(
        self,
        title: str,
        details: str = "",
        is_boss_quest: bool = False,
    ) -> Quest:
        """Insert a new idle quest."""
        quest = Quest(title=title.strip(), details=details.strip(), is_boss_quest=is_boss_quest)
        self.save_quest(quest)
        logger.info("Quest added: %s '%s'%s", quest.id, quest.title, " [boss]" if is_boss_quest else "")
        return quest

    def save_quest(self, quest: Quest) -> None:
        """Insert or replace the full quest row."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO quests
                    (id, title, details, is_boss_quest, is_timer_active,
                     last_started_at, time_spent, is_completed, completed_at,
                     created_at, notification_ids, subquest_bonus_claimed)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    quest.id, quest.title, quest.details,
                    int(quest.is_boss_quest), int(quest.is_timer_active),
                    _to_iso(quest.last_started_at), quest.time_spent,
                    int(quest.is_completed), _to_iso(quest.completed_at),
                    _to_iso(quest.created_at), _join(quest.notification_ids),
                    int(quest.subquest_bonus_claimed),
                ),
            )

    def get_quest(self, quest_id: str) -> Quest | None:
        """Fetch a single quest by ID."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM quests WHERE id = ?", (quest_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_quest(row)

    def list_quests(self, include_completed: bool = False) -> list[Quest]:
        """List quests, oldest first; open quests only unless asked otherwise."""
        query = "SELECT * FROM quests"
        if not include_completed:
            query += " WHERE is_completed = 0"
        query += " ORDER BY created_at"

        with self._connect() as conn:
            rows = conn.execute(query).fetchall()

        return [self._row_to_quest(r) for r in rows]

    def delete_quest(self, quest_id: str) -> bool:
        """Permanently delete a quest and its sub-quests. Focus-session history is kept."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM quests WHERE id = ?", (quest_id,))
            conn.execute("DELETE FROM subquests WHERE quest_id = ?", (quest_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Quest %s deleted", quest_id)
        return deleted

    # -- Sub-quests --------------------------------------------------------

    @staticmethod
    def _row_to_subquest(row: sqlite3.Row) -> SubQuest:
        return SubQuest(
            id=row["id"],
            quest_id=row["quest_id"],
            title=row["title"],
            difficulty=QuestDifficulty(row["difficulty"]),
            is_completed=bool(row["is_completed"]),
            is_timer_active=bool(row["is_timer_active"]),
            last_started_at=_from_iso(row["last_started_at"]),
            time_spent=row["time_spent"],
            reward_claimed=bool(row["reward_claimed"]),
            created_at=_from_iso(row["created_at"]),
        )

    def add_subquest(
        self,
        quest_id: str,
        title: str,
        difficulty: QuestDifficulty = QuestDifficulty.ROUTINE,
    ) -> SubQuest:
        """Attach a new open step to ``quest_id``."""
        subquest = SubQuest(quest_id=quest_id, title=title.strip(), difficulty=difficulty)
        self.save_subquest(subquest)
        logger.info("Sub-quest added to %s: %s '%s'", quest_id, subquest.id, subquest.title)
        return subquest

    def save_subquest(self, subquest: SubQuest) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO subquests
                    (id, quest_id, title, difficulty, is_completed, is_timer_active,
                     last_started_at, time_spent, reward_claimed, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    subquest.id, subquest.quest_id, subquest.title,
                    subquest.difficulty.value, int(subquest.is_completed),
                    int(subquest.is_timer_active), _to_iso(subquest.last_started_at),
                    subquest.time_spent, int(subquest.reward_claimed),
                    _to_iso(subquest.created_at),
                ),
            )

    def get_subquest(self, subquest_id: str) -> SubQuest | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM subquests WHERE id = ?", (subquest_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_subquest(row)

    def list_subquests(self, quest_id: str | None = None) -> list[SubQuest]:
        """Sub-quests in creation order, for one quest or for all."""
        query = "SELECT * FROM subquests"
        params: list = []
        if quest_id is not None:
            query += " WHERE quest_id = ?"
            params.append(quest_id)
        query += " ORDER BY created_at, rowid"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        return [self._row_to_subquest(r) for r in rows]

    def delete_subquest(self, subquest_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM subquests WHERE id = ?", (subquest_id,))
        return cursor.rowcount > 0

    # -- Focus sessions ----------------------------------------------------

    def log_session(self, session: FocusSession) -> FocusSession:
        """Append one closed timer interval to the history."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO focus_sessions (quest_id, quest_title, duration, ended_at)
                VALUES (?, ?, ?, ?)
                """,
                (session.quest_id, session.quest_title, session.duration, _to_iso(session.ended_at)),
            )
            session.id = cursor.lastrowid
        return session

    def list_sessions(self, quest_id: str | None = None) -> list[FocusSession]:
        query = "SELECT * FROM focus_sessions"
        params: list = []
        if quest_id is not None:
            query += " WHERE quest_id = ?"
            params.append(quest_id)
        query += " ORDER BY id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            FocusSession(
                id=r["id"],
                quest_id=r["quest_id"],
                quest_title=r["quest_title"],
                duration=r["duration"],
                ended_at=_from_iso(r["ended_at"]),
            )
            for r in rows
        ]


class TodoDB(_SQLiteStore):
    """SQLite-backed storage for reminder-bearing todos."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS todos (
                    id               TEXT    PRIMARY KEY,
                    title            TEXT    NOT NULL,
                    notes            TEXT    NOT NULL DEFAULT '',
                    due_date         TEXT    NOT NULL,
                    reminder_offset  TEXT    NOT NULL DEFAULT 'at_time',
                    priority         TEXT    NOT NULL DEFAULT 'medium',
                    is_completed     INTEGER NOT NULL DEFAULT 0,
                    completed_at     TEXT,
                    created_at       TEXT    NOT NULL
                )
            """)
            existing_cols = {
                row[1] for row in conn.execute("PRAGMA table_info(todos)").fetchall()
            }
            if "reward_claimed" not in existing_cols:
                conn.execute(
                    "ALTER TABLE todos ADD COLUMN reward_claimed INTEGER NOT NULL DEFAULT 0"
                )
        logger.debug("Todos table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_todo(row: sqlite3.Row) -> TodoItem:
        return TodoItem(
            id=row["id"],
            title=row["title"],
            notes=row["notes"],
            due_date=_from_iso(row["due_date"]),
            reminder_offset=ReminderOffset(row["reminder_offset"]),
            priority=TodoPriority(row["priority"]),
            is_completed=bool(row["is_completed"]),
            completed_at=_from_iso(row["completed_at"]),
            created_at=_from_iso(row["created_at"]),
            reward_claimed=bool(row["reward_claimed"]),
        )

    def save_todo(self, todo: TodoItem) -> None:
        """Insert or replace the full todo row."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO todos
                    (id, title, notes, due_date, reminder_offset, priority,
                     is_completed, completed_at, created_at, reward_claimed)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    todo.id, todo.title, todo.notes, _to_iso(todo.due_date),
                    todo.reminder_offset.value, todo.priority.value,
                    int(todo.is_completed), _to_iso(todo.completed_at),
                    _to_iso(todo.created_at), int(todo.reward_claimed),
                ),
            )

    def get_todo(self, todo_id: str) -> TodoItem | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM todos WHERE id = ?", (todo_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_todo(row)

    def list_todos(self, include_completed: bool = False) -> list[TodoItem]:
        """Return todos ordered by urgency (critical first), then due date."""
        query = "SELECT * FROM todos"
        if not include_completed:
            query += " WHERE is_completed = 0"

        with self._connect() as conn:
            rows = conn.execute(query).fetchall()

        todos = [self._row_to_todo(r) for r in rows]
        todos.sort(key=lambda t: (t.priority.sort_order, t.due_date))
        return todos

    def delete_todo(self, todo_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM todos WHERE id = ?", (todo_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Todo %s deleted", todo_id)
        return deleted


class ProfileDB(_SQLiteStore):
    """SQLite-backed storage for player profiles."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS profiles (
                    id                     INTEGER PRIMARY KEY,
                    name                   TEXT    NOT NULL,
                    level                  INTEGER NOT NULL DEFAULT 1,
                    experience             INTEGER NOT NULL DEFAULT 0,
                    nanobytes              INTEGER NOT NULL DEFAULT 0,
                    total_focus_seconds    REAL    NOT NULL DEFAULT 0,
                    unlocked_rewards       TEXT    NOT NULL DEFAULT 'theme_default',
                    notifications_enabled  INTEGER NOT NULL DEFAULT 0
                )
            """)
        logger.debug("Profiles table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_profile(row: sqlite3.Row) -> PlayerProfile:
        return PlayerProfile(
            id=row["id"],
            name=row["name"],
            level=row["level"],
            experience=row["experience"],
            nanobytes=row["nanobytes"],
            total_focus_seconds=row["total_focus_seconds"],
            unlocked_rewards=_split(row["unlocked_rewards"]),
            notifications_enabled=bool(row["notifications_enabled"]),
        )

    def get_profile(self, profile_id: int) -> PlayerProfile | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM profiles WHERE id = ?", (profile_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_profile(row)

    def get_or_create(self, profile_id: int, name: str = "New Developer") -> PlayerProfile:
        profile = self.get_profile(profile_id)
        if profile is not None:
            return profile
        profile = PlayerProfile(id=profile_id, name=name)
        self.save_profile(profile)
        logger.info("Profile %d created for '%s'", profile_id, name)
        return profile

    def save_profile(self, profile: PlayerProfile) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO profiles
                    (id, name, level, experience, nanobytes, total_focus_seconds,
                     unlocked_rewards, notifications_enabled)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    profile.id, profile.name, profile.level, profile.experience,
                    profile.nanobytes, profile.total_focus_seconds,
                    _join(profile.unlocked_rewards), int(profile.notifications_enabled),
                ),
            )

    def set_notifications_enabled(self, profile_id: int, enabled: bool) -> None:
        """Record the user's notification opt-in."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE profiles SET notifications_enabled = ? WHERE id = ?",
                (int(enabled), profile_id),
            )
        logger.info("Notifications %s for profile %d", "enabled" if enabled else "disabled", profile_id)
