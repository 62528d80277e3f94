"""
Database operations for the score tracker.

All domain rules that can be declared in SQLite are declared here (CHECK,
UNIQUE, FOREIGN KEY, the generated total_score column and updated_at
triggers). The Python side only adds the pre-checks that need a friendly
message and the "no delete with dependents" policy.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite

from .errors import (
    AlreadyExists,
    ConstraintViolation,
    HasDependents,
    NotFound,
    StorageUnavailable,
    ValidationError,
)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS activity (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        activity_name TEXT NOT NULL UNIQUE CHECK(length(trim(activity_name)) > 0),
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS activity_updated_at
    AFTER UPDATE ON activity
    FOR EACH ROW WHEN NEW.updated_at = OLD.updated_at
    BEGIN
        UPDATE activity SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
    END
    """,
    """
    CREATE TABLE IF NOT EXISTS team (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        team_name TEXT NOT NULL UNIQUE CHECK(length(trim(team_name)) > 0),
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS team_updated_at
    AFTER UPDATE ON team
    FOR EACH ROW WHEN NEW.updated_at = OLD.updated_at
    BEGIN
        UPDATE team SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
    END
    """,
    """
    CREATE TABLE IF NOT EXISTS score (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        activity_id INTEGER NOT NULL,
        team_id INTEGER NOT NULL,
        creative_score INTEGER NOT NULL
            CHECK(typeof(creative_score) = 'integer' AND creative_score BETWEEN 1 AND 10),
        participation_score INTEGER NOT NULL
            CHECK(typeof(participation_score) = 'integer' AND participation_score BETWEEN 1 AND 10),
        bribe_score INTEGER NOT NULL
            CHECK(typeof(bribe_score) = 'integer' AND bribe_score BETWEEN 1 AND 10),
        total_score INTEGER GENERATED ALWAYS AS
            (creative_score + participation_score + bribe_score) STORED,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (activity_id) REFERENCES activity(id) ON DELETE CASCADE,
        FOREIGN KEY (team_id) REFERENCES team(id) ON DELETE CASCADE,
        UNIQUE(activity_id, team_id)
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS score_updated_at
    AFTER UPDATE ON score
    FOR EACH ROW WHEN NEW.updated_at = OLD.updated_at
    BEGIN
        UPDATE score SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
    END
    """,
    "CREATE INDEX IF NOT EXISTS idx_score_activity ON score(activity_id)",
    "CREATE INDEX IF NOT EXISTS idx_score_team ON score(team_id)",
    """
    CREATE TABLE IF NOT EXISTS qr_tokens (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        token TEXT NOT NULL UNIQUE CHECK(length(token) >= 32),
        description TEXT NOT NULL DEFAULT '',
        created_at INTEGER NOT NULL,
        expires_at INTEGER NOT NULL,
        last_used_at INTEGER,
        used_count INTEGER NOT NULL DEFAULT 0 CHECK(used_count >= 0)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_qr_tokens_token ON qr_tokens(token)",
    "CREATE INDEX IF NOT EXISTS idx_qr_tokens_expires ON qr_tokens(expires_at)",
]

# Drop order matters: score references activity and team
TABLES = ("score", "activity", "team", "qr_tokens")

SEED_ACTIVITIES = [
    "Trivia Challenge",
    "Creative Showcase",
    "Team Building Exercise",
    "Presentation Contest",
]

SEED_TEAMS = [
    "Team Alpha",
    "Team Beta",
    "Team Gamma",
    "Team Delta",
    "Team Epsilon",
]

# activity and team share the same shape; only the name column differs
_NAMED_TABLES = {
    "activity": ("activity_name", "Activity"),
    "team": ("team_name", "Team"),
}

_SCORE_SELECT = """
    SELECT
        score.*,
        team.team_name,
        activity.activity_name
    FROM score
    JOIN team ON score.team_id = team.id
    JOIN activity ON score.activity_id = activity.id
"""


def _translate_integrity_error(error: Exception, label: str) -> ConstraintViolation:
    """
    Map a sqlite IntegrityError onto the error taxonomy.

    @param error: The IntegrityError raised by sqlite
    @param label: Human name of the record being written ("Team", "Score", ...)
    @return: The matching ConstraintViolation subclass instance
    """
    message = str(error)

    if "UNIQUE constraint failed: score." in message:
        return AlreadyExists(
            "Score already exists for this team and activity. Use PUT to update."
        )
    if "UNIQUE" in message:
        return AlreadyExists(f"{label} name already exists")
    if "CHECK constraint failed" in message:
        if "_score" in message:
            return ValidationError("Scores must be whole numbers between 1 and 10")
        return ValidationError(f"{label} name is required")
    if "NOT NULL" in message:
        return ValidationError(f"{label} is missing a required field")
    if "FOREIGN KEY" in message:
        return NotFound("Referenced activity or team not found")
    return ConstraintViolation(f"{label} violates a database constraint")


class DatabaseManager:
    """
    Owns the SQLite file and every query against it.

    One instance is created at start-up and handed to each component that
    needs the store. Each operation opens its own connection so concurrent
    requests are serialized by SQLite's locking, never by shared Python state.
    """

    def __init__(
        self,
        db_path: str,
        busy_timeout: float = 5.0,
    ) -> None:
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Open a connection with foreign keys enforced.

        Operational failures (cannot open, locked past the busy timeout,
        missing table) surface as StorageUnavailable.
        """
        try:
            db = await aiosqlite.connect(self.db_path, timeout=self.busy_timeout)
        except (aiosqlite.Error, OSError) as e:
            print(f"Database connection error: {e}")
            raise StorageUnavailable("Database connection failed") from e

        try:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            yield db
        except aiosqlite.IntegrityError:
            raise
        except aiosqlite.Error as e:
            print(f"Database query error: {e}")
            raise StorageUnavailable("Database operation failed") from e
        finally:
            await db.close()

    # ------------------------------------------------------------------
    # Schema lifecycle
    # ------------------------------------------------------------------

    async def init_db(self, seed: bool = False) -> None:
        """
        Create tables, triggers and indexes if they do not exist.

        @param seed: Also insert the baseline activities and teams (idempotent)
        """
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with self.connect() as db:
            # WAL lets readers proceed while a writer holds the lock
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")

            for statement in SCHEMA:
                await db.execute(statement)

            await self._migrate_schema(db)

            if seed:
                await self._insert_seed_data(db)

            await db.commit()

    async def _migrate_schema(
        self,
        db: aiosqlite.Connection,
    ) -> None:
        """
        Handle database schema migrations.

        Older databases created qr_tokens without usage tracking.

        @param db: Active database connection
        """
        cursor = await db.execute("PRAGMA table_info(qr_tokens)")
        columns = await cursor.fetchall()
        column_names = [column[1] for column in columns]

        if "last_used_at" not in column_names:
            print("Migrating database schema to add qr_tokens.last_used_at...")
            await db.execute("ALTER TABLE qr_tokens ADD COLUMN last_used_at INTEGER")

        if "used_count" not in column_names:
            print("Migrating database schema to add qr_tokens.used_count...")
            await db.execute(
                "ALTER TABLE qr_tokens ADD COLUMN used_count INTEGER NOT NULL DEFAULT 0"
            )

    async def _insert_seed_data(self, db: aiosqlite.Connection) -> None:
        for name in SEED_ACTIVITIES:
            await db.execute(
                "INSERT OR IGNORE INTO activity (activity_name) VALUES (?)", (name,)
            )
        for name in SEED_TEAMS:
            await db.execute(
                "INSERT OR IGNORE INTO team (team_name) VALUES (?)", (name,)
            )

    async def verify_schema(self) -> Dict[str, int]:
        """
        Check that every table exists.

        @return: Mapping of table name to row count
        @raise StorageUnavailable: If a table is missing
        """
        counts: Dict[str, int] = {}

        async with self.connect() as db:
            for table in ("activity", "team", "score", "qr_tokens"):
                cursor = await db.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
                    (table,),
                )
                if await cursor.fetchone() is None:
                    raise StorageUnavailable(f"Table '{table}' does not exist")

                cursor = await db.execute(f"SELECT COUNT(*) FROM {table}")
                counts[table] = (await cursor.fetchone())[0]

        return counts

    async def drop_schema(self) -> None:
        """Drop all tables (and with them their triggers and indexes)."""
        async with self.connect() as db:
            for table in TABLES:
                await db.execute(f"DROP TABLE IF EXISTS {table}")
            await db.commit()

    # ------------------------------------------------------------------
    # Activities and teams
    # ------------------------------------------------------------------

    async def _get_named(self, table: str, record_id: int) -> Dict[str, Any]:
        _, label = _NAMED_TABLES[table]
        async with self.connect() as db:
            cursor = await db.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,))
            row = await cursor.fetchone()

        if row is None:
            raise NotFound(f"{label} not found")
        return dict(row)

    async def _create_named(self, table: str, name: str) -> Dict[str, Any]:
        column, label = _NAMED_TABLES[table]
        name = (name or "").strip()
        if not name:
            raise ValidationError(f"{label} name is required")

        async with self.connect() as db:
            try:
                cursor = await db.execute(
                    f"INSERT INTO {table} ({column}) VALUES (?)", (name,)
                )
                await db.commit()
            except aiosqlite.IntegrityError as e:
                raise _translate_integrity_error(e, label) from e

            new_id = cursor.lastrowid
            cursor = await db.execute(f"SELECT * FROM {table} WHERE id = ?", (new_id,))
            return dict(await cursor.fetchone())

    async def _rename_named(self, table: str, record_id: int, name: str) -> Dict[str, Any]:
        column, label = _NAMED_TABLES[table]
        name = (name or "").strip()
        if not name:
            raise ValidationError(f"{label} name is required")

        async with self.connect() as db:
            try:
                cursor = await db.execute(
                    f"UPDATE {table} SET {column} = ? WHERE id = ?", (name, record_id)
                )
                await db.commit()
            except aiosqlite.IntegrityError as e:
                raise _translate_integrity_error(e, label) from e

            if cursor.rowcount == 0:
                raise NotFound(f"{label} not found")

            cursor = await db.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,))
            return dict(await cursor.fetchone())

    async def _delete_named(self, table: str, record_id: int) -> None:
        """
        Delete an activity or team that has no scores.

        The dependent count and the delete run inside one write transaction, so
        a score inserted concurrently cannot be cascaded away unseen.
        """
        _, label = _NAMED_TABLES[table]
        fk_column = f"{table}_id"

        async with self.connect() as db:
            await db.execute("BEGIN IMMEDIATE")

            cursor = await db.execute(f"SELECT id FROM {table} WHERE id = ?", (record_id,))
            if await cursor.fetchone() is None:
                await db.rollback()
                raise NotFound(f"{label} not found")

            cursor = await db.execute(
                f"SELECT COUNT(*) FROM score WHERE {fk_column} = ?", (record_id,)
            )
            score_count = (await cursor.fetchone())[0]
            if score_count > 0:
                await db.rollback()
                raise HasDependents(
                    f"Cannot delete {label.lower()} with existing scores",
                    count=score_count,
                )

            await db.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            await db.commit()

    async def list_activities(self, stats: bool = False) -> List[Dict[str, Any]]:
        """
        List activities ordered by name.

        @param stats: Include teams_participated and avg_score per activity
        """
        if stats:
            query = """
                SELECT
                    activity.id,
                    activity.activity_name,
                    activity.created_at,
                    activity.updated_at,
                    COUNT(score.id) AS teams_participated,
                    COALESCE(ROUND(AVG(score.total_score), 2), 0) AS avg_score
                FROM activity
                LEFT JOIN score ON activity.id = score.activity_id
                GROUP BY activity.id
                ORDER BY activity.activity_name
            """
        else:
            query = "SELECT * FROM activity ORDER BY activity_name"

        async with self.connect() as db:
            cursor = await db.execute(query)
            return [dict(row) for row in await cursor.fetchall()]

    async def get_activity(self, activity_id: int) -> Dict[str, Any]:
        return await self._get_named("activity", activity_id)

    async def create_activity(self, name: str) -> Dict[str, Any]:
        return await self._create_named("activity", name)

    async def update_activity(self, activity_id: int, name: str) -> Dict[str, Any]:
        return await self._rename_named("activity", activity_id, name)

    async def delete_activity(self, activity_id: int) -> None:
        await self._delete_named("activity", activity_id)

    async def list_teams(self, stats: bool = False) -> List[Dict[str, Any]]:
        """
        List teams ordered by name.

        @param stats: Include activities_participated, total_score and avg_score
        """
        if stats:
            query = """
                SELECT
                    team.id,
                    team.team_name,
                    team.created_at,
                    team.updated_at,
                    COUNT(score.id) AS activities_participated,
                    COALESCE(SUM(score.total_score), 0) AS total_score,
                    COALESCE(ROUND(AVG(score.total_score), 2), 0) AS avg_score
                FROM team
                LEFT JOIN score ON team.id = score.team_id
                GROUP BY team.id
                ORDER BY team.team_name
            """
        else:
            query = "SELECT * FROM team ORDER BY team_name"

        async with self.connect() as db:
            cursor = await db.execute(query)
            return [dict(row) for row in await cursor.fetchall()]

    async def get_team(self, team_id: int) -> Dict[str, Any]:
        return await self._get_named("team", team_id)

    async def create_team(self, name: str) -> Dict[str, Any]:
        return await self._create_named("team", name)

    async def update_team(self, team_id: int, name: str) -> Dict[str, Any]:
        return await self._rename_named("team", team_id, name)

    async def delete_team(self, team_id: int) -> None:
        await self._delete_named("team", team_id)

    # ------------------------------------------------------------------
    # Scores
    # ------------------------------------------------------------------

    async def _fetch_score(self, db: aiosqlite.Connection, score_id: int) -> Optional[Dict[str, Any]]:
        cursor = await db.execute(_SCORE_SELECT + " WHERE score.id = ?", (score_id,))
        row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def list_scores(
        self,
        activity_id: Optional[int] = None,
        team_id: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        List scores joined with their team and activity names.

        @param activity_id: Only scores of this activity, best total first
        @param team_id: Only scores of this team, ordered by activity name
        """
        if activity_id is not None:
            query = _SCORE_SELECT + " WHERE score.activity_id = ? ORDER BY score.total_score DESC"
            params: tuple = (activity_id,)
        elif team_id is not None:
            query = _SCORE_SELECT + " WHERE score.team_id = ? ORDER BY activity.activity_name"
            params = (team_id,)
        else:
            query = _SCORE_SELECT + " ORDER BY activity.activity_name, score.total_score DESC"
            params = ()

        async with self.connect() as db:
            cursor = await db.execute(query, params)
            return [dict(row) for row in await cursor.fetchall()]

    async def get_score(self, score_id: int) -> Dict[str, Any]:
        async with self.connect() as db:
            score = await self._fetch_score(db, score_id)

        if score is None:
            raise NotFound("Score not found")
        return score

    async def create_score(
        self,
        activity_id: int,
        team_id: int,
        creative_score: int,
        participation_score: int,
        bribe_score: int,
    ) -> Dict[str, Any]:
        """
        Insert a score for an (activity, team) pair.

        Range checks are left to the table's CHECK constraints. A second
        score for the same pair raises AlreadyExists, including when two
        inserts race, since the UNIQUE constraint decides.

        @return: The stored score including the generated total_score
        """
        async with self.connect() as db:
            await db.execute("BEGIN IMMEDIATE")

            cursor = await db.execute("SELECT id FROM activity WHERE id = ?", (activity_id,))
            if await cursor.fetchone() is None:
                raise NotFound("Activity not found")

            cursor = await db.execute("SELECT id FROM team WHERE id = ?", (team_id,))
            if await cursor.fetchone() is None:
                raise NotFound("Team not found")

            try:
                cursor = await db.execute(
                    """
                    INSERT INTO score (activity_id, team_id, creative_score, participation_score, bribe_score)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (activity_id, team_id, creative_score, participation_score, bribe_score),
                )
                await db.commit()
            except aiosqlite.IntegrityError as e:
                raise _translate_integrity_error(e, "Score") from e

            return await self._fetch_score(db, cursor.lastrowid)

    async def update_score(
        self,
        score_id: int,
        creative_score: Optional[int] = None,
        participation_score: Optional[int] = None,
        bribe_score: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Update the components of an existing score; omitted ones are kept.

        total_score and updated_at are recomputed by the store in the same
        statement.
        """
        async with self.connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            existing = await self._fetch_score(db, score_id)
            if existing is None:
                raise NotFound("Score not found")

            values = (
                existing["creative_score"] if creative_score is None else creative_score,
                existing["participation_score"] if participation_score is None else participation_score,
                existing["bribe_score"] if bribe_score is None else bribe_score,
            )

            try:
                await db.execute(
                    """
                    UPDATE score
                    SET creative_score = ?, participation_score = ?, bribe_score = ?
                    WHERE id = ?
                    """,
                    (*values, score_id),
                )
                await db.commit()
            except aiosqlite.IntegrityError as e:
                raise _translate_integrity_error(e, "Score") from e

            return await self._fetch_score(db, score_id)

    async def delete_score(self, score_id: int) -> None:
        async with self.connect() as db:
            cursor = await db.execute("DELETE FROM score WHERE id = ?", (score_id,))
            deleted = cursor.rowcount
            await db.commit()

        if deleted == 0:
            raise NotFound("Score not found")

    async def get_standings(self) -> List[Dict[str, Any]]:
        """
        Get overall team standings across all activities.

        @return: List of dictionaries with rank, team and aggregate scores
        """
        async with self.connect() as db:
            cursor = await db.execute("""
                SELECT
                    team.id,
                    team.team_name,
                    COUNT(score.id) AS activities_participated,
                    COALESCE(SUM(score.total_score), 0) AS total_score,
                    COALESCE(ROUND(AVG(score.total_score), 2), 0) AS avg_score
                FROM team
                LEFT JOIN score ON team.id = score.team_id
                GROUP BY team.id
                ORDER BY total_score DESC, avg_score DESC, team.team_name
            """)
            rows = await cursor.fetchall()

        standings = []
        current_rank = 1
        previous = None

        for position, row in enumerate(rows, 1):
            key = (row["total_score"], row["avg_score"])
            # Teams with identical totals and averages share a rank
            if previous is not None and key != previous:
                current_rank = position

            entry = dict(row)
            entry["rank"] = current_rank
            standings.append(entry)
            previous = key

        ranks = [entry["rank"] for entry in standings]
        for entry in standings:
            entry["is_tied"] = ranks.count(entry["rank"]) > 1

        return standings

    # ------------------------------------------------------------------
    # QR tokens
    # ------------------------------------------------------------------

    async def insert_qr_token(
        self,
        token: str,
        description: str,
        created_at: int,
        expires_at: int,
    ) -> None:
        async with self.connect() as db:
            try:
                await db.execute(
                    """
                    INSERT INTO qr_tokens (token, description, created_at, expires_at, used_count)
                    VALUES (?, ?, ?, ?, 0)
                    """,
                    (token, description, created_at, expires_at),
                )
                await db.commit()
            except aiosqlite.IntegrityError as e:
                raise _translate_integrity_error(e, "QR token") from e

    async def get_qr_token(self, token: str) -> Optional[Dict[str, Any]]:
        async with self.connect() as db:
            cursor = await db.execute("SELECT * FROM qr_tokens WHERE token = ?", (token,))
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def consume_qr_token(self, token: str, now: int, max_uses: int) -> bool:
        """
        Record one use of a token if it is still presentable.

        Check and increment are a single conditional UPDATE, so concurrent
        callers can never push used_count past max_uses.

        @return: True if exactly one row was updated
        """
        async with self.connect() as db:
            cursor = await db.execute(
                """
                UPDATE qr_tokens
                SET used_count = used_count + 1, last_used_at = ?
                WHERE token = ? AND expires_at > ? AND used_count < ?
                """,
                (now, token, now, max_uses),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def delete_expired_qr_tokens(self, now: int) -> int:
        async with self.connect() as db:
            cursor = await db.execute("DELETE FROM qr_tokens WHERE expires_at < ?", (now,))
            await db.commit()
            return cursor.rowcount

    async def delete_qr_token(self, token: str) -> bool:
        async with self.connect() as db:
            cursor = await db.execute("DELETE FROM qr_tokens WHERE token = ?", (token,))
            await db.commit()
            return cursor.rowcount == 1

    async def list_active_qr_tokens(self, now: int) -> List[Dict[str, Any]]:
        async with self.connect() as db:
            cursor = await db.execute(
                """
                SELECT token, description, created_at, expires_at, last_used_at, used_count
                FROM qr_tokens
                WHERE expires_at > ?
                ORDER BY created_at DESC, id DESC
                """,
                (now,),
            )
            return [dict(row) for row in await cursor.fetchall()]
