# src/taskpulse/tasks/task_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

from ..errors import (
    ConfigurationError,
    InvalidTransitionError,
    RecurringTaskNotFoundError,
    StoreError,
    TaskNotFoundError,
)
from .task_models import (
    RecurringTaskDefinition,
    RetryPolicy,
    ScheduleKind,
    Task,
    TaskStatus,
    can_transition,
    normalize_dependencies,
    now_ms,
    validate_payload,
)

logger = logging.getLogger(__name__)

# Distinguishes "leave unchanged" from an explicit None in partial updates.
_UNSET: Any = object()


class TaskStore:
    """
    SQLite store for tasks and recurring task definitions.

    The schema is migration-safe:
    - create tables if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed
    Rows written by older versions decode with defaults (empty list/dict, 0, disabled).

    Thread-safety:
    - each method opens its own SQLite connection
    - every write is a single statement or a single transaction
    """

    def __init__(self, db_path: str | Path = "tasks.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        logger.info(
            "TaskStore ready db=%s tasks=%s recurring=%s",
            self._db_path,
            self.count_tasks(),
            len(self.list_recurring()),
        )

    @property
    def db_path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")

    @contextlib.contextmanager
    def _conn(self, op: str) -> Iterator[sqlite3.Connection]:
        conn = self._get_conn()
        try:
            yield conn
        except sqlite3.Error as e:
            with contextlib.suppress(sqlite3.Error):
                conn.rollback()
            logger.error("TaskStore %s failed: %s", op, e)
            raise StoreError(f"{op} failed: {e}", context={"op": op}) from e
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._conn("ensure_schema") as conn:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    title TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    payload TEXT NOT NULL DEFAULT '{}',
                    created_at INTEGER NOT NULL DEFAULT 0,
                    updated_at INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS recurring_tasks (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    created_at INTEGER NOT NULL DEFAULT 0,
                    updated_at INTEGER NOT NULL DEFAULT 0
                )
                """
            )

            def add_cols(table: str, columns: list[tuple[str, str]]) -> None:
                cur.execute(f"PRAGMA table_info({table})")
                existing = {row["name"] for row in cur.fetchall()}
                for name, decl in columns:
                    if name in existing:
                        continue
                    cur.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl}")
                    logger.info("TaskStore migration: added column %s.%s", table, name)

            add_cols(
                "tasks",
                [
                    ("description", "TEXT NOT NULL DEFAULT ''"),
                    ("payload", "TEXT NOT NULL DEFAULT '{}'"),
                    ("model_override", "TEXT"),
                    ("dependencies", "TEXT NOT NULL DEFAULT '[]'"),
                    ("execute_at", "INTEGER"),
                    ("attempts", "INTEGER NOT NULL DEFAULT 0"),
                    ("retry_policy", "TEXT"),
                    ("error", "TEXT"),
                    ("output", "TEXT"),
                    ("created_at", "INTEGER NOT NULL DEFAULT 0"),
                    ("updated_at", "INTEGER NOT NULL DEFAULT 0"),
                ],
            )
            add_cols(
                "recurring_tasks",
                [
                    ("description", "TEXT NOT NULL DEFAULT ''"),
                    ("model_override", "TEXT"),
                    ("schedule_kind", "TEXT NOT NULL DEFAULT 'INTERVAL'"),
                    ("interval_ms", "INTEGER NOT NULL DEFAULT 0"),
                    ("schedule_config", "TEXT NOT NULL DEFAULT '{}'"),
                    ("payload", "TEXT NOT NULL DEFAULT '{}'"),
                    ("next_run_at", "INTEGER"),
                    ("last_run_at", "INTEGER"),
                    ("enabled", "INTEGER NOT NULL DEFAULT 0"),
                    ("created_at", "INTEGER NOT NULL DEFAULT 0"),
                    ("updated_at", "INTEGER NOT NULL DEFAULT 0"),
                ],
            )

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status, execute_at)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_owner_status ON tasks(owner_id, status)")
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_recurring_due ON recurring_tasks(enabled, next_run_at)"
            )
            conn.commit()

    @staticmethod
    def _to_json(value: Any, fallback: str) -> str:
        if value is None:
            return fallback
        try:
            return json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError):
            logger.exception("Failed to JSON-encode value; storing %s.", fallback)
            return fallback

    @staticmethod
    def _from_json(s: str | None, expected: type, default: Any) -> Any:
        if not s:
            return default
        try:
            val = json.loads(s)
        except ValueError:
            return default
        return val if isinstance(val, expected) else default

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        deps_raw = self._from_json(row["dependencies"], list, [])
        try:
            dependencies = normalize_dependencies(deps_raw)
        except ConfigurationError:
            logger.warning("Task %s has unreadable dependencies; treating as none", row["id"])
            dependencies = []

        policy_raw = self._from_json(row["retry_policy"], dict, None)
        retry_policy: RetryPolicy | None = None
        if policy_raw:
            try:
                retry_policy = RetryPolicy.from_dict(policy_raw)
            except ConfigurationError:
                logger.warning("Task %s has unreadable retry policy; ignoring", row["id"])

        return Task(
            id=str(row["id"]),
            owner_id=str(row["owner_id"]),
            title=str(row["title"] or ""),
            status=TaskStatus.from_db(row["status"]),
            description=str(row["description"] or ""),
            payload=self._from_json(row["payload"], dict, {}),
            model_override=row["model_override"],
            dependencies=dependencies,
            execute_at=int(row["execute_at"]) if row["execute_at"] is not None else None,
            created_at=int(row["created_at"] or 0),
            updated_at=int(row["updated_at"] or 0),
            attempts=int(row["attempts"] or 0),
            retry_policy=retry_policy,
            error=row["error"],
            output=row["output"],
        )

    def _row_to_recurring(self, row: sqlite3.Row) -> RecurringTaskDefinition:
        try:
            kind = ScheduleKind.parse(row["schedule_kind"] or "INTERVAL")
        except ConfigurationError:
            kind = ScheduleKind.INTERVAL
        return RecurringTaskDefinition(
            id=str(row["id"]),
            owner_id=str(row["owner_id"]),
            title=str(row["title"] or ""),
            schedule_kind=kind,
            interval_ms=int(row["interval_ms"] or 0),
            next_run_at=int(row["next_run_at"] or 0),
            description=str(row["description"] or ""),
            model_override=row["model_override"],
            schedule_config=self._from_json(row["schedule_config"], dict, {}),
            payload=self._from_json(row["payload"], dict, {}),
            last_run_at=int(row["last_run_at"]) if row["last_run_at"] is not None else None,
            enabled=bool(row["enabled"]),
            created_at=int(row["created_at"] or 0),
            updated_at=int(row["updated_at"] or 0),
        )

    @staticmethod
    def _check_task(task: Task) -> None:
        if not task.id or not task.id.strip():
            raise ConfigurationError("task id is required")
        if not task.owner_id or not task.owner_id.strip():
            raise ConfigurationError("owner_id is required")
        if not task.title or not task.title.strip():
            raise ConfigurationError("title is required")
        task.payload = validate_payload(task.payload)
        task.dependencies = normalize_dependencies(task.dependencies)
        if any(d.task_id == task.id for d in task.dependencies):
            raise ConfigurationError(f"Task {task.id} cannot depend on itself")

    def _insert_task(self, cur: sqlite3.Cursor, task: Task) -> None:
        cur.execute(
            """
            INSERT INTO tasks(
                id, owner_id, status, title, description, payload, model_override,
                dependencies, execute_at, created_at, updated_at,
                attempts, retry_policy, error, output
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id,
                task.owner_id.strip(),
                task.status.value,
                task.title.strip(),
                task.description or "",
                self._to_json(task.payload, "{}"),
                task.model_override,
                self._to_json([d.to_dict() for d in task.dependencies], "[]"),
                task.execute_at,
                task.created_at,
                task.updated_at,
                int(task.attempts),
                self._to_json(task.retry_policy.to_dict(), "null") if task.retry_policy else None,
                task.error,
                task.output,
            ),
        )

    # ---- tasks: public API ----

    def count_tasks(self) -> int:
        with self._conn("count_tasks") as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM tasks").fetchone()
            return int(n)

    def create_task(self, task: Task) -> Task:
        """Persist a new task. Raises ConfigurationError for invalid input or a reused id."""
        self._check_task(task)
        now = now_ms()
        if not task.created_at:
            task.created_at = now
        task.updated_at = max(task.updated_at, task.created_at)

        conn = self._get_conn()
        try:
            self._insert_task(conn.cursor(), task)
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise ConfigurationError(
                f"Task id already exists: {task.id}", context={"task_id": task.id}
            ) from e
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("TaskStore create_task failed: %s", e)
            raise StoreError(f"create_task failed: {e}", context={"task_id": task.id}) from e
        finally:
            conn.close()

        logger.debug(
            "Task added id=%s owner=%s status=%s execute_at=%s",
            task.id,
            task.owner_id,
            task.status.value,
            task.execute_at,
        )
        return task

    def get_task(self, task_id: str) -> Task | None:
        with self._conn("get_task") as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
            return self._row_to_task(row) if row else None

    def require_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        error: str | None = None,
        *,
        now: int | None = None,
    ) -> Task:
        """
        Move a task along the state machine.

        The read of the current status and the write happen in one IMMEDIATE
        transaction, so concurrent callers cannot interleave between them.
        """
        ts = now_ms() if now is None else int(now)
        with self._conn("update_status") as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT status FROM tasks WHERE id = ?", (task_id,)).fetchone()
            if row is None:
                conn.rollback()
                raise TaskNotFoundError(task_id)
            old = TaskStatus.from_db(row["status"])
            if not can_transition(old, status):
                conn.rollback()
                raise InvalidTransitionError(task_id, old.value, status.value)

            if error is not None:
                conn.execute(
                    "UPDATE tasks SET status = ?, error = ?, updated_at = MAX(updated_at, ?) "
                    "WHERE id = ?",
                    (status.value, error, ts, task_id),
                )
            else:
                conn.execute(
                    "UPDATE tasks SET status = ?, updated_at = MAX(updated_at, ?) WHERE id = ?",
                    (status.value, ts, task_id),
                )
            conn.commit()

        logger.info("Task %s -> %s", task_id, status.value)
        return self.require_task(task_id)

    def try_transition(
        self,
        task_id: str,
        *,
        expected: Iterable[TaskStatus],
        new: TaskStatus,
        now: int | None = None,
    ) -> bool:
        """
        Claim-style conditional update:
          status IN expected -> status = new

        Returns True if this caller performed the transition.
        """
        exp = [e.value for e in expected if can_transition(e, new)]
        if not exp:
            return False

        ts = now_ms() if now is None else int(now)
        placeholders = ",".join("?" for _ in exp)
        with self._conn("try_transition") as conn:
            cur = conn.execute(
                f"""
                UPDATE tasks
                SET status = ?, updated_at = MAX(updated_at, ?)
                WHERE id = ?
                  AND status IN ({placeholders})
                """,
                (new.value, ts, task_id, *exp),
            )
            conn.commit()
            claimed = cur.rowcount == 1

        if claimed:
            logger.info("Task %s -> %s", task_id, new.value)
        return claimed

    def record_outcome(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        expected: Iterable[TaskStatus] = (TaskStatus.EXECUTING,),
        error: Any = _UNSET,
        output: Any = _UNSET,
        attempts: int | None = None,
        requeue_at: int | None = None,
        now: int | None = None,
    ) -> Task:
        """
        Write a dispatch outcome as one row update in one IMMEDIATE transaction.

        With `requeue_at`, a FAILED outcome continues FAILED -> WAITING and
        `execute_at = requeue_at` in the same write, so no reader ever sees the
        intermediate FAILED row. Raises InvalidTransitionError when the current
        status is not in `expected` (an operator moved the task meanwhile).
        """
        final = status
        if requeue_at is not None:
            if not can_transition(status, TaskStatus.WAITING):
                raise InvalidTransitionError(task_id, status.value, TaskStatus.WAITING.value)
            final = TaskStatus.WAITING

        fields = ["status = ?"]
        params: list[Any] = [final.value]
        if error is not _UNSET:
            fields.append("error = ?")
            params.append(error)
        if output is not _UNSET:
            fields.append("output = ?")
            params.append(output)
        if attempts is not None:
            fields.append("attempts = ?")
            params.append(max(0, int(attempts)))
        if requeue_at is not None:
            fields.append("execute_at = ?")
            params.append(int(requeue_at))
        fields.append("updated_at = MAX(updated_at, ?)")
        params.append(now_ms() if now is None else int(now))
        params.append(task_id)

        allowed = set(expected)
        with self._conn("record_outcome") as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT status FROM tasks WHERE id = ?", (task_id,)).fetchone()
            if row is None:
                conn.rollback()
                raise TaskNotFoundError(task_id)
            old = TaskStatus.from_db(row["status"])
            if old not in allowed or not can_transition(old, status):
                conn.rollback()
                raise InvalidTransitionError(task_id, old.value, status.value)

            conn.execute(f"UPDATE tasks SET {', '.join(fields)} WHERE id = ?", params)
            conn.commit()

        logger.info("Task %s -> %s (outcome %s)", task_id, final.value, status.value)
        return self.require_task(task_id)

    def update_task_fields(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        title: str | None = None,
        description: str | None = None,
        payload: dict[str, Any] | None = None,
        model_override: Any = _UNSET,
        dependencies: list[Any] | None = None,
        execute_at: Any = _UNSET,
        attempts: int | None = None,
        retry_policy: Any = _UNSET,
        error: Any = _UNSET,
        output: Any = _UNSET,
        now: int | None = None,
    ) -> Task:
        """
        Partial update of a single row. Does NOT consult the state machine:
        callers are the retry bookkeeping and operator overrides.
        """
        fields: list[str] = []
        params: list[Any] = []

        if status is not None:
            fields.append("status = ?")
            params.append(TaskStatus(status).value)
        if title is not None:
            if not title.strip():
                raise ConfigurationError("title is required")
            fields.append("title = ?")
            params.append(title.strip())
        if description is not None:
            fields.append("description = ?")
            params.append(description)
        if payload is not None:
            fields.append("payload = ?")
            params.append(self._to_json(validate_payload(payload), "{}"))
        if model_override is not _UNSET:
            fields.append("model_override = ?")
            params.append(model_override)
        if dependencies is not None:
            deps = normalize_dependencies(dependencies)
            if any(d.task_id == task_id for d in deps):
                raise ConfigurationError(f"Task {task_id} cannot depend on itself")
            fields.append("dependencies = ?")
            params.append(self._to_json([d.to_dict() for d in deps], "[]"))
        if execute_at is not _UNSET:
            fields.append("execute_at = ?")
            params.append(None if execute_at is None else int(execute_at))
        if attempts is not None:
            fields.append("attempts = ?")
            params.append(max(0, int(attempts)))
        if retry_policy is not _UNSET:
            fields.append("retry_policy = ?")
            params.append(self._to_json(retry_policy.to_dict(), "null") if retry_policy else None)
        if error is not _UNSET:
            fields.append("error = ?")
            params.append(error)
        if output is not _UNSET:
            fields.append("output = ?")
            params.append(output)

        if not fields:
            return self.require_task(task_id)

        fields.append("updated_at = MAX(updated_at, ?)")
        params.append(now_ms() if now is None else int(now))
        params.append(task_id)

        with self._conn("update_task_fields") as conn:
            cur = conn.execute(f"UPDATE tasks SET {', '.join(fields)} WHERE id = ?", params)
            conn.commit()
            if cur.rowcount == 0:
                raise TaskNotFoundError(task_id)

        if status is not None:
            logger.info("Task %s -> %s (field update)", task_id, TaskStatus(status).value)
        return self.require_task(task_id)

    def list_by_owner_and_status(self, owner_id: str, status: TaskStatus) -> list[Task]:
        with self._conn("list_by_owner_and_status") as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM tasks
                WHERE owner_id = ? AND status = ?
                ORDER BY COALESCE(execute_at, created_at) ASC, created_at ASC, id ASC
                """,
                (owner_id, status.value),
            ).fetchall()
            return [self._row_to_task(r) for r in rows]

    def list_by_status(self, status: TaskStatus) -> list[Task]:
        with self._conn("list_by_status") as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM tasks
                WHERE status = ?
                ORDER BY COALESCE(execute_at, created_at) ASC, created_at ASC, id ASC
                """,
                (status.value,),
            ).fetchall()
            return [self._row_to_task(r) for r in rows]

    def list_waiting(self) -> list[Task]:
        return self.list_by_status(TaskStatus.WAITING)

    def list_all(self, limit: int = 100, owner_id: str | None = None) -> list[Task]:
        """Most recent first, optionally for one owner."""
        with self._conn("list_all") as conn:
            if owner_id is None:
                rows = conn.execute(
                    "SELECT * FROM tasks ORDER BY created_at DESC, id DESC LIMIT ?",
                    (max(0, int(limit)),),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM tasks WHERE owner_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                    (owner_id, max(0, int(limit))),
                ).fetchall()
            return [self._row_to_task(r) for r in rows]

    def get_statuses(self, task_ids: Iterable[str]) -> dict[str, TaskStatus]:
        """Status by id. Unknown ids are simply absent from the result."""
        ids = list(dict.fromkeys(task_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._conn("get_statuses") as conn:
            rows = conn.execute(
                f"SELECT id, status FROM tasks WHERE id IN ({placeholders})", ids
            ).fetchall()
            return {str(r["id"]): TaskStatus.from_db(r["status"]) for r in rows}

    def count_by_status(self, owner_id: str | None = None) -> dict[TaskStatus, int]:
        query = "SELECT status, COUNT(*) AS n FROM tasks"
        params: list[Any] = []
        if owner_id is not None:
            query += " WHERE owner_id = ?"
            params.append(owner_id)
        query += " GROUP BY status"
        with self._conn("count_by_status") as conn:
            rows = conn.execute(query, params).fetchall()
            out: dict[TaskStatus, int] = {}
            for r in rows:
                st = TaskStatus.from_db(r["status"])
                out[st] = out.get(st, 0) + int(r["n"])
            return out

    def delete_task(self, task_id: str) -> bool:
        with self._conn("delete_task") as conn:
            cur = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            conn.commit()
            deleted = cur.rowcount == 1
        if deleted:
            logger.info("Task %s deleted", task_id)
        return deleted

    # ---- recurring definitions ----

    @staticmethod
    def _check_recurring(defn: RecurringTaskDefinition) -> None:
        if not defn.id or not defn.id.strip():
            raise ConfigurationError("recurring task id is required")
        if not defn.owner_id or not defn.owner_id.strip():
            raise ConfigurationError("owner_id is required")
        if not defn.title or not defn.title.strip():
            raise ConfigurationError("title is required")
        if defn.interval_ms <= 0:
            raise ConfigurationError(
                f"{defn.schedule_kind.value} schedule requires a positive interval_ms"
            )
        if not isinstance(defn.schedule_config, dict) or not isinstance(defn.payload, dict):
            raise ConfigurationError("schedule_config and payload must be JSON objects")

    def create_recurring(self, defn: RecurringTaskDefinition) -> RecurringTaskDefinition:
        self._check_recurring(defn)
        now = now_ms()
        if not defn.created_at:
            defn.created_at = now
        defn.updated_at = max(defn.updated_at, defn.created_at)

        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO recurring_tasks(
                    id, owner_id, title, description, model_override,
                    schedule_kind, interval_ms, schedule_config, payload,
                    next_run_at, last_run_at, enabled, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    defn.id,
                    defn.owner_id.strip(),
                    defn.title.strip(),
                    defn.description or "",
                    defn.model_override,
                    defn.schedule_kind.value,
                    int(defn.interval_ms),
                    self._to_json(defn.schedule_config, "{}"),
                    self._to_json(defn.payload, "{}"),
                    int(defn.next_run_at),
                    defn.last_run_at,
                    1 if defn.enabled else 0,
                    defn.created_at,
                    defn.updated_at,
                ),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise ConfigurationError(
                f"Recurring task id already exists: {defn.id}",
                context={"recurring_task_id": defn.id},
            ) from e
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("TaskStore create_recurring failed: %s", e)
            raise StoreError(f"create_recurring failed: {e}") from e
        finally:
            conn.close()

        logger.info(
            "Recurring task created id=%s owner=%s kind=%s next_run_at=%s",
            defn.id,
            defn.owner_id,
            defn.schedule_kind.value,
            defn.next_run_at,
        )
        return defn

    def get_recurring(self, definition_id: str) -> RecurringTaskDefinition | None:
        with self._conn("get_recurring") as conn:
            row = conn.execute(
                "SELECT * FROM recurring_tasks WHERE id = ?", (definition_id,)
            ).fetchone()
            return self._row_to_recurring(row) if row else None

    def require_recurring(self, definition_id: str) -> RecurringTaskDefinition:
        defn = self.get_recurring(definition_id)
        if defn is None:
            raise RecurringTaskNotFoundError(definition_id)
        return defn

    def list_recurring(self, owner_id: str | None = None) -> list[RecurringTaskDefinition]:
        query = "SELECT * FROM recurring_tasks"
        params: list[Any] = []
        if owner_id is not None:
            query += " WHERE owner_id = ?"
            params.append(owner_id)
        query += " ORDER BY created_at DESC, id ASC"
        with self._conn("list_recurring") as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_recurring(r) for r in rows]

    def list_due_recurring(self, now: int) -> list[RecurringTaskDefinition]:
        with self._conn("list_due_recurring") as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM recurring_tasks
                WHERE enabled = 1
                  AND next_run_at IS NOT NULL
                  AND next_run_at <= ?
                ORDER BY next_run_at ASC, id ASC
                """,
                (int(now),),
            ).fetchall()
            return [self._row_to_recurring(r) for r in rows]

    def update_recurring_fields(
        self,
        definition_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        model_override: Any = _UNSET,
        schedule_kind: ScheduleKind | None = None,
        interval_ms: int | None = None,
        schedule_config: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
        next_run_at: int | None = None,
        last_run_at: Any = _UNSET,
        enabled: bool | None = None,
        now: int | None = None,
    ) -> RecurringTaskDefinition:
        fields: list[str] = []
        params: list[Any] = []

        if title is not None:
            if not title.strip():
                raise ConfigurationError("title is required")
            fields.append("title = ?")
            params.append(title.strip())
        if description is not None:
            fields.append("description = ?")
            params.append(description)
        if model_override is not _UNSET:
            fields.append("model_override = ?")
            params.append(model_override)
        if schedule_kind is not None:
            fields.append("schedule_kind = ?")
            params.append(ScheduleKind.parse(schedule_kind).value)
        if interval_ms is not None:
            if int(interval_ms) <= 0:
                raise ConfigurationError("interval_ms must be positive")
            fields.append("interval_ms = ?")
            params.append(int(interval_ms))
        if schedule_config is not None:
            fields.append("schedule_config = ?")
            params.append(self._to_json(schedule_config, "{}"))
        if payload is not None:
            fields.append("payload = ?")
            params.append(self._to_json(payload, "{}"))
        if next_run_at is not None:
            fields.append("next_run_at = ?")
            params.append(int(next_run_at))
        if last_run_at is not _UNSET:
            fields.append("last_run_at = ?")
            params.append(None if last_run_at is None else int(last_run_at))
        if enabled is not None:
            fields.append("enabled = ?")
            params.append(1 if enabled else 0)

        if not fields:
            return self.require_recurring(definition_id)

        fields.append("updated_at = MAX(updated_at, ?)")
        params.append(now_ms() if now is None else int(now))
        params.append(definition_id)

        with self._conn("update_recurring_fields") as conn:
            cur = conn.execute(
                f"UPDATE recurring_tasks SET {', '.join(fields)} WHERE id = ?", params
            )
            conn.commit()
            if cur.rowcount == 0:
                raise RecurringTaskNotFoundError(definition_id)
        return self.require_recurring(definition_id)

    def set_recurring_enabled(self, definition_id: str, enabled: bool) -> RecurringTaskDefinition:
        defn = self.update_recurring_fields(definition_id, enabled=enabled)
        logger.info("Recurring task %s enabled=%s", definition_id, enabled)
        return defn

    def delete_recurring(self, definition_id: str) -> bool:
        with self._conn("delete_recurring") as conn:
            cur = conn.execute("DELETE FROM recurring_tasks WHERE id = ?", (definition_id,))
            conn.commit()
            return cur.rowcount == 1

    def record_recurring_fire(
        self,
        task: Task,
        definition_id: str,
        *,
        next_run_at: int,
        fired_at: int,
    ) -> Task:
        """
        Insert the spawned task and advance the definition in one transaction.

        If either write fails nothing is committed, so the definition keeps its
        old next_run_at and fires again on the next tick.
        """
        self._check_task(task)
        if not task.created_at:
            task.created_at = fired_at
        task.updated_at = max(task.updated_at, task.created_at)

        with self._conn("record_recurring_fire") as conn:
            cur = conn.cursor()
            self._insert_task(cur, task)
            cur.execute(
                """
                UPDATE recurring_tasks
                SET next_run_at = ?, last_run_at = ?, updated_at = MAX(updated_at, ?)
                WHERE id = ?
                """,
                (int(next_run_at), int(fired_at), int(fired_at), definition_id),
            )
            if cur.rowcount != 1:
                conn.rollback()
                raise RecurringTaskNotFoundError(definition_id)
            conn.commit()
        return task


