from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path
from types import TracebackType

from .. import db
from ..config import MemtrailConfig, load_config
from ..observation_types import (
    assign_importance,
    validate_importance,
    validate_observation_type,
    validate_session_status,
)
from ..sanitize import sanitize_field, strip_ansi
from ..visibility import classify_visibility
from . import search as store_search
from .types import AddResult, NoActiveSessionError, Observation, Session, Timeline, UserPrompt
from .utils import (
    incident_key,
    now_utc,
    row_to_observation,
    row_to_session,
    task_id_from_plan,
    title_key,
)

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 200
SUMMARY_ITEM_LIMIT = 5

# Types whose repeats are merged regardless of which session saw them.
CROSS_SESSION_TYPES = frozenset({"failed_attempt", "incident_near_miss"})


class MemoryStore:
    """Observation store on a local SQLite file.

    Open one per logical operation and close it when done, either with
    ``close()`` in a ``finally`` block or as a context manager.
    """

    def __init__(
        self,
        db_path: Path | str | None = None,
        *,
        config: MemtrailConfig | None = None,
    ):
        self.config = config or load_config()
        self.db_path = Path(db_path or self.config.db_path).expanduser()
        self.conn = db.connect(self.db_path)
        try:
            self.fts_enabled = db.initialize_schema(self.conn, self.db_path)
        except Exception:
            self.conn.close()
            raise

    def __enter__(self) -> MemoryStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        self.conn.close()

    @staticmethod
    def _now() -> tuple[str, int]:
        now = now_utc()
        return now.isoformat(), int(now.timestamp())

    # Sessions

    def start_session(
        self,
        session_id: str,
        *,
        project: str | None = None,
        git_branch: str | None = None,
        plan_file: str | None = None,
    ) -> Session:
        """Create the session if it does not exist yet and return it."""
        session_id = (session_id or "").strip()
        if not session_id:
            raise ValueError("session_id must not be empty")
        started_at, started_epoch = self._now()
        cur = self.conn.execute(
            """
            INSERT OR IGNORE INTO sessions(
                session_id, status, project, git_branch, plan_file, task_id,
                started_at, started_at_epoch
            )
            VALUES (?, 'active', ?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                project,
                git_branch,
                plan_file,
                task_id_from_plan(plan_file),
                started_at,
                started_epoch,
            ),
        )
        self.conn.commit()
        if cur.rowcount:
            logger.info("started session %s", session_id)
        session = self.get_session(session_id)
        if session is None:
            raise RuntimeError(f"Failed to start session {session_id}")
        return session

    def get_session(self, session_id: str) -> Session | None:
        row = self.conn.execute(
            "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
        ).fetchone()
        return row_to_session(row) if row else None

    def active_session(self) -> Session | None:
        row = self.conn.execute(
            """
            SELECT * FROM sessions
            WHERE status = 'active'
            ORDER BY started_at_epoch DESC, id DESC
            LIMIT 1
            """
        ).fetchone()
        return row_to_session(row) if row else None

    def require_active_session(self) -> Session:
        session = self.active_session()
        if session is None:
            raise NoActiveSessionError(
                "No active session. Start a session before recording observations."
            )
        return session

    def link_plan_file(self, session_id: str, plan_file: str) -> Session | None:
        """Attach a plan file to the session and derive its task id."""
        task_id = task_id_from_plan(plan_file)
        if task_id is None:
            return self.get_session(session_id)
        self.conn.execute(
            "UPDATE sessions SET plan_file = ?, task_id = ? WHERE session_id = ?",
            (plan_file.strip(), task_id, session_id),
        )
        self.conn.commit()
        return self.get_session(session_id)

    def end_session(
        self,
        session_id: str,
        *,
        status: str = "completed",
        summary: str | None = None,
    ) -> Session | None:
        status = validate_session_status(status, terminal=True)
        if self.get_session(session_id) is None:
            return None
        if summary is None:
            prompts = self.user_prompts(session_id)
            request = prompts[0].text if prompts else None
            summary = self.build_session_summary(session_id, request=request)
        ended_at, ended_epoch = self._now()
        self.conn.execute(
            """
            UPDATE sessions
            SET status = ?, ended_at = ?, ended_at_epoch = ?, summary = ?
            WHERE session_id = ?
            """,
            (status, ended_at, ended_epoch, summary, session_id),
        )
        self.conn.commit()
        logger.info("ended session %s (%s)", session_id, status)
        return self.get_session(session_id)

    def build_session_summary(self, session_id: str, request: str | None = None) -> str | None:
        rows = self.conn.execute(
            """
            SELECT type, title FROM observations
            WHERE session_id = ?
            ORDER BY created_at_epoch ASC, id ASC
            """,
            (session_id,),
        ).fetchall()
        grouped: dict[str, list[str]] = {}
        for row in rows:
            grouped.setdefault(row["type"], []).append(row["title"])

        def _line(label: str, titles: list[str]) -> str | None:
            if not titles:
                return None
            shown = "; ".join(titles[:SUMMARY_ITEM_LIMIT])
            extra = len(titles) - SUMMARY_ITEM_LIMIT
            return f"{label}: {shown}" + (f" (+{extra} more)" if extra > 0 else "")

        completed = (
            grouped.get("feature", []) + grouped.get("bugfix", []) + grouped.get("refactor", [])
        )
        lines = [
            f"Request: {request.strip()[:200]}" if request and request.strip() else None,
            _line("Investigated", grouped.get("discovery", [])),
            _line("Decisions", grouped.get("decision", [])),
            _line("Completed", completed),
            _line("Failed attempts", grouped.get("failed_attempt", [])),
        ]
        text = "\n".join(line for line in lines if line)
        return text or None

    def record_plan_progress(
        self, session_id: str, items: Iterable[str], status: str = "complete"
    ) -> dict[str, str]:
        session = self.get_session(session_id)
        if session is None:
            raise ValueError(f"Unknown session '{session_id}'")
        progress = dict(session.plan_progress)
        for item in items:
            progress[item.strip().upper()] = status
        self.conn.execute(
            "UPDATE sessions SET plan_progress = ? WHERE session_id = ?",
            (db.to_json(progress), session_id),
        )
        self.conn.commit()
        return progress

    def list_sessions(
        self, limit: int = store_search.DEFAULT_SESSION_LIMIT, status: str | None = None
    ) -> list[Session]:
        return store_search.list_sessions(self, limit=limit, status=status)

    def sessions_for_task(self, task_id: str) -> list[Session]:
        return store_search.sessions_for_task(self, task_id)

    def task_progress(self, task_id: str) -> dict[str, str]:
        return store_search.task_progress(self, task_id)

    # User prompts

    def add_user_prompt(self, session_id: str, text: str) -> int | None:
        """Store a prompt under the next number for the session.

        Returns None for blank prompts and for text the session already holds,
        so replaying a transcript does not duplicate prompts.
        """
        prompt = sanitize_field(text, self.config.detail_max_chars)
        if prompt is None:
            return None
        if self.get_session(session_id) is None:
            raise ValueError(f"Unknown session '{session_id}'")
        row = self.conn.execute(
            """
            SELECT
                SUM(prompt_text = ?) AS seen,
                COALESCE(MAX(prompt_number), 0) AS last_number
            FROM user_prompts
            WHERE session_id = ?
            """,
            (prompt, session_id),
        ).fetchone()
        if row["seen"]:
            return None
        number = int(row["last_number"]) + 1
        created_at, created_epoch = self._now()
        self.conn.execute(
            """
            INSERT INTO user_prompts(
                session_id, prompt_number, prompt_text, created_at, created_at_epoch
            )
            VALUES (?, ?, ?, ?, ?)
            """,
            (session_id, number, prompt, created_at, created_epoch),
        )
        self.conn.commit()
        return number

    def user_prompts(self, session_id: str) -> list[UserPrompt]:
        return store_search.user_prompts(self, session_id)

    # Incremental transcript ingest

    @staticmethod
    def _cursor_key(session_id: str) -> str:
        return f"last_processed_line:{session_id}"

    def get_last_processed_line(self, session_id: str) -> int:
        row = self.conn.execute(
            "SELECT value FROM memtrail_meta WHERE key = ?", (self._cursor_key(session_id),)
        ).fetchone()
        if row is None:
            return 0
        try:
            return max(int(row["value"]), 0)
        except ValueError:
            logger.warning("ignoring corrupt transcript cursor for %s", session_id)
            return 0

    def set_last_processed_line(self, session_id: str, line: int) -> None:
        if line < 0:
            raise ValueError(f"line must not be negative, got {line}")
        self.conn.execute(
            "INSERT OR REPLACE INTO memtrail_meta(key, value) VALUES (?, ?)",
            (self._cursor_key(session_id), str(line)),
        )
        self.conn.commit()

    # Observations

    def _find_recurrence(
        self, session_id: str, obs_type: str, title: str
    ) -> tuple[int, int] | None:
        """Find the row a new observation repeats.

        Failed attempts and incidents are matched across all sessions. Every
        other type only repeats within its own session.
        """
        key = incident_key(title) if obs_type == "incident_near_miss" else None
        if key is not None:
            rows = self.conn.execute(
                """
                SELECT id, title, recurrence_count FROM observations
                WHERE type = ? AND title LIKE ?
                ORDER BY id ASC
                """,
                (obs_type, f"%{key.split('#')[1]}%"),
            ).fetchall()
            for row in rows:
                if incident_key(row["title"]) == key:
                    return int(row["id"]), int(row["recurrence_count"])
        clauses = ["type = ?", "title_key = ?"]
        params = [obs_type, title_key(title)]
        if obs_type not in CROSS_SESSION_TYPES:
            clauses.append("session_id = ?")
            params.append(session_id)
        row = self.conn.execute(
            f"""
            SELECT id, recurrence_count FROM observations
            WHERE {" AND ".join(clauses)}
            ORDER BY id ASC
            LIMIT 1
            """,
            params,
        ).fetchone()
        if row is None:
            return None
        return int(row["id"]), int(row["recurrence_count"])

    def add_observation(
        self,
        session_id: str,
        obs_type: str,
        title: str,
        detail: str | None = None,
        *,
        importance: int | None = None,
        outcome: str | None = None,
        rule_id: str | None = None,
        verification_type: str | None = None,
        plan_item: str | None = None,
        files_involved: Sequence[str] | str | None = None,
        evidence: str | None = None,
        original_tokens: int = 0,
    ) -> AddResult:
        """Record an observation, or bump the recurrence count of its twin.

        Visibility is always derived from the stored title and detail.
        """

        obs_type = validate_observation_type(obs_type)
        title = " ".join(strip_ansi(title or "").split())[:TITLE_MAX_CHARS]
        if not title:
            raise ValueError("Observation title must not be empty")
        if importance is None:
            importance = assign_importance(obs_type, outcome)
        else:
            importance = validate_importance(importance)
        files = _files_list(files_involved)
        if self.get_session(session_id) is None:
            raise ValueError(f"Unknown session '{session_id}'")

        existing = self._find_recurrence(session_id, obs_type, title)
        if existing is not None:
            existing_id, count = existing
            self.conn.execute(
                "UPDATE observations SET recurrence_count = recurrence_count + 1 WHERE id = ?",
                (existing_id,),
            )
            self.conn.commit()
            return AddResult(id=existing_id, created=False, recurrence_count=count + 1)

        detail = sanitize_field(detail, self.config.detail_max_chars)
        evidence = sanitize_field(evidence, self.config.evidence_max_chars)
        created_at, created_epoch = self._now()
        cur = self.conn.execute(
            """
            INSERT INTO observations(
                session_id, type, title, title_key, detail, files_involved,
                plan_item, rule_id, verification_type, evidence, importance,
                visibility, recurrence_count, original_tokens, created_at, created_at_epoch
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
            """,
            (
                session_id,
                obs_type,
                title,
                title_key(title),
                detail,
                db.to_json(files),
                _reference(plan_item),
                _reference(rule_id),
                _reference(verification_type),
                evidence,
                importance,
                classify_visibility(title, detail),
                max(int(original_tokens or 0), 0),
                created_at,
                created_epoch,
            ),
        )
        self.conn.commit()
        if cur.lastrowid is None:
            raise RuntimeError("Failed to insert observation")
        return AddResult(id=int(cur.lastrowid), created=True, recurrence_count=1)

    def get(self, observation_id: int) -> Observation | None:
        row = self.conn.execute(
            "SELECT * FROM observations WHERE id = ?", (observation_id,)
        ).fetchone()
        return row_to_observation(row) if row else None

    def get_many(self, ids: Sequence[int]) -> list[Observation]:
        return store_search.get_many(self, ids)

    def search(
        self,
        query: str,
        *,
        obs_type: str | None = None,
        rule_id: str | None = None,
        since: str | None = None,
        limit: int = store_search.DEFAULT_SEARCH_LIMIT,
    ) -> list[Observation]:
        return store_search.search(
            self, query, obs_type=obs_type, rule_id=rule_id, since=since, limit=limit
        )

    def timeline(
        self, anchor_id: int, depth_before: int = 5, depth_after: int = 5
    ) -> Timeline | None:
        return store_search.timeline(
            self, anchor_id, depth_before=depth_before, depth_after=depth_after
        )

    def failures(
        self, query: str | None = None, limit: int = store_search.DEFAULT_SEARCH_LIMIT
    ) -> list[Observation]:
        return store_search.failures(self, query=query, limit=limit)

    def decisions(
        self, query: str | None = None, limit: int = store_search.DEFAULT_SEARCH_LIMIT
    ) -> list[Observation]:
        return store_search.decisions(self, query=query, limit=limit)

    def count_observations(self, session_id: str | None = None) -> int:
        if session_id is None:
            row = self.conn.execute("SELECT COUNT(*) FROM observations").fetchone()
        else:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM observations WHERE session_id = ?", (session_id,)
            ).fetchone()
        return int(row[0]) if row else 0


def _reference(value: str | None) -> str | None:
    """Normalize a rule, plan-item, or verification reference."""
    if value is None:
        return None
    cleaned = value.strip().upper()
    return cleaned or None


def _files_list(files: Sequence[str] | str | None) -> list[str]:
    if files is None:
        return []
    if isinstance(files, str):
        files = [files]
    if not isinstance(files, (list, tuple)):
        raise ValueError(f"files must be a list of paths, got {type(files).__name__}")
    paths: list[str] = []
    for path in files:
        if not isinstance(path, str):
            raise ValueError(f"Invalid file path {path!r}")
        if path.strip():
            paths.append(path.strip())
    return paths
