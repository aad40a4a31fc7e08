"""
storage/db.py

SQLite document store for ADR reports.

Schema
------
reports    — one row per report: a handful of indexed columns in the clear
             plus the full ``Report`` document, Fernet-encrypted
audit_log  — append-only action log

Every write is a compare-and-swap on the ``version`` column: the UPDATE only
matches the row the caller read, so two concurrent writers starting from the
same version cannot both apply.  The loser gets ``ConflictError`` and is
expected to re-read and retry.

Usage
-----
    from storage.db import ReportStore
    store = ReportStore()            # creates tables on first use
    report = store.create(report)
    report = store.put(report)       # CAS against report.version
"""

import logging
import sqlite3
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from storage.config import get_settings
from storage.crypto import decrypt_json, encrypt_json
from storage.errors import ConflictError, NotFoundError, ValidationError
from storage.models import AuditEntry, Report

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_DDL = """
CREATE TABLE IF NOT EXISTS reports (
    id              TEXT    PRIMARY KEY,
    reporter_id     TEXT    NOT NULL,
    status          TEXT    NOT NULL,
    priority        TEXT    NOT NULL,
    review_state    TEXT    NOT NULL DEFAULT 'none',
    requested_at    TEXT,                      -- ISO-8601 UTC, NULL until requested
    version         INTEGER NOT NULL DEFAULT 1,
    created_at      TEXT    NOT NULL,          -- ISO-8601 UTC
    updated_at      TEXT    NOT NULL,
    encrypted_blob  TEXT    NOT NULL           -- Fernet token from crypto.py
);

CREATE INDEX IF NOT EXISTS idx_reports_status ON reports(status);
CREATE INDEX IF NOT EXISTS idx_reports_reporter ON reports(reporter_id);
CREATE INDEX IF NOT EXISTS idx_reports_review_state ON reports(review_state);

CREATE TABLE IF NOT EXISTS audit_log (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    actor_id  TEXT    NOT NULL,
    action    TEXT    NOT NULL,
    report_id TEXT    REFERENCES reports(id),
    detail    TEXT,
    timestamp TEXT    NOT NULL                -- ISO-8601 UTC
);
"""

# Columns that may appear in a query filter or sort; everything else lives
# inside the encrypted document and is not queryable.
_FILTER_COLUMNS = frozenset({"status", "priority", "reporter_id", "review_state"})
_SORT_COLUMNS = frozenset({"created_at", "updated_at", "requested_at", "status", "priority"})


def _now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return _iso(datetime.now(tz=timezone.utc))


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _param(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _iso(value)
    return value


class ReportStore:
    """
    Report store adapter: ``create`` / ``get`` / ``put`` / ``query`` plus the
    audit log.

    Each call opens its own short-lived connection, so one store instance may
    be shared between request handlers.
    """

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = Path(db_path) if db_path is not None else get_settings().db_path
        self.init_db()

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist yet (idempotent)."""
        with self._connect() as conn:
            conn.executescript(_DDL)
        logger.info("Report store initialised at %s", self.db_path)

    # -----------------------------------------------------------------------
    # Row <-> document
    # -----------------------------------------------------------------------

    @staticmethod
    def _columns(report: Report) -> dict[str, Any]:
        return {
            "reporter_id": report.reporter_id,
            "status": report.status.value,
            "priority": report.priority.value,
            "review_state": report.doctor_review.state.value,
            "requested_at": _iso(report.doctor_review.requested_at),
            "version": report.version,
            "created_at": _iso(report.created_at),
            "updated_at": _iso(report.updated_at),
            "encrypted_blob": encrypt_json(report.model_dump(mode="json")),
        }

    @staticmethod
    def _row_to_report(row: sqlite3.Row) -> Report:
        report = Report.model_validate(decrypt_json(row["encrypted_blob"]))
        if report.version != row["version"]:
            report = report.model_copy(update={"version": row["version"]})
        return report

    # -----------------------------------------------------------------------
    # Adapter contract
    # -----------------------------------------------------------------------

    def create(self, report: Report, actor_id: str | None = None) -> Report:
        """
        Insert a new report document.

        Raises:
            ValidationError: duplicate id or missing reporter id.
        """
        cols = self._columns(report)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO reports
                        (id, reporter_id, status, priority, review_state, requested_at,
                         version, created_at, updated_at, encrypted_blob)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        report.id, cols["reporter_id"], cols["status"], cols["priority"],
                        cols["review_state"], cols["requested_at"], cols["version"],
                        cols["created_at"], cols["updated_at"], cols["encrypted_blob"],
                    ),
                )
                self.append_audit(actor_id or report.reporter_id or "system", "report_created",
                                  report_id=report.id, _conn=conn)
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"Report '{report.id}' could not be created: {exc}", field="id") from exc

        logger.info("Created report id=%s reporter=%s", report.id, report.reporter_id)
        return report

    def get(self, report_id: str) -> Report:
        """
        Return the current document for *report_id*.

        Raises:
            NotFoundError: if no such report exists.
        """
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM reports WHERE id = ?", (report_id,)).fetchone()
        if row is None:
            raise NotFoundError(report_id)
        return self._row_to_report(row)

    def put(
        self,
        report: Report,
        expected_version: int | None = None,
        *,
        actor_id: str | None = None,
        action: str | None = None,
        detail: str | None = None,
    ) -> Report:
        """
        Write *report* back if nobody else has written since it was read.

        Args:
            report:           The modified document.
            expected_version: Version the caller read; defaults to
                              ``report.version``.
            actor_id, action, detail:
                              When *action* is given, an audit row is written
                              in the same transaction as the update.

        Returns:
            The stored report with its version incremented.

        Raises:
            ConflictError: the stored version no longer matches.
            NotFoundError: the report does not exist.
        """
        expected = report.version if expected_version is None else expected_version
        stored = report.model_copy(update={"version": expected + 1})
        cols = self._columns(stored)

        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE reports
                SET status = ?, priority = ?, review_state = ?, requested_at = ?,
                    version = ?, updated_at = ?, encrypted_blob = ?
                WHERE id = ? AND version = ?
                """,
                (
                    cols["status"], cols["priority"], cols["review_state"], cols["requested_at"],
                    cols["version"], cols["updated_at"], cols["encrypted_blob"],
                    report.id, expected,
                ),
            )
            if cur.rowcount == 0:
                exists = conn.execute(
                    "SELECT 1 FROM reports WHERE id = ?", (report.id,)
                ).fetchone()
                if exists is None:
                    raise NotFoundError(report.id)
                logger.warning(
                    "Write conflict on report %s (expected version %d)", report.id, expected
                )
                raise ConflictError(report.id, expected)

            if action:
                self.append_audit(actor_id or "system", action, report_id=report.id,
                                  detail=detail, _conn=conn)

        return stored

    def query(
        self,
        filter: dict[str, Any] | None = None,
        sort: tuple[str, str] | None = None,
        page: tuple[int, int] | None = None,
    ) -> list[Report]:
        """
        Return reports matching *filter*, ordered by *sort*, optionally paged.

        Args:
            filter: Column -> value (or iterable of values for ``IN``).
                    Only ``status``, ``priority``, ``reporter_id`` and
                    ``review_state`` are queryable.
            sort:   ``(column, "asc" | "desc")``; defaults to newest first.
                    Ties keep insertion order.
            page:   ``(page, page_size)``, 1-indexed.
        """
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (filter or {}).items():
            if column not in _FILTER_COLUMNS:
                raise ValidationError(f"Cannot filter on '{column}'.", field=column)
            if isinstance(value, (list, tuple, set, frozenset)):
                values = [_param(v) for v in value]
                if not values:
                    return []
                clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
            else:
                clauses.append(f"{column} = ?")
                params.append(_param(value))

        column, order = sort or ("created_at", "desc")
        if column not in _SORT_COLUMNS:
            raise ValidationError(f"Cannot sort on '{column}'.", field=column)
        direction = "DESC" if str(order).lower() == "desc" else "ASC"

        sql = "SELECT * FROM reports"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY {column} {direction}, rowid ASC"

        if page is not None:
            page_no, page_size = page
            if page_no < 1 or page_size < 1:
                raise ValidationError("page and page_size must be >= 1", field="page")
            sql += " LIMIT ? OFFSET ?"
            params.extend([page_size, (page_no - 1) * page_size])

        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_report(r) for r in rows]

    def all(self) -> list[Report]:
        """Every stored report, oldest first."""
        return self.query(sort=("created_at", "asc"))

    # -----------------------------------------------------------------------
    # Audit log
    # -----------------------------------------------------------------------

    def append_audit(
        self,
        actor_id: str,
        action: str,
        report_id: str | None = None,
        detail: str | None = None,
        *,
        _conn: sqlite3.Connection | None = None,
    ) -> None:
        """
        Append an entry to the audit log.

        Pass *_conn* to take part in the caller's transaction.
        """
        sql = """
            INSERT INTO audit_log (actor_id, action, report_id, detail, timestamp)
            VALUES (?, ?, ?, ?, ?)
        """
        params = (actor_id, action, report_id, detail, _now())

        if _conn is not None:
            _conn.execute(sql, params)
        else:
            with self._connect() as conn:
                conn.execute(sql, params)

        logger.debug("Audit: actor=%s action=%s report=%s", actor_id, action, report_id)

    def list_audit(self, report_id: str | None = None) -> list[AuditEntry]:
        """Audit rows, oldest first; restricted to *report_id* when given."""
        with self._connect() as conn:
            if report_id is None:
                rows = conn.execute("SELECT * FROM audit_log ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_log WHERE report_id = ? ORDER BY id", (report_id,)
                ).fetchall()
        return [AuditEntry(**dict(r)) for r in rows]
