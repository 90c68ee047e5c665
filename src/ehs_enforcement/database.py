"""Enforcement records database interface.

Provides schema management and the persistence contract used by the
session controller and offender resolver: idempotent upsert of cases and
notices keyed on ``(agency_code, source_id)``, insert-or-get offenders,
match reviews, scrape sessions and per-page processing logs.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from .logging_config import get_logger
from .models import (
    AGENCY_EA,
    AGENCY_HSE,
    RECORD_CASE,
    RECORD_NOTICE,
    REVIEW_PENDING,
    MatchReview,
    Offender,
    OffenderAttrs,
    ScrapeSession,
)
from .parser_utils import utc_timestamp

logger = get_logger("database")

STATUS_CREATED = "created"
STATUS_UPDATED = "updated"
STATUS_EXISTING = "existing"

AGENCY_NAMES = {
    AGENCY_HSE: "Health and Safety Executive",
    AGENCY_EA: "Environment Agency",
}

RECORD_TABLES = {RECORD_CASE: "cases", RECORD_NOTICE: "notices"}

# Columns shared by the cases and notices tables, in insertion order.
CANONICAL_COLUMNS: Sequence[str] = (
    "regulator_url",
    "offence_action_type",
    "action_date",
    "fine",
    "costs",
    "description",
    "act",
    "section",
    "legal_reference",
    "offence_hash",
    "case_reference",
    "event_reference",
    "regulator_function",
    "notice_type",
    "compliance_date",
    "revised_compliance_date",
    "notice_result",
    "water_impact",
    "land_impact",
    "air_impact",
    "environmental_impact",
    "environmental_receptor",
    "impact_summary",
)

OFFENDER_COLUMNS: Sequence[str] = (
    "registration_number",
    "address",
    "town",
    "county",
    "postcode",
    "local_authority",
    "main_activity",
    "industry",
    "business_type",
)

_RECORD_TABLE_TEMPLATE = """
CREATE TABLE IF NOT EXISTS {table} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agency_code TEXT NOT NULL REFERENCES agencies(code),
    source_id TEXT NOT NULL,
    offender_id INTEGER REFERENCES offenders(id),
    regulator_url TEXT,
    offence_action_type TEXT,
    action_date TEXT,
    fine TEXT NOT NULL DEFAULT '0',
    costs TEXT NOT NULL DEFAULT '0',
    description TEXT,
    act TEXT,
    section TEXT,
    legal_reference TEXT,
    offence_hash TEXT,
    case_reference TEXT,
    event_reference TEXT,
    regulator_function TEXT,
    notice_type TEXT,
    compliance_date TEXT,
    revised_compliance_date TEXT,
    notice_result TEXT,
    water_impact INTEGER NOT NULL DEFAULT 0,
    land_impact INTEGER NOT NULL DEFAULT 0,
    air_impact INTEGER NOT NULL DEFAULT 0,
    environmental_impact TEXT,
    environmental_receptor TEXT,
    impact_summary TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (agency_code, source_id)
);
CREATE INDEX IF NOT EXISTS idx_{table}_offender ON {table}(offender_id);
CREATE INDEX IF NOT EXISTS idx_{table}_action_date ON {table}(action_date);
"""


def _serialise(value: Any) -> Any:
    """Convert Python values to the representation stored in SQLite."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return format(value.normalize(), "f") if value else "0"
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _postcode_key(postcode: Optional[str]) -> str:
    return (postcode or "").replace(" ", "").upper()


@dataclass
class UpsertResult:
    """Represents the outcome of a canonical record upsert."""

    status: str
    record_id: int
    record_kind: str
    changed_fields: List[str] = field(default_factory=list)


class EnforcementDatabase:
    """High-level helper for the enforcement SQLite database."""

    DEFAULT_DB_PATH = Path("database/ehs_enforcement.db")

    def __init__(self, db_path: Optional[Union[str, Path]] = None, auto_initialize: bool = True) -> None:
        path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        if not path.is_absolute():
            path = Path.cwd() / path
        self.db_path = path
        if auto_initialize:
            self.initialize()

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------
    def initialize(self) -> None:
        """Initialise database directory and ensure schema exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._transaction() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            self._create_schema(conn)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._apply_pragmas(conn)
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _apply_pragmas(conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA temp_store=MEMORY")

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS agencies (
                code TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS offenders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                normalized_name TEXT NOT NULL,
                postcode_key TEXT NOT NULL DEFAULT '',
                registration_number TEXT,
                address TEXT,
                town TEXT,
                county TEXT,
                postcode TEXT,
                local_authority TEXT,
                main_activity TEXT,
                industry TEXT,
                business_type TEXT,
                merged_into INTEGER REFERENCES offenders(id),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (normalized_name, postcode_key)
            );

            CREATE INDEX IF NOT EXISTS idx_offenders_registration ON offenders(registration_number);
            CREATE INDEX IF NOT EXISTS idx_offenders_normalized_name ON offenders(normalized_name);

            CREATE TABLE IF NOT EXISTS match_reviews (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                offender_id INTEGER NOT NULL UNIQUE REFERENCES offenders(id),
                status TEXT NOT NULL DEFAULT 'pending',
                confidence_score REAL NOT NULL DEFAULT 0,
                candidate_companies TEXT NOT NULL DEFAULT '[]',
                selected_candidate TEXT,
                reviewed_by TEXT,
                reviewed_at TEXT,
                review_notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_match_reviews_status ON match_reviews(status);

            CREATE TABLE IF NOT EXISTS scrape_sessions (
                session_id TEXT PRIMARY KEY,
                agency_code TEXT NOT NULL,
                database_name TEXT NOT NULL,
                range_params TEXT,
                status TEXT NOT NULL,
                pages_processed INTEGER NOT NULL DEFAULT 0,
                records_found INTEGER NOT NULL DEFAULT 0,
                records_created INTEGER NOT NULL DEFAULT 0,
                records_updated INTEGER NOT NULL DEFAULT 0,
                records_existing INTEGER NOT NULL DEFAULT 0,
                errors_count INTEGER NOT NULL DEFAULT 0,
                started_at TEXT,
                completed_at TEXT,
                stop_reason TEXT,
                error_message TEXT,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS processing_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                page_number INTEGER NOT NULL,
                page_label TEXT,
                records_found INTEGER NOT NULL DEFAULT 0,
                records_created INTEGER NOT NULL DEFAULT 0,
                records_updated INTEGER NOT NULL DEFAULT 0,
                records_existing INTEGER NOT NULL DEFAULT 0,
                errors_count INTEGER NOT NULL DEFAULT 0,
                created_source_ids TEXT NOT NULL DEFAULT '[]',
                logged_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_processing_logs_session ON processing_logs(session_id);
            """
        )
        for table in RECORD_TABLES.values():
            conn.executescript(_RECORD_TABLE_TEMPLATE.format(table=table))

        # Stores created before offender merges existed lack the column.
        offender_columns = {row["name"] for row in conn.execute("PRAGMA table_info(offenders)")}
        if "merged_into" not in offender_columns:
            conn.execute("ALTER TABLE offenders ADD COLUMN merged_into INTEGER REFERENCES offenders(id)")

    # ------------------------------------------------------------------
    # Agencies
    # ------------------------------------------------------------------
    def ensure_agency(self, code: str, name: Optional[str] = None) -> None:
        with self._transaction() as conn:
            self._ensure_agency(conn, code, name)

    @staticmethod
    def _ensure_agency(conn: sqlite3.Connection, code: str, name: Optional[str] = None) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO agencies (code, name) VALUES (?, ?)",
            (code, name or AGENCY_NAMES.get(code, code.upper())),
        )

    # ------------------------------------------------------------------
    # Canonical records
    # ------------------------------------------------------------------
    def upsert_canonical_record(
        self,
        agency_code: str,
        source_id: str,
        attrs: Dict[str, Any],
        *,
        record_kind: str = RECORD_CASE,
        offender_id: Optional[int] = None,
    ) -> UpsertResult:
        """Insert a case or notice, or apply field-level changes to the stored one.

        Incoming ``None`` values never overwrite stored values and an existing
        offender link is never replaced here.
        """
        table = self._table_for(record_kind)
        values = {column: _serialise(attrs.get(column)) for column in CANONICAL_COLUMNS if column in attrs}
        now = utc_timestamp()

        with self._transaction() as conn:
            self._ensure_agency(conn, agency_code)
            columns = ["agency_code", "source_id", "offender_id", *values.keys(), "created_at", "updated_at"]
            placeholders = ", ".join("?" for _ in columns)
            params = [agency_code, source_id, offender_id, *values.values(), now, now]
            cur = conn.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
                f"ON CONFLICT (agency_code, source_id) DO NOTHING",
                params,
            )
            if cur.rowcount == 1:
                return UpsertResult(status=STATUS_CREATED, record_id=cur.lastrowid, record_kind=record_kind)

            row = conn.execute(
                f"SELECT * FROM {table} WHERE agency_code = ? AND source_id = ?",
                (agency_code, source_id),
            ).fetchone()
            changes = {
                column: value
                for column, value in values.items()
                if value is not None and row[column] != value
            }
            if row["offender_id"] is None and offender_id is not None:
                changes["offender_id"] = offender_id

            if not changes:
                return UpsertResult(status=STATUS_EXISTING, record_id=row["id"], record_kind=record_kind)

            assignments = ", ".join(f"{column} = ?" for column in changes)
            conn.execute(
                f"UPDATE {table} SET {assignments}, updated_at = ? WHERE id = ?",
                [*changes.values(), now, row["id"]],
            )
            logger.debug("Updated %s %s/%s fields: %s", record_kind, agency_code, source_id, sorted(changes))
            return UpsertResult(
                status=STATUS_UPDATED,
                record_id=row["id"],
                record_kind=record_kind,
                changed_fields=sorted(changes),
            )

    def record_exists(self, agency_code: str, source_id: str) -> bool:
        """Whether a case or notice with this identity is already stored."""
        with self._transaction() as conn:
            for table in RECORD_TABLES.values():
                row = conn.execute(
                    f"SELECT 1 FROM {table} WHERE agency_code = ? AND source_id = ?",
                    (agency_code, source_id),
                ).fetchone()
                if row:
                    return True
        return False

    def get_record(self, record_kind: str, record_id: int) -> Optional[Dict[str, Any]]:
        table = self._table_for(record_kind)
        with self._transaction() as conn:
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return dict(row) if row else None

    def get_record_by_source(self, record_kind: str, agency_code: str, source_id: str) -> Optional[Dict[str, Any]]:
        table = self._table_for(record_kind)
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM {table} WHERE agency_code = ? AND source_id = ?",
                (agency_code, source_id),
            ).fetchone()
        return dict(row) if row else None

    def list_records(self, record_kind: str, agency_code: Optional[str] = None) -> List[Dict[str, Any]]:
        table = self._table_for(record_kind)
        query = f"SELECT * FROM {table}"
        params: List[Any] = []
        if agency_code:
            query += " WHERE agency_code = ?"
            params.append(agency_code)
        query += " ORDER BY id"
        with self._transaction() as conn:
            return [dict(row) for row in conn.execute(query, params).fetchall()]

    def count_records(self, record_kind: str) -> int:
        table = self._table_for(record_kind)
        with self._transaction() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    @staticmethod
    def _table_for(record_kind: str) -> str:
        try:
            return RECORD_TABLES[record_kind]
        except KeyError:
            raise ValueError(f"Unknown record kind: {record_kind}") from None

    # ------------------------------------------------------------------
    # Offenders
    # ------------------------------------------------------------------
    def find_or_create_offender(self, attrs: OffenderAttrs) -> Offender:
        """Insert-or-get on ``(normalized_name, postcode)``.

        Concurrent sessions racing on the same organisation end up with one row.
        """
        now = utc_timestamp()
        values = {column: getattr(attrs, column) for column in OFFENDER_COLUMNS}
        with self._transaction() as conn:
            columns = ["name", "normalized_name", "postcode_key", *values.keys(), "created_at", "updated_at"]
            conn.execute(
                f"INSERT INTO offenders ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)}) "
                f"ON CONFLICT (normalized_name, postcode_key) DO NOTHING",
                [attrs.name, attrs.normalized_name, _postcode_key(attrs.postcode), *values.values(), now, now],
            )
            row = conn.execute(
                "SELECT id FROM offenders WHERE normalized_name = ? AND postcode_key = ?",
                (attrs.normalized_name, _postcode_key(attrs.postcode)),
            ).fetchone()
            offender_id = self._canonical_id(conn, row["id"])
        return self.get_offender(offender_id)

    def get_offender(self, offender_id: int) -> Optional[Offender]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM offenders WHERE id = ?", (offender_id,)).fetchone()
            if not row:
                return None
            counters = self._offender_counters(conn, offender_id)
        return self._row_to_offender(row, counters)

    def find_offender_by_registration(self, registration_number: str) -> Optional[Offender]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id FROM offenders WHERE registration_number = ? ORDER BY merged_into IS NOT NULL, id LIMIT 1",
                (registration_number,),
            ).fetchone()
            offender_id = self._canonical_id(conn, row["id"]) if row else None
        return self.get_offender(offender_id) if offender_id else None

    def find_offender_by_normalized_name(
        self,
        normalized_name: str,
        postcode: Optional[str] = None,
    ) -> Optional[Offender]:
        """Exact normalized-name match, preferring a matching postcode."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id FROM offenders WHERE normalized_name = ? "
                "ORDER BY merged_into IS NOT NULL, (postcode_key = ?) DESC, id LIMIT 1",
                (normalized_name, _postcode_key(postcode)),
            ).fetchone()
            offender_id = self._canonical_id(conn, row["id"]) if row else None
        return self.get_offender(offender_id) if offender_id else None

    def list_offender_names(self, exclude_ids: Sequence[int] = ()) -> Dict[int, str]:
        """Mapping of offender id to normalized name for fuzzy matching."""
        with self._transaction() as conn:
            rows = conn.execute("SELECT id, normalized_name FROM offenders WHERE merged_into IS NULL").fetchall()
        excluded = set(exclude_ids)
        return {row["id"]: row["normalized_name"] for row in rows if row["id"] not in excluded}

    def list_offenders(self, include_merged: bool = False) -> List[Offender]:
        query = "SELECT * FROM offenders" if include_merged else "SELECT * FROM offenders WHERE merged_into IS NULL"
        with self._transaction() as conn:
            rows = conn.execute(f"{query} ORDER BY id").fetchall()
            return [self._row_to_offender(row, self._offender_counters(conn, row["id"])) for row in rows]

    def count_offenders(self) -> int:
        with self._transaction() as conn:
            return conn.execute("SELECT COUNT(*) FROM offenders").fetchone()[0]

    def fill_offender_fields(self, offender_id: int, attrs: OffenderAttrs) -> List[str]:
        """Populate columns that are still empty on the stored offender."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM offenders WHERE id = ?", (offender_id,)).fetchone()
            if not row:
                return []
            updates = {
                column: getattr(attrs, column)
                for column in OFFENDER_COLUMNS
                if row[column] in (None, "") and getattr(attrs, column)
            }
            if updates:
                assignments = ", ".join(f"{column} = ?" for column in updates)
                conn.execute(
                    f"UPDATE offenders SET {assignments}, updated_at = ? WHERE id = ?",
                    [*updates.values(), utc_timestamp(), offender_id],
                )
        return sorted(updates)

    def set_offender_registration(self, offender_id: int, registration_number: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE offenders SET registration_number = ?, updated_at = ? WHERE id = ?",
                (registration_number, utc_timestamp(), offender_id),
            )

    def merge_offender(self, from_offender_id: int, to_offender_id: int) -> int:
        """Retire one offender into another; returns records moved.

        The retired row keeps its name and postcode so later lookups for it
        resolve to the surviving offender.
        """
        if from_offender_id == to_offender_id:
            return 0
        now = utc_timestamp()
        moved = 0
        with self._transaction() as conn:
            target_id = self._canonical_id(conn, to_offender_id)
            if target_id == from_offender_id:
                raise ValueError(f"Offender {to_offender_id} is already merged into {from_offender_id}")
            for table in RECORD_TABLES.values():
                cur = conn.execute(
                    f"UPDATE {table} SET offender_id = ?, updated_at = ? WHERE offender_id = ?",
                    (target_id, now, from_offender_id),
                )
                moved += cur.rowcount
            conn.execute(
                "UPDATE offenders SET merged_into = ?, updated_at = ? WHERE id = ? OR merged_into = ?",
                (target_id, now, from_offender_id, from_offender_id),
            )
        logger.info("Merged offender %s into %s (%s records moved)", from_offender_id, target_id, moved)
        return moved

    @staticmethod
    def _canonical_id(conn: sqlite3.Connection, offender_id: int) -> int:
        seen = set()
        while offender_id not in seen:
            seen.add(offender_id)
            row = conn.execute("SELECT merged_into FROM offenders WHERE id = ?", (offender_id,)).fetchone()
            if not row or row["merged_into"] is None:
                break
            offender_id = row["merged_into"]
        return offender_id

    def offender_counters(self, offender_id: int) -> Dict[str, int]:
        with self._transaction() as conn:
            return self._offender_counters(conn, offender_id)

    @staticmethod
    def _offender_counters(conn: sqlite3.Connection, offender_id: int) -> Dict[str, int]:
        cases = conn.execute("SELECT COUNT(*) FROM cases WHERE offender_id = ?", (offender_id,)).fetchone()[0]
        notices = conn.execute("SELECT COUNT(*) FROM notices WHERE offender_id = ?", (offender_id,)).fetchone()[0]
        return {"total_cases": cases, "total_notices": notices}

    @staticmethod
    def _row_to_offender(row: sqlite3.Row, counters: Dict[str, int]) -> Offender:
        return Offender(
            id=row["id"],
            name=row["name"],
            normalized_name=row["normalized_name"],
            **{column: row[column] for column in OFFENDER_COLUMNS},
            merged_into=row["merged_into"],
            **counters,
        )

    # ------------------------------------------------------------------
    # Match reviews
    # ------------------------------------------------------------------
    def create_match_review(
        self,
        offender_id: int,
        confidence_score: float,
        candidate_companies: List[Dict[str, Any]],
    ) -> MatchReview:
        """Create the review for an offender, or return the one it already has."""
        now = utc_timestamp()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO match_reviews (offender_id, status, confidence_score, candidate_companies, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (offender_id) DO NOTHING
                """,
                (offender_id, REVIEW_PENDING, confidence_score, json.dumps(candidate_companies), now, now),
            )
            row = conn.execute("SELECT * FROM match_reviews WHERE offender_id = ?", (offender_id,)).fetchone()
        return self._row_to_review(row)

    def get_match_review(self, review_id: int) -> Optional[MatchReview]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM match_reviews WHERE id = ?", (review_id,)).fetchone()
        return self._row_to_review(row) if row else None

    def list_match_reviews(self, status: Optional[str] = None) -> List[MatchReview]:
        query = "SELECT * FROM match_reviews"
        params: List[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY id"
        with self._transaction() as conn:
            return [self._row_to_review(row) for row in conn.execute(query, params).fetchall()]

    def update_match_review(
        self,
        review_id: int,
        *,
        status: str,
        reviewed_by: Optional[str] = None,
        selected_candidate: Optional[Dict[str, Any]] = None,
        review_notes: Optional[str] = None,
    ) -> MatchReview:
        now = utc_timestamp()
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE match_reviews
                SET status = ?, reviewed_by = ?, reviewed_at = ?, selected_candidate = ?,
                    review_notes = COALESCE(?, review_notes), updated_at = ?
                WHERE id = ?
                """,
                (
                    status,
                    reviewed_by,
                    now,
                    json.dumps(selected_candidate) if selected_candidate is not None else None,
                    review_notes,
                    now,
                    review_id,
                ),
            )
            row = conn.execute("SELECT * FROM match_reviews WHERE id = ?", (review_id,)).fetchone()
        return self._row_to_review(row)

    @staticmethod
    def _row_to_review(row: sqlite3.Row) -> MatchReview:
        return MatchReview(
            id=row["id"],
            offender_id=row["offender_id"],
            status=row["status"],
            confidence_score=row["confidence_score"],
            candidate_companies=json.loads(row["candidate_companies"] or "[]"),
            selected_candidate=json.loads(row["selected_candidate"]) if row["selected_candidate"] else None,
            reviewed_by=row["reviewed_by"],
            reviewed_at=row["reviewed_at"],
            review_notes=row["review_notes"],
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Scrape sessions
    # ------------------------------------------------------------------
    def save_session(self, session: ScrapeSession) -> None:
        counters = session.counters
        payload = {
            "session_id": session.session_id,
            "agency_code": session.agency_code,
            "database_name": session.database,
            "range_params": json.dumps(session.range_params, default=str),
            "status": session.status,
            "pages_processed": counters.pages_processed,
            "records_found": counters.records_found,
            "records_created": counters.records_created,
            "records_updated": counters.records_updated,
            "records_existing": counters.records_existing,
            "errors_count": counters.errors_count,
            "started_at": session.started_at.isoformat() if session.started_at else None,
            "completed_at": session.completed_at.isoformat() if session.completed_at else None,
            "stop_reason": session.stop_reason,
            "error_message": session.error_message,
            "updated_at": utc_timestamp(),
        }
        columns = list(payload)
        updates = ", ".join(f"{column} = excluded.{column}" for column in columns if column != "session_id")
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO scrape_sessions ({', '.join(columns)}) "
                f"VALUES ({', '.join(':' + column for column in columns)}) "
                f"ON CONFLICT (session_id) DO UPDATE SET {updates}",
                payload,
            )

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM scrape_sessions WHERE session_id = ?", (session_id,)).fetchone()
        if not row:
            return None
        result = dict(row)
        result["range_params"] = json.loads(result["range_params"] or "{}")
        return result

    def log_page(
        self,
        session_id: str,
        page_number: int,
        *,
        page_label: Optional[str] = None,
        records_found: int = 0,
        records_created: int = 0,
        records_updated: int = 0,
        records_existing: int = 0,
        errors_count: int = 0,
        created_source_ids: Sequence[str] = (),
    ) -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO processing_logs (
                    session_id, page_number, page_label, records_found, records_created,
                    records_updated, records_existing, errors_count, created_source_ids, logged_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    page_number,
                    page_label,
                    records_found,
                    records_created,
                    records_updated,
                    records_existing,
                    errors_count,
                    json.dumps(list(created_source_ids)),
                    utc_timestamp(),
                ),
            )
            return cur.lastrowid

    def list_processing_logs(self, session_id: str) -> List[Dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM processing_logs WHERE session_id = ? ORDER BY id",
                (session_id,),
            ).fetchall()
        logs = []
        for row in rows:
            entry = dict(row)
            entry["created_source_ids"] = json.loads(entry["created_source_ids"] or "[]")
            logs.append(entry)
        return logs
