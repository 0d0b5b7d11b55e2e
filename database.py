"""
database.py — SQLite database setup, queries, and helpers.
SQLite holds sessions, progress, rate-limit attempts and the opportunities
the surrounding application reads.
"""

import json
import sqlite3
from pathlib import Path
from typing import Optional

import config
from errors import DuplicateSession
from models import Opportunity, ScrapeSession, utcnow_iso


def get_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Get a database connection, creating the DB file if needed."""
    path = Path(db_path or config.DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db(db_path: Optional[Path] = None):
    """Create all tables if they don't exist."""
    conn = get_connection(db_path)
    cursor = conn.cursor()

    cursor.executescript("""
        CREATE TABLE IF NOT EXISTS scrape_sessions (
            session_id TEXT PRIMARY KEY,
            created_at TEXT NOT NULL,
            sources TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS scraping_progress (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            source_name TEXT NOT NULL,
            source_url TEXT NOT NULL,
            status TEXT NOT NULL CHECK (status IN ('pending', 'in_progress', 'completed', 'failed', 'retrying')),
            opportunities_found INTEGER DEFAULT 0,
            error_message TEXT,
            retry_count INTEGER DEFAULT 0,
            started_at TEXT,
            completed_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (session_id, source_url)
        );

        CREATE TABLE IF NOT EXISTS rate_limits (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            actor_id TEXT NOT NULL,
            action TEXT NOT NULL,
            created_at REAL NOT NULL
        );

        CREATE TABLE IF NOT EXISTS opportunities (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            agency TEXT NOT NULL,
            geography_state TEXT,
            geography_county TEXT,
            geography_city TEXT,
            service_tags TEXT NOT NULL DEFAULT '[]',
            contract_type TEXT NOT NULL,
            estimated_value_min REAL,
            estimated_value_max REAL,
            issue_date TEXT,
            questions_due TEXT,
            pre_bid_meeting TEXT,
            proposal_due TEXT NOT NULL,
            term_length TEXT,
            link TEXT NOT NULL,
            summary TEXT NOT NULL,
            priority TEXT NOT NULL DEFAULT 'medium' CHECK (priority IN ('high', 'medium', 'low')),
            status TEXT NOT NULL DEFAULT 'new',
            source TEXT NOT NULL,
            recommended_action TEXT,
            fuzzy_key TEXT,
            created_at TEXT NOT NULL,
            created_by TEXT
        );

        CREATE TABLE IF NOT EXISTS scraped_sources (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source_name TEXT NOT NULL,
            source_url TEXT NOT NULL UNIQUE,
            last_scraped_at TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS scraping_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT,
            source_url TEXT NOT NULL,
            source_name TEXT NOT NULL,
            source_type TEXT NOT NULL,
            started_at TEXT NOT NULL,
            completed_at TEXT,
            status TEXT NOT NULL,
            opportunities_found INTEGER DEFAULT 0,
            opportunities_inserted INTEGER DEFAULT 0,
            error_message TEXT,
            actor_id TEXT,
            metadata TEXT DEFAULT '{}'
        );

        CREATE INDEX IF NOT EXISTS idx_progress_session ON scraping_progress(session_id);
        CREATE INDEX IF NOT EXISTS idx_progress_status ON scraping_progress(status);
        CREATE INDEX IF NOT EXISTS idx_rate_limits_actor_action_time ON rate_limits(actor_id, action, created_at);
        CREATE INDEX IF NOT EXISTS idx_opportunities_link ON opportunities(link);
        CREATE INDEX IF NOT EXISTS idx_opportunities_agency ON opportunities(agency);
    """)

    conn.commit()
    conn.close()


# --- Sessions ---

def create_session(session: ScrapeSession, db_path: Optional[Path] = None):
    """Persist a new session. Session ids are never reused."""
    conn = get_connection(db_path)
    try:
        conn.execute(
            "INSERT INTO scrape_sessions (session_id, created_at, sources) VALUES (?, ?, ?)",
            (
                session.session_id,
                session.created_at,
                json.dumps([
                    {"url": s.url, "name": s.name, "kind": s.kind, "county": s.county, "state": s.state}
                    for s in session.sources
                ]),
            )
        )
        conn.commit()
    except sqlite3.IntegrityError:
        raise DuplicateSession(f"session id already used: {session.session_id}")
    finally:
        conn.close()


def session_exists(session_id: str, db_path: Optional[Path] = None) -> bool:
    conn = get_connection(db_path)
    row = conn.execute("SELECT 1 FROM scrape_sessions WHERE session_id = ?", (session_id,)).fetchone()
    conn.close()
    return row is not None


# --- Opportunities ---

def insert_opportunity(opp: Opportunity, db_path: Optional[Path] = None) -> int:
    """Insert one opportunity in its own transaction. Returns the row ID."""
    conn = get_connection(db_path)
    try:
        with conn:
            cursor = conn.execute(
                """INSERT INTO opportunities
                   (title, agency, geography_state, geography_county, geography_city,
                    service_tags, contract_type, estimated_value_min, estimated_value_max,
                    issue_date, questions_due, pre_bid_meeting, proposal_due, term_length,
                    link, summary, priority, status, source, recommended_action,
                    fuzzy_key, created_at, created_by)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    opp.title, opp.agency, opp.geography_state, opp.geography_county,
                    opp.geography_city, json.dumps(opp.service_tags), opp.contract_type,
                    opp.estimated_value_min, opp.estimated_value_max, opp.issue_date,
                    opp.questions_due, opp.pre_bid_meeting, opp.proposal_due, opp.term_length,
                    opp.link, opp.summary, opp.priority, opp.status, opp.source,
                    opp.recommended_action, opp.fuzzy_key, opp.created_at, opp.created_by,
                )
            )
        return cursor.lastrowid
    finally:
        conn.close()


def find_by_link(link: str, db_path: Optional[Path] = None) -> Optional[int]:
    """Return the id of an opportunity with this exact link, if any."""
    conn = get_connection(db_path)
    row = conn.execute("SELECT id FROM opportunities WHERE link = ? ORDER BY id LIMIT 1", (link,)).fetchone()
    conn.close()
    return row["id"] if row else None


def get_fuzzy_keys(db_path: Optional[Path] = None) -> dict[str, int]:
    """Return a dict of fuzzy_key -> opportunity id."""
    conn = get_connection(db_path)
    rows = conn.execute("SELECT id, fuzzy_key FROM opportunities WHERE fuzzy_key IS NOT NULL").fetchall()
    conn.close()
    return {row["fuzzy_key"]: row["id"] for row in rows}


def get_opportunities(since: Optional[str] = None, db_path: Optional[Path] = None) -> list[Opportunity]:
    """Read persisted opportunities, newest first."""
    conn = get_connection(db_path)
    if since:
        rows = conn.execute(
            "SELECT * FROM opportunities WHERE created_at >= ? ORDER BY id DESC", (since,)
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM opportunities ORDER BY id DESC").fetchall()
    conn.close()
    return [_row_to_opportunity(row) for row in rows]


def get_opportunities_by_ids(ids: list[int], db_path: Optional[Path] = None) -> list[Opportunity]:
    """Read specific opportunities, newest first."""
    if not ids:
        return []
    placeholders = ",".join("?" for _ in ids)
    conn = get_connection(db_path)
    rows = conn.execute(
        f"SELECT * FROM opportunities WHERE id IN ({placeholders}) ORDER BY id DESC", list(ids)
    ).fetchall()
    conn.close()
    return [_row_to_opportunity(row) for row in rows]


def _row_to_opportunity(row) -> Opportunity:
    data = dict(row)
    data["service_tags"] = json.loads(data["service_tags"]) if data["service_tags"] else []
    return Opportunity(**data)


# --- Scraped Sources ---

def upsert_scraped_source(source_url: str, source_name: str, db_path: Optional[Path] = None):
    """Record that a source was scraped."""
    now = utcnow_iso()
    conn = get_connection(db_path)
    conn.execute(
        """INSERT INTO scraped_sources (source_name, source_url, last_scraped_at, status, created_at)
           VALUES (?, ?, ?, 'active', ?)
           ON CONFLICT(source_url) DO UPDATE SET
               source_name = excluded.source_name,
               last_scraped_at = excluded.last_scraped_at,
               status = 'active'""",
        (source_name, source_url, now, now)
    )
    conn.commit()
    conn.close()


def get_active_scraped_sources(db_path: Optional[Path] = None) -> list[dict]:
    """Active sources, least recently scraped first."""
    conn = get_connection(db_path)
    rows = conn.execute(
        """SELECT source_name, source_url, last_scraped_at FROM scraped_sources
           WHERE status = 'active'
           ORDER BY last_scraped_at IS NOT NULL, last_scraped_at ASC"""
    ).fetchall()
    conn.close()
    return [dict(row) for row in rows]


# --- Scraping History ---

def log_history(
    session_id: str,
    source_url: str,
    source_name: str,
    source_type: str,
    started_at: str,
    status: str,
    opportunities_found: int = 0,
    opportunities_inserted: int = 0,
    error_message: Optional[str] = None,
    actor_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    db_path: Optional[Path] = None,
):
    """Store one scraping-history entry for a finished source run."""
    conn = get_connection(db_path)
    conn.execute(
        """INSERT INTO scraping_history
           (session_id, source_url, source_name, source_type, started_at, completed_at,
            status, opportunities_found, opportunities_inserted, error_message, actor_id, metadata)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            session_id, source_url, source_name, source_type, started_at, utcnow_iso(),
            status, opportunities_found, opportunities_inserted, error_message, actor_id,
            json.dumps(metadata or {}),
        )
    )
    conn.commit()
    conn.close()


def get_history(session_id: str, db_path: Optional[Path] = None) -> list[dict]:
    conn = get_connection(db_path)
    rows = conn.execute(
        "SELECT * FROM scraping_history WHERE session_id = ? ORDER BY id", (session_id,)
    ).fetchall()
    conn.close()
    return [dict(row) for row in rows]

