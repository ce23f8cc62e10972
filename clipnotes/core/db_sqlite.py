"""
SQLite database layer for ClipNotes.
Thread-safe via check_same_thread=False + explicit locking.

Holds job records, the caption cache, slug reservations, persisted
summaries, and the per-day quota ledger.
"""

import json
import sqlite3
import threading
import time
import uuid
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path

from clipnotes.core.constants import DB_PATH, JobStatus
from clipnotes.core.models_sqlite import (
    Job, CaptionEntry, SummaryRecord, JobPayload, payload_to_json,
)

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    owner TEXT,
    video_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    stage TEXT,
    progress_pct INTEGER DEFAULT 0,
    eta_sec INTEGER DEFAULT 0,
    error_code TEXT,
    error_message TEXT,
    result_id TEXT,
    slug TEXT,
    temp_assets TEXT DEFAULT '[]',
    quota_consumed INTEGER DEFAULT 0,
    quota_refunded INTEGER DEFAULT 0,
    quota_day TEXT,
    locked_by TEXT,
    lease_expires_at REAL,
    attempts INTEGER DEFAULT 0,
    created_at TEXT,
    updated_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at);

CREATE TABLE IF NOT EXISTS captions (
    video_id TEXT PRIMARY KEY,
    video_url TEXT NOT NULL,
    title TEXT NOT NULL,
    raw_captions TEXT NOT NULL,
    language TEXT,
    thumbnail TEXT,
    duration TEXT,
    base_name TEXT,
    derive_counter INTEGER NOT NULL DEFAULT 1,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS caption_claims (
    job_id TEXT PRIMARY KEY,
    video_id TEXT NOT NULL,
    counter INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS slugs (
    slug TEXT PRIMARY KEY,
    job_id TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS results (
    id TEXT PRIMARY KEY,
    job_id TEXT UNIQUE,
    owner TEXT,
    source_ref TEXT NOT NULL,
    platform TEXT NOT NULL,
    title TEXT NOT NULL,
    summary_text TEXT NOT NULL,
    keypoints TEXT NOT NULL DEFAULT '[]',
    timestamps TEXT NOT NULL DEFAULT '[]',
    language TEXT,
    summary_length TEXT,
    summary_tone TEXT,
    slug TEXT UNIQUE,
    shareable_link TEXT,
    thumbnail TEXT,
    duration TEXT,
    chats TEXT NOT NULL DEFAULT '[]',
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_results_owner_created ON results(owner, created_at DESC);

CREATE TABLE IF NOT EXISTS usage (
    owner TEXT NOT NULL,
    day TEXT NOT NULL,
    used INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (owner, day)
);
"""

_JSON_RESULT_FIELDS = ('keypoints', 'timestamps', 'chats')


class Database:
    """SQLite database wrapper for ClipNotes."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._lock = threading.RLock()
        self._ensure_dirs()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        cur = self.conn.cursor()
        cur.executescript(_CREATE_TABLES)
        # Set schema version
        cur.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (_SCHEMA_VERSION,),
        )
        self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _today() -> str:
        return datetime.now(timezone.utc).date().isoformat()

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        data = dict(row)
        data.pop('quota_day', None)
        return Job(**data)

    @staticmethod
    def _row_to_caption(row: sqlite3.Row) -> CaptionEntry:
        return CaptionEntry(**dict(row))

    @staticmethod
    def _row_to_result(row: sqlite3.Row) -> SummaryRecord:
        data = dict(row)
        for key in _JSON_RESULT_FIELDS:
            data[key] = json.loads(data[key] or "[]")
        return SummaryRecord(**data)

    # ── Job CRUD ──────────────────────────────────────────────────────

    def create_job(self, payload: JobPayload, video_id: str | None = None,
                   quota_consumed: bool = False) -> Job:
        now = self._now()
        job = Job(
            id=str(uuid.uuid4()),
            kind=payload.kind,
            payload=payload_to_json(payload),
            owner=payload.owner,
            video_id=video_id,
            quota_consumed=1 if quota_consumed else 0,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self.conn.execute(
                """INSERT INTO jobs
                   (id, kind, payload, owner, video_id, status, progress_pct,
                    eta_sec, temp_assets, quota_consumed, quota_day,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (job.id, job.kind, job.payload, job.owner, job.video_id,
                 job.status, job.progress_pct, job.eta_sec, job.temp_assets,
                 job.quota_consumed, self._today() if quota_consumed else None,
                 job.created_at, job.updated_at),
            )
            self.conn.commit()
        return job

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return self._row_to_job(row) if row else None

    def update_job(self, job_id: str, **kwargs):
        kwargs['updated_at'] = self._now()
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [job_id]
        with self._lock:
            self.conn.execute(
                f"UPDATE jobs SET {sets} WHERE id = ?", vals
            )
            self.conn.commit()

    # ── Leases & state transitions ────────────────────────────────────

    def claim_next_job(self, worker_id: str, lease_sec: float,
                       now: float | None = None) -> Job | None:
        """
        Atomically take the oldest pending job, or a running job whose
        lease has expired. Returns the claimed job or None.
        """
        now = time.time() if now is None else now
        with self._lock:
            row = self.conn.execute(
                """SELECT id FROM jobs
                   WHERE status = ?
                      OR (status = ? AND lease_expires_at IS NOT NULL AND lease_expires_at < ?)
                   ORDER BY created_at ASC, rowid ASC LIMIT 1""",
                (JobStatus.PENDING, JobStatus.RUNNING, now),
            ).fetchone()
            if not row:
                return None
            self.conn.execute(
                """UPDATE jobs SET status = ?, locked_by = ?, lease_expires_at = ?,
                   attempts = attempts + 1, updated_at = ? WHERE id = ?""",
                (JobStatus.RUNNING, worker_id, now + lease_sec, self._now(), row['id']),
            )
            self.conn.commit()
            return self.get_job(row['id'])

    def record_progress(self, job_id: str, worker_id: str, stage: str,
                        progress_pct: int, eta_sec: int, lease_sec: float) -> bool:
        """
        Advance a running job's progress (never backwards) and extend the
        lease. Returns False if this worker no longer holds the job.
        """
        with self._lock:
            cur = self.conn.execute(
                """UPDATE jobs SET stage = ?, progress_pct = MAX(progress_pct, ?),
                   eta_sec = ?, lease_expires_at = ?, updated_at = ?
                   WHERE id = ? AND status = ? AND locked_by = ?""",
                (stage, progress_pct, eta_sec, time.time() + lease_sec,
                 self._now(), job_id, JobStatus.RUNNING, worker_id),
            )
            self.conn.commit()
            return cur.rowcount == 1

    def complete_job(self, job_id: str, worker_id: str, record: SummaryRecord) -> bool:
        """
        Persist the summary and mark the job completed in one transaction.
        Re-running for the same job keeps the first stored summary.
        """
        data = asdict(record)
        for key in _JSON_RESULT_FIELDS:
            data[key] = json.dumps(data[key])
        data['created_at'] = data.get('created_at') or self._now()
        cols = ', '.join(data)
        marks = ', '.join('?' for _ in data)
        now = self._now()
        with self._lock:
            try:
                self.conn.execute(
                    f"INSERT OR IGNORE INTO results ({cols}) VALUES ({marks})",
                    list(data.values()),
                )
                stored = self.conn.execute(
                    "SELECT id FROM results WHERE job_id = ?", (job_id,)
                ).fetchone()
                cur = self.conn.execute(
                    """UPDATE jobs SET status = ?, stage = NULL, progress_pct = 100,
                       eta_sec = 0, result_id = ?, completed_at = ?, updated_at = ?
                       WHERE id = ? AND status = ? AND locked_by = ?""",
                    (JobStatus.COMPLETED, stored['id'] if stored else None, now, now,
                     job_id, JobStatus.RUNNING, worker_id),
                )
                if cur.rowcount != 1 or not stored:
                    self.conn.rollback()
                    return False
                self.conn.commit()
                return True
            except sqlite3.Error:
                self.conn.rollback()
                raise

    def fail_job(self, job_id: str, error_code: str, error_message: str,
                 worker_id: str | None = None) -> bool:
        """Move a non-terminal job to failed. Returns False if it was already terminal."""
        now = self._now()
        sql = """UPDATE jobs SET status = ?, error_code = ?, error_message = ?,
                 eta_sec = 0, completed_at = ?, updated_at = ?
                 WHERE id = ? AND status IN (?, ?)"""
        vals = [JobStatus.FAILED, error_code, error_message[:2000], now, now,
                job_id, JobStatus.PENDING, JobStatus.RUNNING]
        if worker_id is not None:
            sql += " AND (locked_by = ? OR locked_by IS NULL)"
            vals.append(worker_id)
        with self._lock:
            cur = self.conn.execute(sql, vals)
            self.conn.commit()
            return cur.rowcount == 1

    def mark_quota_refunded(self, job_id: str) -> str | None:
        """
        Flip the refund flag exactly once. Returns the usage day to refund,
        or None if nothing was consumed or it was already refunded.
        """
        with self._lock:
            cur = self.conn.execute(
                """UPDATE jobs SET quota_refunded = 1
                   WHERE id = ? AND quota_consumed = 1 AND quota_refunded = 0""",
                (job_id,),
            )
            if cur.rowcount != 1:
                self.conn.commit()
                return None
            row = self.conn.execute(
                "SELECT quota_day FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
            self.conn.commit()
            return row['quota_day'] or self._today()

    def add_temp_asset(self, job_id: str, ref: str):
        with self._lock:
            row = self.conn.execute(
                "SELECT temp_assets FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
            if not row:
                return
            assets = json.loads(row['temp_assets'] or "[]")
            if ref not in assets:
                assets.append(ref)
                self.conn.execute(
                    "UPDATE jobs SET temp_assets = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(assets), self._now(), job_id),
                )
            self.conn.commit()

    # ── Caption cache ─────────────────────────────────────────────────

    def get_caption(self, video_id: str) -> CaptionEntry | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM captions WHERE video_id = ?", (video_id,)
            ).fetchone()
        return self._row_to_caption(row) if row else None

    def insert_caption_if_absent(self, entry: CaptionEntry, job_id: str | None = None) -> bool:
        """
        Insert a new cache entry with derive_counter = 1. Returns False if an
        entry for this video already exists (nothing is written then).
        """
        with self._lock:
            cur = self.conn.execute(
                """INSERT OR IGNORE INTO captions
                   (video_id, video_url, title, raw_captions, language, thumbnail,
                    duration, base_name, derive_counter, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?)""",
                (entry.video_id, entry.video_url, entry.title, entry.raw_captions,
                 entry.language, entry.thumbnail, entry.duration, entry.base_name,
                 self._now()),
            )
            inserted = cur.rowcount == 1
            if inserted and job_id:
                self.conn.execute(
                    "INSERT OR IGNORE INTO caption_claims (job_id, video_id, counter) VALUES (?, ?, 1)",
                    (job_id, entry.video_id),
                )
            self.conn.commit()
            return inserted

    def claim_caption_reuse(self, video_id: str, job_id: str | None = None) -> int | None:
        """
        Record one reuse of a cached entry and return the derive counter
        attributed to it. A job that already claimed this video gets its
        original counter back instead of a second increment.
        """
        with self._lock:
            if job_id:
                claimed = self.conn.execute(
                    "SELECT counter FROM caption_claims WHERE job_id = ? AND video_id = ?",
                    (job_id, video_id),
                ).fetchone()
                if claimed:
                    return claimed['counter']
            cur = self.conn.execute(
                "UPDATE captions SET derive_counter = derive_counter + 1 WHERE video_id = ?",
                (video_id,),
            )
            if cur.rowcount != 1:
                self.conn.commit()
                return None
            counter = self.conn.execute(
                "SELECT derive_counter FROM captions WHERE video_id = ?", (video_id,)
            ).fetchone()['derive_counter']
            if job_id:
                self.conn.execute(
                    "INSERT INTO caption_claims (job_id, video_id, counter) VALUES (?, ?, ?)",
                    (job_id, video_id, counter),
                )
            self.conn.commit()
            return counter

    def set_caption_base_name(self, video_id: str, base_name: str) -> str | None:
        """Store the slug base once; returns whichever base name is stored."""
        with self._lock:
            self.conn.execute(
                "UPDATE captions SET base_name = ? WHERE video_id = ? AND base_name IS NULL",
                (base_name, video_id),
            )
            row = self.conn.execute(
                "SELECT base_name FROM captions WHERE video_id = ?", (video_id,)
            ).fetchone()
            self.conn.commit()
        return row['base_name'] if row else None

    # ── Slugs ─────────────────────────────────────────────────────────

    def reserve_slug(self, slug: str, job_id: str | None = None) -> bool:
        """
        Claim a slug system-wide. True if it is now held by this job
        (including when the same job reserved it before).
        """
        with self._lock:
            cur = self.conn.execute(
                "INSERT OR IGNORE INTO slugs (slug, job_id, created_at) VALUES (?, ?, ?)",
                (slug, job_id, self._now()),
            )
            if cur.rowcount == 1:
                self.conn.commit()
                return True
            row = self.conn.execute(
                "SELECT job_id FROM slugs WHERE slug = ?", (slug,)
            ).fetchone()
            self.conn.commit()
            return bool(job_id) and row is not None and row['job_id'] == job_id

    # ── Results ───────────────────────────────────────────────────────

    def get_result(self, result_id: str) -> SummaryRecord | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM results WHERE id = ?", (result_id,)
            ).fetchone()
        return self._row_to_result(row) if row else None

    def get_result_by_slug(self, slug: str) -> SummaryRecord | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM results WHERE slug = ?", (slug,)
            ).fetchone()
        return self._row_to_result(row) if row else None

    def list_results(self, owner: str) -> list[SummaryRecord]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM results WHERE owner = ? ORDER BY created_at DESC, rowid DESC",
                (owner,),
            ).fetchall()
        return [self._row_to_result(r) for r in rows]

    def append_chat(self, result_id: str, speaker: str, text: str) -> bool:
        with self._lock:
            row = self.conn.execute(
                "SELECT chats FROM results WHERE id = ?", (result_id,)
            ).fetchone()
            if not row:
                return False
            chats = json.loads(row['chats'] or "[]")
            chats.append({'speaker': speaker, 'text': text, 'time': self._now()})
            self.conn.execute(
                "UPDATE results SET chats = ? WHERE id = ?",
                (json.dumps(chats), result_id),
            )
            self.conn.commit()
            return True

    # ── Quota ledger ──────────────────────────────────────────────────

    def increment_usage(self, owner: str, day: str | None = None) -> int:
        day = day or self._today()
        with self._lock:
            self.conn.execute(
                """INSERT INTO usage (owner, day, used) VALUES (?, ?, 1)
                   ON CONFLICT(owner, day) DO UPDATE SET used = used + 1""",
                (owner, day),
            )
            self.conn.commit()
        return self.get_usage(owner, day)

    def decrement_usage(self, owner: str, day: str | None = None) -> int:
        day = day or self._today()
        with self._lock:
            self.conn.execute(
                "UPDATE usage SET used = MAX(used - 1, 0) WHERE owner = ? AND day = ?",
                (owner, day),
            )
            self.conn.commit()
        return self.get_usage(owner, day)

    def get_usage(self, owner: str, day: str | None = None) -> int:
        day = day or self._today()
        with self._lock:
            row = self.conn.execute(
                "SELECT used FROM usage WHERE owner = ? AND day = ?", (owner, day)
            ).fetchone()
        return row['used'] if row else 0
