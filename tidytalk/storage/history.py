"""SQLite database for transcript history."""

import sqlite3
import threading
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_ERROR = "error"


class TranscriptNotFoundError(LookupError):
    """Raised when a transcript id does not exist."""
    pass


@dataclass
class TranscriptRecord:
    """A single transcription event."""
    raw_text: str
    final_text: str
    status: str = STATUS_OK
    created_at: Optional[str] = None
    audio_path: Optional[str] = None
    duration_ms: Optional[int] = None
    model: Optional[str] = None
    id: Optional[int] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.now(timezone.utc).isoformat()

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TranscriptRecord":
        return cls(
            id=row["id"],
            created_at=row["created_at"],
            audio_path=row["audio_path"],
            raw_text=row["raw_text"],
            final_text=row["final_text"],
            duration_ms=row["duration_ms"],
            model=row["model"],
            status=row["status"],
        )


class TranscriptStore:
    """SQLite store for transcript history.

    Thread-safe: all operations are protected by a lock.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get database connection, creating if needed."""
        # Note: caller must hold _lock
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_db(self):
        """Initialize database schema."""
        with self._lock:
            conn = self._get_conn()
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS transcripts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT,
                    audio_path TEXT,
                    raw_text TEXT,
                    final_text TEXT,
                    duration_ms INTEGER,
                    model TEXT,
                    status TEXT
                );
            """)
            conn.commit()
        logger.debug(f"Database initialized: {self.db_path}")

    def insert_transcript(self, record: TranscriptRecord) -> int:
        """Insert a transcript and return its row id."""
        with self._lock:
            conn = self._get_conn()
            cursor = conn.execute(
                """
                INSERT INTO transcripts
                    (created_at, audio_path, raw_text, final_text, duration_ms, model, status)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.created_at,
                    record.audio_path,
                    record.raw_text,
                    record.final_text,
                    record.duration_ms,
                    record.model,
                    record.status,
                ),
            )
            conn.commit()
            record.id = cursor.lastrowid

        logger.info(f"Inserted transcript id={record.id}")
        return record.id

    def get_history(self, limit: int = 50) -> List[TranscriptRecord]:
        """Return the most recent transcripts, latest first."""
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT * FROM transcripts ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [TranscriptRecord.from_row(row) for row in rows]

    def get_transcript(self, transcript_id: int) -> Optional[TranscriptRecord]:
        """Return a transcript by id, or None if it does not exist."""
        with self._lock:
            row = self._get_conn().execute(
                "SELECT * FROM transcripts WHERE id = ?",
                (transcript_id,),
            ).fetchone()
        if row is None:
            logger.debug(f"Transcript id={transcript_id} not found")
            return None
        return TranscriptRecord.from_row(row)

    def require_transcript(self, transcript_id: int) -> TranscriptRecord:
        """Like get_transcript, but raise TranscriptNotFoundError if missing."""
        record = self.get_transcript(transcript_id)
        if record is None:
            raise TranscriptNotFoundError(f"Transcript id={transcript_id} not found")
        return record

    def update_final_text(self, transcript_id: int, final_text: str) -> bool:
        """Replace final_text in place. Returns False if the id is unknown."""
        with self._lock:
            conn = self._get_conn()
            cursor = conn.execute(
                "UPDATE transcripts SET final_text = ? WHERE id = ?",
                (final_text, transcript_id),
            )
            conn.commit()
            updated = cursor.rowcount > 0

        if updated:
            logger.info(f"Updated final_text for transcript id={transcript_id}")
        else:
            logger.debug(f"Transcript id={transcript_id} not found for update")
        return updated

    def delete_transcript(self, transcript_id: int) -> Optional[str]:
        """Delete a transcript and return its audio path for file cleanup.

        Returns None if the id does not exist or the row had no audio.
        """
        with self._lock:
            conn = self._get_conn()
            row = conn.execute(
                "SELECT audio_path FROM transcripts WHERE id = ?",
                (transcript_id,),
            ).fetchone()
            if row is None:
                logger.debug(f"Transcript id={transcript_id} not found")
                return None
            conn.execute("DELETE FROM transcripts WHERE id = ?", (transcript_id,))
            conn.commit()

        logger.info(f"Deleted transcript id={transcript_id}")
        return row["audio_path"]

    def count(self) -> int:
        with self._lock:
            return self._get_conn().execute("SELECT COUNT(*) FROM transcripts").fetchone()[0]

    def close(self):
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "TranscriptStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
