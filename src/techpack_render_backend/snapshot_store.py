"""
SQLite store for Document Snapshots.

This is the reference persistence collaborator of the rendering service: it
answers get_document_snapshot() and lets the HTTP layer store new snapshot
versions. Payloads are kept as JSON exactly as they were received.
"""

import hashlib
import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import DocumentNotFoundError
from .models import DocumentSnapshot

DEFAULT_DB_PATH = Path("data/snapshots.db")


def _content_version(payload: Mapping[str, Any]) -> str:
    """Derive a version id from the payload when the caller supplied none."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:12]


class SnapshotDatabase:
    """
    SQLite database of the latest snapshot per document.

    Thread-safe: every call opens its own connection and SQLite serialises
    writers in WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    document_id TEXT PRIMARY KEY,
                    content_version TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

    def save_snapshot(self, document_id: str, payload: Mapping[str, Any]) -> DocumentSnapshot:
        """
        Validate and store a snapshot, replacing the previous version.

        Args:
            document_id: Document the snapshot belongs to
            payload: Snapshot body; contentVersion is derived when absent

        Returns:
            The parsed snapshot as stored

        Raises:
            InvalidSnapshotError: If the payload is not a valid snapshot
        """
        body: Dict[str, Any] = {k: v for k, v in payload.items() if k not in ("documentId", "document_id")}
        if not (body.get("contentVersion") or body.get("content_version")):
            body["contentVersion"] = _content_version(body)
        body["documentId"] = document_id
        snapshot = DocumentSnapshot.from_payload(body)

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO snapshots (document_id, content_version, payload, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (document_id, snapshot.content_version, json.dumps(body, default=str), datetime.now(timezone.utc).isoformat()),
            )
        return snapshot

    def get_document_snapshot(self, document_id: str) -> DocumentSnapshot:
        """
        Load the current snapshot of a document.

        Raises:
            DocumentNotFoundError: If no snapshot is stored for the id
        """
        row = self._get_row(document_id)
        if row is None:
            raise DocumentNotFoundError(f"Document not found: {document_id}")
        return DocumentSnapshot.from_payload(json.loads(row["payload"]))

    def _get_row(self, document_id: str) -> Optional[sqlite3.Row]:
        with self._get_connection() as conn:
            return conn.execute("SELECT * FROM snapshots WHERE document_id = ?", (document_id,)).fetchone()

