"""Durable metadata store backed by SQLite."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from pathlib import Path

from tryon_render.cache.base import MetadataStore
from tryon_render.cache.stats import CacheEntry, CacheWrite

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path.home() / ".tryon-render" / "render_cache.db"

_COLUMNS = (
    "id, user_id, render_hash, storage_path, source_surface, quality, preset, view, "
    "keep_pose, use_face_refs, slot_signature, face_refs_signature, model, "
    "hit_count, last_hit_at, expires_at, created_at, updated_at"
)


class SQLiteMetadataStore(MetadataStore):
    """``render_cache`` table with a unique ``(user_id, render_hash)`` key."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._db_path = Path(db_path) if db_path else _DEFAULT_DB_PATH
        if str(self._db_path) != ":memory:":
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._create_table()

    def get(self, user_id: str, render_hash: str, now: float) -> CacheEntry | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM render_cache "
                "WHERE user_id = ? AND render_hash = ? AND expires_at > ?",
                (user_id, render_hash, now),
            ).fetchone()
        return self._row_to_entry(row) if row is not None else None

    def upsert(self, write: CacheWrite, ttl_seconds: float, now: float) -> CacheEntry:
        with self._lock:
            self._conn.execute(
                f"""INSERT INTO render_cache ({_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
                    ON CONFLICT(user_id, render_hash) DO UPDATE SET
                        storage_path = excluded.storage_path,
                        source_surface = excluded.source_surface,
                        quality = excluded.quality,
                        preset = excluded.preset,
                        view = excluded.view,
                        keep_pose = excluded.keep_pose,
                        use_face_refs = excluded.use_face_refs,
                        slot_signature = excluded.slot_signature,
                        face_refs_signature = excluded.face_refs_signature,
                        model = excluded.model,
                        expires_at = excluded.expires_at,
                        updated_at = excluded.updated_at""",
                (
                    uuid.uuid4().hex, write.user_id, write.render_hash,
                    write.storage_path, write.source_surface.value,
                    write.quality.value, write.preset, write.view.value,
                    int(write.keep_pose), int(write.use_face_refs),
                    json.dumps(write.slot_signature, sort_keys=True),
                    write.face_refs_signature, write.model,
                    now, now + ttl_seconds, now, now,
                ),
            )
            self._conn.commit()
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM render_cache WHERE user_id = ? AND render_hash = ?",
                (write.user_id, write.render_hash),
            ).fetchone()
        return self._row_to_entry(row)

    def increment_hit(self, user_id: str, render_hash: str, now: float) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE render_cache SET hit_count = hit_count + 1, last_hit_at = ? "
                "WHERE user_id = ? AND render_hash = ?",
                (now, user_id, render_hash),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def purge_expired(self, now: float) -> int:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM render_cache WHERE expires_at <= ?", (now,)
            )
            self._conn.commit()
        return cursor.rowcount

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM render_cache").fetchone()
        return row[0]

    def close(self) -> None:
        self._conn.close()

    def _create_table(self) -> None:
        with self._lock:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS render_cache (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    render_hash TEXT NOT NULL,
                    storage_path TEXT NOT NULL,
                    source_surface TEXT NOT NULL,
                    quality TEXT NOT NULL,
                    preset TEXT NOT NULL,
                    view TEXT NOT NULL,
                    keep_pose INTEGER NOT NULL DEFAULT 0,
                    use_face_refs INTEGER NOT NULL DEFAULT 1,
                    slot_signature TEXT NOT NULL,
                    face_refs_signature TEXT,
                    model TEXT NOT NULL,
                    hit_count INTEGER NOT NULL DEFAULT 0,
                    last_hit_at REAL NOT NULL,
                    expires_at REAL NOT NULL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    UNIQUE (user_id, render_hash)
                );
                CREATE INDEX IF NOT EXISTS idx_render_cache_user_expires
                    ON render_cache (user_id, expires_at);
                CREATE INDEX IF NOT EXISTS idx_render_cache_user_updated
                    ON render_cache (user_id, updated_at DESC);
            """)
            self._conn.commit()

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> CacheEntry:
        slot_signature: dict[str, str] = {}
        try:
            slot_signature = json.loads(row["slot_signature"]) if row["slot_signature"] else {}
        except (json.JSONDecodeError, TypeError):
            logger.warning("Unreadable slot_signature for render %s", row["render_hash"])

        return CacheEntry(
            id=row["id"],
            user_id=row["user_id"],
            render_hash=row["render_hash"],
            storage_path=row["storage_path"],
            source_surface=row["source_surface"],
            quality=row["quality"],
            preset=row["preset"],
            view=row["view"],
            keep_pose=bool(row["keep_pose"]),
            use_face_refs=bool(row["use_face_refs"]),
            slot_signature=slot_signature,
            face_refs_signature=row["face_refs_signature"],
            model=row["model"],
            hit_count=row["hit_count"] or 0,
            last_hit_at=row["last_hit_at"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
