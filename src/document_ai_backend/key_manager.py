import hashlib
import logging
import secrets
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple
from uuid import uuid4

logger = logging.getLogger(__name__)

# Owner value reserved for guest jobs; no principal may claim it.
RESERVED_OWNERS = frozenset({"guest"})


@dataclass
class APIKeyRecord:
    id: str
    owner: str
    prefix: str
    is_active: bool
    created_at: str


class KeyManager:
    """
    Directory of API keys, each bound to a stable owner id.

    Only SHA-256 hashes of keys are stored; the raw key is returned once,
    at creation.
    """

    def __init__(self, db_path: str = "data/api_keys.db"):
        self.db_path = Path(db_path)
        self._init_db()

    @contextmanager
    def _get_conn(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        """Initialize the database schema if it doesn't exist."""
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS api_keys (
                    id TEXT PRIMARY KEY,
                    key_hash TEXT UNIQUE NOT NULL,
                    prefix TEXT NOT NULL,
                    owner TEXT NOT NULL,
                    is_active BOOLEAN DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            """)

    def _hash_key(self, key: str) -> str:
        """SHA-256 hash of the API key."""
        return hashlib.sha256(key.encode()).hexdigest()

    def create_key(self, owner: str) -> Tuple[str, dict]:
        """
        Generate a new API key for an owner.

        Returns:
            Tuple[str, dict]: (raw_api_key, key_record_dict)
            WARNING: raw_api_key is shown ONLY ONCE here.

        Raises:
            ValueError: If the owner is blank or reserved.
        """
        owner = owner.strip()
        if not owner or owner in RESERVED_OWNERS:
            raise ValueError(f"Invalid key owner: {owner!r}")

        raw_key = f"daj_{secrets.token_urlsafe(32)}"
        key_hash = self._hash_key(raw_key)
        prefix = raw_key[:8]
        key_id = str(uuid4())
        created_at = datetime.now(timezone.utc).isoformat()

        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO api_keys (id, key_hash, prefix, owner, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (key_id, key_hash, prefix, owner, created_at))

        logger.info(f"Issued API key {key_id} for owner {owner}")
        record = {
            "id": key_id,
            "prefix": prefix,
            "owner": owner,
            "is_active": True,
            "created_at": created_at,
        }
        return raw_key, record

    def validate_key(self, key: str) -> Optional[APIKeyRecord]:
        """
        Validate an API key and return its record if valid.
        """
        if not key:
            return None

        key_hash = self._hash_key(key)

        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM api_keys WHERE key_hash = ? AND is_active = 1",
                (key_hash,)
            ).fetchone()

        if row:
            return APIKeyRecord(
                id=row["id"],
                owner=row["owner"],
                prefix=row["prefix"],
                is_active=bool(row["is_active"]),
                created_at=row["created_at"],
            )
        return None

    def list_keys(self) -> list[dict]:
        """List all API keys without their hashes (admin only)."""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT id, prefix, owner, is_active, created_at FROM api_keys ORDER BY created_at DESC"
            ).fetchall()
        return [{**dict(row), "is_active": bool(row["is_active"])} for row in rows]

    def revoke_key(self, key_id: str) -> bool:
        """Revoke a key by ID."""
        with self._get_conn() as conn:
            cursor = conn.execute("UPDATE api_keys SET is_active = 0 WHERE id = ?", (key_id,))
            revoked = cursor.rowcount > 0
        if revoked:
            logger.info(f"Revoked API key {key_id}")
        return revoked
