"""Shopper session storage for merchstore."""

import fcntl
import json
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import InvalidSchemaVersionError, ValidationError
from .models import ShopperSession, _utc_now

SCHEMA_VERSION = 1
SESSIONS_DIR = "sessions"

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_session_id(session_id: str) -> str:
    """
    Check a client-supplied session ID.

    Raises:
        ValidationError: If the ID is empty or contains unsafe characters.
    """
    if not session_id or not _SESSION_ID_RE.match(session_id):
        raise ValidationError(f"Invalid session id: {session_id!r}", field="session_id")
    return session_id


class SessionStore:
    """Manages reading and writing per-session cart and checkout state."""

    def __init__(self, data_dir: Path):
        """
        Initialize SessionStore.

        Args:
            data_dir: Base data directory; sessions live in a subdirectory.
        """
        self.data_dir = Path(data_dir)
        self.sessions_dir = self.data_dir / SESSIONS_DIR

    def _path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{validate_session_id(session_id)}.json"

    @contextmanager
    def lock(self, session_id: str) -> Iterator[None]:
        """Hold an exclusive lock on one session across a load-check-save sequence."""
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        lock_path = self.sessions_dir / f".{validate_session_id(session_id)}.lock"
        with open(lock_path, "w") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def exists(self, session_id: str) -> bool:
        return self._path(session_id).exists()

    def load(self, session_id: str) -> ShopperSession:
        """
        Load a session, or return a new empty one on first visit.

        Raises:
            InvalidSchemaVersionError: If the stored schema version is unsupported.
        """
        path = self._path(session_id)
        if not path.exists():
            return ShopperSession(session_id=session_id)

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        version = data.get("schema_version", 0)
        if version != SCHEMA_VERSION:
            raise InvalidSchemaVersionError(version, SCHEMA_VERSION)

        return ShopperSession.from_dict(data)

    def save(self, session: ShopperSession) -> None:
        """
        Save a session to disk atomically.

        Uses write-to-temp-then-rename for atomicity.
        """
        path = self._path(session.session_id)
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

        session.updated_at = _utc_now()
        data = {"schema_version": SCHEMA_VERSION, **session.to_dict()}

        fd, temp_path = tempfile.mkstemp(
            dir=self.sessions_dir, prefix=".session_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(temp_path, path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def delete(self, session_id: str) -> bool:
        """Delete a stored session. Returns True if one existed."""
        path = self._path(session_id)
        if not path.exists():
            return False
        path.unlink()
        return True
