from threading import Lock
from uuid import uuid4
import time
from typing import List, Optional

from workbook_tracker.services.editor import EditorSession

# Simple in-memory TTL registry of editor sessions. Not persistent; one process only.
# The lock only guards the dict and is never held across an await.

_lock = Lock()
_sessions = {}  # token -> (session, expires_at)

DEFAULT_TTL = 3600  # 1 hour


def create_session(session: EditorSession, ttl: int = DEFAULT_TTL) -> str:
    """Register an editor session and return its token."""
    token = str(uuid4())
    expires_at = time.time() + ttl
    with _lock:
        _sessions[token] = (session, expires_at)
    return token


def get_session(token: str, ttl: int = DEFAULT_TTL) -> Optional[EditorSession]:
    """Return the session if the token is valid and not expired, else None. Use extends the TTL."""
    now = time.time()
    with _lock:
        data = _sessions.get(token)
        if not data:
            return None
        session, expires_at = data
        if expires_at < now:
            # expired; the caller of pop_expired() closes it
            return None
        _sessions[token] = (session, now + ttl)
        return session


def invalidate_session(token: str) -> Optional[EditorSession]:
    """Remove the token and hand back its session so the caller can close it."""
    with _lock:
        data = _sessions.pop(token, None)
    return data[0] if data else None


def pop_expired() -> List[EditorSession]:
    now = time.time()
    with _lock:
        expired = [t for t, (_, e) in _sessions.items() if e < now]
        return [_sessions.pop(t)[0] for t in expired]


def clear() -> List[EditorSession]:
    with _lock:
        sessions = [s for s, _ in _sessions.values()]
        _sessions.clear()
    return sessions
