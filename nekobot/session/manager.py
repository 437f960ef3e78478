"""Session management for interactive conversations."""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from loguru import logger

from nekobot.utils.helpers import atomic_write_text, ensure_dir, safe_filename


@dataclass
class Session:
    """
    A conversation session.

    ``origin`` is the ``channel:chat_id`` the conversation came from; replies
    go there, and it is the default announce target for jobs the agent
    creates during the conversation.
    """

    key: str  # channel:chat_id
    origin: str | None = None
    messages: list[dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    metadata: dict[str, Any] = field(default_factory=dict)

    def add_message(self, role: str, content: str, **kwargs: Any) -> None:
        """Add a message to the session."""
        self.messages.append({
            "role": role,
            "content": content,
            "timestamp": datetime.now().isoformat(),
            **kwargs,
        })
        self.updated_at = datetime.now()

    def get_history(self, max_messages: int = 40) -> list[dict[str, Any]]:
        """Recent messages in LLM format (role and content only)."""
        if max_messages <= 0:
            return []
        recent = self.messages[-max_messages:]
        return [{"role": m["role"], "content": m["content"]} for m in recent]

    def clear(self) -> None:
        """Clear all messages and the working directory of the session."""
        self.messages = []
        self.metadata.pop("cwd", None)
        self.updated_at = datetime.now()


class SessionManager:
    """
    Keeps sessions in memory and persists them as JSONL files.

    The first line of each file is a metadata record; every following line
    is one message. Files are rewritten atomically.
    """

    def __init__(self, sessions_dir: Path, idle_timeout_minutes: int = 720):
        self.sessions_dir = ensure_dir(sessions_dir)
        self.idle_timeout = timedelta(minutes=idle_timeout_minutes)
        self._cache: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_session_path(self, key: str) -> Path:
        safe_key = safe_filename(key.replace(":", "_"))
        return self.sessions_dir / f"{safe_key}.jsonl"

    def lock(self, key: str) -> asyncio.Lock:
        """Per-session lock; one turn at a time per conversation."""
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def get_or_create(self, key: str, origin: str | None = None) -> Session:
        """
        Get an existing session or create a new one.

        Args:
            key: Session key (usually channel:chat_id).
            origin: Delivery reference, defaults to the key itself.
        """
        session = self._cache.get(key)
        if session is None:
            session = self._load(key) or Session(key=key)
            self._cache[key] = session
        if origin:
            session.origin = origin
        elif not session.origin:
            session.origin = key
        return session

    def _load(self, key: str) -> Session | None:
        """Load a session from disk. A corrupt file is moved aside, not overwritten."""
        path = self._get_session_path(key)
        if not path.exists():
            return None

        try:
            messages = []
            meta: dict[str, Any] = {}
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    data = json.loads(line)
                    if data.get("_type") == "metadata":
                        meta = data
                    else:
                        messages.append(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            aside = path.with_suffix(".jsonl.corrupt")
            path.replace(aside)
            logger.warning(f"Session {key} unreadable ({e}); moved to {aside.name}, starting fresh")
            return None

        return Session(
            key=key,
            origin=meta.get("origin"),
            messages=messages,
            created_at=_parse_dt(meta.get("created_at")),
            updated_at=_parse_dt(meta.get("updated_at")),
            metadata=meta.get("metadata", {}),
        )

    def save(self, session: Session) -> None:
        """Save a session to disk."""
        lines = [json.dumps({
            "_type": "metadata",
            "key": session.key,
            "origin": session.origin,
            "created_at": session.created_at.isoformat(),
            "updated_at": session.updated_at.isoformat(),
            "metadata": session.metadata,
        }, ensure_ascii=False)]
        lines.extend(json.dumps(msg, ensure_ascii=False) for msg in session.messages)
        atomic_write_text(self._get_session_path(session.key), "\n".join(lines) + "\n")
        self._cache[session.key] = session

    def clear(self, key: str) -> Session:
        """Drop the conversation history but keep the session and its origin."""
        session = self.get_or_create(key)
        session.clear()
        self.save(session)
        logger.info(f"Session {key} cleared")
        return session

    def delete(self, key: str) -> bool:
        """Delete a session. Returns True if a file was removed."""
        self._cache.pop(key, None)
        self._locks.pop(key, None)
        path = self._get_session_path(key)
        if path.exists():
            path.unlink()
            return True
        return False

    def evict_idle(self, now: datetime | None = None) -> list[str]:
        """Drop sessions idle longer than the timeout from memory (they stay on disk)."""
        now = now or datetime.now()
        evicted = []
        for key, session in list(self._cache.items()):
            lock = self._locks.get(key)
            if lock is not None and lock.locked():
                continue
            if now - session.updated_at > self.idle_timeout:
                self._cache.pop(key, None)
                self._locks.pop(key, None)
                evicted.append(key)
        if evicted:
            logger.debug(f"Evicted {len(evicted)} idle session(s)")
        return evicted

    def list_sessions(self) -> list[dict[str, Any]]:
        """List all sessions on disk, most recently active first."""
        sessions = []
        for path in self.sessions_dir.glob("*.jsonl"):
            try:
                with open(path, encoding="utf-8") as f:
                    data = json.loads(f.readline() or "{}")
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Skipping unreadable session file {path.name}: {e}")
                continue
            if data.get("_type") != "metadata":
                continue
            sessions.append({
                "key": data.get("key") or path.stem,
                "origin": data.get("origin"),
                "created_at": data.get("created_at"),
                "updated_at": data.get("updated_at"),
                "path": str(path),
            })
        return sorted(sessions, key=lambda x: x.get("updated_at") or "", reverse=True)

    @property
    def active_keys(self) -> list[str]:
        return list(self._cache)


def _parse_dt(value: str | None) -> datetime:
    if value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
    return datetime.now()
