# chat/sessions.py
"""
Chat session reconstruction.

The chat_history table is a flat log of question/answer rows. Newer rows
carry an explicit chat_session_id; legacy rows do not. Sessions are never
stored: they are rebuilt on every read from whatever rows the store returns.

Grouping rules, in order of precedence:
  1. rows sharing a chat_session_id belong together, however far apart;
  2. a "__new_chat_session__" marker row starts a session;
  3. rows without an id are clustered per document by time proximity
     (one hour by default) around an anchor row.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Any, Iterable, List, Mapping, Optional, Set, Union

from django.conf import settings
from django.utils.dateparse import parse_datetime

from .exceptions import InvalidEntry, SessionNotFound

log = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=dt_timezone.utc)

NEW_SESSION_MARKER = "__new_chat_session__"
NEW_SESSION_ANSWER = "New chat session started"
EMPTY_SESSION_PREVIEW = "New chat"
DEFAULT_DOC_NAME = "Untitled Document"
DEFAULT_DOC_TYPE = "unknown"
DEFAULT_WINDOW = timedelta(hours=1)

REQUIRED_FIELDS = ("id", "user_id", "doc_id", "question", "answer", "created_at")


# =========================
# Rows
# =========================

def parse_timestamp(value: Any) -> datetime:
    """
    Best-effort conversion to an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings and epoch numbers. Anything that
    cannot be read becomes the epoch so it sorts as the oldest row.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool) or value is None:
        return EPOCH
    elif isinstance(value, (int, float)):
        seconds = float(value)
        # milliseconds (JavaScript Date.getTime())
        if abs(seconds) > 1e11:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=dt_timezone.utc)
        except (OverflowError, OSError, ValueError):
            return EPOCH
    elif isinstance(value, str):
        try:
            dt = parse_datetime(value.strip())
        except ValueError:
            dt = None
        if dt is None:
            return EPOCH
    else:
        return EPOCH

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=dt_timezone.utc)
    return dt.astimezone(dt_timezone.utc)


@dataclass(frozen=True)
class ChatLogEntry:
    """One immutable row of the chat log."""
    id: str
    user_id: str
    doc_id: str
    question: str
    answer: str
    created_at: datetime
    doc_name: str = ""
    doc_type: str = ""
    chat_session_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ChatLogEntry":
        """Build an entry from a snake_case row, rejecting incomplete ones."""
        missing = [name for name in REQUIRED_FIELDS if row.get(name) is None]
        missing += [
            name for name in ("id", "user_id", "doc_id")
            if name not in missing and str(row.get(name)).strip() == ""
        ]
        if missing:
            raise InvalidEntry(
                f"chat log row {row.get('id')!r} is missing: {', '.join(missing)}"
            )

        session_id = row.get("chat_session_id")
        session_id = str(session_id) if session_id not in (None, "") else None

        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            doc_id=str(row["doc_id"]),
            question=str(row["question"]),
            answer=str(row["answer"]),
            created_at=parse_timestamp(row["created_at"]),
            doc_name=str(row.get("doc_name") or ""),
            doc_type=str(row.get("doc_type") or ""),
            chat_session_id=session_id,
        )

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "doc_id": self.doc_id,
            "doc_name": self.doc_name,
            "doc_type": self.doc_type,
            "question": self.question,
            "answer": self.answer,
            "chat_session_id": self.chat_session_id,
            "created_at": self.created_at.isoformat(),
        }


def newest_first(entry: ChatLogEntry):
    return (-entry.created_at.timestamp(), entry.id)


def oldest_first(entry: ChatLogEntry):
    return (entry.created_at.timestamp(), entry.id)


# =========================
# Sessions
# =========================

@dataclass
class ChatSession:
    """A derived conversation: one anchor row plus its ordered messages."""
    session_key: str
    anchor: ChatLogEntry
    messages: List[ChatLogEntry] = field(default_factory=list)
    anchor_is_marker: bool = False
    # extra marker rows that repeated the anchor's chat_session_id
    absorbed: List[ChatLogEntry] = field(default_factory=list)

    @property
    def doc_id(self) -> str:
        return self.anchor.doc_id

    @property
    def doc_name(self) -> str:
        return self.anchor.doc_name or DEFAULT_DOC_NAME

    @property
    def doc_type(self) -> str:
        return self.anchor.doc_type or DEFAULT_DOC_TYPE

    @property
    def created_at(self) -> datetime:
        return self.anchor.created_at

    @property
    def chat_session_id(self) -> Optional[str]:
        return self.anchor.chat_session_id

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def last_message(self) -> str:
        if not self.messages:
            return EMPTY_SESSION_PREVIEW
        return self.messages[-1].question

    @property
    def transcript(self) -> List[ChatLogEntry]:
        """Every real question/answer pair, the orphan anchor included."""
        rows = list(self.messages)
        if not self.anchor_is_marker and all(m.id != self.anchor.id for m in rows):
            rows.append(self.anchor)
        return sorted(rows, key=oldest_first)

    @property
    def entry_ids(self) -> Set[str]:
        ids = {self.anchor.id}
        ids.update(m.id for m in self.messages)
        ids.update(a.id for a in self.absorbed)
        return ids


# =========================
# Clusterer
# =========================

EntryLike = Union[ChatLogEntry, Mapping[str, Any]]


class SessionClusterer:
    """
    Partitions chat log rows into sessions.

    Pure and synchronous: it works on the snapshot it is given and never
    touches the store.
    """

    def __init__(self, window: Union[timedelta, int, float, None] = None, marker: Optional[str] = None):
        if window is None:
            window = getattr(settings, "CHAT_SESSION_WINDOW_SECONDS", DEFAULT_WINDOW.total_seconds())
        if not isinstance(window, timedelta):
            window = timedelta(seconds=float(window))
        if window < timedelta(0):
            raise ValueError("session window must not be negative")
        self.window = window
        self.marker = marker or getattr(settings, "CHAT_NEW_SESSION_MARKER", NEW_SESSION_MARKER)

    def is_marker(self, entry: ChatLogEntry) -> bool:
        return entry.question == self.marker

    def normalize(self, entries: Iterable[EntryLike]) -> List[ChatLogEntry]:
        rows: List[ChatLogEntry] = []
        seen: Set[str] = set()
        for item in entries:
            # instances go through the same checks as raw rows
            row = asdict(item) if isinstance(item, ChatLogEntry) else item
            entry = ChatLogEntry.from_row(row)
            if entry.id in seen:
                raise InvalidEntry(f"duplicate chat log id {entry.id!r}")
            seen.add(entry.id)
            rows.append(entry)
        return rows

    def _within_window(self, anchor: ChatLogEntry, candidates: Iterable[ChatLogEntry], processed: Set[str]) -> List[ChatLogEntry]:
        # Rows with a different explicit id are never pulled in by proximity.
        out = []
        for e in candidates:
            if e.id in processed or e.id == anchor.id or self.is_marker(e):
                continue
            if e.doc_id != anchor.doc_id:
                continue
            if e.chat_session_id is not None and e.chat_session_id != anchor.chat_session_id:
                continue
            if abs(e.created_at - anchor.created_at) <= self.window:
                out.append(e)
        return out

    def _from_marker(self, anchor: ChatLogEntry, ordered: List[ChatLogEntry], processed: Set[str]) -> ChatSession:
        processed.add(anchor.id)
        absorbed: List[ChatLogEntry] = []

        if anchor.chat_session_id:
            members = [
                e for e in ordered
                if e.id not in processed and e.chat_session_id == anchor.chat_session_id
            ]
            messages = [e for e in members if not self.is_marker(e)]
            absorbed = [e for e in members if self.is_marker(e)]
        else:
            members = messages = self._within_window(anchor, ordered, processed)

        processed.update(e.id for e in members)
        return ChatSession(
            session_key=anchor.chat_session_id or anchor.id,
            anchor=anchor,
            messages=sorted(messages, key=oldest_first),
            anchor_is_marker=True,
            absorbed=sorted(absorbed, key=oldest_first),
        )

    def _from_orphan(self, anchor: ChatLogEntry, ordered: List[ChatLogEntry], processed: Set[str]) -> ChatSession:
        processed.add(anchor.id)
        messages = self._within_window(anchor, ordered, processed)

        if anchor.chat_session_id:
            taken = {e.id for e in messages}
            messages += [
                e for e in ordered
                if e.id not in processed
                and e.id not in taken
                and not self.is_marker(e)
                and e.chat_session_id == anchor.chat_session_id
            ]

        processed.update(e.id for e in messages)
        return ChatSession(
            session_key=anchor.chat_session_id or anchor.id,
            anchor=anchor,
            messages=sorted(messages, key=oldest_first),
        )

    def group_into_sessions(self, entries: Iterable[EntryLike]) -> List[ChatSession]:
        """
        Rebuild every session contained in `entries`, newest session first.

        Rows are walked newest first. A marker row anchors a session and
        collects its chat_session_id (or, lacking one, same-document rows
        inside the window). Any other row that no marker claims becomes an
        orphan anchor and collects same-document rows inside the window.
        Each row ends up in exactly one session.
        """
        rows = self.normalize(entries)
        ordered = sorted(rows, key=newest_first)
        marked_ids = {e.chat_session_id for e in rows if self.is_marker(e) and e.chat_session_id}

        processed: Set[str] = set()
        sessions: List[ChatSession] = []

        for entry in ordered:
            if entry.id in processed:
                continue
            if self.is_marker(entry):
                sessions.append(self._from_marker(entry, ordered, processed))
            elif entry.chat_session_id is not None and entry.chat_session_id in marked_ids:
                # its marker collects it when the walk gets there
                continue
            else:
                sessions.append(self._from_orphan(entry, ordered, processed))

        sessions.sort(key=lambda s: (-s.created_at.timestamp(), s.session_key))
        log.debug("grouped %d rows into %d sessions", len(rows), len(sessions))
        return sessions

    def get_session_messages(self, session_key: str, entries: Iterable[EntryLike]) -> ChatSession:
        """
        Resolve one session by key from a candidate pool.

        The key is matched against chat_session_id first (marker rows win),
        then against row ids. Raises SessionNotFound when nothing matches.
        """
        key = str(session_key or "").strip()
        ascending = sorted(self.normalize(entries), key=oldest_first)

        anchor: Optional[ChatLogEntry] = None
        if key:
            by_session = [e for e in ascending if e.chat_session_id == key]
            if by_session:
                anchor = next((e for e in by_session if self.is_marker(e)), by_session[0])
            else:
                anchor = next((e for e in ascending if e.id == key), None)
        if anchor is None:
            raise SessionNotFound(key)

        if anchor.chat_session_id:
            messages = [
                e for e in ascending
                if e.chat_session_id == anchor.chat_session_id and not self.is_marker(e)
            ]
        else:
            messages = [
                e for e in ascending
                if not self.is_marker(e)
                and e.doc_id == anchor.doc_id
                and abs(e.created_at - anchor.created_at) <= self.window
            ]

        return ChatSession(
            session_key=anchor.chat_session_id or anchor.id,
            anchor=anchor,
            messages=messages,
            anchor_is_marker=self.is_marker(anchor),
        )


def group_into_sessions(entries: Iterable[EntryLike], **kwargs) -> List[ChatSession]:
    return SessionClusterer(**kwargs).group_into_sessions(entries)


def get_session_messages(session_key: str, entries: Iterable[EntryLike], **kwargs) -> ChatSession:
    return SessionClusterer(**kwargs).get_session_messages(session_key, entries)
