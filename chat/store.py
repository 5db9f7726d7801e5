# chat/store.py
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Protocol

from django.conf import settings
from django.db.models import Q
from supabase import Client, create_client

from .exceptions import InvalidEntry, StoreError
from .models import ChatHistory
from .sessions import ChatLogEntry

log = logging.getLogger(__name__)


# =========================
# Port
# =========================

class ChatLogStore(Protocol):
    """Append-only chat log. Rows come back in no guaranteed order."""

    def fetch_by_user(self, user_id: str) -> List[ChatLogEntry]: ...

    def fetch_by_document(self, doc_id: str, user_id: Optional[str] = None) -> List[ChatLogEntry]: ...

    def fetch_by_session_key(self, session_key: str) -> List[ChatLogEntry]: ...

    def append(self, entry: ChatLogEntry) -> ChatLogEntry: ...

    def delete_by_ids(self, ids: Iterable[str]) -> int: ...


def as_uuid(value: Any) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        return None


# =========================
# Django ORM adapter
# =========================

class DjangoChatLogStore:
    """Adapter over chat.models.ChatHistory."""

    def _entry(self, obj: ChatHistory) -> ChatLogEntry:
        return ChatLogEntry.from_row({
            "id": str(obj.id),
            "user_id": obj.user_id,
            "doc_id": obj.doc_id,
            "doc_name": obj.doc_name,
            "doc_type": obj.doc_type,
            "question": obj.question,
            "answer": obj.answer,
            "chat_session_id": obj.chat_session_id,
            "created_at": obj.created_at,
        })

    def fetch_by_user(self, user_id: str) -> List[ChatLogEntry]:
        qs = ChatHistory.objects.filter(user_id=user_id).order_by("-created_at")
        return [self._entry(o) for o in qs]

    def fetch_by_document(self, doc_id: str, user_id: Optional[str] = None) -> List[ChatLogEntry]:
        qs = ChatHistory.objects.filter(doc_id=doc_id)
        if user_id:
            qs = qs.filter(user_id=user_id)
        return [self._entry(o) for o in qs.order_by("created_at")]

    def fetch_by_session_key(self, session_key: str) -> List[ChatLogEntry]:
        cond = Q(chat_session_id=session_key)
        pk = as_uuid(session_key)
        if pk is not None:
            cond |= Q(id=pk)
        return [self._entry(o) for o in ChatHistory.objects.filter(cond).order_by("created_at")]

    def append(self, entry: ChatLogEntry) -> ChatLogEntry:
        pk = as_uuid(entry.id)
        if pk is None:
            raise InvalidEntry(f"chat log id must be a UUID, got {entry.id!r}")
        obj = ChatHistory.objects.create(
            id=pk,
            user_id=entry.user_id,
            doc_id=entry.doc_id,
            doc_name=entry.doc_name,
            doc_type=entry.doc_type,
            question=entry.question,
            answer=entry.answer,
            chat_session_id=entry.chat_session_id,
            created_at=entry.created_at,
        )
        return self._entry(obj)

    def delete_by_ids(self, ids: Iterable[str]) -> int:
        pks = [pk for pk in (as_uuid(i) for i in ids) if pk is not None]
        if not pks:
            return 0
        deleted, _ = ChatHistory.objects.filter(id__in=pks).delete()
        return deleted


# =========================
# Supabase adapter
# =========================

class SupabaseTable:
    """Runs supabase-py queries against one table and unwraps the rows."""

    def __init__(self, client: Client, table: str):
        self.client = client
        self.table = table

    def _run(self, action: str, query) -> List[Dict[str, Any]]:
        try:
            res = query.execute()
        except Exception as e:
            log.error("Supabase %s on %s failed: %s", action, self.table, e)
            raise StoreError(f"supabase {action} failed: {e}") from e

        # supabase-py returns an APIResponse; older clients returned dicts
        if isinstance(res, dict):
            error = res.get("error")
            data = res.get("data")
        else:
            error = getattr(res, "error", None)
            data = getattr(res, "data", None)
        if error:
            log.error("Supabase %s on %s returned error: %r", action, self.table, error)
            raise StoreError(f"supabase {action} failed: {error}")
        return list(data or [])


class SupabaseChatLogStore(SupabaseTable):
    """Adapter over the hosted `chat_history` table."""

    def __init__(self, client: Client, table: str = "chat_history"):
        super().__init__(client, table)

    def _entries(self, rows: List[Dict[str, Any]]) -> List[ChatLogEntry]:
        return [ChatLogEntry.from_row(r) for r in rows]

    def fetch_by_user(self, user_id: str) -> List[ChatLogEntry]:
        q = (
            self.client.table(self.table)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
        )
        return self._entries(self._run("fetch_by_user", q))

    def fetch_by_document(self, doc_id: str, user_id: Optional[str] = None) -> List[ChatLogEntry]:
        q = self.client.table(self.table).select("*").eq("doc_id", doc_id)
        if user_id:
            q = q.eq("user_id", user_id)
        return self._entries(self._run("fetch_by_document", q.order("created_at")))

    def fetch_by_session_key(self, session_key: str) -> List[ChatLogEntry]:
        q = self.client.table(self.table).select("*").eq("chat_session_id", session_key)
        rows = self._run("fetch_by_session_key", q.order("created_at"))
        # the id column is a uuid; only query it with something uuid-shaped
        if not rows and as_uuid(session_key) is not None:
            q = self.client.table(self.table).select("*").eq("id", session_key)
            rows = self._run("fetch_by_session_key", q)
        return self._entries(rows)

    def append(self, entry: ChatLogEntry) -> ChatLogEntry:
        rows = self._run("append", self.client.table(self.table).insert(entry.to_row()))
        return ChatLogEntry.from_row(rows[0]) if rows else entry

    def delete_by_ids(self, ids: Iterable[str]) -> int:
        ids = [str(i) for i in ids if as_uuid(i) is not None]
        if not ids:
            return 0
        rows = self._run("delete_by_ids", self.client.table(self.table).delete().in_("id", ids))
        return len(rows)


def supabase_client() -> Optional[Client]:
    """A supabase-py client when credentials are configured, else None."""
    url = getattr(settings, "SUPABASE_URL", None)
    key = getattr(settings, "SUPABASE_SERVICE_ROLE_KEY", None)
    if not (url and key):
        return None
    try:
        return create_client(url, key)
    except Exception:
        log.exception("Could not create Supabase client; using the local database")
        return None


def get_store() -> ChatLogStore:
    """Supabase when credentials are configured, otherwise the local database."""
    client = supabase_client()
    if client is not None:
        return SupabaseChatLogStore(client, table=getattr(settings, "SUPABASE_CHAT_TABLE", "chat_history"))
    return DjangoChatLogStore()
