# chat/service.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional

from django.utils import timezone

from .documents import DocumentRecord, DocumentStore, get_document_store, search_lines
from .exceptions import DocumentNotFound, InvalidEntry, SessionNotFound
from .formatting import format_history_text, format_point_wise
from .guardrails import run_with_guardrails
from .llm import DocumentAnswerer
from .sessions import (
    DEFAULT_DOC_NAME,
    DEFAULT_DOC_TYPE,
    NEW_SESSION_ANSWER,
    ChatLogEntry,
    ChatSession,
    SessionClusterer,
    newest_first,
    oldest_first,
)
from .store import ChatLogStore, get_store

log = logging.getLogger(__name__)

ANONYMOUS_USER = "anonymous"


def _require(**values: Any) -> None:
    missing = [name for name, v in values.items() if v is None or str(v).strip() == ""]
    if missing:
        raise InvalidEntry(f"missing required fields: {', '.join(missing)}")


# =========================
# Application service
# =========================

@dataclass
class ChatHistoryService:
    """
    Reads and writes the chat log for the HTTP layer.

    Depends on a ChatLogStore, a SessionClusterer and a DocumentAnswerer,
    all injectable so tests can swap any of them.
    """
    store: ChatLogStore
    clusterer: SessionClusterer = field(default_factory=SessionClusterer)
    answerer: DocumentAnswerer = field(default_factory=DocumentAnswerer)

    # ---- sessions (derived views) ----

    def list_sessions(self, user_id: str) -> List[ChatSession]:
        _require(user_id=user_id)
        rows = self.store.fetch_by_user(user_id)
        sessions = self.clusterer.group_into_sessions(rows)
        log.info("Found %d chat sessions for user %s", len(sessions), user_id)
        return sessions

    def session_transcript(self, session_key: str) -> ChatSession:
        """
        Load one session. Explicit sessions are resolved from their own rows;
        inferred ones need every row of the anchor's document to apply the
        time window.
        """
        _require(session_key=session_key)
        candidates = self.store.fetch_by_session_key(session_key)
        if not candidates:
            raise SessionNotFound(session_key)

        anchor = self.clusterer.get_session_messages(session_key, candidates).anchor

        if anchor.chat_session_id:
            if anchor.chat_session_id != session_key:
                candidates = self.store.fetch_by_session_key(anchor.chat_session_id)
            session = self.clusterer.get_session_messages(anchor.chat_session_id, candidates)
        else:
            pool = self.store.fetch_by_document(anchor.doc_id, user_id=anchor.user_id)
            session = self.clusterer.get_session_messages(anchor.id, pool)

        log.info("Found %d messages for session %s", session.message_count, session_key)
        return session

    # ---- writes ----

    def start_session(
        self,
        user_id: str,
        doc_id: str,
        doc_name: Optional[str] = None,
        doc_type: Optional[str] = None,
    ) -> ChatLogEntry:
        """Append the marker row that opens a new explicit session."""
        _require(user_id=user_id, doc_id=doc_id)
        entry = ChatLogEntry(
            id=str(uuid.uuid4()),
            user_id=str(user_id),
            doc_id=str(doc_id),
            doc_name=doc_name or DEFAULT_DOC_NAME,
            doc_type=doc_type or DEFAULT_DOC_TYPE,
            question=self.clusterer.marker,
            answer=NEW_SESSION_ANSWER,
            chat_session_id=str(uuid.uuid4()),
            created_at=timezone.now(),
        )
        return self.store.append(entry)

    def save_chat(
        self,
        user_id: str,
        doc_id: str,
        question: str,
        answer: str,
        doc_name: Optional[str] = None,
        doc_type: Optional[str] = None,
        chat_session_id: Optional[str] = None,
    ) -> ChatLogEntry:
        _require(user_id=user_id, doc_id=doc_id, question=question, answer=answer)
        if question == self.clusterer.marker:
            raise InvalidEntry("question must not be the new-session marker")
        entry = ChatLogEntry(
            id=str(uuid.uuid4()),
            user_id=str(user_id),
            doc_id=str(doc_id),
            doc_name=doc_name or "",
            doc_type=doc_type or "",
            question=question,
            answer=answer,
            chat_session_id=chat_session_id or None,
            created_at=timezone.now(),
        )
        return self.store.append(entry)

    def ask(
        self,
        document,
        question: str,
        user_id: Optional[str] = None,
        chat_session_id: Optional[str] = None,
    ) -> ChatLogEntry:
        """
        Answer `question` about `document` and log the exchange.

        A missing chat_session_id starts a fresh explicit session, so the
        returned row always carries one.
        """
        _require(question=question)
        text = question.strip()
        raw = run_with_guardrails(text, lambda q: self.answerer.answer(document, q))
        return self.save_chat(
            user_id=user_id or ANONYMOUS_USER,
            doc_id=str(document.id),
            doc_name=document.filename,
            doc_type=document.type,
            question=text,
            answer=format_point_wise(raw),
            chat_session_id=chat_session_id or str(uuid.uuid4()),
        )

    def delete_entries(self, ids: Iterable[str]) -> int:
        if isinstance(ids, (str, bytes)) or not ids:
            raise InvalidEntry("Chat IDs are required")
        ids = [str(i) for i in ids]
        deleted = self.store.delete_by_ids(ids)
        log.info("Deleted %d of %d requested chat rows", deleted, len(ids))
        return deleted

    # ---- flat history ----

    def user_history(self, user_id: str) -> List[ChatLogEntry]:
        _require(user_id=user_id)
        rows = [e for e in self.store.fetch_by_user(user_id) if not self.clusterer.is_marker(e)]
        return [
            replace(e, question=format_history_text(e.question), answer=format_history_text(e.answer))
            for e in sorted(rows, key=newest_first)
        ]

    def document_history(self, user_id: str, doc_id: str) -> List[ChatLogEntry]:
        _require(user_id=user_id, doc_id=doc_id)
        rows = self.store.fetch_by_document(doc_id, user_id=user_id)
        return sorted((e for e in rows if not self.clusterer.is_marker(e)), key=oldest_first)


def get_service() -> ChatHistoryService:
    return ChatHistoryService(store=get_store())


# =========================
# Documents
# =========================

@dataclass
class DocumentService:
    """Stored document text: upsert, lookup, delete and line search."""
    store: DocumentStore

    def get(self, doc_id: str) -> DocumentRecord:
        record = self.store.get(doc_id) if doc_id else None
        if record is None:
            raise DocumentNotFound(doc_id)
        return record

    def store_document(self, doc_id: str, content: str, **fields: Any) -> DocumentRecord:
        _require(doc_id=doc_id, content=content)
        return self.store.upsert(str(doc_id), content, **fields)

    def delete(self, doc_id: str) -> None:
        if not doc_id or not self.store.delete(doc_id):
            raise DocumentNotFound(doc_id)
        log.info("Deleted document %s", doc_id)

    def search(self, doc_id: str, query: str) -> List[Dict[str, Any]]:
        _require(query=query)
        record = self.get(doc_id)
        results = search_lines(record.content, query)
        log.info("Found %d lines matching %r in document %s", len(results), query, doc_id)
        return results


def get_document_service() -> DocumentService:
    return DocumentService(store=get_document_store())
