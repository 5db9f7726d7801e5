# chat/documents.py
"""
Stored documents: the already-extracted text the chat answers questions
about. Reads and writes go to the same backend as the chat log (Supabase
when configured, else the local database).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol

from django.conf import settings

from .exceptions import InvalidEntry
from .models import Document
from .sessions import parse_timestamp
from .store import SupabaseTable, as_uuid, supabase_client

log = logging.getLogger(__name__)

SEARCH_CONTEXT_LINES = 2


@dataclass(frozen=True)
class DocumentRecord:
    id: str
    content: str = ""
    filename: str = ""
    type: str = ""
    url: str = ""
    user_id: str = ""
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DocumentRecord":
        created = row.get("created_at")
        return cls(
            id=str(row["id"]),
            content=row.get("content") or "",
            filename=row.get("filename") or "",
            type=row.get("type") or "",
            url=row.get("url") or "",
            user_id=str(row.get("user_id") or ""),
            created_at=parse_timestamp(created) if created is not None else None,
        )


class DocumentStore(Protocol):
    def get(self, doc_id: str) -> Optional[DocumentRecord]: ...

    def upsert(self, doc_id: str, content: str, **fields: Any) -> DocumentRecord: ...

    def delete(self, doc_id: str) -> bool: ...


_METADATA = ("filename", "type", "url", "user_id")


def _metadata(fields: Mapping[str, Any]) -> Dict[str, Any]:
    # only overwrite the columns the caller actually sent
    return {k: v for k, v in fields.items() if k in _METADATA and v is not None}


class DjangoDocumentStore:
    """Adapter over chat.models.Document."""

    def _record(self, obj: Document) -> DocumentRecord:
        return DocumentRecord(
            id=str(obj.id),
            content=obj.content,
            filename=obj.filename,
            type=obj.type,
            url=obj.url,
            user_id=obj.user_id,
            created_at=obj.created_at,
        )

    def get(self, doc_id: str) -> Optional[DocumentRecord]:
        pk = as_uuid(doc_id)
        if pk is None:
            return None
        obj = Document.objects.filter(pk=pk).first()
        return self._record(obj) if obj is not None else None

    def upsert(self, doc_id: str, content: str, **fields: Any) -> DocumentRecord:
        pk = as_uuid(doc_id)
        if pk is None:
            raise InvalidEntry(f"document id must be a UUID, got {doc_id!r}")
        defaults = {"content": content, **_metadata(fields)}
        obj, created = Document.objects.update_or_create(pk=pk, defaults=defaults)
        log.info("%s document %s (%d chars)", "Stored" if created else "Updated", pk, len(content))
        return self._record(obj)

    def delete(self, doc_id: str) -> bool:
        pk = as_uuid(doc_id)
        if pk is None:
            return False
        deleted, _ = Document.objects.filter(pk=pk).delete()
        return deleted > 0


class SupabaseDocumentStore(SupabaseTable):
    """Adapter over the hosted `documents` table."""

    def __init__(self, client, table: str = "documents"):
        super().__init__(client, table)

    def get(self, doc_id: str) -> Optional[DocumentRecord]:
        if as_uuid(doc_id) is None:
            return None
        rows = self._run("get_document", self.client.table(self.table).select("*").eq("id", str(doc_id)))
        return DocumentRecord.from_row(rows[0]) if rows else None

    def upsert(self, doc_id: str, content: str, **fields: Any) -> DocumentRecord:
        if as_uuid(doc_id) is None:
            raise InvalidEntry(f"document id must be a UUID, got {doc_id!r}")
        row = {"id": str(doc_id), "content": content, **_metadata(fields)}
        rows = self._run("upsert_document", self.client.table(self.table).upsert(row))
        return DocumentRecord.from_row(rows[0] if rows else row)

    def delete(self, doc_id: str) -> bool:
        if as_uuid(doc_id) is None:
            return False
        rows = self._run("delete_document", self.client.table(self.table).delete().eq("id", str(doc_id)))
        return bool(rows)


def get_document_store() -> DocumentStore:
    client = supabase_client()
    if client is not None:
        return SupabaseDocumentStore(client, table=getattr(settings, "SUPABASE_DOCUMENTS_TABLE", "documents"))
    return DjangoDocumentStore()


def search_lines(content: str, query: str, context: int = SEARCH_CONTEXT_LINES) -> List[Dict[str, Any]]:
    """
    Case-insensitive substring search over the lines of `content`.

    Each hit carries its 1-based line number, the line itself and a block
    of up to `context` lines either side, the hit marked with an arrow:

        "  Line 3: ...\\n→ Line 4: <hit>\\n  Line 5: ..."
    """
    if not content or not query:
        return []

    lines = content.split("\n")
    needle = query.lower()
    results = []
    for index, line in enumerate(lines):
        if needle not in line.lower():
            continue
        start = max(0, index - context)
        end = min(len(lines), index + context + 1)
        block = []
        for n in range(start, end):
            prefix = "→" if n == index else " "
            block.append(f"{prefix} Line {n + 1}: {lines[n]}")
        results.append({"line": index + 1, "content": line, "context": "\n".join(block)})
    return results
