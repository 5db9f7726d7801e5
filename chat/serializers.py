# chat/serializers.py
from rest_framework import serializers

from .documents import DocumentRecord
from .sessions import ChatLogEntry, ChatSession


# ---- request payloads (camelCase, as the web client sends them) ----

_IDS_REQUIRED = {
    "required": "User ID and Document ID are required",
    "blank": "User ID and Document ID are required",
    "null": "User ID and Document ID are required",
}


class StartSessionSerializer(serializers.Serializer):
    userId = serializers.CharField(error_messages=_IDS_REQUIRED)
    docId = serializers.CharField(error_messages=_IDS_REQUIRED)
    docName = serializers.CharField(required=False, allow_blank=True, default="")
    docType = serializers.CharField(required=False, allow_blank=True, default="")


_MISSING = {
    "required": "Missing required fields",
    "blank": "Missing required fields",
    "null": "Missing required fields",
}


class SaveChatSerializer(serializers.Serializer):
    userId = serializers.CharField(error_messages=_MISSING)
    docId = serializers.CharField(error_messages=_MISSING)
    question = serializers.CharField(trim_whitespace=False, error_messages=_MISSING)
    answer = serializers.CharField(trim_whitespace=False, error_messages=_MISSING)
    docName = serializers.CharField(required=False, allow_blank=True, default="")
    docType = serializers.CharField(required=False, allow_blank=True, default="")
    chatSessionId = serializers.CharField(required=False, allow_blank=True, allow_null=True, default=None)


_DOC_REQUIRED = {
    "required": "Document ID and content are required",
    "blank": "Document ID and content are required",
    "null": "Document ID and content are required",
}


class AskSerializer(serializers.Serializer):
    message = serializers.CharField(error_messages={"required": "Message is required", "blank": "Message is required"})
    docId = serializers.CharField(error_messages={"required": "Document ID is required", "blank": "Document ID is required"})
    userId = serializers.CharField(required=False, allow_blank=True, default="")
    sessionId = serializers.CharField(required=False, allow_blank=True, allow_null=True, default=None)


class StoreDocumentSerializer(serializers.Serializer):
    docId = serializers.CharField(error_messages=_DOC_REQUIRED)
    content = serializers.CharField(trim_whitespace=False, error_messages=_DOC_REQUIRED)
    filename = serializers.CharField(required=False, allow_blank=True)
    type = serializers.CharField(required=False, allow_blank=True)
    url = serializers.CharField(required=False, allow_blank=True)
    userId = serializers.CharField(required=False, allow_blank=True)


class SearchSerializer(serializers.Serializer):
    query = serializers.CharField(error_messages={"required": "Search query is required", "blank": "Search query is required"})
    docId = serializers.CharField(required=False, allow_blank=True, default="")


class DeleteChatsSerializer(serializers.Serializer):
    chatIds = serializers.ListField(
        child=serializers.CharField(),
        allow_empty=False,
        error_messages={"required": "Chat IDs are required", "empty": "Chat IDs are required"},
    )


def first_error(errors) -> str:
    """Flatten DRF's error dict to the first human readable message."""
    if isinstance(errors, dict):
        for value in errors.values():
            return first_error(value)
    if isinstance(errors, (list, tuple)) and errors:
        return first_error(errors[0])
    return str(errors)


# ---- response shapes ----

def message_payload(entry: ChatLogEntry) -> dict:
    return {
        "id": entry.id,
        "question": entry.question,
        "answer": entry.answer,
        "createdAt": entry.created_at.isoformat(),
    }


def history_payload(entry: ChatLogEntry) -> dict:
    data = message_payload(entry)
    data.update({
        "docId": entry.doc_id,
        "docName": entry.doc_name,
        "docType": entry.doc_type,
        "chatSessionId": entry.chat_session_id,
    })
    return data


def session_summary(session: ChatSession) -> dict:
    return {
        "sessionKey": session.session_key,
        "id": session.anchor.id,
        "chatSessionId": session.chat_session_id,
        "docId": session.doc_id,
        "docName": session.doc_name,
        "docType": session.doc_type,
        "createdAt": session.created_at.isoformat(),
        "messageCount": session.message_count,
        "lastMessage": session.last_message,
    }


def session_transcript(session: ChatSession) -> dict:
    return {
        "sessionKey": session.session_key,
        "docId": session.doc_id,
        "docName": session.doc_name,
        "docType": session.doc_type,
        "messages": [message_payload(m) for m in session.messages],
    }


def document_info(record: DocumentRecord) -> dict:
    return {
        "id": record.id,
        "filename": record.filename,
        "type": record.type,
        "url": record.url,
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }
