# chat/views.py
import logging
from functools import wraps

from django_ratelimit.decorators import ratelimit
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from . import service as chat_service
from .exceptions import DocumentNotFound, InvalidEntry, SessionNotFound, StoreError
from .serializers import (
    AskSerializer,
    DeleteChatsSerializer,
    SaveChatSerializer,
    SearchSerializer,
    StartSessionSerializer,
    StoreDocumentSerializer,
    document_info,
    first_error,
    history_payload,
    message_payload,
    session_summary,
    session_transcript,
)

log = logging.getLogger(__name__)


def _error(message: str, status: int) -> Response:
    return Response({"error": message}, status=status)


def handle_chat_errors(failure_message: str):
    """Map chat-history exceptions onto HTTP responses for one view."""
    def _decorator(view_func):
        @wraps(view_func)
        def _wrapped(request, *args, **kwargs):
            try:
                return view_func(request, *args, **kwargs)
            except SessionNotFound as e:
                log.info("Conversation not found: %s", e.session_key)
                return _error("Conversation not found", 404)
            except DocumentNotFound as e:
                log.info("Document not found: %s", e.doc_id)
                return _error("Document not found", 404)
            except InvalidEntry as e:
                return _error(str(e), 400)
            except StoreError:
                log.exception("%s", failure_message)
                return _error(failure_message, 503)
        return _wrapped
    return _decorator


# ---------- Sessions ----------

@api_view(["GET"])
@permission_classes([AllowAny])
@handle_chat_errors("Failed to fetch chat sessions")
def list_sessions(request, user_id):
    """Conversations reconstructed from the user's chat log, newest first."""
    sessions = chat_service.get_service().list_sessions(user_id)
    return Response({"sessions": [session_summary(s) for s in sessions]}, status=200)


@api_view(["GET"])
@permission_classes([AllowAny])
@handle_chat_errors("Failed to fetch session messages")
def session_messages(request, session_key):
    """
    One conversation by session key (a chat_session_id or an anchor row id).

    Explicit sessions return exactly the rows sharing the id. Inferred
    (legacy) sessions return every row of the document inside the time
    window around the anchor, which can differ from the messageCount the
    sessions list reported: the list assigns each row to the first anchor
    that claims it, while this lookup re-applies the window around one
    anchor without that bookkeeping.
    """
    session = chat_service.get_service().session_transcript(session_key)
    return Response(session_transcript(session), status=200)


@api_view(["POST"])
@permission_classes([AllowAny])
@handle_chat_errors("Failed to create chat session")
def create_session(request):
    ser = StartSessionSerializer(data=request.data)
    if not ser.is_valid():
        return _error(first_error(ser.errors), 400)
    data = ser.validated_data

    entry = chat_service.get_service().start_session(
        user_id=data["userId"],
        doc_id=data["docId"],
        doc_name=data["docName"],
        doc_type=data["docType"],
    )
    return Response({
        "chatId": entry.id,
        "chatSessionId": entry.chat_session_id,
        "message": "New chat session created",
    }, status=201)


# ---------- Messages ----------

@api_view(["POST"])
@permission_classes([AllowAny])
@handle_chat_errors("Failed to save chat message")
def save_chat(request):
    ser = SaveChatSerializer(data=request.data)
    if not ser.is_valid():
        return _error(first_error(ser.errors), 400)
    data = ser.validated_data

    entry = chat_service.get_service().save_chat(
        user_id=data["userId"],
        doc_id=data["docId"],
        doc_name=data["docName"],
        doc_type=data["docType"],
        question=data["question"],
        answer=data["answer"],
        chat_session_id=data["chatSessionId"],
    )
    return Response({
        "id": entry.id,
        "chatSessionId": entry.chat_session_id,
        "message": "Chat message saved successfully",
    }, status=201)


@api_view(["POST"])
@permission_classes([AllowAny])
@ratelimit(key="ip", rate="30/m", method="POST", block=False)
@handle_chat_errors("Failed to save chat message")
def ask(request):
    """
    Answer a question about a stored document and log the exchange.

    Returns {"response": <answer>, "sessionId": <chat_session_id>}; the
    session id is created on the first question when none is sent.
    """
    if getattr(request, "limited", False):
        log.warning("Chat rate limit exceeded for IP: %s", request.META.get("REMOTE_ADDR"))
        return Response({
            "error": "Too many questions. Please try again later.",
            "retry_after": "1 minute",
        }, status=429)

    ser = AskSerializer(data=request.data)
    if not ser.is_valid():
        return _error(first_error(ser.errors), 400)
    data = ser.validated_data

    document = chat_service.get_document_service().get(data["docId"])

    entry = chat_service.get_service().ask(
        document,
        data["message"],
        user_id=data["userId"],
        chat_session_id=data["sessionId"],
    )
    return Response({"response": entry.answer, "sessionId": entry.chat_session_id}, status=200)


# ---------- History ----------

@api_view(["GET"])
@permission_classes([AllowAny])
@handle_chat_errors("Failed to fetch chat history")
def user_history(request, user_id):
    rows = chat_service.get_service().user_history(user_id)
    return Response({"chats": [history_payload(e) for e in rows]}, status=200)


@api_view(["GET"])
@permission_classes([AllowAny])
@handle_chat_errors("Failed to fetch document chat history")
def document_history(request, user_id, doc_id):
    rows = chat_service.get_service().document_history(user_id, doc_id)
    return Response({"chats": [message_payload(e) for e in rows]}, status=200)


@api_view(["DELETE"])
@permission_classes([AllowAny])
@handle_chat_errors("Failed to delete chats")
def delete_history(request):
    ser = DeleteChatsSerializer(data=request.data)
    if not ser.is_valid():
        return _error(first_error(ser.errors), 400)

    deleted = chat_service.get_service().delete_entries(ser.validated_data["chatIds"])
    return Response({"success": True, "deleted": deleted}, status=200)


# ---------- Documents ----------

@api_view(["POST"])
@permission_classes([AllowAny])
@handle_chat_errors("Server error while storing document content")
def store_document(request):
    """Create or replace the extracted text of a document."""
    ser = StoreDocumentSerializer(data=request.data)
    if not ser.is_valid():
        return _error(first_error(ser.errors), 400)
    data = ser.validated_data

    record = chat_service.get_document_service().store_document(
        data["docId"],
        data["content"],
        filename=data.get("filename"),
        type=data.get("type"),
        url=data.get("url"),
        user_id=data.get("userId"),
    )
    return Response({
        "success": True,
        "id": record.id,
        "message": "Document content stored successfully",
    }, status=200)


@api_view(["GET", "DELETE"])
@permission_classes([AllowAny])
@handle_chat_errors("Server error while handling document")
def document_detail(request, doc_id):
    documents = chat_service.get_document_service()
    if request.method == "DELETE":
        documents.delete(doc_id)
        return Response({"success": True}, status=200)
    return Response(document_info(documents.get(doc_id)), status=200)


@api_view(["POST"])
@permission_classes([AllowAny])
@handle_chat_errors("Search failed")
def search_document(request):
    """Line search over a stored document, two lines of context per hit."""
    ser = SearchSerializer(data=request.data)
    if not ser.is_valid():
        return _error(first_error(ser.errors), 400)
    data = ser.validated_data

    results = chat_service.get_document_service().search(data["docId"], data["query"])
    return Response({
        "results": results,
        "query": data["query"],
        "totalResults": len(results),
    }, status=200)
