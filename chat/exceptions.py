# chat/exceptions.py


class ChatHistoryError(Exception):
    """Base class for chat-history failures."""


class SessionNotFound(ChatHistoryError):
    """No anchor row matches the requested session key."""

    def __init__(self, session_key: str):
        super().__init__(f"session not found: {session_key}")
        self.session_key = session_key


class InvalidEntry(ChatHistoryError, ValueError):
    """A chat log row (or a request payload) is missing mandatory fields."""


class StoreError(ChatHistoryError):
    """The backing chat log store could not complete the request."""


class DocumentNotFound(ChatHistoryError):
    """No stored document has the requested id."""

    def __init__(self, doc_id: str):
        super().__init__(f"document not found: {doc_id}")
        self.doc_id = doc_id
