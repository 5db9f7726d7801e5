from django.db import models
from django.utils import timezone
import uuid


class Document(models.Model):
    """Uploaded document with its already-extracted text."""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user_id = models.CharField(max_length=255, blank=True, default="")
    filename = models.CharField(max_length=255)
    type = models.CharField(max_length=32, default="pdf")
    content = models.TextField(blank=True, default="")
    url = models.URLField(max_length=1000, blank=True, default="")
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "documents"
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.filename} ({self.type})"


class ChatHistory(models.Model):
    """
    One append-only question/answer row. Rows are never edited; sessions
    are derived from them on read (see chat.sessions).
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user_id = models.CharField(max_length=255, db_index=True)
    doc_id = models.CharField(max_length=255, db_index=True)
    doc_name = models.CharField(max_length=255, blank=True, default="")
    doc_type = models.CharField(max_length=32, blank=True, default="")
    question = models.TextField()
    answer = models.TextField()
    # NULL for rows written before explicit sessions existed
    chat_session_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        db_table = "chat_history"
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.user_id}/{self.doc_id}: {self.question[:40]}"
