import uuid

import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Document",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("user_id", models.CharField(blank=True, default="", max_length=255)),
                ("filename", models.CharField(max_length=255)),
                ("type", models.CharField(default="pdf", max_length=32)),
                ("content", models.TextField(blank=True, default="")),
                ("url", models.URLField(blank=True, default="", max_length=1000)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "db_table": "documents",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="ChatHistory",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("user_id", models.CharField(db_index=True, max_length=255)),
                ("doc_id", models.CharField(db_index=True, max_length=255)),
                ("doc_name", models.CharField(blank=True, default="", max_length=255)),
                ("doc_type", models.CharField(blank=True, default="", max_length=32)),
                ("question", models.TextField()),
                ("answer", models.TextField()),
                ("chat_session_id", models.CharField(blank=True, db_index=True, max_length=64, null=True)),
                ("created_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
            ],
            options={
                "db_table": "chat_history",
                "ordering": ["-created_at"],
            },
        ),
    ]
