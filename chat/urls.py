from django.urls import path
from . import views

app_name = "chat"

urlpatterns = [
    # Sessions (derived from the chat log)
    path("sessions/<str:user_id>/", views.list_sessions, name="sessions"),
    path("session/", views.create_session, name="create_session"),
    path("session/<str:session_key>/messages/", views.session_messages, name="session_messages"),

    # Messages
    path("save/", views.save_chat, name="save_chat"),
    path("ask/", views.ask, name="ask"),

    # Flat history
    path("history/", views.delete_history, name="delete_history"),
    path("history/<str:user_id>/", views.user_history, name="user_history"),
    path("history/<str:user_id>/<str:doc_id>/", views.document_history, name="document_history"),

    # Documents
    path("documents/", views.store_document, name="store_document"),
    path("documents/<str:doc_id>/", views.document_detail, name="document_detail"),
    path("search/", views.search_document, name="search_document"),
]
