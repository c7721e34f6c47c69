from django.shortcuts import render
from django.http import JsonResponse
from django.conf import settings

from rest_framework.decorators import api_view
from rest_framework.response import Response
from rest_framework import status
from django.utils.text import Truncator
from importlib import import_module
import logging

from .formatting import format_message
from .gemini import GeminiClient
from .store import FAILURE_NOTICE, ChatStore, CompletionError, SubmitInProgress
from .suggestions import SUGGESTIONS, suggestions_for

log = logging.getLogger("techtutor")

SESSION_KEY = "chat"
IN_FLIGHT_ERROR = "a message is already in flight"
TRUE_STRINGS = {"1", "true", "yes", "on"}


def get_completion_client():
    return GeminiClient()


#session-backed store helpers
def _load_store(request, fresh=False) -> ChatStore:
    session = request.session
    if fresh:
        # re-read the backend: other requests may have changed the chats meanwhile
        session = import_module(settings.SESSION_ENGINE).SessionStore(request.session.session_key)
    return ChatStore.from_dict(
        session.get(SESSION_KEY),
        title_max_chars=settings.CHAT_TITLE_MAX_CHARS,
        pending_ttl=settings.CHAT_PENDING_TTL,
    )

def _save_store(request, store: ChatStore):
    request.session[SESSION_KEY] = store.to_dict()
    # persist now so a concurrent request sees the in-flight mark
    request.session.save()

def _serialize(store: ChatStore) -> dict:
    escape = settings.CHAT_ESCAPE_HTML
    return {
        "conversations": [
            {"id": c.id, "title": c.title, "date": c.date} for c in store.conversations
        ],
        "active_id": store.active_id,
        "messages": [
            {"role": m.role, "content": m.content, "html": format_message(m.content, escape=escape)}
            for m in store.messages
        ],
        "pending": store.pending,
        "error": store.error,
    }

def _as_bool(value):
    if isinstance(value, str):
        return value.strip().lower() in TRUE_STRINGS
    return value is True or value == 1

def _validate_message(text):
    if not isinstance(text, str):
        return "message must be string"
    if len(text) > settings.MESSAGE_MAX_CHARS:
        return f"message too long (>{settings.MESSAGE_MAX_CHARS} chars)"
    return None


# ---------- Web page ----------
def index(request):
    category = request.GET.get("category") or ""
    store = _load_store(request)
    return render(request, "index.html", {
        "category": category,
        "categories": list(SUGGESTIONS),
        "suggestions": suggestions_for(category),
        "initial_query": request.GET.get("query") or "",
        "store": store,
        "escape_html": settings.CHAT_ESCAPE_HTML,
    })


# ---------- Simple health check ----------
def health(request):
    return JsonResponse({"status": "ok", "app": "techtutor", "version": 1})


# ---------- API: chat state ----------
@api_view(["GET"])
def chat_state(request):
    return Response(_serialize(_load_store(request)))


@api_view(["GET"])
def list_suggestions(request):
    category = request.query_params.get("category")
    if category is None:
        return Response({"data": SUGGESTIONS})
    return Response({"category": category, "data": suggestions_for(category)})


# ---------- API: submit a message ----------
@api_view(["POST"])
def chat_completion(request):
    data = request.data or {}
    text = data.get("message", "")
    simple_mode = _as_bool(data.get("simple_mode", False))

    err = _validate_message(text)
    if err:
        return Response({"error": err}, status=400)

    store = _load_store(request)
    try:
        user_message = store.begin_submit(text)
    except SubmitInProgress:
        return Response({**_serialize(store), "ok": False, "error": IN_FLIGHT_ERROR},
                        status=status.HTTP_409_CONFLICT)
    if user_message is None:
        return Response({"ok": False, "ignored": True, **_serialize(store)})
    _save_store(request, store)

    try:
        reply = get_completion_client().complete(user_message, simple_mode)
    except Exception as e:
        if not isinstance(e, CompletionError):
            log.exception("Unexpected completion failure")
            e = CompletionError(FAILURE_NOTICE)
        store = _load_store(request, fresh=True)
        store.fail_submit(e)
        _save_store(request, store)
        return Response({"ok": False, **_serialize(store)}, status=status.HTTP_502_BAD_GATEWAY)

    # the session may have changed while waiting (new chat, delete)
    store = _load_store(request, fresh=True)
    if store.active_id is not None and store.messages and store.messages[-1].content == user_message:
        store.finish_submit(reply)
    else:
        store.pending_since = None
        log.info("Dropping reply for a chat that is no longer active | prompt=%s",
                 Truncator(user_message).chars(120))
    _save_store(request, store)

    return Response({"ok": True, **_serialize(store)})


# ---------- API: conversations ----------
@api_view(["POST"])
def new_conversation(request):
    store = _load_store(request)
    store.start_new_chat()
    _save_store(request, store)
    return Response({"ok": True, **_serialize(store)})


@api_view(["POST"])
def select_conversation(request, conv_id):
    store = _load_store(request)
    try:
        store.select_conversation(conv_id)
    except KeyError:
        return Response({"error": "not found"}, status=404)
    _save_store(request, store)
    return Response({"ok": True, **_serialize(store)})


@api_view(["DELETE"])
def delete_conversation(request, conv_id):
    store = _load_store(request)
    store.delete_conversation(conv_id)
    _save_store(request, store)
    return Response({"ok": True, **_serialize(store)})
