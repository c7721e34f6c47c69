# in-memory chats of one browser session; no network, no database

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from django.utils.text import Truncator

log = logging.getLogger("techtutor")

USER = "user"
ASSISTANT = "assistant"
ROLES = (USER, ASSISTANT)

ELLIPSIS = "..."
DEFAULT_TITLE_MAX_CHARS = 30
FAILURE_NOTICE = "Failed to get response from AI. Please try again."


class CompletionError(Exception):
    """The completion collaborator could not produce a reply."""


class SubmitInProgress(Exception):
    """A message is already waiting for its reply."""


@dataclass(frozen=True)
class Conversation:
    id: int
    title: str
    date: str


@dataclass(frozen=True)
class Message:
    role: str
    content: str

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"invalid role: {self.role!r}")


def make_title(text: str, max_chars: int = DEFAULT_TITLE_MAX_CHARS) -> str:
    if len(text) > max_chars:
        return text[:max_chars] + ELLIPSIS
    return text


def _now_ms() -> int:
    return int(time.time() * 1000)


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


@dataclass
class ChatStore:
    conversations: list[Conversation] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    active_id: Optional[int] = None
    pending_since: Optional[float] = None
    error: Optional[str] = None

    title_max_chars: int = DEFAULT_TITLE_MAX_CHARS
    pending_ttl: Optional[float] = None
    clock: Callable[[], int] = field(default=_now_ms, repr=False)
    today: Callable[[], str] = field(default=_today, repr=False)

    # ---------- queries ----------
    @property
    def pending(self) -> bool:
        if self.pending_since is None:
            return False
        if self.pending_ttl is not None and time.time() - self.pending_since > self.pending_ttl:
            log.warning("Dropping stale in-flight mark (%.0fs old)", time.time() - self.pending_since)
            self.pending_since = None
            return False
        return True

    def get(self, conv_id: int) -> Optional[Conversation]:
        for conv in self.conversations:
            if conv.id == conv_id:
                return conv
        return None

    @property
    def active(self) -> Optional[Conversation]:
        if self.active_id is None:
            return None
        return self.get(self.active_id)

    # ---------- session lifecycle ----------
    def start_new_chat(self) -> None:
        self.active_id = None
        self.messages = []
        self.error = None

    def select_conversation(self, conv_id: int) -> Conversation:
        conv = self.get(conv_id)
        if conv is None:
            raise KeyError(conv_id)
        if conv_id != self.active_id:
            # transcripts are not kept per conversation
            self.active_id = conv_id
            self.messages = []
            self.error = None
        return conv

    def delete_conversation(self, conv_id: int) -> None:
        self.conversations = [c for c in self.conversations if c.id != conv_id]
        if self.active_id == conv_id:
            self.start_new_chat()

    # ---------- submitting ----------
    def _next_id(self) -> int:
        candidate = self.clock()
        taken = {c.id for c in self.conversations}
        if taken and candidate <= max(taken):
            candidate = max(taken) + 1
        return candidate

    def begin_submit(self, text: str) -> Optional[str]:
        """Record the user's message; return the stripped text or None if empty."""
        user_message = (text or "").strip()
        if not user_message:
            return None
        if self.pending:
            raise SubmitInProgress()

        if self.active_id is None:
            conv = Conversation(
                id=self._next_id(),
                title=make_title(user_message, self.title_max_chars),
                date=self.today(),
            )
            self.conversations.insert(0, conv)
            self.active_id = conv.id

        self.messages.append(Message(USER, user_message))
        self.pending_since = time.time()
        self.error = None
        return user_message

    def finish_submit(self, reply: str) -> Message:
        self.pending_since = None
        message = Message(ASSISTANT, reply)
        self.messages.append(message)
        return message

    def fail_submit(self, exc: Exception) -> None:
        self.pending_since = None
        self.error = str(exc) or FAILURE_NOTICE
        log.warning("Completion failed: %s", exc)

    def submit_message(
        self,
        text: str,
        simple_mode: bool,
        complete: Callable[[str, bool], str],
    ) -> Optional[Message]:
        """Append the user's message and, when the completion succeeds, the reply.

        Returns the assistant message, or None when the input was empty or the
        completion failed. Failures are logged and kept in ``self.error``.
        """
        user_message = self.begin_submit(text)
        if user_message is None:
            return None
        try:
            reply = complete(user_message, simple_mode)
        except CompletionError as exc:
            self.fail_submit(exc)
            return None
        log.info("Reply received | prompt=%s", Truncator(user_message).chars(120))
        return self.finish_submit(reply)

    # ---------- session round trip ----------
    def to_dict(self) -> dict:
        return {
            "conversations": [asdict(c) for c in self.conversations],
            "messages": [asdict(m) for m in self.messages],
            "active_id": self.active_id,
            "pending_since": self.pending_since,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict], **options) -> "ChatStore":
        data = data or {}
        store = cls(**options)
        store.conversations = [Conversation(**c) for c in data.get("conversations", [])]
        store.messages = [Message(**m) for m in data.get("messages", [])]
        store.active_id = data.get("active_id")
        store.pending_since = data.get("pending_since")
        store.error = data.get("error")
        if store.active_id is not None and store.get(store.active_id) is None:
            store.start_new_chat()
        return store
