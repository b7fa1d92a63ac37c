"""Shared chat transcript for the support widget.

Provides:
- ChatMessage: frozen dataclass for one bubble in the chat view
- ChatTranscript: bounded, lock-protected message list with listeners

The transcript is owned by the UI layer. The text chat appends replies to it
and the provide_admin_contact tool appends the contact card to it, including
from inside a live voice call.
"""

import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional

logger = logging.getLogger(__name__)

GREETING = ("Assalamu Alaikum! Welcome to Whales Pump Share Trading. "
            "How can I help you with our packages today?")

USER = "user"
AGENT = "agent"


@dataclass(frozen=True)
class ChatMessage:
    id: int
    sender: str  # "user" or "agent"
    text: str
    timestamp: float
    attachment_mime: Optional[str] = None  # image/* or audio/* when media was sent


class ChatTranscript:
    """Bounded list of chat messages.

    Listeners registered with on_append() are called with each new
    ChatMessage after it is stored. A listener that raises is logged and
    skipped.
    """

    def __init__(self, max_messages: int = 500, greeting: Optional[str] = GREETING):
        self._messages: deque = deque(maxlen=max_messages)
        self._lock = Lock()
        self._ids = itertools.count(1)
        self._listeners: list[Callable[[ChatMessage], None]] = []
        if greeting:
            self.add(AGENT, greeting)

    def on_append(self, callback: Callable[[ChatMessage], None]):
        self._listeners.append(callback)

    def add(self, sender: str, text: str, attachment_mime: Optional[str] = None) -> ChatMessage:
        with self._lock:
            msg = ChatMessage(
                id=next(self._ids),
                sender=sender,
                text=text,
                timestamp=time.time(),
                attachment_mime=attachment_mime,
            )
            self._messages.append(msg)
        for cb in list(self._listeners):
            try:
                cb(msg)
            except Exception as e:
                logger.warning("Transcript listener failed: %s", e)
        return msg

    def messages(self) -> list[ChatMessage]:
        with self._lock:
            return list(self._messages)

    def last(self) -> Optional[ChatMessage]:
        with self._lock:
            return self._messages[-1] if self._messages else None

    def clear(self):
        with self._lock:
            self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)
