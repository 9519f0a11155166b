"""
Conversation store - the single source of truth for live conversations.

Access rules:
- Inbound handlers and timer callbacks touch a chat's state only inside
  `async with store.session(chat_id)`; sessions for the same chat run one at
  a time, sessions for different chats interleave freely.
- Global resets run inside `async with store.exclusive()`, which stops new
  sessions from starting and waits for every in-flight session to finish
  before the body runs.

Never enter exclusive() from inside a session; it would wait for itself.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Callable, Dict, Iterator, List, Optional

from core.logging import get_logger
from .models import ChatId, ConversationState

logger = get_logger(__name__)


class _ChatLock:
    __slots__ = ('lock', 'users')

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class ConversationStore:

    def __init__(self):
        self._states: Dict[ChatId, ConversationState] = {}
        self._locks: Dict[ChatId, _ChatLock] = {}
        self._active = 0
        self._gate = asyncio.Event()
        self._gate.set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._exclusive_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Exclusive sections
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def session(self, chat_id: ChatId):
        """Per-chat exclusive section."""
        while not self._gate.is_set():
            await self._gate.wait()

        self._active += 1
        self._idle.clear()

        entry = self._locks.get(chat_id)
        if entry is None:
            entry = self._locks[chat_id] = _ChatLock()
        entry.users += 1

        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(chat_id) is entry:
                del self._locks[chat_id]
            self._active -= 1
            if self._active == 0:
                self._idle.set()

    @asynccontextmanager
    async def exclusive(self):
        """Store-wide exclusive section used by global resets."""
        async with self._exclusive_lock:
            self._gate.clear()
            try:
                while self._active:
                    await self._idle.wait()
                yield
            finally:
                self._gate.set()

    @property
    def in_flight(self) -> int:
        return self._active

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    def get(self, chat_id: ChatId) -> Optional[ConversationState]:
        return self._states.get(chat_id)

    def is_live(self, chat_id: ChatId, state: ConversationState) -> bool:
        """True while `state` is still the stored state for its chat."""
        return not state.closed and self._states.get(chat_id) is state

    def upsert(self, state: ConversationState) -> ConversationState:
        previous = self._states.get(state.chat_id)
        if previous is not None and previous is not state:
            previous.close()
        self._states[state.chat_id] = state
        return state

    def delete(self, chat_id: ChatId, state: Optional[ConversationState] = None) -> bool:
        """
        Remove a chat's state and cancel its timers.

        When `state` is given, only that exact object is removed; a newer state
        for the same chat is left alone.
        """
        current = self._states.get(chat_id)
        if current is None:
            if state is not None:
                state.close()
            return False
        if state is not None and current is not state:
            state.close()
            return False
        del self._states[chat_id]
        current.close()
        return True

    def clear(self) -> int:
        """Remove every state and cancel all timers. Returns how many were dropped."""
        dropped = len(self._states)
        for state in self._states.values():
            state.close()
        self._states.clear()
        return dropped

    def for_each(self, fn: Callable[[ConversationState], None]) -> None:
        for state in list(self._states.values()):
            fn(state)

    def values(self) -> List[ConversationState]:
        return list(self._states.values())

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, chat_id: ChatId) -> bool:
        return chat_id in self._states

    def __iter__(self) -> Iterator[ChatId]:
        return iter(list(self._states))
