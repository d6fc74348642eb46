"""
Page session registry.

Each browser tab gets its own PolicyPageController, keyed by the
``policy_page_session`` cookie. Sessions are kept in memory only; the oldest
one is evicted once ``max_sessions`` is reached.
"""

import logging
import secrets
from collections import OrderedDict
from typing import Callable

from services.event import record_policy_event
from services.policy_page import PolicyPageController

logger = logging.getLogger(__name__)

SESSION_COOKIE = "policy_page_session"


def _default_controller() -> PolicyPageController:
    return PolicyPageController(recorder=record_policy_event)


class PageSessionRegistry:
    def __init__(
        self,
        factory: Callable[[], PolicyPageController] = _default_controller,
        max_sessions: int = 64,
    ):
        self._factory = factory
        self._max_sessions = max_sessions
        self._sessions: OrderedDict[str, PolicyPageController] = OrderedDict()

    def get_or_create(self, session_id: str | None) -> tuple[str, PolicyPageController]:
        """Return ``(session_id, controller)``, minting a new session if needed."""
        if session_id and session_id in self._sessions:
            self._sessions.move_to_end(session_id)
            return session_id, self._sessions[session_id]

        session_id = secrets.token_urlsafe(16)
        self._sessions[session_id] = self._factory()
        while len(self._sessions) > self._max_sessions:
            evicted, _ = self._sessions.popitem(last=False)
            logger.debug(f"Evicted page session {evicted[:6]}...")
        return session_id, self._sessions[session_id]

    def __len__(self) -> int:
        return len(self._sessions)


# Singleton instance
_registry = PageSessionRegistry()


def get_page_sessions() -> PageSessionRegistry:
    return _registry
