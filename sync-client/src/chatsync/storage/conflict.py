"""Last-write-wins reconciliation between local and remote session state.

Remote metadata replaces local metadata only when it is at least as new.
Hydration (replacing a session's messages with a remote snapshot) is skipped
when the local copy is strictly newer, since it has not been pushed yet.

Async operations that mutate a session capture a generation token when they
start and drop their result if the session's generation moved in the
meantime (reset, cleanup, reimport).
"""

from dataclasses import dataclass, replace
from typing import Dict, Optional

from shared.contracts import ChatMeta

from .models import ChatSessionMeta

DEFAULT_CHARACTER_ID = "default"


def remote_meta_to_session_meta(
    remote: ChatMeta,
    user_id: str,
    default_character_id: str = DEFAULT_CHARACTER_ID,
) -> ChatSessionMeta:
    """Project a Hub chat meta onto the local session meta shape."""
    return ChatSessionMeta(
        session_id=remote.id,
        user_id=user_id,
        character_id=remote.character_id or default_character_id,
        title=remote.title,
        created_at=remote.created_at,
        updated_at=remote.updated_at,
        deleted_at=remote.deleted_at,
    )


def reconcile_meta(
    local: Optional[ChatSessionMeta],
    remote: ChatSessionMeta,
) -> ChatSessionMeta:
    """Pick the winning meta.

    Returns:
        `remote` if there is no local meta or remote.updated_at >=
        local.updated_at; otherwise `local`, unchanged
    """
    if local is None or remote.updated_at >= local.updated_at:
        return replace(remote)
    return local


def should_hydrate(local: Optional[ChatSessionMeta], remote: ChatSessionMeta) -> bool:
    """Whether a remote snapshot may replace the local session."""
    if local is None:
        return True
    return local.updated_at <= remote.updated_at


@dataclass(frozen=True)
class GenerationToken:
    """A session's generation as captured when an operation started."""

    session_id: str
    generation: int


class SessionGenerations:
    """Per-session monotonic generation counters."""

    def __init__(self):
        self._values: Dict[str, int] = {}

    def get(self, session_id: str) -> int:
        return self._values.setdefault(session_id, 0)

    def bump(self, session_id: str) -> int:
        """Invalidate in-flight work for a session. Returns the new value."""
        self._values[session_id] = self.get(session_id) + 1
        return self._values[session_id]

    def capture(self, session_id: str) -> GenerationToken:
        return GenerationToken(session_id, self.get(session_id))

    def is_current(self, token: GenerationToken) -> bool:
        return self.get(token.session_id) == token.generation
