"""Choose which remote sessions to hydrate at startup."""

from typing import List, Optional, Sequence

from shared.contracts import ChatMeta

from .conflict import DEFAULT_CHARACTER_ID

DEFAULT_BOOTSTRAP_LIMIT = 3


def select_bootstrap_sessions(
    remote_metas: Sequence[ChatMeta],
    character_id: str,
    active_session_id: Optional[str] = None,
    limit: int = DEFAULT_BOOTSTRAP_LIMIT,
    default_character_id: str = DEFAULT_CHARACTER_ID,
) -> List[str]:
    """Build the ordered, deduplicated list of session ids to hydrate.

    Priority:
        1. the active session, if any
        2. the most recently updated remote session of `character_id`
        3. remaining remote sessions, most recently updated first

    Remote metas without a character count as `default_character_id`.
    """
    ordered = sorted(remote_metas, key=lambda meta: meta.updated_at, reverse=True)

    picked: List[str] = []
    if active_session_id:
        picked.append(active_session_id)

    matched = next(
        (meta for meta in ordered if (meta.character_id or default_character_id) == character_id),
        None,
    )
    if matched is not None and matched.id not in picked:
        picked.append(matched.id)

    for meta in ordered:
        if len(picked) >= limit:
            break
        if meta.id not in picked:
            picked.append(meta.id)

    return picked[:limit]
