"""Per-collection write policy.

Replace collections are last-write-wins on the whole record: callers
read-modify-write and two concurrent writers to one id simply overwrite each
other. The override collection merges at top-level field granularity so
independent sub-commands never clobber one another. There is no versioning
and no optimistic concurrency token; a single active writer per owned record
is assumed.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from ..domain.records import CHATS, COMMUNITY_POSTS, GAMES, OVERRIDES, USERS


class WritePolicy(str, Enum):
    REPLACE = "replace"
    MERGE = "merge"


COLLECTION_POLICIES: Dict[str, WritePolicy] = {
    USERS: WritePolicy.REPLACE,
    CHATS: WritePolicy.REPLACE,
    GAMES: WritePolicy.REPLACE,
    COMMUNITY_POSTS: WritePolicy.REPLACE,
    OVERRIDES: WritePolicy.MERGE,
}


def policy_for(collection: str) -> WritePolicy:
    try:
        return COLLECTION_POLICIES[collection]
    except KeyError:
        raise ValueError(f"Unknown collection: {collection}") from None


def resolve(existing: Optional[Dict[str, Any]], incoming: Dict[str, Any], policy: WritePolicy) -> Dict[str, Any]:
    """Return the record that should be stored after applying ``incoming``."""
    if policy is WritePolicy.REPLACE or not existing:
        return dict(incoming)
    merged = dict(existing)
    merged.update(incoming)
    return merged
