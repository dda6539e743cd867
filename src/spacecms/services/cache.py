"""Commit-time cache invalidation.

Services record the cache-key patterns a change makes stale on the session;
once the transaction commits, the session's invalidation callback receives
them. A rollback drops them. Sessions without a callback invalidate nothing.

The callback travels in ``session.info``, so it is scoped to one session or,
when installed on a sessionmaker, to every session that factory creates.
"""

from typing import Callable, Iterable, List, Optional, Union

from loguru import logger
from sqlalchemy import event
from sqlalchemy.orm import Session, sessionmaker

from spacecms.db.models import Story

PENDING_KEY = "spacecms_stale_cache_keys"
CALLBACK_KEY = "spacecms_cache_invalidator"

InvalidationCallback = Callable[[List[str]], None]


def story_cache_keys(story: Story) -> List[str]:
    keys = [
        f"space:{story.space_id}:stories:*",
        f"story:{story.uuid}:*",
    ]
    if story.full_slug:
        keys.append(f"space:{story.space_id}:slug:{story.full_slug}")
    return keys


def mark_stale(session: Session, patterns: Iterable[str]) -> None:
    pending = session.info.setdefault(PENDING_KEY, [])
    for pattern in patterns:
        if pattern not in pending:
            pending.append(pattern)


def mark_story_stale(session: Session, story: Story) -> None:
    mark_stale(session, story_cache_keys(story))


def pending_keys(session: Session) -> List[str]:
    return list(session.info.get(PENDING_KEY, []))


def install_cache_invalidation(
    target: Union[Session, sessionmaker],
    callback: Optional[InvalidationCallback],
) -> None:
    """
    Attach the post-commit callback to a session, or to every session a
    sessionmaker creates from now on. Passing None removes it.
    """
    if isinstance(target, Session):
        info = target.info
    else:
        info = dict(target.kw.get("info") or {})

    if callback is None:
        info.pop(CALLBACK_KEY, None)
    else:
        info[CALLBACK_KEY] = callback

    if not isinstance(target, Session):
        target.configure(info=info)


@event.listens_for(Session, "after_commit")
def _flush_stale_keys(session: Session) -> None:
    patterns = session.info.pop(PENDING_KEY, None)
    callback = session.info.get(CALLBACK_KEY)
    if not patterns or callback is None:
        return
    logger.debug(f"Invalidating {len(patterns)} cache key pattern(s)")
    callback(patterns)


@event.listens_for(Session, "after_rollback")
def _discard_stale_keys(session: Session) -> None:
    session.info.pop(PENDING_KEY, None)
