from datetime import datetime, timedelta, timezone
from typing import Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from spacecms.config import load_settings
from spacecms.db.models import LockInfo, Story, User
from spacecms.errors import InvalidArgument


class StoryLockService:
    """
    Editing locks on stories.
    Lock state lives on the story row; every check-and-set runs under a row
    lock (SELECT ... FOR UPDATE) so two editors can never both acquire it.
    Expired locks read as unlocked without a cleanup pass.

    lock, unlock and extend_lock own their transaction: they commit on
    success and roll back on denial to release the row lock. Call them on a
    session without unrelated uncommitted work; anything pending is flushed
    and then committed or discarded with the lock change.
    """

    @staticmethod
    def lock_row(session: Session, story: Story) -> Story:
        """Re-read the story under SELECT ... FOR UPDATE and return the fresh row."""
        # pending edits are flushed first; populate_existing would overwrite them
        session.flush()
        return session.execute(
            select(Story)
            .where(Story.id == story.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()

    @staticmethod
    def _validate_minutes(minutes: int) -> None:
        max_minutes = load_settings().lock_max_minutes
        if minutes < 1 or minutes > max_minutes:
            raise InvalidArgument(f"Lock duration must be between 1 and {max_minutes} minutes")

    @staticmethod
    def lock(
        session: Session,
        story: Story,
        user: User,
        session_id: str,
        duration_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Acquire or refresh the lock for (user, session_id).
        A refresh by the current holder restarts the expiry from now.
        Returns False without touching the row when someone else holds it.
        """
        if duration_minutes is None:
            duration_minutes = load_settings().lock_default_minutes
        StoryLockService._validate_minutes(duration_minutes)

        now = now or datetime.now(timezone.utc)
        row = StoryLockService.lock_row(session, story)

        if row.is_locked(now) and not row.is_lock_held_by(user, session_id, now):
            session.rollback()
            logger.info(f"Lock denied on story {row.uuid} for user {user.id}: held by user {row.locked_by}")
            return False

        refreshed = row.is_lock_held_by(user, session_id, now)
        row.locked_by = user.id
        row.lock_session_id = session_id
        if not refreshed:
            row.locked_at = now
        row.lock_expires_at = now + timedelta(minutes=duration_minutes)
        session.commit()

        logger.info(
            f"Story {row.uuid} {'lock refreshed' if refreshed else 'locked'} by user {user.id} "
            f"until {row.lock_expires_at.isoformat()}"
        )
        return True

    @staticmethod
    def unlock(session: Session, story: Story, user: User, session_id: str) -> bool:
        """Release the lock. Only the exact (user, session) holder may do so."""
        row = StoryLockService.lock_row(session, story)

        if row.locked_by != user.id or row.lock_session_id != session_id:
            session.rollback()
            return False

        row.clear_lock()
        session.commit()
        logger.info(f"Story {row.uuid} unlocked by user {user.id}")
        return True

    @staticmethod
    def extend_lock(
        session: Session,
        story: Story,
        user: User,
        extend_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Push the current expiry out by ``extend_minutes``. Holder only."""
        if extend_minutes is None:
            extend_minutes = load_settings().lock_default_minutes
        StoryLockService._validate_minutes(extend_minutes)

        now = now or datetime.now(timezone.utc)
        row = StoryLockService.lock_row(session, story)

        if not row.is_locked(now) or row.locked_by != user.id:
            session.rollback()
            return False

        row.lock_expires_at = row.lock_expires_at + timedelta(minutes=extend_minutes)
        session.commit()
        logger.debug(f"Story {row.uuid} lock extended to {row.lock_expires_at.isoformat()}")
        return True

    @staticmethod
    def get_lock_info(story: Story, now: Optional[datetime] = None) -> Optional[LockInfo]:
        return story.get_lock_info(now)

    @staticmethod
    def cleanup_all_expired_locks(session: Session, now: Optional[datetime] = None) -> int:
        """Clear lock fields on every story whose lock has expired."""
        now = now or datetime.now(timezone.utc)
        result = session.execute(
            update(Story)
            .where(Story.lock_expires_at.is_not(None), Story.lock_expires_at < now)
            .values(locked_by=None, lock_session_id=None, locked_at=None, lock_expires_at=None)
            .execution_options(synchronize_session="evaluate")
        )
        session.commit()

        count = result.rowcount or 0
        if count:
            logger.info(f"Cleared {count} expired story lock(s)")
        return count
