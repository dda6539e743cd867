import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from spacecms.db.models import Story, User
from spacecms.errors import InvalidArgument, LockConflict
from spacecms.services.locking import StoryLockService
from spacecms.services.stories import StoryService

T0 = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def story(make_story):
    return make_story("Locked page")


def test_lock_blocks_other_users(session, story, editor, other_editor):
    assert StoryLockService.lock(session, story, editor, "s1", now=T0)

    assert story.is_locked_by_other(other_editor, now=T0)
    assert not story.is_locked_by_other(editor, now=T0)
    assert story.is_locked(now=T0 + timedelta(minutes=29))
    assert not story.is_locked(now=T0 + timedelta(minutes=31))


def test_second_editor_cannot_take_an_active_lock(session, story, editor, other_editor):
    StoryLockService.lock(session, story, editor, "s1", duration_minutes=30, now=T0)

    assert not StoryLockService.lock(session, story, other_editor, "s2", now=T0)

    info = StoryLockService.get_lock_info(story, now=T0)
    assert info.locked_by == editor.id
    assert info.session_id == "s1"
    assert info.locker_name == "Ada"
    assert info.time_remaining == 30


def test_same_user_other_session_is_refused(session, story, editor):
    StoryLockService.lock(session, story, editor, "tab-1", now=T0)
    assert not StoryLockService.lock(session, story, editor, "tab-2", now=T0)
    assert story.lock_session_id == "tab-1"


def test_refresh_by_holder_restarts_expiry_from_now(session, story, editor):
    StoryLockService.lock(session, story, editor, "s1", duration_minutes=30, now=T0)
    later = T0 + timedelta(minutes=20)

    assert StoryLockService.lock(session, story, editor, "s1", duration_minutes=30, now=later)

    assert story.lock_expires_at == later + timedelta(minutes=30)
    assert story.locked_at == T0


def test_expired_lock_is_reassigned(session, story, editor, other_editor):
    StoryLockService.lock(session, story, editor, "s1", duration_minutes=30, now=T0)
    later = T0 + timedelta(minutes=31)

    assert StoryLockService.get_lock_info(story, now=later) is None
    assert StoryLockService.lock(session, story, other_editor, "s2", now=later)
    assert story.locked_by == other_editor.id


def test_unlock_requires_exact_holder(session, story, editor, other_editor):
    StoryLockService.lock(session, story, editor, "s1", now=T0)
    expires = story.lock_expires_at

    assert not StoryLockService.unlock(session, story, editor, "s2")
    assert not StoryLockService.unlock(session, story, other_editor, "s1")
    assert story.locked_by == editor.id
    assert story.lock_expires_at == expires

    assert StoryLockService.unlock(session, story, editor, "s1")
    assert story.locked_by is None
    assert story.lock_session_id is None
    assert story.lock_expires_at is None


def test_extend_is_additive(session, story, editor):
    StoryLockService.lock(session, story, editor, "s1", duration_minutes=30, now=T0)
    original = story.lock_expires_at

    assert StoryLockService.extend_lock(session, story, editor, 10, now=T0)
    assert StoryLockService.extend_lock(session, story, editor, 20, now=T0 + timedelta(minutes=5))

    assert story.lock_expires_at == original + timedelta(minutes=30)


def test_extend_by_non_holder_fails(session, story, editor, other_editor):
    StoryLockService.lock(session, story, editor, "s1", now=T0)
    assert not StoryLockService.extend_lock(session, story, other_editor, 10, now=T0)


def test_extend_after_expiry_fails(session, story, editor):
    StoryLockService.lock(session, story, editor, "s1", duration_minutes=5, now=T0)
    assert not StoryLockService.extend_lock(session, story, editor, 10, now=T0 + timedelta(minutes=6))


@pytest.mark.parametrize("minutes", [0, -5, 481])
def test_lock_duration_bounds(session, story, editor, minutes):
    with pytest.raises(InvalidArgument):
        StoryLockService.lock(session, story, editor, "s1", duration_minutes=minutes, now=T0)


def test_cleanup_clears_only_expired_locks(session, make_story, editor, other_editor):
    stale = make_story("Stale")
    active = make_story("Active")
    StoryLockService.lock(session, stale, editor, "s1", duration_minutes=5, now=T0)
    StoryLockService.lock(session, active, other_editor, "s2", duration_minutes=60, now=T0)

    count = StoryLockService.cleanup_all_expired_locks(session, now=T0 + timedelta(minutes=10))

    assert count == 1
    session.refresh(stale)
    session.refresh(active)
    assert stale.locked_by is None
    assert active.locked_by == other_editor.id


def test_denied_calls_end_their_transaction(session, story, editor, other_editor):
    StoryLockService.lock(session, story, editor, "s1", now=T0)

    assert not StoryLockService.lock(session, story, other_editor, "s2", now=T0)
    assert not session.in_transaction()
    assert not StoryLockService.unlock(session, story, other_editor, "s2")
    assert not session.in_transaction()
    assert not StoryLockService.extend_lock(session, story, other_editor, 10, now=T0)
    assert not session.in_transaction()
    assert story.locked_by == editor.id


def test_lock_taken_in_another_session_is_respected(session, other_session, story, editor, other_editor):
    stale_story = other_session.get(Story, story.id)
    stale_user = other_session.get(User, other_editor.id)

    assert StoryLockService.lock(session, story, editor, "s1", now=T0)

    assert not StoryLockService.lock(other_session, stale_story, stale_user, "s2", now=T0)
    assert stale_story.locked_by == editor.id
    assert stale_story.lock_session_id == "s1"


def test_stale_copy_cannot_write_through_a_lock(session, other_session, story, editor, other_editor):
    stale_story = other_session.get(Story, story.id)
    stale_user = other_session.get(User, other_editor.id)
    assert stale_story.locked_by is None

    StoryLockService.lock(session, story, editor, "s1", now=T0)

    with pytest.raises(LockConflict) as excinfo:
        StoryService.update_story(other_session, stale_story, {"name": "Overwritten"}, stale_user, now=T0)
    other_session.rollback()

    assert excinfo.value.lock_info.locked_by == editor.id
    session.refresh(story)
    assert story.name == "Locked page"


def test_stale_copy_cannot_publish_or_delete_through_a_lock(session, other_session, story, editor, other_editor):
    stale_story = other_session.get(Story, story.id)
    stale_user = other_session.get(User, other_editor.id)
    StoryLockService.lock(session, story, editor, "s1", now=T0)

    with pytest.raises(LockConflict):
        StoryService.publish_story(other_session, stale_story, stale_user, now=T0)
    other_session.rollback()
    with pytest.raises(LockConflict):
        StoryService.delete_story(other_session, stale_story, stale_user, now=T0)
    other_session.rollback()

    session.refresh(story)
    assert story.status == "draft"
    assert not story.is_deleted


class TestLockInfo(unittest.TestCase):

    def test_time_remaining_rounds_up(self):
        story = Story(
            locked_by=7,
            lock_session_id="abc",
            locked_at=T0,
            lock_expires_at=T0 + timedelta(minutes=2, seconds=1),
        )
        story.locker = User(id=7, email="x@example.com", name="X")

        info = story.get_lock_info(now=T0)

        self.assertEqual(info.time_remaining, 3)
        self.assertEqual(info.to_dict()["locker"], {"name": "X", "email": "x@example.com"})

    def test_unlocked_story_has_no_info(self):
        self.assertIsNone(Story().get_lock_info(now=T0))

    def test_lock_conflict_payload(self):
        info = MagicMock()
        info.to_dict.return_value = {"locked_by": 1}
        error = LockConflict(info)

        self.assertEqual(error.status_code, 409)
        self.assertEqual(error.to_dict()["lock_info"], {"locked_by": 1})
        self.assertEqual(error.to_dict()["error"], "LOCK_CONFLICT")
