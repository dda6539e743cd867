from datetime import datetime, timedelta, timezone

import pytest

from spacecms.db.models import Story
from spacecms.errors import InvalidArgument, LockConflict, NotFound, ValidationFailed
from spacecms.services.locking import StoryLockService
from spacecms.services.stories import StoryService
from spacecms.services.translations import TranslationSynchronizer
from spacecms.services.versions import VersionManager

HERO = {"_uid": "h1", "component": "hero", "title": "Hello"}


def test_create_story_assigns_position_and_first_version(session, make_story):
    parent = make_story("About Us")
    child = make_story("The Team", parent_id=parent.id)

    assert parent.slug == "about-us"
    assert parent.full_slug == "about-us"
    assert parent.path == str(parent.id)
    assert child.full_slug == "about-us/the-team"
    assert child.path == f"{parent.id}/{child.id}"
    assert child.status == "draft"
    assert child.language == "en"
    assert VersionManager.get_latest_version(session, child).version_number == 1


def test_sibling_sort_order_increments(make_story):
    first = make_story("One")
    second = make_story("Two")
    assert second.sort_order == first.sort_order + 1


def test_generated_slugs_are_unique_among_siblings(make_story):
    make_story("News")
    assert make_story("News").slug == "news-2"


def test_explicit_duplicate_slug_is_rejected(make_story):
    make_story("News")
    with pytest.raises(ValidationFailed) as exc:
        make_story("Other news", slug="news")
    assert "slug" in exc.value.errors


def test_create_validates_content_against_components(make_story):
    with pytest.raises(ValidationFailed) as exc:
        make_story("Bad", content={"body": [{"_uid": "h1", "component": "hero"}]})
    assert exc.value.errors == {"body.0.title": "Field 'title' is required"}
    assert exc.value.status_code == 422


def test_create_requires_name(make_story):
    with pytest.raises(ValidationFailed):
        make_story("   ")


def test_create_rejects_disabled_language(make_story):
    with pytest.raises(InvalidArgument):
        make_story("Page", language="fr")


def test_create_rejects_parent_from_other_space(make_story, other_space):
    foreign = make_story("Foreign", target_space=other_space)
    with pytest.raises(InvalidArgument):
        make_story("Child", parent_id=foreign.id)


def test_scheduled_story_needs_future_date(make_story):
    with pytest.raises(ValidationFailed) as exc:
        make_story("Later", status="scheduled")
    assert "scheduled_at" in exc.value.errors

    future = datetime.now(timezone.utc) + timedelta(days=1)
    story = make_story("Later", status="scheduled", scheduled_at=future.isoformat())
    assert story.scheduled_at == future


def test_create_with_translation_group(session, make_story):
    origin = make_story("Home")
    spanish = make_story("Inicio", language="es", translation_group_id=origin.id)

    assert spanish.translation_group_id == origin.id
    assert TranslationSynchronizer.is_translation_of(origin, spanish)
    with pytest.raises(InvalidArgument):
        make_story("Otra", language="es", translation_group_id=origin.id)
    with pytest.raises(InvalidArgument):
        make_story("Ghost", translation_group_id=9999)


def test_update_blocked_by_other_editors_lock(session, make_story, editor, other_editor):
    story = make_story("Shared", content={"body": [dict(HERO)]})
    StoryLockService.lock(session, story, other_editor, "their-tab")

    with pytest.raises(LockConflict) as exc:
        StoryService.update_story(session, story, {"name": "Mine now"}, editor)

    assert exc.value.lock_info.locked_by == other_editor.id
    assert exc.value.to_dict()["lock_info"]["locker"]["name"] == "Grace"
    assert story.name == "Shared"


def test_update_by_lock_holder(session, make_story, editor):
    story = make_story("Shared", content={"body": [dict(HERO)]})
    StoryLockService.lock(session, story, editor, "my-tab")

    StoryService.update_story(session, story, {"content": {"body": [dict(HERO, title="Updated")]}}, editor)

    assert story.content["body"][0]["title"] == "Updated"
    assert story.updated_by == editor.id
    # pre-update snapshot
    assert VersionManager.get_latest_version(session, story).content["body"][0]["title"] == "Hello"


def test_update_validates_content(session, make_story, editor):
    story = make_story("Shared", content={"body": [dict(HERO)]})
    with pytest.raises(ValidationFailed):
        StoryService.update_story(session, story, {"content": {"body": [dict(HERO, title="x" * 41)]}}, editor)
    assert story.content["body"][0]["title"] == "Hello"


def test_moving_a_story_below_itself_is_rejected(session, make_story, editor):
    parent = make_story("Parent")
    child = make_story("Child", parent_id=parent.id)

    with pytest.raises(InvalidArgument):
        StoryService.update_story(session, parent, {"parent_id": child.id}, editor)
    with pytest.raises(InvalidArgument):
        StoryService.update_story(session, parent, {"parent_id": parent.id}, editor)


def test_slug_change_propagates_to_descendants(session, make_story, editor):
    root = make_story("Docs")
    guide = make_story("Guide", parent_id=root.id)
    step = make_story("Step", parent_id=guide.id)

    StoryService.update_story(session, root, {"slug": "manual"}, editor)

    assert root.full_slug == "manual"
    assert guide.full_slug == "manual/guide"
    assert step.full_slug == "manual/guide/step"


def test_move_recomputes_path(session, make_story, editor):
    left = make_story("Left")
    right = make_story("Right")
    leaf = make_story("Leaf", parent_id=left.id)

    StoryService.update_story(session, leaf, {"parent_id": right.id}, editor)

    assert leaf.parent_id == right.id
    assert leaf.full_slug == "right/leaf"
    assert leaf.path == f"{right.id}/{leaf.id}"


def test_publish_now_and_scheduled(session, make_story, editor):
    now = datetime(2030, 5, 1, 9, 0, tzinfo=timezone.utc)
    story = make_story("News")

    StoryService.publish_story(session, story, editor, scheduled_at=now + timedelta(hours=2), now=now)
    assert story.status == "scheduled"
    assert story.scheduled_at == now + timedelta(hours=2)

    StoryService.publish_story(session, story, editor, now=now)
    assert story.status == "published"
    assert story.published_at == now
    assert story.published_by == editor.id
    assert story.scheduled_at is None


def test_publish_blocked_by_lock(session, make_story, editor, other_editor):
    story = make_story("News")
    StoryLockService.lock(session, story, other_editor, "s")
    with pytest.raises(LockConflict):
        StoryService.publish_story(session, story, editor)


def test_publish_due_stories(session, make_story, editor):
    now = datetime(2030, 5, 1, 9, 0, tzinfo=timezone.utc)
    due = make_story("Due")
    later = make_story("Later")
    StoryService.publish_story(session, due, editor, scheduled_at=now + timedelta(minutes=5), now=now)
    StoryService.publish_story(session, later, editor, scheduled_at=now + timedelta(days=1), now=now)

    assert StoryService.publish_due_stories(session, now=now + timedelta(hours=1)) == 1
    assert due.status == "published"
    assert later.status == "scheduled"


def test_publish_records_a_version_only_when_published_now(session, make_story, editor):
    now = datetime(2030, 5, 1, 9, 0, tzinfo=timezone.utc)
    story = make_story("News")

    StoryService.publish_story(session, story, editor, scheduled_at=now + timedelta(hours=2), now=now)
    assert VersionManager.get_latest_version(session, story).label == "Initial version"

    StoryService.publish_story(session, story, editor, now=now)
    latest = VersionManager.get_latest_version(session, story)
    assert latest.label == "Published"
    assert latest.status == "published"


def test_unpublish(session, make_story, editor):
    story = make_story("News", status="published")
    assert story.published_at is not None

    StoryService.unpublish_story(session, story, editor)

    assert story.status == "draft"
    assert story.published_at is None
    assert story.unpublished_at is not None
    latest = VersionManager.get_latest_version(session, story)
    assert (latest.label, latest.status) == ("Unpublished", "draft")


def test_duplicate_story(session, make_story, editor):
    origin = make_story("Home", content={"body": [dict(HERO)]}, meta_title="Home", status="published")
    spanish = TranslationSynchronizer.create_translation(session, origin, "es", {}, editor)

    copy = StoryService.duplicate_story(session, spanish, {}, editor)

    assert copy.name == "Home (Copy)"
    assert copy.slug == "home-es-copy"
    assert copy.status == "draft"
    assert copy.language == "es"
    assert copy.translation_group_id is None
    assert copy.content["body"][0]["title"] == "Hello"
    assert copy.content["body"][0]["_uid"] != "h1"
    assert not TranslationSynchronizer.is_translation_of(copy, origin)


def test_duplicate_with_modifications(session, make_story, editor):
    origin = make_story("Home")
    copy = StoryService.duplicate_story(session, origin, {"name": "Start", "slug": "start"}, editor)
    assert (copy.name, copy.slug) == ("Start", "start")


def test_soft_delete_snapshots_first(session, space, make_story, editor):
    story = make_story("Old", content={"body": [dict(HERO)]})

    StoryService.delete_story(session, story, editor)

    assert story.is_deleted
    assert VersionManager.get_latest_version(session, story).label == "Before deletion"
    with pytest.raises(NotFound):
        StoryService.get_story(session, space, story.uuid)


def test_hard_delete_promotes_oldest_translation(session, make_story, editor):
    origin = make_story("Home")
    spanish = TranslationSynchronizer.create_translation(session, origin, "es", {}, editor)
    german = TranslationSynchronizer.create_translation(session, origin, "de", {}, editor)
    origin_id = origin.id

    StoryService.delete_story(session, origin, editor, hard=True)

    assert session.get(Story, origin_id) is None
    assert spanish.translation_group_id is None
    assert german.translation_group_id == spanish.id
    assert [s.language for s in TranslationSynchronizer.get_all_translations(session, german)] == ["es", "de"]


def test_hard_delete_with_children_is_rejected(session, make_story, editor):
    parent = make_story("Parent")
    make_story("Child", parent_id=parent.id)
    with pytest.raises(InvalidArgument):
        StoryService.delete_story(session, parent, editor, hard=True)


def test_bulk_publish_skips_locked_stories(session, make_story, editor, other_editor):
    stories = [make_story(f"Page {i}") for i in range(3)]
    StoryLockService.lock(session, stories[1], other_editor, "s")

    result = StoryService.bulk_publish(session, stories, editor)

    assert (result.total, result.succeeded) == (3, 2)
    assert result.failed == [{
        "uuid": stories[1].uuid,
        "error": "LOCK_CONFLICT",
        "message": "Story is locked by another user",
    }]
    assert [s.status for s in stories] == ["published", "draft", "published"]


def test_bulk_delete(session, make_story, editor, other_editor):
    stories = [make_story(f"Page {i}") for i in range(3)]
    StoryLockService.lock(session, stories[0], other_editor, "s")

    result = StoryService.bulk_delete(session, stories, editor)

    assert result.to_dict()["succeeded"] == 2
    assert [s.is_deleted for s in stories] == [False, True, True]


def test_bulk_publish_can_schedule(session, make_story, editor):
    now = datetime(2030, 5, 1, 9, 0, tzinfo=timezone.utc)
    stories = [make_story(f"Launch {i}") for i in range(2)]

    result = StoryService.bulk_publish(session, stories, editor, scheduled_at=now + timedelta(days=1), now=now)

    assert (result.total, result.succeeded) == (2, 2)
    assert [s.status for s in stories] == ["scheduled", "scheduled"]
    assert all(s.scheduled_at == now + timedelta(days=1) for s in stories)
    assert StoryService.publish_due_stories(session, now=now + timedelta(days=2)) == 2
