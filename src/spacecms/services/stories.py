from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from spacecms.config import load_settings
from spacecms.content import regenerate_uids
from spacecms.db.models import Space, Story, StoryStatus, User
from spacecms.errors import CMSError, InvalidArgument, LockConflict, NotFound, ValidationFailed
from spacecms.services import cache
from spacecms.services.components import ComponentService
from spacecms.services.locking import StoryLockService
from spacecms.services.schema_validator import SchemaValidator, parse_date
from spacecms.services.slugs import SlugGenerator
from spacecms.services.templates import TemplateEngine
from spacecms.services.translations import TranslationSynchronizer
from spacecms.services.versions import VersionManager

STATUSES = tuple(status.value for status in StoryStatus)

# Plain columns copied from request data on create/update.
META_FIELDS = ("meta_title", "meta_description", "meta_keywords", "og_title", "og_description", "og_image")
UPDATABLE_FIELDS = ("name", "content", "is_folder", "sort_order", "meta_data") + META_FIELDS


@dataclass
class BulkResult:
    total: int = 0
    succeeded: int = 0
    failed: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"total": self.total, "succeeded": self.succeeded, "failed": self.failed}


def _coerce_datetime(value: Any, field_name: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        parsed = parse_date(value)
        if parsed is None:
            raise ValidationFailed({field_name: "Value must be a valid date"})
        value = parsed
    if not isinstance(value, datetime):
        raise ValidationFailed({field_name: "Value must be a valid date"})
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class StoryService:
    """
    Orchestrates story mutations.
    Every write checks the editing lock, validates content against the
    space's component schemas and snapshots prior state before it changes.
    """

    @staticmethod
    def get_story(session: Session, space: Space, uuid: str) -> Story:
        story = session.execute(
            select(Story).where(Story.space_id == space.id, Story.uuid == uuid, Story.deleted_at.is_(None))
        ).scalar_one_or_none()
        if story is None:
            raise NotFound(f"Story {uuid} not found")
        return story

    @staticmethod
    def _ensure_not_locked(session: Session, story: Story, user: User, now: Optional[datetime] = None) -> Story:
        # the caller's copy may predate another editor's lock; check the locked row
        row = StoryLockService.lock_row(session, story)
        if row.is_locked_by_other(user, now):
            raise LockConflict(row.get_lock_info(now))
        return row

    @staticmethod
    def _validate_content(session: Session, space_id: int, content: Any) -> None:
        errors = SchemaValidator.validate_content(content, ComponentService.schema_resolver(session, space_id))
        if errors:
            raise ValidationFailed(errors)

    @staticmethod
    def _resolve_parent(session: Session, space_id: int, parent_id: Optional[int]) -> Optional[Story]:
        if parent_id is None:
            return None
        parent = session.get(Story, parent_id)
        if parent is None or parent.space_id != space_id or parent.is_deleted:
            raise InvalidArgument(f"Parent story {parent_id} not found in this space")
        return parent

    @staticmethod
    def _check_not_descendant(story: Story, parent: Optional[Story]) -> None:
        node = parent
        while node is not None:
            if node.id == story.id:
                raise InvalidArgument("A story cannot be moved below itself")
            node = node.parent

    @staticmethod
    def _check_status(status: Any, scheduled_at: Optional[datetime], now: datetime) -> None:
        if status not in STATUSES:
            raise ValidationFailed({"status": f"Status must be one of: {', '.join(STATUSES)}"})
        if status == StoryStatus.SCHEDULED.value and (scheduled_at is None or scheduled_at <= now):
            raise ValidationFailed({"scheduled_at": "Scheduled stories need a publication date in the future"})

    @staticmethod
    def _check_slug(session: Session, slug: str, space_id: int, parent_id: Optional[int], exclude_id: Optional[int] = None) -> None:
        if not SlugGenerator.is_valid_slug(slug):
            raise ValidationFailed({"slug": "Slug may only contain lowercase letters, numbers and hyphens"})
        if SlugGenerator.slug_exists(session, slug, space_id, parent_id, exclude_id):
            raise ValidationFailed({"slug": f"Slug '{slug}' is already used at this level"})

    @staticmethod
    def _apply_position(story: Story, parent: Optional[Story]) -> None:
        story.full_slug = SlugGenerator.build_full_slug(parent, story.slug)
        story.path = f"{parent.path}/{story.id}" if parent is not None and parent.path else str(story.id)

    @staticmethod
    def _propagate_position(story: Story) -> None:
        for child in story.children:
            StoryService._apply_position(child, story)
            StoryService._propagate_position(child)

    @staticmethod
    def _next_sort_order(session: Session, space_id: int, parent_id: Optional[int]) -> int:
        stmt = select(func.max(Story.sort_order)).where(Story.space_id == space_id)
        if parent_id is None:
            stmt = stmt.where(Story.parent_id.is_(None))
        else:
            stmt = stmt.where(Story.parent_id == parent_id)
        current = session.execute(stmt).scalar_one_or_none()
        return 0 if current is None else current + 1

    @staticmethod
    def create_story(
        session: Session,
        space: Space,
        data: Mapping[str, Any],
        user: Optional[User],
        now: Optional[datetime] = None,
    ) -> Story:
        now = now or datetime.now(timezone.utc)

        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationFailed({"name": "Field 'name' is required"})

        content = copy.deepcopy(data.get("content") or {"body": []})
        StoryService._validate_content(session, space.id, content)

        parent = StoryService._resolve_parent(session, space.id, data.get("parent_id"))
        parent_id = parent.id if parent else None

        if data.get("slug"):
            slug = data["slug"]
            StoryService._check_slug(session, slug, space.id, parent_id)
        else:
            slug = SlugGenerator.ensure_unique(
                session, SlugGenerator.generate_from_title(name), space.id, parent_id
            )

        language = data.get("language") or space.default_language
        if not space.is_language_enabled(language):
            raise InvalidArgument(f"Language '{language}' is not enabled for this space")

        status = data.get("status") or StoryStatus.DRAFT.value
        scheduled_at = _coerce_datetime(data.get("scheduled_at"), "scheduled_at")
        StoryService._check_status(status, scheduled_at, now)

        translation_group_id = None
        if data.get("translation_group_id") is not None:
            origin = session.get(Story, data["translation_group_id"])
            if origin is None or origin.space_id != space.id:
                raise InvalidArgument("Translation group must reference a story in the same space")
            if TranslationSynchronizer.get_translation(session, origin, language) is not None:
                raise InvalidArgument(f"A '{language}' translation already exists in this group")
            translation_group_id = origin.group_anchor_id

        story = Story(
            space_id=space.id,
            parent_id=parent_id,
            name=name,
            slug=slug,
            content=content,
            status=status,
            is_folder=bool(data.get("is_folder", False)),
            language=language,
            translation_group_id=translation_group_id,
            meta_data=copy.deepcopy(data.get("meta_data") or {}),
            scheduled_at=scheduled_at if status == StoryStatus.SCHEDULED.value else None,
            created_by=user.id if user else None,
            updated_by=user.id if user else None,
        )
        for name_ in META_FIELDS:
            if data.get(name_) is not None:
                setattr(story, name_, data[name_])
        if data.get("sort_order") is not None:
            story.sort_order = int(data["sort_order"])
        else:
            story.sort_order = StoryService._next_sort_order(session, space.id, parent_id)
        if status == StoryStatus.PUBLISHED.value:
            story.published_at = now
            story.published_by = user.id if user else None

        session.add(story)
        session.flush()
        StoryService._apply_position(story, parent)

        VersionManager.create_version(session, story, user, label="Initial version", commit=False)
        cache.mark_story_stale(session, story)
        session.commit()

        logger.info(f"Created story {story.uuid} '{story.name}' in space {space.uuid}")
        return story

    @staticmethod
    def update_story(
        session: Session,
        story: Story,
        data: Mapping[str, Any],
        user: User,
        now: Optional[datetime] = None,
    ) -> Story:
        now = now or datetime.now(timezone.utc)
        story = StoryService._ensure_not_locked(session, story, user, now)
        if story.is_deleted:
            raise NotFound(f"Story {story.uuid} not found")

        if "name" in data and not (data["name"] or "").strip():
            raise ValidationFailed({"name": "Field 'name' is required"})
        if "content" in data:
            StoryService._validate_content(session, story.space_id, data["content"])

        moved = False
        parent = story.parent
        if "parent_id" in data and data["parent_id"] != story.parent_id:
            if data["parent_id"] == story.id:
                raise InvalidArgument("A story cannot be its own parent")
            parent = StoryService._resolve_parent(session, story.space_id, data["parent_id"])
            StoryService._check_not_descendant(story, parent)
            moved = True
        parent_id = parent.id if parent else None

        slug = data.get("slug") or story.slug
        if slug != story.slug or moved:
            StoryService._check_slug(session, slug, story.space_id, parent_id, exclude_id=story.id)
            moved = True

        status = data.get("status", story.status)
        scheduled_at = story.scheduled_at
        if "scheduled_at" in data:
            scheduled_at = _coerce_datetime(data["scheduled_at"], "scheduled_at")
        if status != story.status or "scheduled_at" in data:
            StoryService._check_status(status, scheduled_at, now)

        if load_settings().snapshot_on_update:
            VersionManager.create_version(session, story, user, commit=False)

        for name in UPDATABLE_FIELDS:
            if name in data:
                setattr(story, name, copy.deepcopy(data[name]))
        story.name = story.name.strip()

        if status != story.status:
            story.status = status
            if status == StoryStatus.PUBLISHED.value:
                story.published_at = now
                story.published_by = user.id
        story.scheduled_at = scheduled_at if status == StoryStatus.SCHEDULED.value else None
        story.updated_by = user.id

        if moved:
            cache.mark_story_stale(session, story)
            story.parent_id = parent_id
            story.parent = parent
            story.slug = slug
            StoryService._apply_position(story, parent)
            StoryService._propagate_position(story)

        cache.mark_story_stale(session, story)
        session.commit()

        logger.info(f"Updated story {story.uuid} by user {user.id}")
        return story

    @staticmethod
    def publish_story(
        session: Session,
        story: Story,
        user: User,
        scheduled_at: Any = None,
        now: Optional[datetime] = None,
    ) -> Story:
        """
        Publish now, or schedule when ``scheduled_at`` lies in the future.
        Immediate publication is recorded as a "Published" version.
        """
        now = now or datetime.now(timezone.utc)
        story = StoryService._ensure_not_locked(session, story, user, now)
        if story.is_deleted:
            raise NotFound(f"Story {story.uuid} not found")

        scheduled_at = _coerce_datetime(scheduled_at, "scheduled_at")
        story.updated_by = user.id
        if scheduled_at is not None and scheduled_at > now:
            story.status = StoryStatus.SCHEDULED.value
            story.scheduled_at = scheduled_at
            logger.info(f"Story {story.uuid} scheduled for {scheduled_at.isoformat()}")
        else:
            story.status = StoryStatus.PUBLISHED.value
            story.published_at = now
            story.published_by = user.id
            story.scheduled_at = None
            VersionManager.create_version(session, story, user, label="Published", commit=False)
            logger.info(f"Story {story.uuid} published by user {user.id}")

        cache.mark_story_stale(session, story)
        session.commit()
        return story

    @staticmethod
    def unpublish_story(session: Session, story: Story, user: User, now: Optional[datetime] = None) -> Story:
        now = now or datetime.now(timezone.utc)
        story = StoryService._ensure_not_locked(session, story, user, now)

        story.status = StoryStatus.DRAFT.value
        story.published_at = None
        story.unpublished_at = now
        story.scheduled_at = None
        story.updated_by = user.id
        VersionManager.create_version(session, story, user, label="Unpublished", commit=False)
        cache.mark_story_stale(session, story)
        session.commit()

        logger.info(f"Story {story.uuid} unpublished by user {user.id}")
        return story

    @staticmethod
    def publish_due_stories(session: Session, now: Optional[datetime] = None) -> int:
        """Publish every scheduled story whose time has come."""
        now = now or datetime.now(timezone.utc)
        due = session.execute(
            select(Story).where(
                Story.status == StoryStatus.SCHEDULED.value,
                Story.scheduled_at.is_not(None),
                Story.scheduled_at <= now,
                Story.deleted_at.is_(None),
            )
        ).scalars().all()

        for story in due:
            story.status = StoryStatus.PUBLISHED.value
            story.published_at = now
            story.scheduled_at = None
            cache.mark_story_stale(session, story)
        session.commit()

        if due:
            logger.info(f"Published {len(due)} scheduled story(ies)")
        return len(due)

    @staticmethod
    def duplicate_story(
        session: Session,
        story: Story,
        modifications: Optional[Mapping[str, Any]],
        user: User,
    ) -> Story:
        """Copy a story with fresh block uids. The copy is not a translation."""
        modifications = dict(modifications or {})
        parent_id = modifications.get("parent_id", story.parent_id)

        data: Dict[str, Any] = {
            "name": f"{story.name} (Copy)",
            "content": regenerate_uids(story.content or {}),
            "parent_id": parent_id,
            "language": story.language,
            "is_folder": story.is_folder,
            "meta_data": copy.deepcopy(story.meta_data or {}),
            "status": StoryStatus.DRAFT.value,
        }
        for name in META_FIELDS:
            data[name] = getattr(story, name)
        data.update(modifications)
        if not modifications.get("slug"):
            data["slug"] = SlugGenerator.ensure_unique(session, f"{story.slug}-copy", story.space_id, parent_id)

        duplicate = StoryService.create_story(session, story.space, data, user)
        logger.info(f"Duplicated story {story.uuid} as {duplicate.uuid}")
        return duplicate

    @staticmethod
    def delete_story(
        session: Session,
        story: Story,
        user: User,
        hard: bool = False,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Soft delete marks the row; hard delete removes it with its versions.
        Hard-deleting a translation group's origin hands the group to its
        oldest remaining member.
        """
        now = now or datetime.now(timezone.utc)
        story = StoryService._ensure_not_locked(session, story, user, now)

        if hard and story.children:
            raise InvalidArgument("Cannot delete a story that still has children")

        cache.mark_story_stale(session, story)

        if not hard:
            VersionManager.create_version(session, story, user, label="Before deletion", commit=False)
            story.deleted_at = now
            story.updated_by = user.id
            session.commit()
            logger.info(f"Soft-deleted story {story.uuid}")
            return

        members = session.execute(
            select(Story).where(Story.translation_group_id == story.id).order_by(Story.id)
        ).scalars().all()
        if members:
            new_anchor = members[0]
            new_anchor.translation_group_id = None
            for member in members[1:]:
                member.translation_group_id = new_anchor.id
            session.flush()
            logger.info(f"Story {new_anchor.uuid} is now the origin of its translation group")

        session.delete(story)
        session.commit()
        logger.info(f"Deleted story {story.uuid}")

    @staticmethod
    def _bulk(
        session: Session,
        stories: Iterable[Story],
        action: str,
        operation: Callable[[Story], Any],
    ) -> BulkResult:
        result = BulkResult()
        for story in stories:
            result.total += 1
            uuid = story.uuid
            try:
                operation(story)
                result.succeeded += 1
            except (CMSError, SQLAlchemyError) as e:
                session.rollback()
                code = e.code if isinstance(e, CMSError) else type(e).__name__
                logger.warning(f"Bulk {action} skipped story {uuid}: {code}")
                result.failed.append({"uuid": uuid, "error": code, "message": str(e)})

        logger.info(f"Bulk {action}: {result.succeeded}/{result.total} succeeded")
        return result

    @staticmethod
    def bulk_publish(
        session: Session,
        stories: Iterable[Story],
        user: User,
        scheduled_at: Any = None,
        now: Optional[datetime] = None,
    ) -> BulkResult:
        return StoryService._bulk(
            session,
            stories,
            "publish",
            lambda story: StoryService.publish_story(session, story, user, scheduled_at=scheduled_at, now=now),
        )

    @staticmethod
    def bulk_delete(session: Session, stories: Iterable[Story], user: User, hard: bool = False) -> BulkResult:
        return StoryService._bulk(
            session, stories, "delete", lambda story: StoryService.delete_story(session, story, user, hard=hard)
        )

    @staticmethod
    def create_from_template(
        session: Session,
        space: Space,
        user: User,
        template_uuid: Optional[str] = None,
        template_name: Optional[str] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> Story:
        template = TemplateEngine.get_template(session, space, uuid=template_uuid, name=template_name)
        data = TemplateEngine.create_from_template(template, overrides)
        data["content"] = regenerate_uids(data["content"])
        return StoryService.create_story(session, space, data, user)
