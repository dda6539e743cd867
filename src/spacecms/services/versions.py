"""Story snapshots: create, list, diff and restore."""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from spacecms.config import load_settings
from spacecms.content import COMPONENT_KEY, index_by_uid, own_fields
from spacecms.db.models import SNAPSHOT_FIELDS, Story, StoryStatus, StoryVersion, User
from spacecms.errors import NotFound

# Story fields compared version-to-version alongside content.
COMPARED_FIELDS = SNAPSHOT_FIELDS + ("meta_data",)


@dataclass
class Page:
    items: List[StoryVersion]
    total: int
    page: int
    per_page: int

    @property
    def pages(self) -> int:
        return max(1, math.ceil(self.total / self.per_page))

    @property
    def has_more(self) -> bool:
        return self.page < self.pages


@dataclass
class BlockChange:
    uid: str
    component: Optional[str]
    fields: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"uid": self.uid, "component": self.component, "fields": self.fields}


@dataclass
class VersionDiff:
    """Field-level differences between two snapshots. Identical parts are omitted."""

    from_version: Optional[int]
    to_version: Optional[int]
    fields: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    added: List[Dict[str, Any]] = field(default_factory=list)
    removed: List[Dict[str, Any]] = field(default_factory=list)
    modified: List[BlockChange] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.fields or self.added or self.removed or self.modified)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_version": self.from_version,
            "to_version": self.to_version,
            "fields": self.fields,
            "content": {
                "added": self.added,
                "removed": self.removed,
                "modified": [change.to_dict() for change in self.modified],
            },
        }


def diff_content(old: Optional[Dict[str, Any]], new: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Compare two content trees block by block, matching on ``_uid``.

    Nested blocks are compared as their own entries, so a change inside a
    child does not mark the parent as modified.
    """
    old_blocks = index_by_uid(old)
    new_blocks = index_by_uid(new)

    added = [copy.deepcopy(new_blocks[uid]) for uid in new_blocks if uid not in old_blocks]
    removed = [copy.deepcopy(old_blocks[uid]) for uid in old_blocks if uid not in new_blocks]

    modified = []
    for uid, old_block in old_blocks.items():
        new_block = new_blocks.get(uid)
        if new_block is None:
            continue
        changes = _diff_mapping(own_fields(old_block), own_fields(new_block))
        if old_block.get(COMPONENT_KEY) != new_block.get(COMPONENT_KEY):
            changes[COMPONENT_KEY] = {"old": old_block.get(COMPONENT_KEY), "new": new_block.get(COMPONENT_KEY)}
        if changes:
            modified.append(BlockChange(uid=uid, component=new_block.get(COMPONENT_KEY), fields=changes))

    return {"added": added, "removed": removed, "modified": modified}


def _diff_mapping(old: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    changes = {}
    for key in list(old) + [k for k in new if k not in old]:
        if old.get(key) != new.get(key):
            changes[key] = {"old": old.get(key), "new": new.get(key)}
    return changes


def _snapshot_values(source: Any) -> Dict[str, Any]:
    values = {name: getattr(source, name) for name in SNAPSHOT_FIELDS}
    values["content"] = copy.deepcopy(source.content)
    values["meta_data"] = copy.deepcopy(source.meta_data)
    return values


class VersionManager:

    @staticmethod
    def next_version_number(session: Session, story: Story) -> int:
        """Atomically bump the story's counter and return the new value."""
        return session.execute(
            update(Story)
            .where(Story.id == story.id)
            .values(version_counter=Story.version_counter + 1)
            .returning(Story.version_counter)
            .execution_options(synchronize_session=False)
        ).scalar_one()

    @staticmethod
    def create_version(
        session: Session,
        story: Story,
        author: Optional[User],
        label: Optional[str] = None,
        commit: bool = True,
    ) -> StoryVersion:
        """
        Snapshot the story's current content and meta fields.
        With commit=False the version joins the caller's transaction.
        """
        if story.id is None:
            session.flush()

        number = VersionManager.next_version_number(session, story)
        version = StoryVersion(
            story_id=story.id,
            version_number=number,
            label=label,
            created_by=author.id if author else None,
            **_snapshot_values(story),
        )
        set_committed_value(story, "version_counter", number)
        session.add(version)

        if commit:
            session.commit()
        else:
            session.flush()

        logger.debug(f"Created version {number} of story {story.uuid}" + (f" ({label})" if label else ""))
        return version

    @staticmethod
    def create_bulk_versions(
        session: Session,
        stories: Iterable[Story],
        author: Optional[User],
        label: Optional[str] = None,
    ) -> List[StoryVersion]:
        """Snapshot each story in turn; a failing story is skipped."""
        created = []
        for story in stories:
            try:
                created.append(VersionManager.create_version(session, story, author, label))
            except Exception as e:
                session.rollback()
                logger.warning(f"Skipping version for story {story.uuid}: {e}")
        return created

    @staticmethod
    def get_versions(
        session: Session,
        story: Story,
        per_page: Optional[int] = None,
        page: int = 1,
    ) -> Page:
        """Versions of ``story``, newest first."""
        per_page = per_page or load_settings().versions_per_page
        page = max(1, page)

        total = session.execute(
            select(func.count(StoryVersion.id)).where(StoryVersion.story_id == story.id)
        ).scalar_one()
        items = session.execute(
            select(StoryVersion)
            .where(StoryVersion.story_id == story.id)
            .order_by(StoryVersion.version_number.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        ).scalars().all()

        return Page(items=list(items), total=total, page=page, per_page=per_page)

    @staticmethod
    def get_version(session: Session, story: Story, version_number: int) -> Optional[StoryVersion]:
        return session.execute(
            select(StoryVersion).where(
                StoryVersion.story_id == story.id,
                StoryVersion.version_number == version_number,
            )
        ).scalar_one_or_none()

    @staticmethod
    def get_latest_version(session: Session, story: Story) -> Optional[StoryVersion]:
        return session.execute(
            select(StoryVersion)
            .where(StoryVersion.story_id == story.id)
            .order_by(StoryVersion.version_number.desc())
            .limit(1)
        ).scalar_one_or_none()

    @staticmethod
    def _require_version(session: Session, story: Story, version_number: int) -> StoryVersion:
        version = VersionManager.get_version(session, story, version_number)
        if version is None:
            raise NotFound(f"Version {version_number} not found for story {story.uuid}")
        return version

    @staticmethod
    def _reconcile_publication(story: Story, now: datetime) -> None:
        # publication dates are not snapshotted; keep them consistent with the restored status
        if story.status == StoryStatus.SCHEDULED.value:
            if story.scheduled_at is None or story.scheduled_at <= now:
                story.status = StoryStatus.DRAFT.value
                story.scheduled_at = None
        else:
            story.scheduled_at = None
        if story.status == StoryStatus.PUBLISHED.value and story.published_at is None:
            story.published_at = now

    @staticmethod
    def restore_to_version(
        session: Session,
        story: Story,
        version_number: int,
        user: Optional[User],
        now: Optional[datetime] = None,
    ) -> Story:
        """
        Overwrite the story with a past snapshot.
        The current state is snapshotted first, and the restored state is
        recorded as a new version, so restore moves history forward.
        A restored "scheduled" status without a future date falls back to draft.
        """
        now = now or datetime.now(timezone.utc)
        target = VersionManager._require_version(session, story, version_number)

        VersionManager.create_version(
            session, story, user, label=f"Before restoring to version {version_number}", commit=False
        )

        for name, value in _snapshot_values(target).items():
            setattr(story, name, value)
        VersionManager._reconcile_publication(story, now)
        if user is not None:
            story.updated_by = user.id

        VersionManager.create_version(
            session, story, user, label=f"Restored to version {version_number}", commit=False
        )
        session.commit()

        logger.info(f"Story {story.uuid} restored to version {version_number}")
        return story

    @staticmethod
    def compare_versions(session: Session, story: Story, version_a: int, version_b: int) -> VersionDiff:
        """Diff version A (old side) against version B (new side)."""
        old = VersionManager._require_version(session, story, version_a)
        new = VersionManager._require_version(session, story, version_b)
        return VersionManager.diff(old, new)

    @staticmethod
    def compare_with_current(session: Session, story: Story, version_number: int) -> VersionDiff:
        old = VersionManager._require_version(session, story, version_number)
        return VersionManager.diff(old, story)

    @staticmethod
    def diff(old: Any, new: Any) -> VersionDiff:
        """Diff two snapshot-shaped objects (versions or stories)."""
        result = VersionDiff(
            from_version=getattr(old, "version_number", None),
            to_version=getattr(new, "version_number", None),
        )
        for name in COMPARED_FIELDS:
            old_value, new_value = getattr(old, name), getattr(new, name)
            if old_value != new_value:
                result.fields[name] = {"old": old_value, "new": new_value}

        content = diff_content(old.content, new.content)
        result.added = content["added"]
        result.removed = content["removed"]
        result.modified = content["modified"]
        return result

    @staticmethod
    def get_version_stats(session: Session, story: Story) -> Dict[str, Any]:
        count, first_at, last_at, latest = session.execute(
            select(
                func.count(StoryVersion.id),
                func.min(StoryVersion.created_at),
                func.max(StoryVersion.created_at),
                func.max(StoryVersion.version_number),
            ).where(StoryVersion.story_id == story.id)
        ).one()

        contributors = session.execute(
            select(func.count(func.distinct(StoryVersion.created_by))).where(
                StoryVersion.story_id == story.id,
                StoryVersion.created_by.is_not(None),
            )
        ).scalar_one()

        return {
            "count": count,
            "first_version_at": _as_iso(first_at),
            "last_version_at": _as_iso(last_at),
            "latest_version_number": latest,
            "contributors": contributors,
            "version_frequency": _frequency(count, first_at, last_at),
        }


def _as_iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _frequency(count: int, first_at: Any, last_at: Any) -> float:
    """Average versions per day over the story's history."""
    if count < 2 or not isinstance(first_at, datetime) or not isinstance(last_at, datetime):
        return float(count)
    days = max((last_at - first_at).total_seconds() / 86400, 1.0)
    return round(count / days, 2)
