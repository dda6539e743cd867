"""ORM models for the CMS core."""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from spacecms.db.base import Base, TZDateTime

# Utility for cross-dialect JSON support (JSONB on Postgres, JSON on SQLite)
JSON_VARIANT = JSON().with_variant(JSONB, "postgresql")


def _new_uuid() -> str:
    return str(uuid.uuid4())


class StoryStatus(str, Enum):
    DRAFT = "draft"
    IN_REVIEW = "in_review"
    PUBLISHED = "published"
    SCHEDULED = "scheduled"
    ARCHIVED = "archived"


# Story columns copied into every version snapshot and written back on restore.
SNAPSHOT_FIELDS = (
    "name",
    "slug",
    "status",
    "language",
    "meta_title",
    "meta_description",
    "meta_keywords",
    "og_title",
    "og_description",
    "og_image",
)


@dataclass
class LockInfo:
    """Outward view of an active story lock."""

    locked_by: int
    session_id: str
    locker_name: Optional[str]
    locker_email: Optional[str]
    locked_at: Optional[datetime]
    expires_at: datetime
    time_remaining: int  # whole minutes, rounded up

    def to_dict(self) -> Dict[str, Any]:
        return {
            "locked_by": self.locked_by,
            "session_id": self.session_id,
            "locker": {"name": self.locker_name, "email": self.locker_email},
            "locked_at": self.locked_at.isoformat() if self.locked_at else None,
            "expires_at": self.expires_at.isoformat(),
            "time_remaining": self.time_remaining,
        }


class User(Base):
    """Editor identity handed to the core by the auth layer."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Space(Base):
    """A tenant. Scopes stories, components, assets and datasources."""

    __tablename__ = "spaces"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(36), unique=True, default=_new_uuid, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    domain: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    default_language: Mapped[str] = mapped_column(String(10), default="en", nullable=False)
    languages: Mapped[Optional[list]] = mapped_column(JSON_VARIANT, nullable=True)
    settings: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)

    # Relationships
    stories: Mapped[List["Story"]] = relationship(back_populates="space")
    components: Mapped[List["Component"]] = relationship(back_populates="space")

    def enabled_languages(self) -> List[str]:
        languages = list(self.languages or [])
        if self.default_language not in languages:
            languages.insert(0, self.default_language)
        return languages

    def is_language_enabled(self, language: str) -> bool:
        return language in self.enabled_languages()


class Component(Base):
    """Content-type schema: field name -> {type, required, constraints}."""

    __tablename__ = "components"

    __table_args__ = (
        UniqueConstraint("space_id", "internal_name", name="uq_components_space_internal_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(36), unique=True, default=_new_uuid, nullable=False)
    space_id: Mapped[int] = mapped_column(ForeignKey("spaces.id"), nullable=False)

    internal_name: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    schema: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)
    is_nestable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_root: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(String(50), default="active", nullable=False)

    # Relationships
    space: Mapped["Space"] = relationship(back_populates="components")


class Story(Base):
    """Hierarchical content node. Lock state lives on the row."""

    __tablename__ = "stories"

    __table_args__ = (
        UniqueConstraint("space_id", "parent_id", "slug", name="uq_stories_space_parent_slug"),
        Index("idx_stories_translation_group", "translation_group_id"),
        Index("idx_stories_lock_expires", "lock_expires_at"),
        Index("idx_stories_space_status", "space_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(36), unique=True, default=_new_uuid, nullable=False)
    space_id: Mapped[int] = mapped_column(ForeignKey("spaces.id"), nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("stories.id"), nullable=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    full_slug: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    content: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=StoryStatus.DRAFT.value, nullable=False)
    is_folder: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Translations point at the group's origin story
    language: Mapped[str] = mapped_column(String(10), default="en", nullable=False)
    translation_group_id: Mapped[Optional[int]] = mapped_column(ForeignKey("stories.id"), nullable=True)

    meta_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    meta_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta_keywords: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    og_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    og_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    og_image: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    meta_data: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)

    published_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime(), nullable=True)
    unpublished_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime(), nullable=True)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime(), nullable=True)

    created_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)
    updated_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)
    published_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)

    # Lock
    locked_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)
    lock_session_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime(), nullable=True)
    lock_expires_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime(), nullable=True)

    version_counter: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime(), nullable=True)

    # Relationships
    space: Mapped["Space"] = relationship(back_populates="stories")
    parent: Mapped[Optional["Story"]] = relationship(
        remote_side="Story.id", foreign_keys=[parent_id], back_populates="children"
    )
    children: Mapped[List["Story"]] = relationship(
        back_populates="parent", foreign_keys=[parent_id], order_by="Story.sort_order"
    )
    locker: Mapped[Optional["User"]] = relationship(foreign_keys=[locked_by])
    versions: Mapped[List["StoryVersion"]] = relationship(
        back_populates="story",
        order_by="StoryVersion.version_number",
        cascade="all, delete-orphan",
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def group_anchor_id(self) -> Optional[int]:
        """Key shared by every story of this translation group."""
        return self.translation_group_id or self.id

    def is_template(self) -> bool:
        return bool((self.meta_data or {}).get("is_template"))

    # Lock predicates. Expiry is evaluated lazily against ``now``.

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return (
            self.locked_by is not None
            and self.lock_expires_at is not None
            and self.lock_expires_at > now
        )

    def is_locked_by_other(self, user: "User", now: Optional[datetime] = None) -> bool:
        return self.is_locked(now) and self.locked_by != user.id

    def is_lock_held_by(self, user: "User", session_id: str, now: Optional[datetime] = None) -> bool:
        return self.is_locked(now) and self.locked_by == user.id and self.lock_session_id == session_id

    def get_lock_info(self, now: Optional[datetime] = None) -> Optional[LockInfo]:
        now = now or datetime.now(timezone.utc)
        if not self.is_locked(now):
            return None

        seconds_left = (self.lock_expires_at - now).total_seconds()
        return LockInfo(
            locked_by=self.locked_by,
            session_id=self.lock_session_id,
            locker_name=self.locker.name if self.locker else None,
            locker_email=self.locker.email if self.locker else None,
            locked_at=self.locked_at,
            expires_at=self.lock_expires_at,
            time_remaining=max(0, math.ceil(seconds_left / 60)),
        )

    def clear_lock(self) -> None:
        self.locked_by = None
        self.lock_session_id = None
        self.locked_at = None
        self.lock_expires_at = None


class StoryVersion(Base):
    """Immutable snapshot of a story's content and meta fields."""

    __tablename__ = "story_versions"

    __table_args__ = (
        UniqueConstraint("story_id", "version_number", name="uq_story_versions_number"),
        Index("idx_story_versions_story_created", "story_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    story_id: Mapped[int] = mapped_column(ForeignKey("stories.id", ondelete="CASCADE"), nullable=False)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    language: Mapped[str] = mapped_column(String(10), nullable=False)

    meta_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    meta_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta_keywords: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    og_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    og_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    og_image: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    meta_data: Mapped[Optional[dict]] = mapped_column(JSON_VARIANT, nullable=True)

    label: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)

    # Relationships
    story: Mapped["Story"] = relationship(back_populates="versions")
    creator: Mapped[Optional["User"]] = relationship(foreign_keys=[created_by])
