"""Reusable content skeletons extracted from and applied to stories."""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from spacecms.config import ContentTemplate, load_settings
from spacecms.db.models import Space, Story, StoryStatus, User
from spacecms.errors import InvalidArgument, NotFound
from spacecms.services import cache
from spacecms.services.slugs import SlugGenerator

TEMPLATE_TYPE_CONFIG = "config"
TEMPLATE_TYPE_CUSTOM = "custom"

# Top-level story fields an override may set on a template-derived story.
OVERRIDABLE_FIELDS = ("name", "slug", "status", "parent_id", "language", "is_folder", "meta_title", "meta_description")


def deep_merge(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursive merge; override keys win, untouched base keys are kept."""
    merged = copy.deepcopy(dict(base))
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class TemplateEngine:

    @staticmethod
    def create_template(story: Story, name: str, description: Optional[str] = None) -> Dict[str, Any]:
        """Extract a template record from a story. The story is not modified."""
        content = copy.deepcopy(story.content or {})
        content.setdefault("body", [])

        meta_data = {
            "meta_title": story.meta_title,
            "meta_description": story.meta_description,
        }
        meta_data.update(copy.deepcopy(story.meta_data or {}))

        return {
            "name": name,
            "description": description or "",
            "type": TEMPLATE_TYPE_CUSTOM,
            "content": content,
            "meta_data": meta_data,
            "created_from_story_uuid": story.uuid,
        }

    @staticmethod
    def create_from_template(template: Mapping[str, Any], overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """
        Story data from a template record. Content and meta_data are deep
        copies (never None); overrides win for top-level fields and are
        deep-merged into meta_data.
        """
        overrides = overrides or {}
        meta_data = copy.deepcopy(template.get("meta_data") or {})
        if isinstance(overrides.get("meta_data"), Mapping):
            meta_data = deep_merge(meta_data, overrides["meta_data"])
        # A new story is never itself a template.
        meta_data.pop("is_template", None)
        meta_data.pop("template_description", None)

        data: Dict[str, Any] = {
            "name": template.get("name"),
            "content": copy.deepcopy(template.get("content") or {}),
            "meta_data": meta_data,
            "meta_title": meta_data.get("meta_title"),
            "meta_description": meta_data.get("meta_description"),
            "status": StoryStatus.DRAFT.value,
        }
        for key in OVERRIDABLE_FIELDS:
            if key in overrides:
                data[key] = overrides[key]
        if "content" in overrides and overrides["content"] is not None:
            data["content"] = copy.deepcopy(overrides["content"])
        return data

    @staticmethod
    def save_template(
        session: Session,
        story: Story,
        name: str,
        description: Optional[str] = None,
        user: Optional[User] = None,
    ) -> Story:
        """Persist a template extracted from ``story`` as a flagged story in the same space."""
        record = TemplateEngine.create_template(story, name, description)
        if TemplateEngine.find_template(session, story.space, name=name) is not None:
            raise InvalidArgument(f"Template '{name}' already exists")

        meta_data = dict(record["meta_data"])
        meta_data["is_template"] = True
        meta_data["template_description"] = record["description"]
        meta_data["created_from_story_uuid"] = story.uuid

        slug = SlugGenerator.ensure_unique(
            session, f"template-{SlugGenerator.generate_from_title(name)}", story.space_id, None
        )
        template = Story(
            space_id=story.space_id,
            name=name,
            slug=slug,
            full_slug=slug,
            content=record["content"],
            status=StoryStatus.DRAFT.value,
            language=story.language,
            meta_title=record["meta_data"].get("meta_title"),
            meta_description=record["meta_data"].get("meta_description"),
            meta_data=meta_data,
            created_by=user.id if user else None,
            updated_by=user.id if user else None,
        )
        session.add(template)
        session.flush()
        template.path = str(template.id)
        cache.mark_stale(session, [f"space:{story.space_id}:templates"])
        session.commit()

        logger.info(f"Saved template '{name}' ({template.uuid}) from story {story.uuid}")
        return template

    @staticmethod
    def _template_stories(session: Session, space: Space) -> List[Story]:
        stories = session.execute(
            select(Story)
            .where(Story.space_id == space.id, Story.deleted_at.is_(None))
            .order_by(Story.name)
        ).scalars()
        return [story for story in stories if story.is_template()]

    @staticmethod
    def _story_record(story: Story) -> Dict[str, Any]:
        meta_data = copy.deepcopy(story.meta_data or {})
        return {
            "uuid": story.uuid,
            "name": story.name,
            "description": meta_data.get("template_description", ""),
            "type": TEMPLATE_TYPE_CUSTOM,
            "content": copy.deepcopy(story.content or {}),
            "meta_data": meta_data,
            "created_from_story_uuid": meta_data.get("created_from_story_uuid"),
        }

    @staticmethod
    def _config_record(template: ContentTemplate) -> Dict[str, Any]:
        return {
            "name": template.name,
            "description": template.description,
            "type": TEMPLATE_TYPE_CONFIG,
            "content": copy.deepcopy(template.content),
            "meta_data": copy.deepcopy(template.meta_data),
        }

    @staticmethod
    def get_available_templates(session: Session, space: Space) -> List[Dict[str, Any]]:
        """Built-in templates followed by the space's saved templates."""
        templates = [TemplateEngine._config_record(template) for template in load_settings().content_templates]
        templates.extend(TemplateEngine._story_record(story) for story in TemplateEngine._template_stories(session, space))
        return templates

    @staticmethod
    def find_template(
        session: Session,
        space: Space,
        uuid: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Look up by uuid (saved templates only) or by name, built-ins first."""
        if uuid is None and name is not None:
            builtin = load_settings().get_template(name)
            if builtin is not None:
                return TemplateEngine._config_record(builtin)
        for story in TemplateEngine._template_stories(session, space):
            if uuid is not None and story.uuid == uuid:
                return TemplateEngine._story_record(story)
            if uuid is None and name is not None and story.name == name:
                return TemplateEngine._story_record(story)
        return None

    @staticmethod
    def get_template(
        session: Session,
        space: Space,
        uuid: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Dict[str, Any]:
        if uuid is None and name is None:
            raise InvalidArgument("A template uuid or name is required")
        template = TemplateEngine.find_template(session, space, uuid=uuid, name=name)
        if template is None:
            raise NotFound(f"Template {uuid or name} not found")
        return template
