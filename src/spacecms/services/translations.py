"""Translation groups: creation, status and structural sync between languages."""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional, Sequence

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from spacecms.content import (
    COMPONENT_KEY,
    UID_KEY,
    Block,
    count_words,
    is_block,
    is_block_list,
    iter_blocks,
    own_fields,
    text_leaves,
)
from spacecms.db.models import Story, StoryStatus, User
from spacecms.errors import InvalidArgument, NotFound
from spacecms.services import cache
from spacecms.services.slugs import SlugGenerator
from spacecms.services.versions import VersionManager

SYNCABLE_FIELDS = ("content", "meta_data", "name", "meta_title", "meta_description")

# Story-level fields counted as translatable text next to content leaves.
TRANSLATABLE_META = ("meta_title", "meta_description")


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _leaf_map(content: Optional[Mapping[str, Any]]) -> Dict[tuple, str]:
    """``(uid, field) -> text`` for every translatable leaf in a content tree."""
    leaves = {}
    for _, block in iter_blocks(content or {}):
        view = Block.from_dict(block)
        for name, value in view.text_leaves().items():
            leaves[(view.uid, name)] = value
    return leaves


def _shape(content: Optional[Mapping[str, Any]]) -> set:
    return {block[UID_KEY] for _, block in iter_blocks(content or {})}


def _merge_blocks(target: List[Any], source: List[Any]) -> bool:
    """Merge ``source`` blocks into ``target`` in place, matching on ``_uid``.

    Target values always win. Blocks only in the source are copied in after
    their preceding source sibling; blocks only in the target are kept.
    """
    changed = False
    target_index = {item[UID_KEY]: item for item in target if is_block(item)}
    previous_uid = None

    for source_block in source:
        if not is_block(source_block):
            continue
        uid = source_block[UID_KEY]
        existing = target_index.get(uid)

        if existing is None:
            new_block = copy.deepcopy(source_block)
            position = 0
            if previous_uid is not None:
                for index, item in enumerate(target):
                    if is_block(item) and item[UID_KEY] == previous_uid:
                        position = index + 1
                        break
                else:
                    position = len(target)
            target.insert(position, new_block)
            target_index[uid] = new_block
            changed = True
        else:
            changed = _merge_block(existing, source_block) or changed

        previous_uid = uid

    return changed


def _merge_block(target: Dict[str, Any], source: Mapping[str, Any]) -> bool:
    changed = False
    for key, source_value in source.items():
        if key == UID_KEY:
            continue
        if key not in target:
            target[key] = copy.deepcopy(source_value)
            changed = True
        elif is_block_list(source_value) and isinstance(target[key], list):
            changed = _merge_blocks(target[key], source_value) or changed
    return changed


def _merge_content(target: Optional[Mapping[str, Any]], source: Optional[Mapping[str, Any]]) -> tuple:
    merged = copy.deepcopy(dict(target or {}))
    changed = False
    for key, source_value in (source or {}).items():
        if key not in merged:
            merged[key] = copy.deepcopy(source_value)
            changed = True
        elif isinstance(source_value, list) and isinstance(merged[key], list):
            changed = _merge_blocks(merged[key], source_value) or changed
    return merged, changed


class TranslationSynchronizer:
    """
    Keeps language variants of a story structurally aligned.
    Every story in a group points at the origin story through
    translation_group_id; blocks correspond across languages by ``_uid``.
    """

    @staticmethod
    def create_translation(
        session: Session,
        source: Story,
        language: str,
        override_data: Optional[Mapping[str, Any]] = None,
        user: Optional[User] = None,
    ) -> Story:
        override_data = dict(override_data or {})
        space = source.space

        if not space.is_language_enabled(language):
            raise InvalidArgument(f"Language '{language}' is not enabled for this space")
        if language == source.language:
            raise InvalidArgument("Translation language must differ from the source language")

        anchor_id = source.group_anchor_id
        if TranslationSynchronizer.get_translation(session, source, language) is not None:
            raise InvalidArgument(f"A '{language}' translation already exists for this story")

        override_meta = dict(override_data.get("meta_data") or {})
        meta_data = copy.deepcopy(source.meta_data or {})
        for name in TRANSLATABLE_META:
            meta_data.pop(name, None)
        meta_data.update(override_meta)

        slug = override_data.get("slug") or f"{source.slug}-{language}"
        if not SlugGenerator.is_valid_slug(slug):
            raise InvalidArgument(f"Invalid slug '{slug}'")
        slug = SlugGenerator.ensure_unique(session, slug, source.space_id, source.parent_id)

        content = override_data["content"] if override_data.get("content") is not None else source.content
        translation = Story(
            space_id=source.space_id,
            parent_id=source.parent_id,
            name=override_data.get("name") or source.name,
            slug=slug,
            content=copy.deepcopy(content),
            status=StoryStatus.DRAFT.value,
            is_folder=source.is_folder,
            sort_order=source.sort_order,
            language=language,
            translation_group_id=anchor_id,
            meta_title=override_data.get("meta_title") or override_meta.get("meta_title"),
            meta_description=override_data.get("meta_description") or override_meta.get("meta_description"),
            meta_data=meta_data,
            created_by=user.id if user else None,
            updated_by=user.id if user else None,
        )
        parent = source.parent
        translation.full_slug = SlugGenerator.build_full_slug(parent, slug)
        session.add(translation)
        session.flush()
        translation.path = f"{parent.path}/{translation.id}" if parent and parent.path else str(translation.id)

        VersionManager.create_version(session, translation, user, label="Translation created", commit=False)
        cache.mark_story_stale(session, translation)
        session.commit()

        logger.info(f"Created '{language}' translation {translation.uuid} of story {source.uuid}")
        return translation

    @staticmethod
    def get_all_translations(session: Session, story: Story) -> List[Story]:
        """Every live story in the group, anchor included, ordered by id."""
        anchor_id = story.group_anchor_id
        return list(
            session.execute(
                select(Story)
                .where(
                    or_(Story.id == anchor_id, Story.translation_group_id == anchor_id),
                    Story.deleted_at.is_(None),
                )
                .order_by(Story.id)
            ).scalars()
        )

    @staticmethod
    def get_translation(session: Session, story: Story, language: str) -> Optional[Story]:
        for member in TranslationSynchronizer.get_all_translations(session, story):
            if member.language == language:
                return member
        return None

    @staticmethod
    def get_group_anchor(session: Session, story: Story) -> Story:
        if story.translation_group_id is None:
            return story
        anchor = session.get(Story, story.translation_group_id)
        if anchor is None:
            raise NotFound(f"Translation source {story.translation_group_id} not found")
        return anchor

    @staticmethod
    def is_translation_of(a: Story, b: Story) -> bool:
        return a.group_anchor_id is not None and a.group_anchor_id == b.group_anchor_id

    @staticmethod
    def get_translation_status(session: Session, story: Story) -> Dict[str, Dict[str, Any]]:
        """
        Per-language completion for the whole group, measured against the
        group anchor. Completion counts the anchor's translatable leaves
        (string fields of content blocks plus meta title/description) that
        are non-empty in the translation.
        """
        source = TranslationSynchronizer.get_group_anchor(session, story)
        source_leaves = {key: value for key, value in _leaf_map(source.content).items() if value.strip()}
        source_meta = [name for name in TRANSLATABLE_META if not _is_blank(getattr(source, name))]
        source_shape = _shape(source.content)
        total = len(source_leaves) + len(source_meta)

        status = {}
        for member in TranslationSynchronizer.get_all_translations(session, story):
            member_leaves = _leaf_map(member.content)

            if member.id == source.id or total == 0:
                completion = 100
            else:
                filled = sum(1 for key in source_leaves if (member_leaves.get(key) or "").strip())
                filled += sum(1 for name in source_meta if not _is_blank(getattr(member, name)))
                completion = round(100 * filled / total)

            words = sum(count_words(text) for text in member_leaves.values())
            words += sum(count_words(getattr(member, name) or "") for name in TRANSLATABLE_META)

            status[member.language] = {
                "uuid": member.uuid,
                "completion_percentage": completion,
                "needs_sync": member.id != source.id and _shape(member.content) != source_shape,
                "word_count": words,
            }
        return status

    @staticmethod
    def sync_translation_content(
        session: Session,
        target: Story,
        source: Story,
        fields_to_sync: Sequence[str] = ("content",),
        user: Optional[User] = None,
    ) -> bool:
        """
        Pull structure from ``source`` into ``target`` without overwriting
        anything already translated. Returns whether the target changed.
        """
        if target.space_id != source.space_id:
            raise InvalidArgument("Cannot sync stories from different spaces")
        if not TranslationSynchronizer.is_translation_of(target, source):
            raise InvalidArgument("Stories do not belong to the same translation group")
        if target.id == source.id:
            raise InvalidArgument("Cannot sync a story with itself")
        unknown = [name for name in fields_to_sync if name not in SYNCABLE_FIELDS]
        if unknown:
            raise InvalidArgument(f"Cannot sync fields: {', '.join(unknown)}")

        updates: Dict[str, Any] = {}
        if "content" in fields_to_sync:
            merged, changed = _merge_content(target.content, source.content)
            if changed:
                updates["content"] = merged
        if "meta_data" in fields_to_sync:
            merged_meta = copy.deepcopy(dict(target.meta_data or {}))
            for key, value in (source.meta_data or {}).items():
                if _is_blank(merged_meta.get(key)) and not _is_blank(value):
                    merged_meta[key] = copy.deepcopy(value)
            if merged_meta != (target.meta_data or {}):
                updates["meta_data"] = merged_meta
        for name in ("name", "meta_title", "meta_description"):
            if name in fields_to_sync and _is_blank(getattr(target, name)) and not _is_blank(getattr(source, name)):
                updates[name] = getattr(source, name)

        if not updates:
            return False

        VersionManager.create_version(
            session, target, user, label=f"Before sync from '{source.language}'", commit=False
        )
        for name, value in updates.items():
            setattr(target, name, value)
        if user is not None:
            target.updated_by = user.id
        cache.mark_story_stale(session, target)
        session.commit()

        logger.info(f"Synced {', '.join(updates)} from story {source.uuid} into {target.uuid} ({target.language})")
        return True

    @staticmethod
    def get_untranslated_fields(target: Story, source: Story) -> Dict[str, Any]:
        """Leaves that are filled in ``source`` but empty or missing in ``target``."""
        target_blocks = {block[UID_KEY]: block for _, block in iter_blocks(target.content or {})}

        content = []
        for _, block in iter_blocks(source.content or {}):
            uid = block[UID_KEY]
            counterpart = own_fields(target_blocks.get(uid, {}))
            for name, value in text_leaves(own_fields(block)).items():
                if value.strip() and _is_blank(counterpart.get(name)):
                    content.append({
                        "uid": uid,
                        "component": block.get(COMPONENT_KEY),
                        "field": name,
                        "source_value": value,
                    })

        meta = {}
        for name in TRANSLATABLE_META:
            value = getattr(source, name)
            if not _is_blank(value) and _is_blank(getattr(target, name)):
                meta[name] = value
        for key, value in (source.meta_data or {}).items():
            if not _is_blank(value) and _is_blank((target.meta_data or {}).get(key)):
                meta[key] = value

        return {"content": content, "meta": meta}
