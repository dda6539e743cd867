import re
import unicodedata
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from spacecms.db.models import Story

SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
MAX_SLUG_LENGTH = 255


class SlugGenerator:
    """URL slug helpers scoped to (space, parent)."""

    @staticmethod
    def generate_from_title(title: str) -> str:
        normalized = unicodedata.normalize("NFKD", title or "")
        ascii_title = normalized.encode("ascii", "ignore").decode("ascii").lower()
        slug = re.sub(r"[^a-z0-9]+", "-", ascii_title).strip("-")
        return slug[:MAX_SLUG_LENGTH].rstrip("-") or "untitled"

    @staticmethod
    def is_valid_slug(slug: str) -> bool:
        return bool(slug) and len(slug) <= MAX_SLUG_LENGTH and bool(SLUG_RE.match(slug))

    @staticmethod
    def slug_exists(
        session: Session,
        slug: str,
        space_id: int,
        parent_id: Optional[int],
        exclude_id: Optional[int] = None,
    ) -> bool:
        stmt = select(Story.id).where(Story.space_id == space_id, Story.slug == slug)
        if parent_id is None:
            stmt = stmt.where(Story.parent_id.is_(None))
        else:
            stmt = stmt.where(Story.parent_id == parent_id)
        if exclude_id is not None:
            stmt = stmt.where(Story.id != exclude_id)
        return session.execute(stmt.limit(1)).first() is not None

    @staticmethod
    def ensure_unique(
        session: Session,
        slug: str,
        space_id: int,
        parent_id: Optional[int] = None,
        exclude_id: Optional[int] = None,
    ) -> str:
        """Append ``-2``, ``-3``... until the slug is free among its siblings."""
        candidate = slug
        counter = 2
        while SlugGenerator.slug_exists(session, candidate, space_id, parent_id, exclude_id):
            suffix = f"-{counter}"
            candidate = f"{slug[:MAX_SLUG_LENGTH - len(suffix)]}{suffix}"
            counter += 1
        return candidate

    @staticmethod
    def build_full_slug(parent: Optional[Story], slug: str) -> str:
        if parent is None or not parent.full_slug:
            return slug
        return f"{parent.full_slug}/{slug}"
