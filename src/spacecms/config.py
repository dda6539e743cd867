"""Configuration models for the CMS core."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

# Load .env automatically on import (local dev)
load_dotenv()


class ContentTemplate(BaseModel):
    """A built-in content skeleton offered to every space."""

    name: str
    description: str = ""
    content: Dict[str, Any] = Field(default_factory=dict)
    meta_data: Dict[str, Any] = Field(default_factory=dict)


DEFAULT_CONTENT_TEMPLATES: List[Dict[str, Any]] = [
    {
        "name": "Basic Page",
        "description": "Simple page with a hero and a text block",
        "content": {
            "body": [
                {"_uid": "tpl-basic-hero", "component": "hero", "title": "", "subtitle": ""},
                {"_uid": "tpl-basic-text", "component": "text_block", "content": ""},
            ]
        },
        "meta_data": {"meta_title": "", "meta_description": ""},
    },
    {
        "name": "Blog Post",
        "description": "Article with title, lead and body",
        "content": {
            "body": [
                {"_uid": "tpl-blog-header", "component": "article_header", "title": "", "lead": ""},
                {"_uid": "tpl-blog-body", "component": "rich_text", "content": ""},
            ]
        },
        "meta_data": {"meta_title": "", "meta_description": "", "template_category": "editorial"},
    },
    {
        "name": "Landing Page",
        "description": "Marketing page with hero, features and call to action",
        "content": {
            "body": [
                {"_uid": "tpl-landing-hero", "component": "hero", "title": "", "button_text": ""},
                {"_uid": "tpl-landing-features", "component": "feature_grid", "columns": []},
                {"_uid": "tpl-landing-cta", "component": "cta_section", "title": "", "button_text": ""},
            ]
        },
        "meta_data": {"meta_title": "", "meta_description": "", "template_category": "marketing"},
    },
]


class Settings(BaseModel):
    """Global settings for the CMS core."""

    lock_default_minutes: int = Field(default=30, ge=1)
    lock_max_minutes: int = Field(default=480, ge=1)
    versions_per_page: int = Field(default=20, ge=1)
    snapshot_on_update: bool = True
    content_templates: List[ContentTemplate] = Field(default_factory=list)

    def get_template(self, name: str) -> Optional[ContentTemplate]:
        for template in self.content_templates:
            if template.name == name:
                return template
        return None


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() == "true"


def _load_templates() -> List[Dict[str, Any]]:
    path = os.getenv("CMS_TEMPLATES_FILE")
    if not path:
        return DEFAULT_CONTENT_TEMPLATES
    file = Path(path).expanduser().resolve()
    if not file.exists():
        raise RuntimeError(f"Templates file not found: {file}")
    return json.loads(file.read_text())


def load_settings() -> Settings:
    """Build Settings from environment variables (.env for local dev)."""
    try:
        return Settings(
            lock_default_minutes=int(os.getenv("CMS_LOCK_DEFAULT_MINUTES", "30")),
            lock_max_minutes=int(os.getenv("CMS_LOCK_MAX_MINUTES", "480")),
            versions_per_page=int(os.getenv("CMS_VERSIONS_PER_PAGE", "20")),
            snapshot_on_update=_env_bool("CMS_SNAPSHOT_ON_UPDATE", default=True),
            content_templates=_load_templates(),
        )
    except (ValidationError, ValueError) as e:
        raise RuntimeError(f"Invalid settings: {e}") from e
