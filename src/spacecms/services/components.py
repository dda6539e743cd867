from typing import Any, Dict, Mapping, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from spacecms.db.models import Component, Space
from spacecms.errors import InvalidArgument, ValidationFailed
from spacecms.services import cache
from spacecms.services.schema_validator import SchemaValidator

EDITABLE_FIELDS = ("display_name", "description", "schema", "is_nestable", "is_root", "status")


class ComponentService:
    """Admin operations on component schemas. Schemas are validated before they are stored."""

    @staticmethod
    def get_by_name(session: Session, space_id: int, internal_name: str) -> Optional[Component]:
        return session.execute(
            select(Component).where(
                Component.space_id == space_id,
                Component.internal_name == internal_name,
            )
        ).scalar_one_or_none()

    @staticmethod
    def schema_resolver(session: Session, space_id: int):
        """Component name -> schema lookup for content validation, cached per call site."""
        schemas: Dict[str, Any] = {}

        def resolve(name: str) -> Optional[Mapping[str, Any]]:
            if name not in schemas:
                component = ComponentService.get_by_name(session, space_id, name)
                schemas[name] = component.schema if component else None
            return schemas[name]

        return resolve

    @staticmethod
    def create_component(session: Session, space: Space, data: Mapping[str, Any]) -> Component:
        internal_name = (data.get("internal_name") or "").strip()
        if not internal_name:
            raise ValidationFailed({"internal_name": "Field 'internal_name' is required"})
        if ComponentService.get_by_name(session, space.id, internal_name) is not None:
            raise InvalidArgument(f"Component '{internal_name}' already exists in this space")

        schema = data.get("schema") or {}
        errors = SchemaValidator.validate_schema(schema)
        if errors:
            raise ValidationFailed(errors, "Invalid component schema")

        component = Component(space_id=space.id, internal_name=internal_name)
        for name in EDITABLE_FIELDS:
            if name in data:
                setattr(component, name, data[name])
        component.schema = schema
        session.add(component)
        cache.mark_stale(session, [f"space:{space.id}:components"])
        session.commit()

        logger.info(f"Created component '{internal_name}' in space {space.uuid}")
        return component

    @staticmethod
    def update_component(session: Session, component: Component, data: Mapping[str, Any]) -> Component:
        if "schema" in data:
            errors = SchemaValidator.validate_schema(data["schema"])
            if errors:
                raise ValidationFailed(errors, "Invalid component schema")

        for name in EDITABLE_FIELDS:
            if name in data:
                setattr(component, name, data[name])
        cache.mark_stale(session, [f"space:{component.space_id}:components"])
        session.commit()

        logger.info(f"Updated component '{component.internal_name}'")
        return component
