import pytest

from spacecms.errors import InvalidArgument, ValidationFailed
from spacecms.services.components import ComponentService

CARD_SCHEMA = {
    "label": {"type": "text", "required": True},
    "size": {"type": "select", "options": ["s", "m", "l"]},
}


def test_create_component(session, space):
    component = ComponentService.create_component(
        session, space, {"internal_name": "card", "display_name": "Card", "schema": CARD_SCHEMA}
    )

    assert component.id is not None
    assert ComponentService.get_by_name(session, space.id, "card") is component


def test_create_rejects_invalid_schema(session, space):
    with pytest.raises(ValidationFailed) as exc:
        ComponentService.create_component(
            session, space, {"internal_name": "card", "schema": {"size": {"type": "select"}}}
        )
    assert set(exc.value.errors) == {"size"}
    assert ComponentService.get_by_name(session, space.id, "card") is None


def test_create_rejects_duplicate_name(session, space, components):
    with pytest.raises(InvalidArgument):
        ComponentService.create_component(session, space, {"internal_name": "hero", "schema": CARD_SCHEMA})


def test_update_component(session, components):
    hero = components["hero"]

    ComponentService.update_component(session, hero, {"display_name": "Big hero", "schema": CARD_SCHEMA})

    assert hero.display_name == "Big hero"
    assert hero.schema == CARD_SCHEMA

    with pytest.raises(ValidationFailed):
        ComponentService.update_component(session, hero, {"schema": {"x": {"type": "nope"}}})
    assert hero.schema == CARD_SCHEMA


def test_schema_resolver_caches_lookups(session, space, components):
    resolve = ComponentService.schema_resolver(session, space.id)

    assert resolve("hero") == components["hero"].schema
    assert resolve("unknown") is None
