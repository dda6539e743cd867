import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from spacecms.db.base import Base
from spacecms.db.models import Component, Space, User
from spacecms.services.stories import StoryService

HERO_SCHEMA = {
    "title": {"type": "text", "required": True, "max_length": 40},
    "subtitle": {"type": "text"},
}

TEXT_SCHEMA = {
    "text": {"type": "textarea"},
}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def other_session(session_factory):
    """A second, independent session on the same database (another request)."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def space(session):
    space = Space(name="Demo", domain="demo.example.com", default_language="en", languages=["en", "es", "de"])
    session.add(space)
    session.commit()
    return space


@pytest.fixture
def other_space(session):
    space = Space(name="Other", default_language="en", languages=["en", "es"])
    session.add(space)
    session.commit()
    return space


@pytest.fixture
def editor(session):
    user = User(email="ada@example.com", name="Ada")
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def other_editor(session):
    user = User(email="grace@example.com", name="Grace")
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def components(session, space):
    hero = Component(space_id=space.id, internal_name="hero", display_name="Hero", schema=HERO_SCHEMA)
    text = Component(space_id=space.id, internal_name="text_block", display_name="Text", schema=TEXT_SCHEMA)
    session.add_all([hero, text])
    session.commit()
    return {"hero": hero, "text_block": text}


@pytest.fixture
def make_story(session, space, editor, components):
    """Create stories through StoryService with sensible defaults."""

    def _make(name="Home", target_space=None, user=None, **data):
        data.setdefault("name", name)
        return StoryService.create_story(session, target_space or space, data, user or editor)

    return _make
