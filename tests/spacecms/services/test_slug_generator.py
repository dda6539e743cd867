import unittest

from spacecms.services.slugs import SlugGenerator


class TestSlugGenerator(unittest.TestCase):

    def test_generate_from_title(self):
        self.assertEqual(SlugGenerator.generate_from_title("Hello World!"), "hello-world")
        self.assertEqual(SlugGenerator.generate_from_title("  Über Café -- 2024 "), "uber-cafe-2024")
        self.assertEqual(SlugGenerator.generate_from_title("???"), "untitled")

    def test_is_valid_slug(self):
        self.assertTrue(SlugGenerator.is_valid_slug("about-us"))
        self.assertTrue(SlugGenerator.is_valid_slug("v2"))
        for slug in ("", "About", "a--b", "-a", "a b", "a/b"):
            self.assertFalse(SlugGenerator.is_valid_slug(slug), slug)


def test_ensure_unique_is_scoped_to_parent(session, space, make_story):
    parent = make_story("Blog")
    make_story("Post", parent_id=parent.id)

    assert SlugGenerator.ensure_unique(session, "post", space.id, parent.id) == "post-2"
    assert SlugGenerator.ensure_unique(session, "post", space.id, None) == "post"


def test_ensure_unique_can_exclude_the_story_itself(session, space, make_story):
    story = make_story("Post")
    assert SlugGenerator.ensure_unique(session, "post", space.id, None, exclude_id=story.id) == "post"
