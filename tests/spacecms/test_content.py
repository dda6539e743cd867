import unittest

from spacecms.content import (
    Block,
    block_uids,
    count_words,
    iter_blocks,
    own_fields,
    regenerate_uids,
    text_leaves,
)

CONTENT = {
    "body": [
        {"_uid": "a", "component": "hero", "title": "Hi", "_editable": "x", "cards": [
            {"_uid": "b", "component": "card", "label": "One", "count": 3},
        ]},
        {"_uid": "c", "component": "text_block", "text": "Plain words"},
    ],
    "tags": ["x", "y"],
}


class TestContentTree(unittest.TestCase):

    def test_iter_blocks_walks_depth_first_with_paths(self):
        paths = [(path, block["_uid"]) for path, block in iter_blocks(CONTENT)]
        self.assertEqual(paths, [("body.0", "a"), ("body.0.cards.0", "b"), ("body.1", "c")])

    def test_block_uids(self):
        self.assertEqual(block_uids(CONTENT), {"a", "b", "c"})

    def test_own_fields_skip_structure(self):
        self.assertEqual(own_fields(CONTENT["body"][0]), {"title": "Hi"})

    def test_text_leaves(self):
        self.assertEqual(text_leaves({"label": "One", "count": 3, "_hidden": "no"}), {"label": "One"})

    def test_block_view(self):
        block = Block.from_dict(CONTENT["body"][0])

        self.assertEqual(block.component, "hero")
        self.assertEqual(block.uid, "a")
        self.assertEqual(block.fields, {"title": "Hi"})
        self.assertEqual(block.text_leaves(), {"title": "Hi"})

    def test_regenerate_uids(self):
        copied = regenerate_uids(CONTENT)

        self.assertTrue(block_uids(copied).isdisjoint(block_uids(CONTENT)))
        self.assertEqual(len(block_uids(copied)), 3)
        self.assertEqual(copied["body"][0]["cards"][0]["label"], "One")
        self.assertEqual(copied["tags"], ["x", "y"])
        self.assertEqual(CONTENT["body"][0]["_uid"], "a")

    def test_count_words(self):
        self.assertEqual(count_words("  two   words "), 2)
        self.assertEqual(count_words(""), 0)
