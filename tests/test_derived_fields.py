import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from postarchiver.db import PostArchiveStore
from postarchiver.errors import IntegrityViolationError


class DerivedFieldTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = PostArchiveStore(str(Path(self.temp_dir.name) / "archive"))
        self.before = datetime.now(timezone.utc).replace(microsecond=0)
        self.author = self.store.add_author("Alice", updated="2000-01-01T00:00:00+00:00")
        self.post = self.store.add_post("Hello", source="https://example.com/posts/1")
        self.store.add_post_authors(self.post, [self.author])

    def tearDown(self):
        self.store.close()
        self.temp_dir.cleanup()

    def test_image_file_becomes_post_thumb(self):
        png = self.store.add_file_meta(self.post, "a.png", "image/png")
        self.assertEqual(self.store.get_post(self.post).thumb, png)

        self.store.add_file_meta(self.post, "notes.txt", "text/plain")
        self.assertEqual(self.store.get_post(self.post).thumb, png)

        jpg = self.store.add_file_meta(self.post, "b.jpg", "image/jpeg")
        self.assertEqual(self.store.get_post(self.post).thumb, jpg)

        # the most recently written image wins, updates included
        self.store.update_file_meta(png, extra={"width": 10})
        self.assertEqual(self.store.get_post(self.post).thumb, png)
        self.assertEqual(self.store.get_file_meta(png).extra, {"width": 10})

    def test_author_thumb_mirrors_post_thumb(self):
        png = self.store.add_file_meta(self.post, "a.png", "image/png")

        self.assertEqual(self.store.get_author(self.author).thumb, png)

    def test_removing_thumb_file_falls_back_to_newest_image(self):
        jpg = self.store.add_file_meta(self.post, "b.jpg", "image/jpeg")
        png = self.store.add_file_meta(self.post, "a.png", "image/png")
        self.assertEqual(self.store.get_post(self.post).thumb, png)

        self.store.remove_file_meta(png)

        self.assertEqual(self.store.get_post(self.post).thumb, jpg)
        self.assertEqual(self.store.get_author(self.author).thumb, jpg)

        self.store.remove_file_meta(jpg)
        self.assertIsNone(self.store.get_post(self.post).thumb)
        self.assertIsNone(self.store.get_author(self.author).thumb)

    def test_author_updated_advances_on_post_writes(self):
        self.assertGreaterEqual(self.store.get_author(self.author).updated, self.before)

        seen = [self.store.get_author(self.author).updated]
        self.store.update_post(self.post, {"title": "Hello again"})
        seen.append(self.store.get_author(self.author).updated)
        self.store.add_file_meta(self.post, "a.png", "image/png")
        seen.append(self.store.get_author(self.author).updated)
        self.store.touch_author(self.author, "1999-01-01T00:00:00+00:00")
        seen.append(self.store.get_author(self.author).updated)

        self.assertEqual(seen, sorted(seen))

    def test_author_updated_never_moves_backwards(self):
        future = self.store.add_author("Bob", updated="2999-01-01T00:00:00+00:00")

        self.store.add_post_authors(self.post, [future])
        self.store.update_post(self.post, {"title": "Edited"})

        self.assertEqual(
            self.store.get_author(future).updated,
            datetime(2999, 1, 1, tzinfo=timezone.utc),
        )

    def test_post_updated_only_moves_forward(self):
        self.store.update_post(self.post, {"updated": "2100-01-01T00:00:00+00:00"})
        self.store.update_post(self.post, {"updated": "2001-01-01T00:00:00+00:00"})

        self.assertEqual(self.store.get_post(self.post).updated.year, 2100)

    def test_post_thumb_cannot_be_set_directly(self):
        png = self.store.add_file_meta(self.post, "a.png", "image/png")

        with self.assertRaises(ValueError):
            self.store.update_post(self.post, {"thumb": png})

    def test_content_may_only_reference_own_files(self):
        other = self.store.add_post("Other")
        foreign = self.store.add_file_meta(other, "x.png", "image/png")
        own = self.store.add_file_meta(self.post, "a.png", "image/png")

        self.store.update_post(self.post, {"content": ["intro", own]})
        self.assertEqual(self.store.get_post(self.post).content, ["intro", own])

        with self.assertRaises(IntegrityViolationError):
            self.store.update_post(self.post, {"content": [foreign]})
        self.assertEqual(self.store.get_post(self.post).content, ["intro", own])

    def test_collection_thumb_follows_latest_post(self):
        collection = self.store.resolve_collection("Series", "https://example.com/series/1")
        png = self.store.add_file_meta(self.post, "a.png", "image/png")

        self.store.add_post_collections(self.post, [collection])

        self.assertEqual(self.store.get_collection(collection).thumb, png)
        self.assertEqual([p.id for p in self.store.list_collection_posts(collection)], [self.post])

    def test_rolled_back_write_leaves_derived_fields(self):
        with self.assertRaises(RuntimeError):
            with self.store.transaction():
                self.store.add_file_meta(self.post, "a.png", "image/png")
                raise RuntimeError("abort")

        self.assertIsNone(self.store.get_post(self.post).thumb)
        self.assertEqual(self.store.list_file_metas(self.post), [])


if __name__ == "__main__":
    unittest.main()
