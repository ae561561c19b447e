import json
import sqlite3
import tempfile
import unittest
from pathlib import Path

from postarchiver import migrations
from postarchiver.constants import DATABASE_NAME, SCHEMA_VERSION
from postarchiver.db import PostArchiveStore
from postarchiver.errors import MigrationError, UnsupportedSchemaError
from postarchiver.models import Comment
from postarchiver.schema import LEGACY_SCHEMA_SQL


def build_legacy_archive(archive_dir, duplicate_sources=False):
    """Write a version 1 archive (no version marker, triggers, single-author posts)."""
    archive_dir.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(archive_dir / DATABASE_NAME))
    try:
        conn.executescript(LEGACY_SCHEMA_SQL)
        conn.execute(
            "INSERT INTO authors (id, name, links, updated) VALUES (1, 'Alice', ?, '2023-05-01 10:00:00')",
            (json.dumps([{"name": "fanbox", "url": "https://alice.fanbox.cc"}]),),
        )
        conn.execute("INSERT INTO authors (id, name, updated) VALUES (2, 'Bob', '2023-06-01 08:30:00')")
        conn.execute("INSERT INTO author_alias (source, target) VALUES ('fanbox:alice', 1)")
        conn.execute("INSERT INTO author_alias (source, target) VALUES ('bob', 2)")
        conn.execute(
            """
            INSERT INTO posts (id, author, source, title, content, comments, updated, published)
            VALUES (1, 1, 'https://alice.fanbox.cc/posts/1', 'First', '["hello", 1]',
                    '[{"user": "x", "text": "hi"}]', '2023-05-01 10:00:00', '2023-04-30 09:00:00')
            """
        )
        second_source = "https://alice.fanbox.cc/posts/1" if duplicate_sources else None
        conn.execute(
            """
            INSERT INTO posts (id, author, source, title, content, updated, published)
            VALUES (2, 2, ?, 'Second', '[]', '2023-06-01 08:30:00', '2023-06-01 08:00:00')
            """,
            (second_source,),
        )
        conn.execute(
            "INSERT INTO file_metas (id, filename, author, post, mime, extra) "
            "VALUES (1, 'cover.png', 1, 1, 'image/png', '{\"width\": 10}')"
        )
        conn.execute(
            "INSERT INTO file_metas (id, filename, author, post, mime) VALUES (2, 'notes.txt', 1, 1, 'text/plain')"
        )
        conn.execute("INSERT INTO tags (id, name) VALUES (1, 'free')")
        conn.execute("INSERT INTO post_tags (post, tag) VALUES (1, 1)")
        conn.execute("INSERT INTO post_tags (post, tag) VALUES (1, 0)")
        conn.commit()
    finally:
        conn.close()


class MigrationTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.archive_dir = Path(self.temp_dir.name) / "archive"

    def tearDown(self):
        self.temp_dir.cleanup()

    def _raw(self):
        return sqlite3.connect(str(self.archive_dir / DATABASE_NAME), isolation_level=None)

    def test_new_archive_starts_at_current_version(self):
        with PostArchiveStore(str(self.archive_dir)) as store:
            self.assertEqual(store.schema_version(), SCHEMA_VERSION)
            self.assertEqual(store.get_platform(0).name, "unknown")
            self.assertEqual(store.get_tag(0).platform, 0)

    def test_legacy_archive_is_upgraded(self):
        build_legacy_archive(self.archive_dir)

        with PostArchiveStore(str(self.archive_dir)) as store:
            self.assertEqual(store.schema_version(), SCHEMA_VERSION)

            fanbox = store.find_platform("fanbox")
            self.assertIsNotNone(fanbox)
            self.assertNotEqual(fanbox, 0)

            (alice_alias,) = store.list_author_aliases(1)
            self.assertEqual(alice_alias.source, "alice")
            self.assertEqual(alice_alias.platform, fanbox)
            self.assertEqual(alice_alias.link, "https://alice.fanbox.cc")
            (bob_alias,) = store.list_author_aliases(2)
            self.assertEqual((bob_alias.platform, bob_alias.source, bob_alias.link), (0, "bob", None))
            self.assertEqual(store.resolve_author(fanbox, "alice", "Imposter"), 1)

            post = store.get_post(1)
            self.assertEqual(post.title, "First")
            self.assertEqual(post.platform, 0)
            self.assertEqual(post.content, ["hello", 1])
            self.assertEqual(post.thumb, 1)
            self.assertEqual(post.comments, [Comment(user="x", text="hi")])
            self.assertEqual(post.published.isoformat(), "2023-04-30T09:00:00+00:00")
            self.assertEqual([a.id for a in store.list_post_authors(1)], [1])
            self.assertEqual([a.id for a in store.list_post_authors(2)], [2])
            self.assertEqual(store.get_post(2).platform, 0)
            self.assertEqual(store.list_platform_posts(None), [])

            metas = store.list_file_metas(1)
            self.assertEqual([m.filename for m in metas], ["cover.png", "notes.txt"])
            self.assertEqual(metas[0].extra, {"width": 10})

            self.assertIsNone(store.get_tag(1).platform)
            self.assertEqual(store.get_tag(0).platform, 0)
            self.assertEqual({t.name for t in store.list_post_tags(1)}, {"free", "unknown"})
            self.assertEqual(store.get_author(1).thumb, 1)

    def test_upgraded_archive_drops_legacy_triggers(self):
        build_legacy_archive(self.archive_dir)
        PostArchiveStore(str(self.archive_dir)).close()

        conn = self._raw()
        try:
            triggers = conn.execute("SELECT name FROM sqlite_master WHERE type = 'trigger'").fetchall()
            columns = {row[1] for row in conn.execute("PRAGMA table_info(posts)")}
        finally:
            conn.close()
        self.assertEqual(triggers, [])
        self.assertNotIn("author", columns)
        self.assertIn("platform", columns)

    def test_reapplying_steps_changes_nothing(self):
        build_legacy_archive(self.archive_dir)
        PostArchiveStore(str(self.archive_dir)).close()

        conn = self._raw()
        try:
            before = list(conn.iterdump())
            self.assertEqual(migrations.upgrade(conn), SCHEMA_VERSION)
            for step in migrations.LADDER:
                conn.execute("BEGIN")
                step.apply(conn)
                conn.execute("COMMIT")
            after = list(conn.iterdump())
        finally:
            conn.close()
        self.assertEqual(before, after)

    def test_newer_archive_is_refused(self):
        PostArchiveStore(str(self.archive_dir)).close()
        conn = self._raw()
        try:
            conn.execute("UPDATE post_archiver_meta SET version = ?", (str(SCHEMA_VERSION + 1),))
        finally:
            conn.close()

        with self.assertRaises(UnsupportedSchemaError) as ctx:
            PostArchiveStore(str(self.archive_dir))
        self.assertEqual(ctx.exception.version, SCHEMA_VERSION + 1)

    def test_unreadable_marker_is_refused(self):
        PostArchiveStore(str(self.archive_dir)).close()
        conn = self._raw()
        try:
            conn.execute("UPDATE post_archiver_meta SET version = 'banana'")
        finally:
            conn.close()

        with self.assertRaises(UnsupportedSchemaError):
            PostArchiveStore(str(self.archive_dir))

    def test_failed_step_leaves_archive_at_its_version(self):
        build_legacy_archive(self.archive_dir, duplicate_sources=True)

        with self.assertRaises(MigrationError) as ctx:
            PostArchiveStore(str(self.archive_dir))
        self.assertEqual(ctx.exception.step, "multi_author_posts")
        self.assertEqual(ctx.exception.version, 4)

        conn = self._raw()
        try:
            self.assertEqual(migrations.detect_version(conn), 4)
            columns = {row[1] for row in conn.execute("PRAGMA table_info(posts)")}
            self.assertIn("author", columns)
            self.assertEqual(conn.execute("SELECT COUNT(*) FROM posts").fetchone()[0], 2)
        finally:
            conn.close()

    def test_iter_statements_rejects_trailing_fragment(self):
        self.assertEqual(
            list(migrations.iter_statements("SELECT 1;\nSELECT 2;\n")),
            ["SELECT 1;", "SELECT 2;"],
        )
        with self.assertRaises(ValueError):
            list(migrations.iter_statements("SELECT 1;\nSELECT"))


if __name__ == "__main__":
    unittest.main()
