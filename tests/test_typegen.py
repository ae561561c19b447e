import json
import os
import subprocess
import tempfile
import unittest
from datetime import datetime, timezone
from unittest import mock

from postarchiver import typegen
from postarchiver.constants import SCHEMA_VERSION
from postarchiver.models import Comment, Post, to_dict


class RenderBindingsTests(unittest.TestCase):
    def test_output_is_deterministic(self):
        self.assertEqual(typegen.render_bindings("1.2.3"), typegen.render_bindings("1.2.3"))

    def test_every_exported_type_has_a_module(self):
        files = typegen.render_bindings()

        for name in ("Post.ts", "Author.ts", "AuthorAlias.ts", "Comment.ts", "Content.ts", "JsonValue.ts", "index.ts"):
            self.assertIn(name, files)
        for text in files.values():
            self.assertTrue(text.startswith(typegen.HEADER))

    def test_post_interface(self):
        text = typegen.render_bindings()["Post.ts"]

        self.assertIn('import type { Comment } from "./Comment";', text)
        self.assertIn('import type { FileMetaId } from "./FileMetaId";', text)
        self.assertIn("export interface Post {", text)
        self.assertIn("  id: PostId;", text)
        self.assertIn("  source?: string | null;", text)
        self.assertIn("  platform?: PlatformId | null;", text)
        self.assertIn("  content: Array<Content>;", text)
        self.assertIn("  thumb?: FileMetaId | null;", text)
        self.assertIn("  comments: Array<Comment>;", text)
        self.assertIn("  updated: string;", text)

    def test_comment_replies_are_optional_and_recursive(self):
        text = typegen.render_bindings()["Comment.ts"]

        self.assertIn("  replies?: Array<Comment>;", text)
        self.assertNotIn("import type { Comment }", text)

    def test_aliases_and_unions(self):
        files = typegen.render_bindings()

        self.assertIn("export type AuthorId = number;", files["AuthorId.ts"])
        self.assertIn("export type Content = string | FileMetaId;", files["Content.ts"])
        self.assertIn("  extra: { [key in string]?: JsonValue };", files["FileMeta.ts"])
        self.assertIn('import type { JsonValue } from "./JsonValue";', files["FileMeta.ts"])

    def test_index_lists_modules_and_version(self):
        index = typegen.render_bindings("2.0.1")["index.ts"]

        self.assertIn("// Build Tags: v2.0.1", index)
        self.assertIn("export * from './Post';", index)
        self.assertIn("export * from './JsonValue';", index)
        self.assertNotIn("export * from './index';", index)

    def test_unsupported_annotation_is_rejected(self):
        with self.assertRaises(TypeError):
            typegen.ts_type(set, {}, set())


class ModelSerializationTests(unittest.TestCase):
    def test_to_dict_matches_interface_fields(self):
        post = Post(
            id=1,
            source=None,
            platform=0,
            title="Hello",
            content=["intro", 3],
            thumb=3,
            comments=[Comment(user="bob", text="hi")],
            published=datetime(2024, 1, 2, tzinfo=timezone.utc),
            updated=datetime(2024, 1, 3, tzinfo=timezone.utc),
        )

        data = to_dict(post)

        self.assertEqual(data["comments"], [{"user": "bob", "text": "hi"}])
        self.assertEqual(data["published"], "2024-01-02T00:00:00+00:00")
        self.assertIsNone(data["source"])
        self.assertEqual(json.loads(json.dumps(data))["content"], ["intro", 3])

    def test_comment_round_trips_nested_replies(self):
        raw = {"user": "a", "text": "x", "replies": [{"user": "b", "text": "y"}]}
        self.assertEqual(Comment.from_dict(raw).to_dict(), raw)


class VersionTests(unittest.TestCase):
    def test_parse_version(self):
        self.assertEqual(typegen.parse_version("v1.4.2"), "1.4.2")
        self.assertEqual(typegen.parse_version("release-0.3.0-rc.1"), "0.3.0-rc.1")
        self.assertEqual(typegen.parse_version("nightly"), "0.0.0")
        self.assertEqual(typegen.parse_version(None), "0.0.0")

    def test_resolve_version_from_git_tag(self):
        result = subprocess.CompletedProcess(args=[], returncode=0, stdout="v1.4.2\n", stderr="")
        with mock.patch("postarchiver.typegen.subprocess.run", return_value=result) as run:
            self.assertEqual(typegen.resolve_version(), "1.4.2")
        self.assertEqual(run.call_args[0][0], ["git", "describe", "--tags", "--abbrev=0"])

    def test_resolve_version_without_tag(self):
        result = subprocess.CompletedProcess(args=[], returncode=128, stdout="", stderr="fatal: No names found")
        with mock.patch("postarchiver.typegen.subprocess.run", return_value=result):
            self.assertEqual(typegen.resolve_version(), "0.0.0")

    def test_resolve_version_without_git(self):
        with mock.patch("postarchiver.typegen.subprocess.run", side_effect=FileNotFoundError("git")):
            self.assertEqual(typegen.resolve_version(), "0.0.0")


class ExportBindingsTests(unittest.TestCase):
    def test_export_writes_modules_and_manifest(self):
        with tempfile.TemporaryDirectory() as tmp:
            out_dir = os.path.join(tmp, "bindings")
            written = typegen.export_bindings(out_dir, version="3.1.0")

            self.assertIn(os.path.join(out_dir, "Post.ts"), written)
            with open(os.path.join(out_dir, "package.json"), encoding="utf-8") as f:
                manifest = json.load(f)
            with open(os.path.join(out_dir, "index.ts"), encoding="utf-8") as f:
                index = f.read()

        self.assertEqual(manifest["name"], typegen.PACKAGE_NAME)
        self.assertEqual(manifest["version"], "3.1.0")
        self.assertEqual(manifest["types"], "./index.ts")
        self.assertEqual(manifest["postArchiver"]["schemaVersion"], SCHEMA_VERSION)
        self.assertIn("// Build Tags: v3.1.0", index)

    def test_export_is_repeatable(self):
        with tempfile.TemporaryDirectory() as tmp:
            first = os.path.join(tmp, "a")
            second = os.path.join(tmp, "b")
            typegen.export_bindings(first, version="1.0.0")
            typegen.export_bindings(second, version="1.0.0")

            for name in sorted(os.listdir(first)):
                with open(os.path.join(first, name), "rb") as a, open(os.path.join(second, name), "rb") as b:
                    self.assertEqual(a.read(), b.read(), name)

    def test_export_resolves_version_when_omitted(self):
        with tempfile.TemporaryDirectory() as tmp, mock.patch(
            "postarchiver.typegen.resolve_version", return_value="9.9.9"
        ):
            typegen.export_bindings(tmp)
            with open(os.path.join(tmp, "package.json"), encoding="utf-8") as f:
                self.assertEqual(json.load(f)["version"], "9.9.9")


if __name__ == "__main__":
    unittest.main()
