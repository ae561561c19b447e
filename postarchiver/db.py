import logging
import os
import sqlite3
import threading
from contextlib import contextmanager

logger = logging.getLogger("PostArchiver")

from . import hooks, migrations
from .cache import ArchiveCache
from .config import normalize_config
from .constants import UNKNOWN_PLATFORM, UNKNOWN_TAG
from .errors import IntegrityViolationError, translate_integrity_error
from .models import (
    Author,
    AuthorAlias,
    Collection,
    Comment,
    Feature,
    FileMeta,
    Platform,
    Post,
    Tag,
)
from .paths import get_archive_dir, get_db_path, get_post_dir
from .utils import (
    json_dumps,
    json_loads_list,
    json_loads_object,
    nocase_key,
    normalize_text,
    now_iso,
    parse_iso,
    to_iso,
)

MEMORY = ":memory:"


class PostArchiveStore:
    """Handle on one archive: a directory holding ``post-archiver.db`` and post files.

    The handle owns a single connection and an ``ArchiveCache``. Writes go
    through ``transaction()``, which serializes them on the handle and joins
    nested calls into the outermost transaction. The schema is brought up to
    date in ``__init__``, before any caller can write.
    """

    _instances = {}
    _lock = threading.Lock()

    @classmethod
    def open(cls, path=None, config=None):
        archive_dir = os.path.abspath(path or get_archive_dir())
        with cls._lock:
            store = cls._instances.get(archive_dir)
            if store is None:
                store = cls._instances[archive_dir] = cls(archive_dir, config=config)
            return store

    @classmethod
    def open_in_memory(cls, config=None):
        return cls(MEMORY, config=config)

    def __init__(self, path=None, config=None):
        self.config = normalize_config(config)
        if path == MEMORY:
            self.archive_dir = None
            self.db_path = MEMORY
        else:
            self.archive_dir = os.path.abspath(path or get_archive_dir())
            self.db_path = get_db_path(self.archive_dir)
            if not self.config["create"] and not os.path.exists(self.db_path):
                raise FileNotFoundError(self.db_path)
            os.makedirs(self.archive_dir, exist_ok=True)

        self.cache = ArchiveCache()
        self._tx_lock = threading.RLock()
        self._tx_depth = 0
        self._tx_owner = None
        self._after_commit = []
        self._conn = self._connect()
        try:
            self._init_db()
        except Exception:
            self._conn.close()
            raise

    def _connect(self):
        conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {self.config['busy_timeout_ms']}")
        if self.db_path != MEMORY:
            conn.execute(f"PRAGMA journal_mode = {self.config['journal_mode']}")
        return conn

    def _init_db(self):
        with self._tx_lock:
            before = migrations.detect_version(self._conn)
            version = migrations.upgrade(self._conn, before)
        if before == 0:
            logger.info("Created archive %s (schema %d)", self.db_path, version)
        elif before != version:
            logger.info("Upgraded archive %s from schema %d to %d", self.db_path, before, version)
        else:
            logger.debug("Opened archive %s (schema %d)", self.db_path, version)

    def schema_version(self):
        with self._read() as conn:
            return migrations.detect_version(conn)

    def close(self):
        with self._tx_lock:
            self._conn.close()
        self.cache.clear()
        with PostArchiveStore._lock:
            if PostArchiveStore._instances.get(self.archive_dir) is self:
                del PostArchiveStore._instances[self.archive_dir]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # ── transactions ──

    @contextmanager
    def transaction(self):
        """One logical write. Nested calls join the outer transaction."""
        with self._tx_lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self._conn
                except sqlite3.IntegrityError as exc:
                    raise translate_integrity_error(exc) from exc
                finally:
                    self._tx_depth -= 1
                return

            self._conn.execute("BEGIN IMMEDIATE")
            self._tx_depth = 1
            self._tx_owner = threading.get_ident()
            callbacks = self._after_commit = []
            try:
                yield self._conn
            except sqlite3.IntegrityError as exc:
                self._rollback()
                raise translate_integrity_error(exc) from exc
            except BaseException:
                self._rollback()
                raise
            else:
                try:
                    self._conn.execute("COMMIT")
                except sqlite3.IntegrityError as exc:
                    self._rollback()
                    raise translate_integrity_error(exc) from exc
                except BaseException:
                    self._rollback()
                    raise
            finally:
                self._tx_depth = 0
                self._tx_owner = None
                self._after_commit = []
            for callback in callbacks:
                callback()

    def _rollback(self):
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    def _owns_transaction(self):
        return self._tx_depth > 0 and self._tx_owner == threading.get_ident()

    def _on_commit(self, callback):
        if self._owns_transaction():
            self._after_commit.append(callback)
        else:
            callback()

    def _remember(self, cache, key, value):
        self._on_commit(lambda: cache.put(key, value))

    @contextmanager
    def _read(self):
        with self._tx_lock:
            yield self._conn

    def _resolve(self, cache, key, lookup, create):
        """Cached lookup-or-create; at most one create per key ever commits."""
        value = cache.get(key)
        if value is not None:
            return value
        if self._owns_transaction():
            # The transaction lock already serializes us; taking the key lock
            # here could deadlock against a thread waiting for that lock.
            return self._resolve_durable(cache, key, lookup, create)
        try:
            with cache.lock_for(key):
                value = cache.get(key)
                if value is not None:
                    return value
                return self._resolve_durable(cache, key, lookup, create)
        finally:
            # Waiters still holding the old lock re-check the cache; a late
            # creator is serialized by the transaction lock and finds the row.
            cache.drop_lock(key)

    def _resolve_durable(self, cache, key, lookup, create):
        with self.transaction() as conn:
            value = lookup(conn)
            if value is None:
                value = create(conn)
                logger.debug("Created %s entry %r -> %s", cache.name, key, value)
            self._remember(cache, key, value)
        return value

    # ── features ──

    def get_feature(self, name):
        return self.get_feature_with_extra(name)[0]

    def get_feature_with_extra(self, name):
        with self._read() as conn:
            row = conn.execute("SELECT value, extra FROM features WHERE name = ?", (name,)).fetchone()
        if row is None:
            return 0, {}
        return row["value"], json_loads_object(row["extra"])

    def set_feature(self, name, value):
        name = self._require_name(name, "feature")
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO features (name, value) VALUES (?, ?) "
                "ON CONFLICT(name) DO UPDATE SET value = excluded.value",
                (name, int(value)),
            )

    def set_feature_with_extra(self, name, value, extra):
        name = self._require_name(name, "feature")
        if not isinstance(extra, dict):
            raise ValueError("feature extra must be a JSON object")
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO features (name, value, extra) VALUES (?, ?, ?) "
                "ON CONFLICT(name) DO UPDATE SET value = excluded.value, extra = excluded.extra",
                (name, int(value), json_dumps(extra)),
            )

    def list_features(self):
        with self._read() as conn:
            rows = conn.execute("SELECT name, value, extra FROM features ORDER BY name").fetchall()
        return [Feature(name=r["name"], value=r["value"], extra=json_loads_object(r["extra"])) for r in rows]

    # ── platforms ──

    def add_platform(self, name):
        name = self._require_name(name, "platform")
        with self.transaction() as conn:
            platform = conn.execute("INSERT INTO platforms (name) VALUES (?)", (name,)).lastrowid
            self._remember(self.cache.platforms, nocase_key(name), platform)
        return platform

    def find_platform(self, name):
        key = nocase_key(name)
        cached = self.cache.platforms.get(key)
        if cached is not None:
            return cached
        with self._read() as conn:
            row = conn.execute("SELECT id FROM platforms WHERE name = ?", (normalize_text(name),)).fetchone()
        return row["id"] if row else None

    def resolve_platform(self, name):
        name = self._require_name(name, "platform")

        def lookup(conn):
            row = conn.execute("SELECT id FROM platforms WHERE name = ?", (name,)).fetchone()
            return row["id"] if row else None

        def create(conn):
            return conn.execute("INSERT INTO platforms (name) VALUES (?)", (name,)).lastrowid

        return self._resolve(self.cache.platforms, nocase_key(name), lookup, create)

    def get_platform(self, platform):
        with self._read() as conn:
            row = conn.execute("SELECT id, name FROM platforms WHERE id = ?", (platform,)).fetchone()
        if row is None:
            raise KeyError("platform not found")
        return Platform(id=row["id"], name=row["name"])

    def list_platforms(self):
        with self._read() as conn:
            rows = conn.execute("SELECT id, name FROM platforms ORDER BY id").fetchall()
        return [Platform(id=r["id"], name=r["name"]) for r in rows]

    def remove_platform(self, platform):
        """Delete a platform; its posts, tags and aliases move to platform 0.

        Raises ``ConflictError`` if a moved tag or alias collides with one
        already under platform 0.
        """
        if platform == UNKNOWN_PLATFORM:
            raise IntegrityViolationError("the reserved 'unknown' platform cannot be deleted")
        with self.transaction() as conn:
            if conn.execute("SELECT 1 FROM platforms WHERE id = ?", (platform,)).fetchone() is None:
                raise KeyError("platform not found")
            for table in ("posts", "tags", "author_aliases"):
                conn.execute(f"UPDATE {table} SET platform = ? WHERE platform = ?", (UNKNOWN_PLATFORM, platform))
            conn.execute("DELETE FROM platforms WHERE id = ?", (platform,))
            self._on_commit(lambda: self.cache.forget_platform(platform))
        logger.debug("removed platform %s", platform)

    # ── authors ──

    def add_author(self, name, updated=None):
        with self.transaction() as conn:
            return self._insert_author(conn, name, updated)

    def _insert_author(self, conn, name, updated=None):
        name = self._require_name(name, "author")
        cur = conn.execute(
            "INSERT INTO authors (name, updated) VALUES (?, ?)",
            (name, to_iso(updated) or now_iso()),
        )
        return cur.lastrowid

    def get_author(self, author):
        with self._read() as conn:
            row = conn.execute("SELECT * FROM authors WHERE id = ?", (author,)).fetchone()
        if row is None:
            raise KeyError("author not found")
        return self._row_to_author(row)

    def list_authors(self):
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM authors ORDER BY id").fetchall()
        return [self._row_to_author(r) for r in rows]

    def set_author_name(self, author, name):
        name = self._require_name(name, "author")
        with self.transaction() as conn:
            if conn.execute("UPDATE authors SET name = ? WHERE id = ?", (name, author)).rowcount == 0:
                raise KeyError("author not found")

    def touch_author(self, author, updated=None):
        """Advance ``author.updated`` to ``updated`` (default now); never moves it back."""
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE authors SET updated = max(updated, ?) WHERE id = ?",
                (to_iso(updated) or now_iso(), author),
            )
            if cur.rowcount == 0:
                raise KeyError("author not found")

    def remove_author(self, author):
        with self.transaction() as conn:
            if conn.execute("DELETE FROM authors WHERE id = ?", (author,)).rowcount == 0:
                raise KeyError("author not found")
            self._on_commit(lambda: self.cache.authors.discard_value(author))

    def author_thumb_by_latest(self, author):
        with self.transaction() as conn:
            return hooks.author_thumb_by_latest(conn, author)

    # ── aliases ──

    def resolve_author(self, platform, source, name=None, link=None):
        """Author id for ``(platform, source)``, creating author and alias on first sight."""
        source = self._require_name(source, "alias source")
        key = (platform, source)

        def lookup(conn):
            row = conn.execute(
                "SELECT target FROM author_aliases WHERE platform = ? AND source = ?",
                key,
            ).fetchone()
            return row["target"] if row else None

        def create(conn):
            author = self._insert_author(conn, name or source)
            conn.execute(
                "INSERT INTO author_aliases (source, platform, link, target) VALUES (?, ?, ?, ?)",
                (source, platform, link, author),
            )
            return author

        return self._resolve(self.cache.authors, key, lookup, create)

    def find_author(self, aliases):
        """First author owning any of ``aliases`` (``(platform, source)`` pairs)."""
        keys = [self._alias_key(alias) for alias in aliases]
        for key in keys:
            cached = self.cache.authors.get(key)
            if cached is not None:
                return cached
        with self._read() as conn:
            for key in keys:
                row = conn.execute(
                    "SELECT target FROM author_aliases WHERE platform = ? AND source = ?",
                    key,
                ).fetchone()
                if row is not None:
                    return row["target"]
        return None

    def add_author_aliases(self, author, aliases, ignore_existing=False):
        """Attach aliases (``UnsyncAlias`` or ``AuthorAlias`` values) to ``author``.

        Returns the number of aliases inserted. An alias key that already
        exists raises ``ConflictError`` unless ``ignore_existing`` is set.
        """
        verb = "INSERT OR IGNORE" if ignore_existing else "INSERT"
        inserted = 0
        with self.transaction() as conn:
            for alias in aliases:
                source, platform, link = self._alias_fields(alias)
                cur = conn.execute(
                    f"{verb} INTO author_aliases (source, platform, link, target) VALUES (?, ?, ?, ?)",
                    (source, platform, link, author),
                )
                if cur.rowcount:
                    inserted += 1
                    self._remember(self.cache.authors, (platform, source), author)
        return inserted

    def list_author_aliases(self, author):
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM author_aliases WHERE target = ? ORDER BY platform, source",
                (author,),
            ).fetchall()
        return [self._row_to_alias(r) for r in rows]

    def set_alias_target(self, platform, source, author):
        source = normalize_text(source)
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE author_aliases SET target = ? WHERE platform = ? AND source = ?",
                (author, platform, source),
            )
            if cur.rowcount == 0:
                raise KeyError("alias not found")
            self._remember(self.cache.authors, (platform, source), author)
        logger.debug("retargeted alias %s:%s -> %s", platform, source, author)

    def set_alias_link(self, platform, source, link):
        source = normalize_text(source)
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE author_aliases SET link = ? WHERE platform = ? AND source = ?",
                (link, platform, source),
            )
            if cur.rowcount == 0:
                raise KeyError("alias not found")

    def remove_alias(self, platform, source):
        source = normalize_text(source)
        with self.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM author_aliases WHERE platform = ? AND source = ?",
                (platform, source),
            )
            if cur.rowcount == 0:
                raise KeyError("alias not found")
            self._on_commit(lambda: self.cache.authors.discard((platform, source)))

    # ── posts ──

    def add_post(self, title, source=None, platform=None, published=None, updated=None, comments=None):
        now = now_iso()
        with self.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO posts (source, platform, title, content, comments, published, updated)
                VALUES (?, ?, ?, '[]', ?, ?, ?)
                """,
                (
                    source,
                    platform,
                    normalize_text(title),
                    self._encode_comments(comments),
                    to_iso(published) or now,
                    to_iso(updated) or now,
                ),
            )
            post = cur.lastrowid
            hooks.after_post_write(conn, post, now)
        logger.debug("added post %s (source=%r)", post, source)
        return post

    def get_post(self, post):
        with self._read() as conn:
            row = conn.execute("SELECT * FROM posts WHERE id = ?", (post,)).fetchone()
        if row is None:
            raise KeyError("post not found")
        return self._row_to_post(row)

    def find_post(self, source):
        with self._read() as conn:
            row = conn.execute("SELECT id FROM posts WHERE source = ?", (source,)).fetchone()
        return row["id"] if row else None

    def find_post_with_updated(self, source, updated):
        """Post id for ``source`` only if the stored copy is at least as new as ``updated``."""
        with self._read() as conn:
            row = conn.execute("SELECT id, updated FROM posts WHERE source = ?", (source,)).fetchone()
        if row is None or parse_iso(row["updated"]) < parse_iso(to_iso(updated)):
            return None
        return row["id"]

    def update_post(self, post, payload):
        """Apply the fields present in ``payload`` to ``post``.

        Accepted keys: ``title``, ``source``, ``platform``, ``content``,
        ``comments``, ``published``, ``updated``. ``updated`` only ever moves
        forward. ``thumb`` is derived from file metas and cannot be set here.
        """
        if "thumb" in payload:
            raise ValueError("post thumb is derived from its files and cannot be set directly")
        assignments = []
        params = []
        now = now_iso()
        with self.transaction() as conn:
            if conn.execute("SELECT 1 FROM posts WHERE id = ?", (post,)).fetchone() is None:
                raise KeyError("post not found")
            if "title" in payload:
                assignments.append("title = ?")
                params.append(normalize_text(payload["title"]))
            if "source" in payload:
                assignments.append("source = ?")
                params.append(payload["source"])
            if "platform" in payload:
                assignments.append("platform = ?")
                params.append(payload["platform"])
            if "content" in payload:
                assignments.append("content = ?")
                params.append(self._encode_content(conn, post, payload["content"]))
            if "comments" in payload:
                assignments.append("comments = ?")
                params.append(self._encode_comments(payload["comments"]))
            if payload.get("published") is not None:
                assignments.append("published = ?")
                params.append(to_iso(payload["published"]))
            if payload.get("updated") is not None:
                assignments.append("updated = max(updated, ?)")
                params.append(to_iso(payload["updated"]))
            if assignments:
                conn.execute(f"UPDATE posts SET {', '.join(assignments)} WHERE id = ?", (*params, post))
            hooks.after_post_write(conn, post, now)

    def remove_post(self, post):
        with self.transaction() as conn:
            authors = [r["author"] for r in conn.execute("SELECT author FROM author_posts WHERE post = ?", (post,))]
            collections = [
                r["collection"] for r in conn.execute("SELECT collection FROM collection_posts WHERE post = ?", (post,))
            ]
            if conn.execute("DELETE FROM posts WHERE id = ?", (post,)).rowcount == 0:
                raise KeyError("post not found")
            self._repair_thumbs(conn, authors, collections)
        logger.debug("removed post %s", post)

    def add_post_authors(self, post, authors):
        authors = list(dict.fromkeys(authors))
        with self.transaction() as conn:
            conn.executemany(
                "INSERT OR IGNORE INTO author_posts (author, post) VALUES (?, ?)",
                [(author, post) for author in authors],
            )
            hooks.after_post_write(conn, post, authors=authors)

    def add_post_tags(self, post, tags):
        """Link tags to a post: global tags via post_tags, platform tags via post_platform_tags."""
        with self.transaction() as conn:
            for tag in dict.fromkeys(tags):
                row = conn.execute("SELECT platform FROM tags WHERE id = ?", (tag,)).fetchone()
                if row is None:
                    raise IntegrityViolationError(f"tag {tag} does not exist")
                table = "post_tags" if row["platform"] is None else "post_platform_tags"
                conn.execute(f"INSERT OR IGNORE INTO {table} (post, tag) VALUES (?, ?)", (post, tag))

    def add_post_collections(self, post, collections):
        collections = list(dict.fromkeys(collections))
        with self.transaction() as conn:
            conn.executemany(
                "INSERT OR IGNORE INTO collection_posts (collection, post) VALUES (?, ?)",
                [(collection, post) for collection in collections],
            )
            for collection in collections:
                hooks.collection_thumb_by_latest(conn, collection)

    def list_posts(self, limit=200, offset=0):
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM posts ORDER BY updated DESC, id DESC LIMIT ? OFFSET ?",
                (int(limit), int(offset)),
            ).fetchall()
        return [self._row_to_post(r) for r in rows]

    def list_platform_posts(self, platform):
        """Posts whose platform is ``platform``; ``None`` selects posts with no platform."""
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM posts WHERE platform IS ? ORDER BY id", (platform,)).fetchall()
        return [self._row_to_post(r) for r in rows]

    def list_post_authors(self, post):
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT authors.* FROM authors
                JOIN author_posts ON author_posts.author = authors.id
                WHERE author_posts.post = ? ORDER BY authors.id
                """,
                (post,),
            ).fetchall()
        return [self._row_to_author(r) for r in rows]

    def list_author_posts(self, author):
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT posts.* FROM posts
                JOIN author_posts ON author_posts.post = posts.id
                WHERE author_posts.author = ? ORDER BY posts.updated DESC, posts.id DESC
                """,
                (author,),
            ).fetchall()
        return [self._row_to_post(r) for r in rows]

    def list_post_tags(self, post):
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT tags.* FROM tags JOIN post_tags ON post_tags.tag = tags.id WHERE post_tags.post = ?
                UNION
                SELECT tags.* FROM tags JOIN post_platform_tags ON post_platform_tags.tag = tags.id
                WHERE post_platform_tags.post = ?
                ORDER BY id
                """,
                (post, post),
            ).fetchall()
        return [self._row_to_tag(r) for r in rows]

    def list_post_collections(self, post):
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT collections.* FROM collections
                JOIN collection_posts ON collection_posts.collection = collections.id
                WHERE collection_posts.post = ? ORDER BY collections.id
                """,
                (post,),
            ).fetchall()
        return [self._row_to_collection(r) for r in rows]

    # ── tags ──

    def add_tag(self, name, platform=None):
        name = self._require_name(name, "tag")
        with self.transaction() as conn:
            tag = conn.execute("INSERT INTO tags (name, platform) VALUES (?, ?)", (name, platform)).lastrowid
            self._remember(self.cache.tags, (platform, name), tag)
        return tag

    def find_tag(self, name, platform=None):
        name = normalize_text(name)
        cached = self.cache.tags.get((platform, name))
        if cached is not None:
            return cached
        with self._read() as conn:
            row = conn.execute(
                "SELECT id FROM tags WHERE platform IS ? AND name = ?",
                (platform, name),
            ).fetchone()
        return row["id"] if row else None

    def resolve_tag(self, name, platform=None):
        """Tag id for ``(platform, name)``; ``platform=None`` means a global tag."""
        name = self._require_name(name, "tag")

        def lookup(conn):
            row = conn.execute(
                "SELECT id FROM tags WHERE platform IS ? AND name = ?",
                (platform, name),
            ).fetchone()
            return row["id"] if row else None

        def create(conn):
            return conn.execute("INSERT INTO tags (name, platform) VALUES (?, ?)", (name, platform)).lastrowid

        return self._resolve(self.cache.tags, (platform, name), lookup, create)

    def get_tag(self, tag):
        with self._read() as conn:
            row = conn.execute("SELECT * FROM tags WHERE id = ?", (tag,)).fetchone()
        if row is None:
            raise KeyError("tag not found")
        return self._row_to_tag(row)

    def list_tags(self):
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM tags ORDER BY id").fetchall()
        return [self._row_to_tag(r) for r in rows]

    def remove_tag(self, tag):
        if tag == UNKNOWN_TAG:
            raise IntegrityViolationError("the reserved 'unknown' tag cannot be deleted")
        with self.transaction() as conn:
            if conn.execute("DELETE FROM tags WHERE id = ?", (tag,)).rowcount == 0:
                raise KeyError("tag not found")
            self._on_commit(lambda: self.cache.tags.discard_value(tag))

    # ── collections ──

    def add_collection(self, name, source=None):
        name = self._require_name(name, "collection")
        with self.transaction() as conn:
            collection = conn.execute(
                "INSERT INTO collections (name, source) VALUES (?, ?)",
                (name, source),
            ).lastrowid
            if source is not None:
                self._remember(self.cache.collections, source, collection)
        return collection

    def resolve_collection(self, name, source=None):
        """Collection id for ``source``; collections without a source are always new."""
        if source is None:
            return self.add_collection(name)

        def lookup(conn):
            row = conn.execute("SELECT id FROM collections WHERE source = ?", (source,)).fetchone()
            return row["id"] if row else None

        def create(conn):
            return conn.execute(
                "INSERT INTO collections (name, source) VALUES (?, ?)",
                (self._require_name(name, "collection"), source),
            ).lastrowid

        return self._resolve(self.cache.collections, source, lookup, create)

    def get_collection(self, collection):
        with self._read() as conn:
            row = conn.execute("SELECT * FROM collections WHERE id = ?", (collection,)).fetchone()
        if row is None:
            raise KeyError("collection not found")
        return self._row_to_collection(row)

    def list_collections(self):
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM collections ORDER BY id").fetchall()
        return [self._row_to_collection(r) for r in rows]

    def list_collection_posts(self, collection):
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT posts.* FROM posts
                JOIN collection_posts ON collection_posts.post = posts.id
                WHERE collection_posts.collection = ? ORDER BY posts.updated DESC, posts.id DESC
                """,
                (collection,),
            ).fetchall()
        return [self._row_to_post(r) for r in rows]

    def remove_collection(self, collection):
        with self.transaction() as conn:
            if conn.execute("DELETE FROM collections WHERE id = ?", (collection,)).rowcount == 0:
                raise KeyError("collection not found")
            self._on_commit(lambda: self.cache.collections.discard_value(collection))

    def collection_thumb_by_latest(self, collection):
        with self.transaction() as conn:
            return hooks.collection_thumb_by_latest(conn, collection)

    # ── file metas ──

    def add_file_meta(self, post, filename, mime, extra=None):
        filename = self._require_name(filename, "filename")
        with self.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO file_metas (filename, post, mime, extra) VALUES (?, ?, ?, ?)",
                (filename, post, mime, json_dumps(extra or {})),
            )
            file_meta = cur.lastrowid
            hooks.after_file_meta_write(conn, file_meta, post, mime)
        return file_meta

    def update_file_meta(self, file_meta, mime=None, extra=None):
        """Change ``mime`` and merge ``extra`` into the stored metadata."""
        with self.transaction() as conn:
            row = conn.execute("SELECT post, mime, extra FROM file_metas WHERE id = ?", (file_meta,)).fetchone()
            if row is None:
                raise KeyError("file meta not found")
            merged = {**json_loads_object(row["extra"]), **(extra or {})}
            mime = mime or row["mime"]
            conn.execute(
                "UPDATE file_metas SET mime = ?, extra = ? WHERE id = ?",
                (mime, json_dumps(merged), file_meta),
            )
            hooks.after_file_meta_write(conn, file_meta, row["post"], mime)

    def find_file_meta(self, post, filename):
        with self._read() as conn:
            row = conn.execute(
                "SELECT id FROM file_metas WHERE post = ? AND filename = ? ORDER BY id LIMIT 1",
                (post, filename),
            ).fetchone()
        return row["id"] if row else None

    def get_file_meta(self, file_meta):
        with self._read() as conn:
            row = conn.execute("SELECT * FROM file_metas WHERE id = ?", (file_meta,)).fetchone()
        if row is None:
            raise KeyError("file meta not found")
        return self._row_to_file_meta(row)

    def list_file_metas(self, post):
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM file_metas WHERE post = ? ORDER BY id", (post,)).fetchall()
        return [self._row_to_file_meta(r) for r in rows]

    def remove_file_meta(self, file_meta):
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT file_metas.post, posts.thumb FROM file_metas JOIN posts ON posts.id = file_metas.post "
                "WHERE file_metas.id = ?",
                (file_meta,),
            ).fetchone()
            if row is None:
                raise KeyError("file meta not found")
            post = row["post"]
            authors = [r["author"] for r in conn.execute("SELECT author FROM author_posts WHERE post = ?", (post,))]
            collections = [
                r["collection"] for r in conn.execute("SELECT collection FROM collection_posts WHERE post = ?", (post,))
            ]
            conn.execute("DELETE FROM file_metas WHERE id = ?", (file_meta,))
            if row["thumb"] == file_meta:
                hooks.refresh_post_thumb(conn, post)
            self._repair_thumbs(conn, authors, collections)

    def file_meta_path(self, file_meta):
        """Where the file's bytes live: ``<archive>/<chunk>/<index>/<filename>``.

        In-memory archives have no directory, so the path is relative.
        """
        if not isinstance(file_meta, FileMeta):
            file_meta = self.get_file_meta(file_meta)
        return os.path.join(get_post_dir(self.archive_dir or "", file_meta.post), file_meta.filename)

    # ── helpers ──

    @staticmethod
    def _repair_thumbs(conn, authors, collections):
        # ON DELETE SET NULL may have cleared thumbs that pointed at removed files.
        for author in authors:
            row = conn.execute("SELECT thumb FROM authors WHERE id = ?", (author,)).fetchone()
            if row is not None and row["thumb"] is None:
                hooks.author_thumb_by_latest(conn, author)
        for collection in collections:
            row = conn.execute("SELECT thumb FROM collections WHERE id = ?", (collection,)).fetchone()
            if row is not None and row["thumb"] is None:
                hooks.collection_thumb_by_latest(conn, collection)

    @staticmethod
    def _require_name(value, what):
        value = normalize_text(value)
        if not value:
            raise ValueError(f"{what} must not be empty")
        return value

    @staticmethod
    def _alias_key(alias):
        if isinstance(alias, tuple):
            platform, source = alias
        else:
            platform, source = alias.platform, alias.source
        return platform, normalize_text(source)

    @classmethod
    def _alias_fields(cls, alias):
        return cls._require_name(alias.source, "alias source"), alias.platform, alias.link

    @staticmethod
    def _encode_comments(comments):
        return json_dumps([Comment.from_dict(c).to_dict() for c in comments or []])

    @staticmethod
    def _encode_content(conn, post, content):
        blocks = []
        for block in content or []:
            if isinstance(block, bool) or not isinstance(block, (str, int)):
                raise ValueError(f"unsupported content block: {block!r}")
            if isinstance(block, int):
                row = conn.execute("SELECT post FROM file_metas WHERE id = ?", (block,)).fetchone()
                if row is None or row["post"] != post:
                    raise IntegrityViolationError(f"file meta {block} does not belong to post {post}")
            blocks.append(block)
        return json_dumps(blocks)

    def _row_to_author(self, row):
        return Author(id=row["id"], name=row["name"], thumb=row["thumb"], updated=parse_iso(row["updated"]))

    def _row_to_alias(self, row):
        return AuthorAlias(source=row["source"], platform=row["platform"], target=row["target"], link=row["link"])

    def _row_to_post(self, row):
        return Post(
            id=row["id"],
            source=row["source"],
            platform=row["platform"],
            title=row["title"],
            content=json_loads_list(row["content"]),
            thumb=row["thumb"],
            comments=[Comment.from_dict(c) for c in json_loads_list(row["comments"])],
            published=parse_iso(row["published"]),
            updated=parse_iso(row["updated"]),
        )

    def _row_to_tag(self, row):
        return Tag(id=row["id"], name=row["name"], platform=row["platform"])

    def _row_to_collection(self, row):
        return Collection(id=row["id"], name=row["name"], source=row["source"], thumb=row["thumb"])

    def _row_to_file_meta(self, row):
        return FileMeta(
            id=row["id"],
            filename=row["filename"],
            post=row["post"],
            mime=row["mime"],
            extra=json_loads_object(row["extra"]),
        )
