"""Schema version ladder.

Archives carry their layout version in ``post_archiver_meta``; archives from
before that table existed are version 1. Each ``MigrationStep`` moves an
archive from ``step.version`` to ``step.version + 1`` inside its own
transaction, so a failed step leaves the archive at the version it started
from.

Legacy rows whose platform cannot be read from the data are assigned
explicitly instead of guessed:

* ``"<platform>:<source>"`` aliases move to the platform named by the prefix
  (created on demand); aliases without a prefix go to platform 0 ("unknown").
* Legacy posts get platform 0.
* Legacy tags become global tags, except reserved tag 0 which becomes the
  ``(0, "unknown")`` platform tag.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Callable

from .constants import LEGACY_SCHEMA_VERSION, SCHEMA_VERSION
from .errors import MigrationError, UnsupportedSchemaError
from .schema import INDEX_SQL, LEGACY_TRIGGERS, SCHEMA_SQL, SEED_SQL, table_sql

logger = logging.getLogger("PostArchiver")


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable
    # tables whose foreign keys are checked before the step commits
    tables: tuple = ()

    @property
    def target(self):
        return self.version + 1


def _tables(conn):
    return {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}


def _columns(conn, table):
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}


def _iso(column):
    # Legacy DATETIME values look like "2024-01-02 03:04:05"; keep unparsable values as-is.
    return f"coalesce(strftime('%Y-%m-%dT%H:%M:%S+00:00', {column}), {column})"


def iter_statements(script):
    buf = ""
    for line in script.splitlines(keepends=True):
        buf += line
        if sqlite3.complete_statement(buf):
            stmt = buf.strip()
            buf = ""
            if stmt:
                yield stmt
    if buf.strip():
        raise ValueError(f"incomplete SQL statement: {buf.strip()[:60]}")


def _create_indexes(conn, tables):
    for stmt in iter_statements(INDEX_SQL):
        table = stmt.split(" ON ", 1)[1].split(" ", 1)[0]
        if table in tables:
            conn.execute(stmt)


def _rebuild(conn, table, insert_sql):
    """Swap ``table`` for the current layout, copying rows with ``insert_sql``.

    ``insert_sql`` fills ``<table>_new`` from the old ``table``. Creating the
    replacement first and renaming it afterwards keeps references held by
    other tables pointing at ``table``.
    """
    new = f"{table}_new"
    conn.execute(f"DROP TABLE IF EXISTS {new}")
    conn.execute(table_sql(table, as_name=new))
    conn.execute(insert_sql)
    conn.execute(f"DROP TABLE {table}")
    conn.execute(f"ALTER TABLE {new} RENAME TO {table}")


# ── steps ──


def introduce_meta(conn):
    conn.execute(table_sql("post_archiver_meta"))
    conn.execute(table_sql("features"))
    # thumbnail/author propagation now runs in hooks.py
    for trigger in LEGACY_TRIGGERS:
        conn.execute(f"DROP TRIGGER IF EXISTS {trigger}")


def rename_alias_table(conn):
    tables = _tables(conn)
    if "author_alias" in tables and "author_aliases" not in tables:
        conn.execute("ALTER TABLE author_alias RENAME TO author_aliases")


def platform_scoped_aliases(conn):
    conn.execute(table_sql("platforms"))
    conn.execute("INSERT OR IGNORE INTO platforms (id, name) VALUES (0, 'unknown')")

    if "platform" not in _columns(conn, "author_aliases"):
        conn.execute(
            """
            INSERT OR IGNORE INTO platforms (name)
            SELECT DISTINCT substr(source, 1, instr(source, ':') - 1) FROM author_aliases
            WHERE instr(source, ':') > 1
            ORDER BY 1
            """
        )
        has_links = "links" in _columns(conn, "authors")
        prefix = "substr(a.source, 1, instr(a.source, ':') - 1)"
        link_sql = (
            f"""
            (SELECT json_extract(l.value, '$.url')
             FROM authors AS au, json_each(au.links) AS l
             WHERE au.id = a.target AND json_extract(l.value, '$.name') = {prefix}
             LIMIT 1)
            """
            if has_links
            else "NULL"
        )
        _rebuild(
            conn,
            "author_aliases",
            f"""
            INSERT INTO author_aliases_new (source, platform, link, target)
            SELECT
              CASE WHEN instr(a.source, ':') > 1 THEN substr(a.source, instr(a.source, ':') + 1) ELSE a.source END,
              CASE WHEN instr(a.source, ':') > 1 THEN (SELECT id FROM platforms WHERE name = {prefix}) ELSE 0 END,
              CASE WHEN instr(a.source, ':') > 1 THEN {link_sql} ELSE NULL END,
              a.target
            FROM author_aliases AS a
            """,
        )

    if "links" in _columns(conn, "authors"):
        _rebuild(
            conn,
            "authors",
            f"""
            INSERT INTO authors_new (id, name, thumb, updated)
            SELECT id, name,
                   CASE WHEN thumb IN (SELECT id FROM file_metas) THEN thumb END,
                   {_iso("updated")}
            FROM authors
            """,
        )
    _create_indexes(conn, {"author_aliases"})


def multi_author_posts(conn):
    conn.execute(table_sql("author_posts"))

    post_columns = _columns(conn, "posts")
    if "author" in post_columns:
        conn.execute("INSERT OR IGNORE INTO author_posts (author, post) SELECT author, id FROM posts")
    if "author" in post_columns or "platform" not in post_columns:
        _rebuild(
            conn,
            "posts",
            f"""
            INSERT INTO posts_new (id, source, platform, title, content, thumb, comments, published, updated)
            SELECT id, source, 0, title, content,
                   CASE WHEN thumb IN (SELECT f.id FROM file_metas AS f WHERE f.post = posts.id) THEN thumb END,
                   comments, {_iso("published")}, {_iso("updated")}
            FROM posts
            """,
        )

    if "author" in _columns(conn, "file_metas"):
        _rebuild(
            conn,
            "file_metas",
            """
            INSERT INTO file_metas_new (id, filename, post, mime, extra)
            SELECT id, filename, post, mime, extra FROM file_metas
            """,
        )
    _create_indexes(conn, {"posts", "author_posts", "file_metas"})


def scoped_tags_and_collections(conn):
    if "platform" not in _columns(conn, "tags"):
        _rebuild(
            conn,
            "tags",
            """
            INSERT INTO tags_new (id, name, platform)
            SELECT id, name, CASE WHEN id = 0 THEN 0 END FROM tags
            """,
        )
    conn.execute("INSERT OR IGNORE INTO tags (id, name, platform) VALUES (0, 'unknown', 0)")

    conn.execute(table_sql("post_tags"))
    conn.execute(table_sql("post_platform_tags"))
    conn.execute(
        """
        INSERT OR IGNORE INTO post_platform_tags (post, tag)
        SELECT post, tag FROM post_tags WHERE tag IN (SELECT id FROM tags WHERE platform IS NOT NULL)
        """
    )
    conn.execute("DELETE FROM post_tags WHERE tag IN (SELECT id FROM tags WHERE platform IS NOT NULL)")

    conn.execute(table_sql("collections"))
    conn.execute(table_sql("collection_posts"))
    _create_indexes(conn, _tables(conn))


LADDER = (
    MigrationStep(1, "introduce_meta", introduce_meta),
    MigrationStep(2, "rename_alias_table", rename_alias_table, ("author_aliases",)),
    MigrationStep(3, "platform_scoped_aliases", platform_scoped_aliases, ("author_aliases", "authors")),
    MigrationStep(4, "multi_author_posts", multi_author_posts, ("author_posts", "posts", "file_metas")),
    MigrationStep(
        5,
        "scoped_tags_and_collections",
        scoped_tags_and_collections,
        ("tags", "post_tags", "post_platform_tags", "collections", "collection_posts"),
    ),
)


# ── runner ──


def detect_version(conn):
    """Version of the archive behind ``conn``; 0 means an empty database."""
    tables = _tables(conn)
    if "post_archiver_meta" in tables:
        rows = conn.execute("SELECT version FROM post_archiver_meta").fetchall()
        if len(rows) != 1:
            raise UnsupportedSchemaError("archive version marker is missing or ambiguous")
        raw = rows[0][0]
        try:
            return int(str(raw).strip())
        except ValueError:
            raise UnsupportedSchemaError(f"unrecognized archive version {raw!r}", version=raw) from None
    if "authors" in tables:
        return LEGACY_SCHEMA_VERSION
    return 0


def write_marker(conn, version):
    conn.execute("DELETE FROM post_archiver_meta")
    conn.execute("INSERT INTO post_archiver_meta (version) VALUES (?)", (str(version),))


def create_schema(conn, version=SCHEMA_VERSION):
    conn.execute("BEGIN IMMEDIATE")
    try:
        for stmt in iter_statements(SCHEMA_SQL + SEED_SQL):
            conn.execute(stmt)
        write_marker(conn, version)
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise
    return version


def apply_step(conn, step):
    logger.info("Migrating archive schema %d -> %d (%s)", step.version, step.target, step.name)
    conn.execute("BEGIN IMMEDIATE")
    try:
        step.apply(conn)
        for table in step.tables:
            problems = conn.execute(f"PRAGMA foreign_key_check({table})").fetchall()
            if problems:
                raise MigrationError(
                    f"step {step.name} leaves {len(problems)} dangling reference(s) in {table}",
                    version=step.version,
                    step=step.name,
                )
        write_marker(conn, step.target)
        conn.execute("COMMIT")
    except MigrationError:
        conn.execute("ROLLBACK")
        raise
    except Exception as exc:
        conn.execute("ROLLBACK")
        raise MigrationError(
            f"step {step.name} failed: {exc}",
            version=step.version,
            step=step.name,
        ) from exc


def upgrade(conn, version=None, target=SCHEMA_VERSION):
    """Bring the archive to ``target`` and return the version it ends at.

    ``conn`` must be in autocommit mode (``isolation_level=None``) with no open
    transaction, since foreign keys are switched off around the rebuilds.
    """
    if version is None:
        version = detect_version(conn)
    if version > target:
        raise UnsupportedSchemaError(
            f"archive schema {version} is newer than supported schema {target}",
            version=version,
        )
    if version == target:
        return version
    if version == 0:
        return create_schema(conn, target)

    steps = [step for step in LADDER if version <= step.version < target]
    conn.execute("PRAGMA foreign_keys = OFF")
    try:
        for step in steps:
            apply_step(conn, step)
            version = step.target
    finally:
        conn.execute("PRAGMA foreign_keys = ON")
    return version
