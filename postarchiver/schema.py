TABLES = {
    "post_archiver_meta": r"""
CREATE TABLE IF NOT EXISTS post_archiver_meta (
  version TEXT NOT NULL PRIMARY KEY
);
""",
    "features": r"""
CREATE TABLE IF NOT EXISTS features (
  name TEXT NOT NULL PRIMARY KEY,
  value INTEGER NOT NULL DEFAULT 0,
  extra JSON NOT NULL DEFAULT '{}'
);
""",
    "platforms": r"""
CREATE TABLE IF NOT EXISTS platforms (
  id INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL UNIQUE COLLATE NOCASE
);
""",
    "authors": r"""
CREATE TABLE IF NOT EXISTS authors (
  id INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  thumb INTEGER REFERENCES file_metas (id) ON DELETE SET NULL,
  updated TEXT NOT NULL DEFAULT '1970-01-01T00:00:00+00:00'
);
""",
    # platform falls back to 0 ("unknown") when its platform row is deleted
    "author_aliases": r"""
CREATE TABLE IF NOT EXISTS author_aliases (
  source TEXT NOT NULL,
  platform INTEGER NOT NULL DEFAULT 0 REFERENCES platforms (id) ON DELETE SET DEFAULT,
  link TEXT,
  target INTEGER NOT NULL REFERENCES authors (id) ON DELETE CASCADE,
  PRIMARY KEY (platform, source)
);
""",
    # The write path always passes platform explicitly; DEFAULT 0 only serves ON DELETE SET DEFAULT.
    "posts": r"""
CREATE TABLE IF NOT EXISTS posts (
  id INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
  source TEXT UNIQUE,
  platform INTEGER DEFAULT 0 REFERENCES platforms (id) ON DELETE SET DEFAULT,
  title TEXT NOT NULL,
  content JSON NOT NULL DEFAULT '[]',
  thumb INTEGER REFERENCES file_metas (id) ON DELETE SET NULL,
  comments JSON NOT NULL DEFAULT '[]',
  published TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%S+00:00', 'now')),
  updated TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%S+00:00', 'now'))
);
""",
    "author_posts": r"""
CREATE TABLE IF NOT EXISTS author_posts (
  author INTEGER NOT NULL REFERENCES authors (id) ON DELETE CASCADE,
  post INTEGER NOT NULL REFERENCES posts (id) ON DELETE CASCADE,
  PRIMARY KEY (author, post)
);
""",
    "collections": r"""
CREATE TABLE IF NOT EXISTS collections (
  id INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  source TEXT UNIQUE,
  thumb INTEGER REFERENCES file_metas (id) ON DELETE SET NULL
);
""",
    "collection_posts": r"""
CREATE TABLE IF NOT EXISTS collection_posts (
  collection INTEGER NOT NULL REFERENCES collections (id) ON DELETE CASCADE,
  post INTEGER NOT NULL REFERENCES posts (id) ON DELETE CASCADE,
  PRIMARY KEY (collection, post)
);
""",
    # platform IS NULL marks a global tag
    "tags": r"""
CREATE TABLE IF NOT EXISTS tags (
  id INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  platform INTEGER DEFAULT 0 REFERENCES platforms (id) ON DELETE SET DEFAULT
);
""",
    "post_tags": r"""
CREATE TABLE IF NOT EXISTS post_tags (
  post INTEGER NOT NULL REFERENCES posts (id) ON DELETE CASCADE,
  tag INTEGER NOT NULL REFERENCES tags (id) ON DELETE CASCADE,
  PRIMARY KEY (post, tag)
);
""",
    "post_platform_tags": r"""
CREATE TABLE IF NOT EXISTS post_platform_tags (
  post INTEGER NOT NULL REFERENCES posts (id) ON DELETE CASCADE,
  tag INTEGER NOT NULL REFERENCES tags (id) ON DELETE CASCADE,
  PRIMARY KEY (post, tag)
);
""",
    "file_metas": r"""
CREATE TABLE IF NOT EXISTS file_metas (
  id INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
  filename TEXT NOT NULL,
  post INTEGER NOT NULL REFERENCES posts (id) ON DELETE CASCADE,
  mime TEXT NOT NULL,
  extra JSON NOT NULL DEFAULT '{}'
);
""",
}

INDEX_SQL = r"""
CREATE UNIQUE INDEX IF NOT EXISTS tags_platform_name_idx ON tags (ifnull(platform, -1), name);
CREATE INDEX IF NOT EXISTS posts_source_idx ON posts (source);
CREATE INDEX IF NOT EXISTS posts_updated_idx ON posts (updated);
CREATE INDEX IF NOT EXISTS posts_platform_idx ON posts (platform);
CREATE INDEX IF NOT EXISTS author_aliases_target_idx ON author_aliases (target);
CREATE INDEX IF NOT EXISTS author_posts_post_idx ON author_posts (post);
CREATE INDEX IF NOT EXISTS collection_posts_post_idx ON collection_posts (post);
CREATE INDEX IF NOT EXISTS post_tags_tag_idx ON post_tags (tag);
CREATE INDEX IF NOT EXISTS post_platform_tags_tag_idx ON post_platform_tags (tag);
CREATE INDEX IF NOT EXISTS file_metas_post_idx ON file_metas (post);
"""

SCHEMA_SQL = "".join(TABLES.values()) + INDEX_SQL

SEED_SQL = r"""
INSERT OR IGNORE INTO platforms (id, name) VALUES (0, 'unknown');
INSERT OR IGNORE INTO tags (id, name, platform) VALUES (0, 'unknown', 0);
"""


def table_sql(name, as_name=None):
    """DDL for one current table, optionally under another name for rebuilds."""
    ddl = TABLES[name]
    if as_name:
        ddl = ddl.replace(f"CREATE TABLE IF NOT EXISTS {name} (", f"CREATE TABLE {as_name} (", 1)
    return ddl


# Layout of archives written before the version marker existed (ladder version 1).
LEGACY_SCHEMA_SQL = r"""
CREATE TABLE authors (
  id INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL COLLATE NOCASE,
  links JSON NOT NULL DEFAULT '[]',
  thumb INTEGER,
  updated DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
);

-- source is "<platform>:<author>"
CREATE TABLE author_alias (
  source TEXT NOT NULL PRIMARY KEY,
  target INTEGER NOT NULL,
  FOREIGN KEY (target) REFERENCES authors (id) ON DELETE CASCADE
);

CREATE TABLE posts (
  id INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
  author INTEGER NOT NULL,
  source TEXT,
  title TEXT NOT NULL,
  content JSON NOT NULL,
  thumb INTEGER,
  comments JSON NOT NULL DEFAULT '[]',
  updated DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
  published DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY (author) REFERENCES authors (id) ON DELETE CASCADE
);

CREATE INDEX posts_author_idx ON posts (author);
CREATE INDEX posts_source_idx ON posts (source);
CREATE INDEX posts_updated_idx ON posts (updated);

CREATE TABLE tags (
  id INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL UNIQUE COLLATE NOCASE
);

INSERT INTO tags (id, name) VALUES (0, 'unknown');

CREATE TABLE post_tags (
  post INTEGER NOT NULL,
  tag INTEGER NOT NULL,
  PRIMARY KEY (post, tag),
  FOREIGN KEY (post) REFERENCES posts (id) ON DELETE CASCADE,
  FOREIGN KEY (tag) REFERENCES tags (id) ON DELETE CASCADE
);

CREATE TABLE file_metas (
  id INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
  filename TEXT NOT NULL,
  author INTEGER NOT NULL,
  post INTEGER NOT NULL,
  mime TEXT NOT NULL,
  extra JSON NOT NULL DEFAULT '{}',
  FOREIGN KEY (post) REFERENCES posts (id) ON DELETE CASCADE
);

CREATE INDEX file_metas_post_idx ON file_metas (post);

CREATE TRIGGER update_post_thumb_on_file_meta_insert AFTER INSERT ON file_metas BEGIN
  UPDATE posts SET thumb = NEW.id WHERE id = NEW.post AND NEW.mime LIKE 'image/%';
END;

CREATE TRIGGER update_post_thumb_on_file_meta_update AFTER UPDATE ON file_metas BEGIN
  UPDATE posts SET thumb = NEW.id WHERE id = NEW.post AND NEW.mime LIKE 'image/%';
END;

CREATE TRIGGER update_author_on_post_insert AFTER INSERT ON posts BEGIN
  UPDATE authors SET updated = CURRENT_TIMESTAMP WHERE id = NEW.author;
  UPDATE authors SET thumb = NEW.thumb WHERE id = NEW.author AND NEW.thumb IS NOT NULL;
END;

CREATE TRIGGER update_author_on_post_update AFTER UPDATE ON posts BEGIN
  UPDATE authors SET updated = CURRENT_TIMESTAMP WHERE id = NEW.author;
  UPDATE authors SET thumb = NEW.thumb WHERE id = NEW.author AND NEW.thumb IS NOT NULL;
END;
"""

LEGACY_TRIGGERS = (
    "update_post_thumb_on_file_meta_insert",
    "update_post_thumb_on_file_meta_update",
    "update_author_on_post_insert",
    "update_author_on_post_update",
)
