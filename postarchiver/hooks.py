"""Derived-field maintenance run by the write path after each insert/update.

Every function here takes the connection of the caller's open transaction, so
derived thumbnails and timestamps commit or roll back with the write that
caused them.
"""

import logging

from .utils import is_image_mime, now_iso

logger = logging.getLogger("PostArchiver")


def _post_authors(conn, post):
    return [row["author"] for row in conn.execute("SELECT author FROM author_posts WHERE post = ?", (post,))]


def after_file_meta_write(conn, file_meta_id, post, mime, now=None):
    """An image file becomes its post's thumb; anything else leaves it alone."""
    if not is_image_mime(mime):
        return False
    conn.execute("UPDATE posts SET thumb = ? WHERE id = ?", (file_meta_id, post))
    after_post_write(conn, post, now=now)
    return True


def after_post_write(conn, post, now=None, authors=None):
    """Touch every author of ``post``: bump ``updated`` and mirror the post thumb."""
    authors = _post_authors(conn, post) if authors is None else list(authors)
    if not authors:
        return
    now = now or now_iso()
    marks = ",".join("?" for _ in authors)
    # max() keeps author.updated from moving backwards under clock skew.
    conn.execute(
        f"UPDATE authors SET updated = max(updated, ?) WHERE id IN ({marks})",
        (now, *authors),
    )
    row = conn.execute("SELECT thumb FROM posts WHERE id = ?", (post,)).fetchone()
    if row is not None and row["thumb"] is not None:
        conn.execute(
            f"UPDATE authors SET thumb = ? WHERE id IN ({marks})",
            (row["thumb"], *authors),
        )
    logger.debug("post %s touched authors %s", post, authors)


def refresh_post_thumb(conn, post):
    """Fall back to the newest remaining image of ``post`` (or null)."""
    row = conn.execute(
        "SELECT id FROM file_metas WHERE post = ? AND mime LIKE 'image/%' ORDER BY id DESC LIMIT 1",
        (post,),
    ).fetchone()
    thumb = row["id"] if row else None
    conn.execute("UPDATE posts SET thumb = ? WHERE id = ?", (thumb, post))
    return thumb


def author_thumb_by_latest(conn, author):
    row = conn.execute(
        """
        SELECT posts.thumb FROM posts
        JOIN author_posts ON author_posts.post = posts.id
        WHERE author_posts.author = ? AND posts.thumb IS NOT NULL
        ORDER BY posts.updated DESC, posts.id DESC LIMIT 1
        """,
        (author,),
    ).fetchone()
    thumb = row["thumb"] if row else None
    conn.execute("UPDATE authors SET thumb = ? WHERE id = ?", (thumb, author))
    return thumb


def collection_thumb_by_latest(conn, collection):
    row = conn.execute(
        """
        SELECT posts.thumb FROM posts
        JOIN collection_posts ON collection_posts.post = posts.id
        WHERE collection_posts.collection = ? AND posts.thumb IS NOT NULL
        ORDER BY posts.updated DESC, posts.id DESC LIMIT 1
        """,
        (collection,),
    ).fetchone()
    thumb = row["thumb"] if row else None
    conn.execute("UPDATE collections SET thumb = ? WHERE id = ?", (thumb, collection))
    return thumb
