"""Write path for importer tools.

Importers describe what they scraped with the ``Unsync*`` values below and hand
them to ``import_author`` / ``import_post``. The functions resolve identities
(authors, tags, platforms, collections) through the store's caches, write
everything for one post in a single transaction and return where the
post's file bytes should be stored.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from .constants import UNKNOWN_PLATFORM
from .image_metadata import probe_image
from .models import AuthorId, CollectionId, Comment, FileMeta, PlatformId, PostId
from .utils import is_image_mime, now_iso

logger = logging.getLogger("PostArchiver")


@dataclass
class UnsyncAlias:
    source: str
    platform: PlatformId = UNKNOWN_PLATFORM
    link: Optional[str] = None


@dataclass
class UnsyncAuthor:
    name: str
    aliases: list[UnsyncAlias] = field(default_factory=list)
    updated: Optional[datetime] = None


@dataclass
class UnsyncTag:
    name: str
    platform: Optional[PlatformId] = None


@dataclass
class UnsyncCollection:
    name: str
    source: Optional[str] = None


@dataclass
class UnsyncFileMeta:
    filename: str
    mime: str
    extra: dict[str, Any] = field(default_factory=dict)
    # raw bytes for the caller to write; images are probed for width/height
    data: Optional[bytes] = None


@dataclass
class UnsyncPost:
    source: str
    title: str
    content: list[Union[str, UnsyncFileMeta]] = field(default_factory=list)
    thumb: Optional[UnsyncFileMeta] = None
    comments: list[Comment] = field(default_factory=list)
    updated: Optional[datetime] = None
    published: Optional[datetime] = None
    platform: Optional[PlatformId] = None
    tags: list[UnsyncTag] = field(default_factory=list)
    authors: list[AuthorId] = field(default_factory=list)
    collections: list[UnsyncCollection] = field(default_factory=list)


@dataclass
class ImportedPost:
    id: PostId
    authors: list[AuthorId]
    collections: list[CollectionId]
    # (destination path, bytes) pairs the caller still has to write
    files: list[tuple[str, bytes]] = field(default_factory=list)


def import_author(store, author):
    """Find the author by any of its aliases or create it; returns the author id.

    Aliases already owned by a different author are left untouched.
    """
    with store.transaction():
        author_id = store.find_author((a.platform, a.source) for a in author.aliases)
        if author_id is not None:
            store.set_author_name(author_id, author.name)
        elif author.aliases:
            first = author.aliases[0]
            author_id = store.resolve_author(first.platform, first.source, author.name, link=first.link)
        else:
            author_id = store.add_author(author.name, updated=author.updated)

        for alias in author.aliases:
            owner = store.find_author([(alias.platform, alias.source)])
            if owner is None:
                store.add_author_aliases(author_id, [alias])
            elif owner != author_id:
                logger.warning(
                    "alias %s:%s belongs to author %s, not %s; left unchanged",
                    alias.platform,
                    alias.source,
                    owner,
                    author_id,
                )
        if author.updated is not None:
            store.touch_author(author_id, author.updated)
    return author_id


def import_file_meta(store, post, file_meta) -> FileMeta:
    """Create the file meta, or update the post's existing file of the same name."""
    extra = dict(file_meta.extra)
    if file_meta.data is not None and is_image_mime(file_meta.mime):
        for key, value in probe_image(file_meta.data).items():
            extra.setdefault(key, value)

    with store.transaction():
        existing = store.find_file_meta(post, file_meta.filename)
        if existing is None:
            file_meta_id = store.add_file_meta(post, file_meta.filename, file_meta.mime, extra)
        else:
            store.update_file_meta(existing, mime=file_meta.mime, extra=extra)
            file_meta_id = existing
        return store.get_file_meta(file_meta_id)


def import_post(store, post) -> ImportedPost:
    """Insert or refresh one post with its files, tags, collections and authors."""
    files = []
    images = []

    def _import_file(fm):
        meta = import_file_meta(store, post_id, fm)
        if fm.data is not None:
            files.append((store.file_meta_path(meta), fm.data))
        if is_image_mime(meta.mime):
            images.append(meta.id)
        return meta.id

    with store.transaction():
        post_id = store.find_post(post.source)
        if post_id is None:
            post_id = store.add_post(
                post.title,
                source=post.source,
                platform=post.platform,
                published=post.published,
                updated=post.updated,
            )
        else:
            changes = {"title": post.title, "published": post.published, "updated": post.updated or now_iso()}
            # A re-import without a platform keeps the stored one.
            if post.platform is not None:
                changes["platform"] = post.platform
            store.update_post(post_id, changes)

        content = []
        for block in post.content:
            if isinstance(block, UnsyncFileMeta):
                content.append(_import_file(block))
            else:
                content.append(str(block))
        # The newest image write becomes the post thumb: the explicit thumb if
        # given, otherwise the first image of the content.
        if post.thumb is not None:
            _import_file(post.thumb)
        elif images:
            store.update_file_meta(images[0])

        store.update_post(post_id, {"content": content, "comments": post.comments})

        tags = [store.resolve_tag(tag.name, tag.platform) for tag in post.tags]
        store.add_post_tags(post_id, tags)

        collections = [store.resolve_collection(c.name, c.source) for c in post.collections]
        store.add_post_collections(post_id, collections)

        store.add_post_authors(post_id, post.authors)

    logger.debug("imported post %s (%s) with %d file(s)", post_id, post.source, len(files))
    return ImportedPost(
        id=post_id,
        authors=list(dict.fromkeys(post.authors)),
        collections=list(dict.fromkeys(collections)),
        files=files,
    )


def import_posts(store, posts):
    """Import each post in its own transaction."""
    return [import_post(store, post) for post in posts]
