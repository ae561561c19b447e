"""Canonical model of an archive.

These dataclasses are the single source of truth for field names, types and
optionality: the store converts rows into them and ``typegen`` projects them
into TypeScript. Keep annotations to what ``typegen`` understands (ids,
builtins, ``datetime``, ``list``, ``dict[str, Any]``, ``Optional`` and the
named unions in ``EXPORTED_TYPES``).
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, List, NewType, Optional, Union

AuthorId = NewType("AuthorId", int)
PostId = NewType("PostId", int)
PlatformId = NewType("PlatformId", int)
TagId = NewType("TagId", int)
CollectionId = NewType("CollectionId", int)
FileMetaId = NewType("FileMetaId", int)

# A content block is either literal text or a reference to one of the post's files.
Content = Union[str, FileMetaId]

OMIT_EMPTY = {"omit_empty": True}


@dataclass
class Comment:
    user: str
    text: str
    replies: List["Comment"] = field(default_factory=list, metadata=OMIT_EMPTY)

    def to_dict(self) -> dict:
        out = {"user": self.user, "text": self.text}
        if self.replies:
            out["replies"] = [reply.to_dict() for reply in self.replies]
        return out

    @classmethod
    def from_dict(cls, data):
        if isinstance(data, Comment):
            return data
        return cls(
            user=str(data.get("user", "")),
            text=str(data.get("text", "")),
            replies=[cls.from_dict(r) for r in data.get("replies") or []],
        )


@dataclass
class Platform:
    id: PlatformId
    name: str


@dataclass
class Author:
    id: AuthorId
    name: str
    thumb: Optional[FileMetaId]
    updated: datetime


@dataclass
class AuthorAlias:
    source: str
    platform: PlatformId
    target: AuthorId
    link: Optional[str] = None


@dataclass
class Post:
    id: PostId
    source: Optional[str]
    platform: Optional[PlatformId]
    title: str
    content: list[Content]
    thumb: Optional[FileMetaId]
    comments: list[Comment]
    published: datetime
    updated: datetime


@dataclass
class Tag:
    id: TagId
    name: str
    platform: Optional[PlatformId]


@dataclass
class Collection:
    id: CollectionId
    name: str
    source: Optional[str]
    thumb: Optional[FileMetaId]


@dataclass
class FileMeta:
    id: FileMetaId
    filename: str
    post: PostId
    mime: str
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class Feature:
    name: str
    value: int
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class AuthorPost:
    author: AuthorId
    post: PostId


@dataclass
class CollectionPost:
    collection: CollectionId
    post: PostId


@dataclass
class PostTag:
    post: PostId
    tag: TagId


@dataclass
class PostPlatformTag:
    post: PostId
    tag: TagId


def to_dict(obj):
    """Serialize a model value the way the TypeScript bindings describe it."""
    if isinstance(obj, Comment):
        return obj.to_dict()
    out = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, list):
            value = [to_dict(v) if isinstance(v, Comment) else v for v in value]
        elif isinstance(value, dict):
            value = dict(value)
        out[f.name] = value
    return out


EXPORTED_TYPES = (
    ("AuthorId", AuthorId),
    ("PostId", PostId),
    ("PlatformId", PlatformId),
    ("TagId", TagId),
    ("CollectionId", CollectionId),
    ("FileMetaId", FileMetaId),
    ("Content", Content),
    ("Comment", Comment),
    ("Platform", Platform),
    ("Author", Author),
    ("AuthorAlias", AuthorAlias),
    ("Post", Post),
    ("Tag", Tag),
    ("Collection", Collection),
    ("FileMeta", FileMeta),
    ("Feature", Feature),
    ("AuthorPost", AuthorPost),
    ("CollectionPost", CollectionPost),
    ("PostTag", PostTag),
    ("PostPlatformTag", PostPlatformTag),
)
