from .constants import APP_NAME, SCHEMA_VERSION
from .db import PostArchiveStore
from .errors import (
    ArchiveError,
    ConflictError,
    IntegrityViolationError,
    MigrationError,
    UnsupportedSchemaError,
)
from .importer import (
    ImportedPost,
    UnsyncAlias,
    UnsyncAuthor,
    UnsyncCollection,
    UnsyncFileMeta,
    UnsyncPost,
    UnsyncTag,
    import_author,
    import_file_meta,
    import_post,
    import_posts,
)

VERSION = "0.4.0"

__all__ = [
    "APP_NAME",
    "SCHEMA_VERSION",
    "VERSION",
    "PostArchiveStore",
    "ArchiveError",
    "ConflictError",
    "IntegrityViolationError",
    "MigrationError",
    "UnsupportedSchemaError",
    "ImportedPost",
    "UnsyncAlias",
    "UnsyncAuthor",
    "UnsyncCollection",
    "UnsyncFileMeta",
    "UnsyncPost",
    "UnsyncTag",
    "import_author",
    "import_file_meta",
    "import_post",
    "import_posts",
]
