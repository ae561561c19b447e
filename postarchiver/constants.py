APP_NAME = "PostArchiver"

# Ladder version of the layout created by SCHEMA_SQL.
SCHEMA_VERSION = 6
LEGACY_SCHEMA_VERSION = 1

DATABASE_NAME = "post-archiver.db"

UNKNOWN_PLATFORM = 0
UNKNOWN_TAG = 0
UNKNOWN_NAME = "unknown"

POSTS_PER_CHUNK = 2048
