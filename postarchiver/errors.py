
class ArchiveError(Exception):
    """Base class for archive failures."""


class ConflictError(ArchiveError):
    """A write collided with an existing identity (alias, source, tag, name).

    Re-resolve the identity instead of retrying the same insert.
    """


class UnsupportedSchemaError(ArchiveError):
    """The archive was written by a newer engine, or its version marker is unreadable."""

    def __init__(self, message, version=None):
        super().__init__(message)
        self.version = version


class MigrationError(ArchiveError):
    """A ladder step failed; the archive stays at ``version``."""

    def __init__(self, message, version=None, step=None):
        super().__init__(message)
        self.version = version
        self.step = step


class IntegrityViolationError(ArchiveError):
    """A write would break a foreign key, a not-null column or a reserved row."""


_CONFLICT_MARKERS = ("UNIQUE constraint failed", "PRIMARY KEY")


def translate_integrity_error(exc):
    message = str(exc)
    if any(marker in message for marker in _CONFLICT_MARKERS):
        return ConflictError(message)
    return IntegrityViolationError(message)
