"""Exception hierarchy for changesync."""


class ChangesyncError(Exception):
    """Base exception for all changesync errors."""


class CodecError(ChangesyncError):
    """Delta bytes are not a well-formed changeset.

    Raised when:
    - The buffer is truncated or carries an unknown marker
    - A change appears before any table header
    - Deltas with different shapes for the same table are combined
    """


class NotFoundError(ChangesyncError):
    """A referenced changeset (or row) does not exist."""

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.key = key


class IntegrityError(ChangesyncError):
    """A commit graph invariant would be violated.

    Indicates a programming error, e.g. a merge node without its second
    delta or a non-merge node with an empty delta.
    """


class RemoteError(ChangesyncError):
    """Transport or remote store failure."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteConflict(RemoteError):
    """The remote already holds a record with this key and different content.

    Push treats this as success: the changeset is already represented
    remotely.
    """

    def __init__(self, message: str, record_id: str | None = None):
        super().__init__(message, status_code=409)
        self.record_id = record_id
