class ValidationError(ValueError):
    """Malformed or out-of-range user input. Rendered as 400."""


class DuplicateError(ValidationError):
    pass


class ReferenceInUseError(ValidationError):
    pass


class NotFoundError(ValueError):
    """Referenced entity is absent or owned by another user. Rendered as 404."""


class DataStoreError(RuntimeError):
    """A query against the data store failed. Rendered as 500."""


class CacheUnavailable(RuntimeError):
    """The cache backend could not be reached.

    Only raised inside the cache layer; callers of ``CacheClient`` never see it.
    """
