"""Exceptions shared by the numbering, split-payment and storage layers."""


class PosError(Exception):
    """Base class for errors reported to POS callers."""


class StorageError(PosError):
    """Counter or document persistence failed; nothing was written."""
    retryable = True

    def __init__(self, message: str, key: str = ""):
        super().__init__(message)
        self.key = key


class ValidationError(PosError):
    """An amount or a split total was rejected; the user must correct it."""
    retryable = False

    def __init__(self, message: str, field: str = ""):
        super().__init__(message)
        self.field = field
