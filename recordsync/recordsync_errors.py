# recordsync/errors.py - Error taxonomy

from typing import Optional


class RecordSyncError(Exception):
    """Base class for all engine errors"""


class ConfigurationError(RecordSyncError, ValueError):
    """Missing model, invalid data source, unknown view name"""


class ComputedFieldError(RecordSyncError):
    """Invalid computed field definitions or evaluation cycles"""


class ReadOnlyFieldError(RecordSyncError):
    """Raised when a computed field is assigned directly"""

    def __init__(self, field: str):
        self.field = field
        super().__init__(f'Cannot set computed field "{field}"')


class TransportError(RecordSyncError):
    """A data source call failed at the transport level.

    Business outcomes (rejections, conflicts) are never reported this way;
    a TransportError means the whole query/mutate call must be treated as
    not having happened.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
