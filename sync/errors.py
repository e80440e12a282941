"""Error taxonomy for the Close.io sync pipeline.

Only ConfigurationError propagates out of a batch; mapping and dispatch
errors are captured per envelope and logged against the entity.
"""
from typing import Any, Optional


class SyncError(Exception):
    """Base class for all sync errors."""


class ConfigurationError(SyncError):
    """Missing or invalid credentials, settings or mapping rules."""


class MappingError(SyncError):
    """A record could not be mapped with the configured rules."""

    def __init__(self, message: str, object_type: str, record_id: Optional[str] = None):
        super().__init__(f"{message} (object_type={object_type}, id={record_id})")
        self.object_type = object_type
        self.record_id = record_id


class DispatchError(SyncError):
    """A call to the external service failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
