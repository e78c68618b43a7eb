"""
Exception taxonomy for the device synchronization core.

Only hard failures are exceptions. A missing device (NotFound) and a bulk
operation where some items failed (partial failure) are reported through
return values instead.
"""

from typing import Optional


class HomeSyncError(Exception):
    """Base class for all homesync errors."""


class ValidationError(HomeSyncError, ValueError):
    """Raised before any remote call when input is rejected."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


class StoreError(HomeSyncError):
    """Raised by a RemoteStore implementation when a remote call fails."""

    def __init__(self, operation: str, path: str, message: str):
        self.operation = operation
        self.path = path
        super().__init__(f"{operation} {path!r} failed: {message}")


class WriteFailure(HomeSyncError):
    """
    A remote write was rejected or could not be delivered.

    `step` names the sub-write that failed (e.g. "record", "power_logs",
    "toggle", "toggle/history" for add_device). Sub-writes completed before
    the failure are not rolled back.
    """

    def __init__(self, step: str, message: str, device_id: Optional[str] = None):
        self.step = step
        self.device_id = device_id
        prefix = f"[{device_id}] " if device_id else ""
        super().__init__(f"{prefix}write '{step}' failed: {message}")
