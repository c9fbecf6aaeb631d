#
# anchor-scan - BLE anchor that runs server-issued beacon scan jobs
#

"""Exception types shared across anchor-scan."""


class AnchorScanError(Exception):
    """Base class for anchor-scan errors."""


class ApiError(AnchorScanError):
    """A remote API call failed or returned a payload we could not decode."""

    def __init__(self, message: str, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class RadioUnavailableError(AnchorScanError):
    """The Bluetooth adapter is missing, powered off, or refused to scan."""
