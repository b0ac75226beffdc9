"""
Error types raised by the overlay pipeline.

Every error carries an internal ``detail`` string that is logged server-side.
Only ``ValidationError`` messages are ever shown to the caller.
"""


class OverlayError(Exception):
    """Base class for all overlay pipeline failures."""

    status_code = 500

    def __init__(self, detail: str = ''):
        super().__init__(detail)
        self.detail = detail


class ValidationError(OverlayError):
    """Missing or malformed request fields (client fault)."""

    status_code = 400


# ---------- URL / network security ----------

class SecurityError(OverlayError):
    """A URL was refused by the SSRF policy."""


class InvalidUrl(SecurityError):
    pass


class SchemeNotAllowed(SecurityError):
    pass


class HostNotAllowed(SecurityError):
    pass


class PrivateAddressBlocked(SecurityError):
    pass


class DnsResolutionFailed(SecurityError):
    pass


# ---------- Remote fetch ----------

class FetchError(OverlayError):
    """Retrieval of a remote image failed."""


class FetchTimeout(FetchError):
    pass


class HttpError(FetchError):
    pass


class NotAnImage(FetchError):
    pass


class TooLarge(FetchError):
    pass


class FetchCancelled(FetchError):
    """Stopped because another fetch of the same request failed."""


# ---------- Image processing ----------

class DecodeError(OverlayError):
    """An image could not be decoded or has no usable dimensions."""


class InvalidBaseImage(DecodeError):
    pass


class InvalidLogoImage(DecodeError):
    pass


class CompositeError(OverlayError):
    """Unexpected failure while transforming or encoding."""
