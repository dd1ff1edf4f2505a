"""Error taxonomy for the print pipeline.

Every stage raises a subclass of :class:`PrintError`. The message of the
exception is what gets reported back to the person who sent the content.
"""

from __future__ import annotations


class PrintError(Exception):
    """Base class for failures that abort a print job."""

    kind: str = "print"


class ImageDecodeError(PrintError):
    """Source bytes are empty, of unknown format, or corrupt."""

    kind = "decode"


class ImageEncodeError(PrintError):
    """The monochrome bitmap could not be serialized or handed to the printer."""

    kind = "encode"


class DeviceIOError(PrintError):
    """Opening, reading, writing or flushing the serial device failed."""

    kind = "io"


class DeviceTimeoutError(DeviceIOError):
    """A device operation ran past the configured timeout."""


class DeviceBusyError(PrintError):
    """The serial link is held by another caller."""

    kind = "busy"


class InvalidPayloadError(PrintError):
    """The barcode symbology rejected the payload."""

    kind = "invalid_payload"


class DownloadError(PrintError):
    """The original content could not be fetched."""

    kind = "download"
