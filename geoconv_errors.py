"""
geoconv Errors
Typed failures raised by the conversion pipelines.
Every stage aborts the job with one of these; nothing is downgraded to partial output.
"""

from typing import Optional


class ConversionError(Exception):
    """Base class for every failure surfaced by the engine."""


class UnsupportedFormatError(ConversionError):
    """Format unknown to the registry, or known but not usable in the requested direction."""

    def __init__(self, format_id: str, direction: str):
        self.format = format_id
        self.direction = direction
        super().__init__(f"Unsupported {direction} format: {format_id}")


class EmptyInputError(ConversionError):
    def __init__(self):
        super().__init__("No input files supplied")


class MissingPrimaryFileError(ConversionError):
    def __init__(self, format_id: str):
        self.format = format_id
        super().__init__(f"No .{format_id.upper()} file found in file set")


class MissingCompanionFileError(ConversionError):
    def __init__(self, format_id: str, companion: str):
        self.format = format_id
        self.companion = companion
        super().__init__(f"Companion file '{companion}' required by .{format_id} input is missing")


class GeometryConversionError(ConversionError):
    """A source geometry object could not be coerced into polygon data.

    Carries the position of the object inside its batch and its runtime type
    so the caller can tell "shape #3 of 5 failed" from an opaque failure.
    """

    def __init__(self, index: int, source_type: str, cause: Optional[str] = None):
        self.index = index
        self.source_type = source_type
        self.cause = cause
        message = f"Geometry #{index} ({source_type}) could not be converted to a mesh"
        if cause:
            message += f": {cause}"
        super().__init__(message)


class BackendUnavailableError(ConversionError):
    """The native backend for a format family failed to initialize."""

    def __init__(self, family: str, cause: str):
        self.family = family
        self.cause = cause
        super().__init__(f"Backend for {family} formats is unavailable: {cause}")


class InvalidContainerError(ConversionError):
    """Payload failed a magic-tag or structural check for its declared format."""

    def __init__(self, format_id: str, reason: str):
        self.format = format_id
        self.reason = reason
        super().__init__(f"Invalid .{format_id} data: {reason}")
