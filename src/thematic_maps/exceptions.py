"""
Exception hierarchy for the thematic map pipeline.

Every error raised by the pipeline derives from ThematicMapError and carries
the pipeline stage it was raised in ("load", "join", "style" or "render"), so
callers receive a single terminal failure naming where the request stopped.
"""

from typing import Optional


class ThematicMapError(Exception):
    """Base exception class for all thematic map errors.

    Attributes:
        stage: Pipeline stage that raised the error, if known
    """

    default_stage: Optional[str] = None

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage or self.default_stage

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class SchemaError(ThematicMapError):
    """
    Raised when an input lacks a required column or CRS.

    Typically the join key is missing from the features or the attribute
    table, or a geometry source was loaded without a coordinate reference
    system.
    """
    default_stage = "join"


class DuplicateKeyError(ThematicMapError):
    """
    Raised when a key occurs more than once where it must be unique.

    Attribute rows sharing a key make the join ambiguous; they are reported
    rather than resolved silently.
    """
    default_stage = "join"

    def __init__(self, message: str, keys=(), stage: Optional[str] = None):
        super().__init__(message, stage)
        self.keys = list(keys)


class UnknownVariableError(ThematicMapError):
    """Raised when a style references an attribute the dataset does not have."""
    default_stage = "style"


class StyleError(ThematicMapError):
    """Raised for invalid style configuration (breaks, palette, positions)."""
    default_stage = "style"


class EmptyGeometryError(ThematicMapError):
    """Raised when asked to render a dataset with zero features."""
    default_stage = "render"


class RenderBackendError(ThematicMapError):
    """
    Raised when the drawing surface cannot be created or written.

    Wraps matplotlib and folium failures. Rendering is never retried.
    """
    default_stage = "render"


class LoadError(ThematicMapError):
    """Raised when a file or remote source cannot be read."""
    default_stage = "load"


class NotFoundError(LoadError):
    """Raised when the boundary provider does not know the requested region."""


class ConfigurationError(ThematicMapError, ValueError):
    """Raised for invalid settings values."""
