"""Exceptions raised by the DWI conversion core."""


class DWIConversionError(Exception):
    """Base class for fatal conversion errors."""


class DWIConfigurationError(DWIConversionError, ValueError):
    """Inconsistent user-supplied inputs: gradient counts, file names, options."""


class DWIGeometryError(DWIConversionError, ValueError):
    """Slice count of the unwrapped volume does not split into whole volumes."""


class MeasurementFrameError(DWIConversionError, RuntimeError):
    """A non-identity measurement frame was found where only identity is supported."""
