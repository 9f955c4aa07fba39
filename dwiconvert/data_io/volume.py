import logging
import numpy as np

from .errors import DWIConfigurationError, DWIGeometryError

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

# The only sample type the converter stores internally.
PIXEL_TYPE = np.dtype(np.int16)

_INT16_INFO = np.iinfo(np.int16)


class Volume:
    """
    A scalar raster of signed 16-bit samples with ITK-style geometry.

    Samples are held in a NumPy array indexed ``[x, y, z]`` (or
    ``[x, y, z, gradient]`` for 4D volumes). Geometry follows the LPS
    convention used by DICOM: ``direction`` holds the axis direction
    cosines as columns, ``origin`` is the world position of voxel 0.
    """
    def __init__(self, data: np.ndarray, spacing=None, origin=None, direction=None, metadata: dict = None):
        data = np.asarray(data)
        if data.dtype != PIXEL_TYPE:
            raise ValueError(f"Volume samples must be int16, got {data.dtype}. Use as_short_samples() to convert.")
        if data.ndim not in (3, 4):
            raise ValueError(f"Volume must be 3D or 4D, got {data.ndim}D data.")
        ndim = data.ndim

        spacing = np.ones(ndim) if spacing is None else np.array(spacing, dtype=float)
        origin = np.zeros(ndim) if origin is None else np.array(origin, dtype=float)
        direction = np.eye(ndim) if direction is None else np.array(direction, dtype=float)

        if spacing.shape != (ndim,):
            raise ValueError(f"spacing must have {ndim} entries, got shape {spacing.shape}.")
        if np.any(spacing <= 0):
            raise ValueError(f"spacing must be positive, got {spacing.tolist()}.")
        if origin.shape != (ndim,):
            raise ValueError(f"origin must have {ndim} entries, got shape {origin.shape}.")
        if direction.shape != (ndim, ndim):
            raise ValueError(f"direction must be {ndim}x{ndim}, got shape {direction.shape}.")

        self._data = data
        self._spacing = spacing
        self._origin = origin
        self._direction = direction
        self.metadata = dict(metadata) if metadata else {}

    @property
    def data(self) -> np.ndarray:
        return self._data

    @property
    def ndim(self) -> int:
        return self._data.ndim

    @property
    def size(self) -> tuple:
        return tuple(int(s) for s in self._data.shape)

    @property
    def spacing(self) -> np.ndarray:
        return self._spacing.copy()

    @property
    def origin(self) -> np.ndarray:
        return self._origin.copy()

    @property
    def direction(self) -> np.ndarray:
        return self._direction.copy()

    def tobytes(self) -> bytes:
        """Samples as little-endian int16 bytes, x varying fastest."""
        return self._data.astype('<i2', copy=False).tobytes(order='F')

    def __repr__(self) -> str:
        return (f"Volume(size={self.size}, spacing={self._spacing.tolist()}, "
                f"origin={self._origin.tolist()})")


def as_short_samples(data: np.ndarray, allow_lossy_conversion: bool = False) -> np.ndarray:
    """
    Coerces pixel samples to the internal int16 storage type.

    Integer data whose range fits in int16 is cast without loss. Anything else
    (floating point, or integers outside the int16 range) is only narrowed when
    ``allow_lossy_conversion`` is True, in which case values are rounded and
    clipped to the int16 range.

    Raises
    ------
    DWIConfigurationError
        If the conversion would lose information and was not allowed.
    """
    data = np.asarray(data)
    if data.dtype == PIXEL_TYPE:
        return data

    lossless = False
    if np.issubdtype(data.dtype, np.integer) or data.dtype == np.bool_:
        if data.size == 0:
            lossless = True
        else:
            lossless = data.min() >= _INT16_INFO.min and data.max() <= _INT16_INFO.max

    if lossless:
        return data.astype(PIXEL_TYPE)

    if not allow_lossy_conversion:
        raise DWIConfigurationError(
            f"Pixel data of type {data.dtype} cannot be stored as int16 without loss. "
            f"Enable allow_lossy_conversion to narrow it anyway."
        )

    logger.warning(f"Lossy conversion of {data.dtype} samples to int16 (values rounded and clipped).")
    narrowed = np.clip(np.rint(data.astype(np.float64)), _INT16_INFO.min, _INT16_INFO.max)
    return narrowed.astype(PIXEL_TYPE)


# --- Geometry ---

def spacing_matrix(volume: Volume) -> np.ndarray:
    """3x3 diagonal matrix of the per-axis spacing of the first three axes."""
    return np.diag(volume.spacing[:3])


def space_direction_matrix(volume: Volume) -> np.ndarray:
    """
    Direction cosines scaled by spacing.

    Each column is the physical displacement for a one-voxel step along the
    corresponding axis, as written to the NRRD ``space directions`` field.
    """
    return volume.direction[:3, :3] @ spacing_matrix(volume)


# --- Reshaping ---

def _check_divisible(n_slices: int, n_volumes: int) -> int:
    if n_volumes <= 0:
        raise DWIGeometryError(f"Number of volumes must be positive, got {n_volumes}.")
    leftover = n_slices % n_volumes
    if leftover != 0:
        raise DWIGeometryError(
            f"#of slices in volume not evenly divisible by the number of volumes: "
            f"slices = {n_slices} volumes = {n_volumes} left-over slices = {leftover}"
        )
    return n_slices // n_volumes


def unwrapped_to_4d(volume: Volume, n_volumes: int) -> Volume:
    """
    Splits the slice axis of an unwrapped 3D volume into (z, gradient).

    Slice ``k`` of the input belongs to gradient volume ``k // slices_per_volume``.
    The 4th axis gets identity direction, unit spacing and zero origin.
    """
    if volume.ndim != 3:
        raise ValueError(f"Expected an unwrapped 3D volume, got {volume.ndim}D.")

    size_x, size_y, n_slices = volume.size
    slices_per_volume = _check_divisible(n_slices, n_volumes)

    data4d = np.array(volume.data.reshape((size_x, size_y, slices_per_volume, n_volumes), order='F'),
                      order='F', copy=True)

    direction4d = np.eye(4)
    direction4d[:3, :3] = volume.direction
    spacing4d = np.ones(4)
    spacing4d[:3] = volume.spacing
    origin4d = np.zeros(4)
    origin4d[:3] = volume.origin

    logger.info(f"Reshaped unwrapped volume {volume.size} to 4D {data4d.shape}.")
    return Volume(data4d, spacing=spacing4d, origin=origin4d, direction=direction4d,
                  metadata=volume.metadata)


def fourd_to_unwrapped(volume4d: Volume) -> Volume:
    """Inverse of :func:`unwrapped_to_4d`: stacks all gradient volumes along z."""
    if volume4d.ndim != 4:
        raise ValueError(f"Expected a 4D volume, got {volume4d.ndim}D.")

    size_x, size_y, slices_per_volume, n_volumes = volume4d.size
    n_slices = slices_per_volume * n_volumes
    _check_divisible(n_slices, n_volumes)

    data3d = np.array(volume4d.data.reshape((size_x, size_y, n_slices), order='F'),
                      order='F', copy=True)

    logger.info(f"Reshaped 4D volume {volume4d.size} to unwrapped {data3d.shape}.")
    return Volume(data3d,
                  spacing=volume4d.spacing[:3],
                  origin=volume4d.origin[:3],
                  direction=volume4d.direction[:3, :3],
                  metadata=volume4d.metadata)


# --- World space conventions ---

# Flips x and y: converts between LPS (DICOM, ITK, NRRD default) and RAS (NIfTI).
LPS_TO_RAS = np.diag([-1.0, -1.0, 1.0])


def volume_to_ras_affine(volume: Volume) -> np.ndarray:
    """4x4 NIfTI (RAS) affine of the first three axes of an LPS volume."""
    affine = np.eye(4)
    affine[:3, :3] = LPS_TO_RAS @ space_direction_matrix(volume)
    affine[:3, 3] = LPS_TO_RAS @ volume.origin[:3]
    return affine


def geometry_from_ras_affine(affine: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Splits a 4x4 RAS affine into LPS (spacing, origin, direction).

    Raises
    ------
    DWIConfigurationError
        If an axis of the affine has zero length.
    """
    affine = np.asarray(affine, dtype=float)
    scaled_directions = LPS_TO_RAS @ affine[:3, :3]
    spacing = np.linalg.norm(scaled_directions, axis=0)
    if np.any(spacing <= 0):
        raise DWIConfigurationError(f"Degenerate affine, axis lengths {spacing.tolist()}.")
    direction = scaled_directions / spacing
    origin = LPS_TO_RAS @ affine[:3, 3]
    return spacing, origin, direction
