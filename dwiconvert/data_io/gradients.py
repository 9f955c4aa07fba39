import logging
import numpy as np
from dipy.core.gradients import gradient_table, GradientTable as DipyGradientTable

from .errors import DWIConfigurationError

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

# Gradients whose squared magnitude is within this fraction of 1 count as unit length.
UNIT_LENGTH_TOLERANCE = 0.01


def _round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(values + 0.5)


def is_identity_measurement_frame(matrix: np.ndarray, tol: float = 1e-4) -> bool:
    """
    Approximate identity test on a measurement frame.

    Only the product of the diagonal entries is compared against 1.0, which
    accepts every frame whose diagonal is all ones but also some other
    orthogonal matrices (e.g. two sign flips on the diagonal).
    """
    matrix = np.asarray(matrix, dtype=float)
    diagonal_product = matrix[0, 0] * matrix[1, 1] * matrix[2, 2]
    return abs(diagonal_product - 1.0) <= tol


class GradientTable:
    """
    Gradient directions, matching b-values, and the measurement frame they are
    expressed in.

    The vectors and b-values are index aligned, one entry per gradient
    volume, and are only ever replaced together.
    """
    def __init__(self, bvecs: np.ndarray, bvals: np.ndarray, measurement_frame: np.ndarray = None):
        bvecs, bvals = self._validate(bvecs, bvals)
        if measurement_frame is None:
            measurement_frame = np.eye(3)
        measurement_frame = np.array(measurement_frame, dtype=float)
        if measurement_frame.shape != (3, 3):
            raise ValueError(f"measurement_frame must be 3x3, got shape {measurement_frame.shape}.")

        self._bvecs = bvecs
        self._bvals = bvals
        self._measurement_frame = measurement_frame

    @staticmethod
    def _validate(bvecs, bvals) -> tuple[np.ndarray, np.ndarray]:
        bvecs = np.array(bvecs, dtype=float)
        bvals = np.array(bvals, dtype=float)
        if bvecs.size == 0:
            bvecs = bvecs.reshape(0, 3)
        if bvals.ndim != 1:
            raise ValueError(f"bvals must be a 1D array, got shape {bvals.shape}.")
        if bvecs.ndim != 2 or bvecs.shape[1] != 3:
            raise ValueError(f"bvecs must have shape (N, 3), got shape {bvecs.shape}.")
        if bvecs.shape[0] != bvals.shape[0]:
            raise DWIConfigurationError(
                f"Mismatch between count of B Vectors ({bvecs.shape[0]}) and B Values ({bvals.shape[0]})"
            )
        if np.any(bvals < 0):
            raise ValueError(f"b-values must be non-negative, got {bvals.tolist()}.")
        return bvecs, bvals

    @property
    def bvecs(self) -> np.ndarray:
        """(N, 3) gradient vectors."""
        return self._bvecs.copy()

    @property
    def bvals(self) -> np.ndarray:
        """(N,) b-values."""
        return self._bvals.copy()

    @property
    def measurement_frame(self) -> np.ndarray:
        return self._measurement_frame.copy()

    @property
    def max_bvalue(self) -> float:
        """The largest b-value, 0.0 for an empty table."""
        if self._bvals.size == 0:
            return 0.0
        return float(max(0.0, self._bvals.max()))

    def __len__(self) -> int:
        return self._bvals.shape[0]

    def scale_to_single_bvalue(self) -> None:
        """
        Collapses all b-values to the maximum and encodes weaker weightings in
        the vector length: ``v_k *= sqrt(b_k / max_b)``. Vectors are not
        renormalized afterwards.
        """
        max_bvalue = self.max_bvalue
        if max_bvalue > 0:
            scale_factors = np.sqrt(self._bvals / max_bvalue)
        else:
            scale_factors = np.zeros_like(self._bvals)

        for k, scale in enumerate(scale_factors):
            logger.debug(f"Scale Factor for Multiple BValues: {k} -- sqrt( {self._bvals[k]} / {max_bvalue} ) = {scale}")

        self._bvecs = self._bvecs * scale_factors[:, np.newaxis]
        self._bvals = np.full_like(self._bvals, max_bvalue)
        logger.info(f"Scaled {len(self)} gradient vectors to a single b-value of {max_bvalue}.")

    def scale_to_multiple_bvalues_unit_vectors(self) -> None:
        """
        Normalizes every vector to unit length and moves its squared magnitude
        into the b-value: ``b_k = round(max_b * |v_k|^2)``.

        Magnitudes within 1% of unit length are snapped to exactly 1. Zero
        vectors stay zero and get a b-value of 0.
        """
        max_bvalue = self.max_bvalue
        magnitudes = np.linalg.norm(self._bvecs, axis=1)
        magnitudes = np.where(np.abs(magnitudes ** 2 - 1.0) < UNIT_LENGTH_TOLERANCE, 1.0, magnitudes)

        norms = np.linalg.norm(self._bvecs, axis=1, keepdims=True)
        safe_norms = np.where(norms > 0, norms, 1.0)
        self._bvecs = np.where(norms > 0, self._bvecs / safe_norms, 0.0)
        self._bvals = _round_half_up(max_bvalue * magnitudes ** 2)
        logger.info(f"Normalized {len(self)} gradient vectors; b-values now {np.unique(self._bvals).tolist()}.")

    def rotate_to_identity_measurement_frame(self) -> None:
        """
        Re-expresses the vectors in the volume's own coordinate system
        (``v_k = inv(frame) @ v_k``) and resets the frame to identity.
        """
        inverse_frame = np.linalg.inv(self._measurement_frame)
        self._bvecs = self._bvecs @ inverse_frame.T
        self._measurement_frame = np.eye(3)
        logger.info("Converted gradient vectors to an identity measurement frame.")

    def replace(self, bvecs: np.ndarray, bvals: np.ndarray, n_volumes: int) -> None:
        """
        Overrides the table with externally supplied gradients.

        Both inputs are validated against each other and against the number of
        volumes before anything is changed.

        Raises
        ------
        DWIConfigurationError
            If the counts disagree.
        """
        bvecs, bvals = self._validate(bvecs, bvals)
        if bvals.shape[0] != n_volumes:
            raise DWIConfigurationError(
                f"number of Gradients doesn't match number of volumes: {bvals.shape[0]} != {n_volumes}"
            )
        self._bvecs, self._bvals = bvecs, bvals
        logger.info(f"Replaced gradient table with {n_volumes} externally supplied entries.")

    def __repr__(self) -> str:
        return (f"GradientTable(n_gradients={len(self)}, max_bvalue={self.max_bvalue}, "
                f"identity_frame={np.allclose(self._measurement_frame, np.eye(3))})")


def create_gradient_table(bvals: np.ndarray, bvecs: np.ndarray, b0_threshold: float = 50.0, atol: float = 1e-2) -> DipyGradientTable:
    """
    Creates a Dipy GradientTable object from b-values and b-vectors arrays.

    Parameters
    ----------
    bvals : np.ndarray
        A 1D NumPy array containing the b-value for each diffusion gradient acquisition.
    bvecs : np.ndarray
        A 2D NumPy array of shape (N, 3) with unit gradient directions
        (zero vectors for b0 volumes).
    b0_threshold : float, optional
        Volumes with b-values less than or equal to this threshold are considered b0s.
        Default is 50.0.
    atol : float, optional
        Absolute tolerance used by Dipy when checking that non-b0 vectors are
        unit length. Default is 1e-2.

    Returns
    -------
    dipy.core.gradients.GradientTable

    Raises
    ------
    ValueError
        If the inputs are malformed or Dipy rejects them.
    """
    if not isinstance(bvals, np.ndarray) or bvals.ndim != 1:
        raise ValueError("bvals must be a 1D NumPy array.")

    if not isinstance(bvecs, np.ndarray) or bvecs.ndim != 2 or bvecs.shape[1] != 3:
        raise ValueError(f"bvecs must have shape (N, 3), but got shape {getattr(bvecs, 'shape', None)}.")

    if len(bvals) != bvecs.shape[0]:
        raise ValueError(
            f"Number of b-values ({len(bvals)}) must match the number of "
            f"b-vectors ({bvecs.shape[0]})."
        )

    try:
        gtab = gradient_table(bvals, bvecs=bvecs, b0_threshold=b0_threshold, atol=atol)
    except ValueError as e:
        raise ValueError(f"Dipy's gradient_table creation failed: {e}")

    return gtab
