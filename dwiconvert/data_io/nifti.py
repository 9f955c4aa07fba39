import os
import logging
import numpy as np
import nibabel as nib

from .errors import DWIConfigurationError, MeasurementFrameError
from .gradients import GradientTable, is_identity_measurement_frame
from .volume import (Volume, as_short_samples, fourd_to_unwrapped,
                     geometry_from_ras_affine, volume_to_ras_affine)

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

# Longest first so that '.nii.gz' wins over '.nii'.
NIFTI_EXTENSIONS = (".nii.gz", ".nii")

SCANNER_ANAT_XFORM = "NIFTI_XFORM_SCANNER_ANAT"


def nifti_extension_position(filepath: str) -> int:
    """
    Index at which the NIfTI extension of ``filepath`` starts.

    Raises
    ------
    DWIConfigurationError
        If the name does not end in one of :data:`NIFTI_EXTENSIONS`.
    """
    lower = filepath.lower()
    for ext in NIFTI_EXTENSIONS:
        if lower.endswith(ext):
            return len(filepath) - len(ext)
    raise DWIConfigurationError(
        f"FSL Format output chosen, but output Volume not a recognized NIfTI filename {filepath}"
    )


def fsl_sidecar_paths(nifti_filepath: str, bval_filepath: str = None, bvec_filepath: str = None) -> tuple[str, str]:
    """Fills in missing bval/bvec paths by swapping the NIfTI extension for '.bval' / '.bvec'."""
    stem = nifti_filepath[:nifti_extension_position(nifti_filepath)]
    return (bval_filepath or stem + ".bval", bvec_filepath or stem + ".bvec")


# --- FSL text files ---

def _load_text_table(filepath: str, label: str) -> np.ndarray:
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"FSL {label} file not found at: {filepath}")

    try:
        with open(filepath, 'r') as f:
            # Commas are accepted as separators alongside whitespace.
            table = np.loadtxt((line.replace(',', ' ') for line in f), dtype=float, ndmin=2)
        if table.size == 0:
            raise ValueError(f"{label} file is empty: {filepath}")
    except Exception as e: # Catches errors from loadtxt (e.g. malformed, not numbers)
        raise ValueError(f"Failed to load or parse {label} file {filepath}: {e}")

    return table


def load_fsl_bvals(filepath: str) -> np.ndarray:
    """
    Loads b-values from an FSL-formatted text file.

    FSL b-values are typically in a single row or column, space or comma-separated.

    Returns
    -------
    np.ndarray
        A 1D NumPy array of b-values.

    Raises
    ------
    FileNotFoundError
        If the specified filepath does not exist.
    ValueError
        If the values cannot be coerced into a 1D array, are negative, or the
        file is empty or malformed.
    """
    bvals = _load_text_table(filepath, "bval")
    if min(bvals.shape) != 1:
        raise ValueError(
            f"b-values in {filepath} could not be converted to a 1D array. Got shape {bvals.shape}."
        )
    bvals = bvals.reshape(-1)
    if np.any(bvals < 0):
        raise ValueError(f"b-values in {filepath} must be non-negative.")
    return bvals


def load_fsl_bvecs(filepath: str, horizontal_by_3_rows: bool = True) -> np.ndarray:
    """
    Loads b-vectors from an FSL-formatted text file.

    The file may hold 3 rows (x, y, z) of N values or N rows of 3 values.
    For the ambiguous 3x3 case ``horizontal_by_3_rows`` decides.

    Returns
    -------
    np.ndarray
        An Nx3 NumPy array of b-vectors.

    Raises
    ------
    FileNotFoundError
        If the specified filepath does not exist.
    ValueError
        If the table is neither 3xN nor Nx3, or the file is empty or malformed.
    """
    bvecs = _load_text_table(filepath, "bvec")

    if bvecs.shape == (3, 3):
        return bvecs.T if horizontal_by_3_rows else bvecs
    if bvecs.shape[0] == 3:
        return bvecs.T
    if bvecs.shape[1] == 3:
        return bvecs
    raise ValueError(f"b-vectors in {filepath} must be 3xN or Nx3. Got shape {bvecs.shape}.")


def write_fsl_bvals(filepath: str, bvals: np.ndarray, horizontal: bool = True) -> None:
    """Writes b-values on one row (horizontal) or one per line."""
    bvals = np.asarray(bvals, dtype=float).reshape(-1)
    try:
        np.savetxt(filepath, bvals.reshape(1, -1) if horizontal else bvals.reshape(-1, 1), fmt='%.17g')
    except OSError as e:
        raise OSError(f"Failed to write FSL BVal File: {filepath}: {e}") from e
    logger.info(f"b-values saved to: {filepath}")


def write_fsl_bvecs(filepath: str, bvecs: np.ndarray, horizontal_by_3_rows: bool = True) -> None:
    """Writes b-vectors as 3 rows of N values (horizontal) or N rows of 3 values."""
    bvecs = np.asarray(bvecs, dtype=float).reshape(-1, 3)
    try:
        np.savetxt(filepath, bvecs.T if horizontal_by_3_rows else bvecs, fmt='%.17g')
    except OSError as e:
        raise OSError(f"Failed to write FSL BVec File: {filepath}: {e}") from e
    logger.info(f"b-vectors saved to: {filepath} (format: {'3xN' if horizontal_by_3_rows else 'Nx3'})")


# --- 4D NIfTI volumes ---

def save_nifti_volume(volume4d: Volume, filepath: str) -> nib.Nifti1Image:
    """
    Saves a 4D volume with nibabel.

    The LPS geometry is converted to a RAS affine. qform/sform codes are set
    to 'scanner' when the volume metadata asks for NIFTI_XFORM_SCANNER_ANAT.
    """
    affine = volume_to_ras_affine(volume4d)
    img = nib.Nifti1Image(volume4d.data, affine)
    qform_code = 'scanner' if volume4d.metadata.get('qform_code_name') == SCANNER_ANAT_XFORM else 'aligned'
    sform_code = 'scanner' if volume4d.metadata.get('sform_code_name') == SCANNER_ANAT_XFORM else 'aligned'
    img.set_qform(affine, code=qform_code)
    img.set_sform(affine, code=sform_code)
    img.header.set_xyzt_units(xyz='mm')

    output_dir = os.path.dirname(filepath)
    if output_dir and not os.path.exists(output_dir):
        os.makedirs(output_dir, exist_ok=True)
    nib.save(img, filepath)
    logger.info(f"NIfTI file saved: {filepath} with data shape {volume4d.size}")
    return img


def load_nifti_dwi_volume(filepath: str, allow_lossy_conversion: bool = False) -> Volume:
    """
    Loads a DWI NIfTI file as a 4D :class:`Volume` in LPS geometry.

    A 3D file is treated as a single gradient volume.

    Raises
    ------
    FileNotFoundError
        If the specified filepath does not exist.
    ValueError
        If the data is neither 3D nor 4D.
    """
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"NIfTI DWI file not found at: {filepath}")

    img = nib.load(filepath)
    data = np.asanyarray(img.dataobj)
    if data.ndim == 3:
        data = data[..., np.newaxis]
    if data.ndim != 4:
        raise ValueError(f"Expected 4D DWI data, but got {data.ndim}D data from {filepath}.")

    spacing, origin, direction = geometry_from_ras_affine(img.affine)
    direction4d = np.eye(4)
    direction4d[:3, :3] = direction
    return Volume(as_short_samples(data, allow_lossy_conversion=allow_lossy_conversion),
                  spacing=np.append(spacing, 1.0),
                  origin=np.append(origin, 0.0),
                  direction=direction4d)


def write_fsl_formatted_file_set(output_filepath: str,
                                 volume4d: Volume,
                                 gradient_table: GradientTable,
                                 output_bval_filepath: str = None,
                                 output_bvec_filepath: str = None,
                                 horizontal_by_3_rows: bool = True) -> tuple[str, str]:
    """
    Writes a 4D NIfTI volume with FSL .bval/.bvec sidecars.

    Args:
        output_filepath (str): '.nii' or '.nii.gz' output path.
        volume4d (Volume): The 4D volume (x, y, z, gradient).
        gradient_table (GradientTable): Unit vectors with per-gradient b-values.
        output_bval_filepath (str, optional): Defaults to '<stem>.bval'.
        output_bvec_filepath (str, optional): Defaults to '<stem>.bvec'.
        horizontal_by_3_rows (bool, optional): Sidecar layout; b-values on one
            row and vectors as 3 rows when True, one entry per line otherwise.

    Returns:
        tuple[str, str]: The bval and bvec paths written.

    Raises:
        MeasurementFrameError: If the measurement frame is not identity.
        DWIConfigurationError: If the output name is not a NIfTI name.
        OSError: If any file cannot be written.
    """
    if not is_identity_measurement_frame(gradient_table.measurement_frame):
        raise MeasurementFrameError(
            "ERROR:  Only identity measurement frame allow for writing FSL formatted files"
        )
    bval_filepath, bvec_filepath = fsl_sidecar_paths(output_filepath, output_bval_filepath, output_bvec_filepath)

    volume4d.metadata['qform_code_name'] = SCANNER_ANAT_XFORM
    volume4d.metadata['sform_code_name'] = SCANNER_ANAT_XFORM
    try:
        save_nifti_volume(volume4d, output_filepath)
    except Exception as e:
        logger.error(f"Exception thrown while writing {output_filepath}: {e}")
        raise

    write_fsl_bvals(bval_filepath, gradient_table.bvals, horizontal=horizontal_by_3_rows)
    write_fsl_bvecs(bvec_filepath, gradient_table.bvecs, horizontal_by_3_rows=horizontal_by_3_rows)
    return bval_filepath, bvec_filepath


class FSLDWISource:
    """DWI source backed by a NIfTI volume and its FSL bval/bvec files."""
    def __init__(self, nifti_filepath: str, bval_filepath: str = None, bvec_filepath: str = None,
                 horizontal_by_3_rows: bool = True, allow_lossy_conversion: bool = False):
        self.nifti_filepath = nifti_filepath
        self.bval_filepath, self.bvec_filepath = fsl_sidecar_paths(nifti_filepath, bval_filepath, bvec_filepath)
        self.horizontal_by_3_rows = horizontal_by_3_rows
        self.allow_lossy_conversion = allow_lossy_conversion
        self._volume4d = None
        self._bvals = None
        self._bvecs = None

    def load_from_disk(self) -> None:
        self._volume4d = load_nifti_dwi_volume(self.nifti_filepath,
                                               allow_lossy_conversion=self.allow_lossy_conversion)
        self._bvals = load_fsl_bvals(self.bval_filepath)
        self._bvecs = load_fsl_bvecs(self.bvec_filepath, horizontal_by_3_rows=self.horizontal_by_3_rows)

    def extract_dwi_data(self) -> tuple[Volume, GradientTable]:
        if self._volume4d is None:
            raise RuntimeError("load_from_disk() must be called before extract_dwi_data().")
        n_volumes = self._volume4d.size[3]
        gradient_table = GradientTable(np.zeros((n_volumes, 3)), np.zeros(n_volumes))
        gradient_table.replace(self._bvecs, self._bvals, n_volumes)
        return fourd_to_unwrapped(self._volume4d), gradient_table

    def get_common_dicom_fields_map(self) -> dict:
        return {}
