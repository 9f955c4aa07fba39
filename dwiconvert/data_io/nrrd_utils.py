import os
import logging
import numpy as np
import nrrd # For reading NRRD DWI files

from .errors import DWIConfigurationError
from .gradients import GradientTable
from .volume import Volume, as_short_samples, fourd_to_unwrapped, space_direction_matrix

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

NRRD_MAGIC = "NRRD0005"
NRRD_SPACE_DEFINITION = "left-posterior-superior"
NRRD_SINGLE_FILE_EXTENSION = ".nrrd"
NRRD_DETACHED_HEADER_EXTENSION = ".nhdr"
NRRD_DATA_FILE_EXTENSION = ".raw"
DEFAULT_SMALL_GRADIENT_THRESHOLD = 0.2

# Basic NRRD fields; any other key in a header read by pynrrd is a key/value pair.
_NRRD_STANDARD_FIELDS = {
    'dimension', 'type', 'block size', 'blocksize', 'encoding', 'endian', 'content',
    'min', 'max', 'oldmin', 'old min', 'oldmax', 'old max', 'sample units', 'sampleunits',
    'datafile', 'data file', 'lineskip', 'line skip', 'byteskip', 'byte skip', 'number',
    'sizes', 'spacings', 'thicknesses', 'axismins', 'axis mins', 'axismaxs', 'axis maxs',
    'centers', 'centerings', 'labels', 'units', 'kinds', 'space', 'space dimension',
    'space units', 'space origin', 'space directions', 'measurement frame',
}


def _format_double(value: float) -> str:
    """17 significant digits, enough for an exact text -> double round trip."""
    return f"{float(value):.16e}"


def _format_matrix_columns(matrix: np.ndarray) -> str:
    return " ".join(
        "(" + ",".join(_format_double(matrix[row, col]) for row in range(3)) + ")"
        for col in range(3)
    )


def nrrd_output_layout(output_filepath: str) -> tuple[bool, str | None]:
    """
    Decides between inline and detached NRRD encoding from the file name.

    Returns
    -------
    tuple[bool, str | None]
        ``(single_file, data_filepath)``. ``data_filepath`` is the ``.raw``
        sibling of a detached header, None for single-file output.

    Raises
    ------
    DWIConfigurationError
        If the name carries neither ``.nrrd`` nor ``.nhdr``.
    """
    lower = output_filepath.lower()
    if lower.endswith(NRRD_SINGLE_FILE_EXTENSION):
        return True, None
    if lower.endswith(NRRD_DETACHED_HEADER_EXTENSION):
        stem = output_filepath[:-len(NRRD_DETACHED_HEADER_EXTENSION)]
        return False, stem + NRRD_DATA_FILE_EXTENSION
    raise DWIConfigurationError(
        f"Unrecognized NRRD output file name '{output_filepath}': "
        f"expected a '{NRRD_SINGLE_FILE_EXTENSION}' or '{NRRD_DETACHED_HEADER_EXTENSION}' extension."
    )


def make_file_comment(version: str,
                      conversion_mode: str,
                      use_identity_measurement_frame: bool = False,
                      small_gradient_threshold: float = DEFAULT_SMALL_GRADIENT_THRESHOLD,
                      use_bmatrix_gradient_directions: bool = False) -> str:
    """
    Builds the provenance comment block written at the top of NRRD headers.

    Only options that deviate from their defaults are listed.
    """
    lines = [
        "#",
        "#",
        f"# This file was created by dwiconvert version {version}",
        "# Command line options:",
        f"# --conversionMode {conversion_mode}",
    ]
    if abs(small_gradient_threshold - DEFAULT_SMALL_GRADIENT_THRESHOLD) > 1e-4:
        lines.append(f"# --smallGradientThreshold {small_gradient_threshold:g}")
    if use_identity_measurement_frame:
        lines.append("# --useIdentityMeasurementFrame")
    if use_bmatrix_gradient_directions:
        lines.append("# --useBMatrixGradientDirections")
    return "\n".join(lines) + "\n"


def build_dwi_nrrd_header(volume: Volume,
                          gradient_table: GradientTable,
                          n_volumes: int,
                          common_dicom_fields: dict = None,
                          comment: str = "",
                          data_filename: str = None) -> str:
    """
    Renders the text header of an NRRD DWI file.

    Args:
        volume (Volume): Unwrapped 3D volume (all gradient volumes stacked along z).
        gradient_table (GradientTable): Gradients in single b-value convention.
        n_volumes (int): Number of gradient volumes.
        common_dicom_fields (dict, optional): Provenance ``key:=value`` pairs.
        comment (str, optional): Comment block, each line starting with '#'.
        data_filename (str, optional): Base name of the detached data file;
            None for single-file output.

    Returns:
        str: The header text, terminated by the blank line that separates it
            from the sample data.
    """
    size_x, size_y, n_slices = volume.size
    slices_per_volume = n_slices // n_volumes
    space_directions = space_direction_matrix(volume)
    origin = volume.origin
    bvecs = gradient_table.bvecs

    lines = []
    if data_filename is not None:
        lines.append(f"content: exists({data_filename},0)")
    lines.append("type: short")
    lines.append("dimension: 4")
    lines.append(f"space: {NRRD_SPACE_DEFINITION}")
    lines.append(f"sizes: {size_x} {size_y} {slices_per_volume} {n_volumes}")
    lines.append(f"thicknesses: NaN NaN {_format_double(volume.spacing[2])} NaN")
    lines.append(f"space directions: {_format_matrix_columns(space_directions)} none")
    lines.append("centerings: cell cell cell ???")
    lines.append("kinds: space space space list")
    lines.append("endian: little")
    lines.append("encoding: raw")
    lines.append('space units: "mm" "mm" "mm"')
    lines.append("space origin: (" + ",".join(_format_double(v) for v in origin[:3]) + ")")
    if data_filename is not None:
        lines.append(f"data file: {data_filename}")
    lines.append(f"measurement frame: {_format_matrix_columns(gradient_table.measurement_frame)}")

    for key in sorted(common_dicom_fields or {}):
        value = str(common_dicom_fields[key]).replace("\r", " ").replace("\n", " ")
        lines.append(f"{key}:={value}")

    lines.append("modality:=DWMRI")
    # Nominal b-value, i.e. the largest one.
    lines.append(f"DWMRI_b-value:={_format_double(gradient_table.max_bvalue)}")
    for k, vec in enumerate(bvecs):
        lines.append(f"DWMRI_gradient_{k:04d}:=" + "   ".join(_format_double(v) for v in vec))

    return NRRD_MAGIC + "\n" + comment + "\n".join(lines) + "\n\n"


def write_dwi_nrrd(output_filepath: str,
                   volume: Volume,
                   gradient_table: GradientTable,
                   n_volumes: int,
                   common_dicom_fields: dict = None,
                   comment: str = "") -> str | None:
    """
    Writes an unwrapped DWI volume and its gradient table as NRRD.

    A ``.nrrd`` name produces a single file (header followed by raw samples);
    a ``.nhdr`` name produces a header plus a ``.raw`` data file next to it.

    Returns:
        str | None: Path of the detached data file, None for single-file output.

    Raises:
        DWIConfigurationError: If the output name has no NRRD extension.
        OSError: If writing the header or the detached data file fails. A
            header that was already written is left on disk.
    """
    single_file, data_filepath = nrrd_output_layout(output_filepath)
    data_filename = None if single_file else os.path.basename(data_filepath)

    header_text = build_dwi_nrrd_header(volume, gradient_table, n_volumes,
                                        common_dicom_fields=common_dicom_fields,
                                        comment=comment,
                                        data_filename=data_filename)

    output_dir = os.path.dirname(output_filepath)
    if output_dir and not os.path.exists(output_dir):
        os.makedirs(output_dir, exist_ok=True)
        logger.info(f"Created output directory: {output_dir}")

    with open(output_filepath, 'wb') as f:
        f.write(header_text.encode('utf-8'))
        if single_file:
            f.write(volume.tobytes())
    logger.info(f"NRRD header written: {output_filepath}")

    if not single_file:
        try:
            write_raw_volume(data_filepath, volume)
        except OSError as e:
            logger.error(f"Exception thrown while writing the series to {data_filepath}: {e}")
            raise
    return data_filepath


def write_raw_volume(data_filepath: str, volume: Volume) -> None:
    """Writes the samples of a volume as headerless little-endian int16."""
    with open(data_filepath, 'wb') as f:
        f.write(volume.tobytes())
    logger.info(f"Raw NRRD data written: {data_filepath}")


# --- Reading ---

def _space_to_lps(space: str) -> np.ndarray:
    """Matrix mapping coordinates of a NRRD world space into LPS."""
    space = (space or NRRD_SPACE_DEFINITION).lower()
    if space in ('left-posterior-superior', 'lps'):
        return np.eye(3)
    if space in ('right-anterior-superior', 'ras'):
        return np.diag([-1.0, -1.0, 1.0])
    raise DWIConfigurationError(f"Unsupported NRRD space '{space}'. Only LPS and RAS are handled.")


def read_nrrd_dwi(nrrd_filepath: str, allow_lossy_conversion: bool = False) \
        -> tuple[Volume, GradientTable, dict]:
    """
    Reads an NRRD DWI file into an unwrapped volume and a gradient table.

    The list (gradient) axis is moved last, the geometry is expressed in LPS,
    every b-value is set to the nominal ``DWMRI_b-value`` and the vectors are
    taken from the ``DWMRI_gradient_NNNN`` fields as stored (scaled, in the
    measurement frame).

    Returns:
        tuple: (unwrapped Volume, GradientTable, dict of non-standard
            key/value fields other than the DWMRI ones).

    Raises:
        FileNotFoundError: If the file does not exist.
        DWIConfigurationError: If the file is not a 4D DWI NRRD.
    """
    if not os.path.exists(nrrd_filepath):
        raise FileNotFoundError(f"NRRD file not found: {nrrd_filepath}")

    data, header = nrrd.read(nrrd_filepath)
    logger.info(f"Successfully read NRRD file: {nrrd_filepath}")

    if data.ndim != 4:
        raise DWIConfigurationError(f"Expected 4D DWI NRRD data, got {data.ndim}D from {nrrd_filepath}.")

    kinds = [str(k).lower() for k in header.get('kinds', ['space', 'space', 'space', 'list'])]
    list_axes = [i for i, kind in enumerate(kinds) if kind in ('list', 'vector')]
    if len(list_axes) != 1:
        raise DWIConfigurationError(f"Could not identify the gradient axis from kinds {kinds}.")
    list_axis = list_axes[0]
    spatial_axes = [i for i in range(4) if i != list_axis]

    to_lps = _space_to_lps(header.get('space'))
    space_directions = np.asarray(header['space directions'], dtype=float)
    scaled_directions = to_lps @ space_directions[spatial_axes].T
    spacing = np.linalg.norm(scaled_directions, axis=0)
    direction = scaled_directions / spacing
    origin = to_lps @ np.asarray(header.get('space origin', np.zeros(3)), dtype=float)

    # Each parenthesized vector of the measurement frame is a column.
    measurement_frame = to_lps @ np.asarray(header.get('measurement frame', np.eye(3)), dtype=float).T

    data4d = np.moveaxis(data, list_axis, -1)
    samples = as_short_samples(data4d, allow_lossy_conversion=allow_lossy_conversion)
    volume4d = Volume(samples,
                      spacing=np.append(spacing, 1.0),
                      origin=np.append(origin, 0.0),
                      direction=np.block([[direction, np.zeros((3, 1))], [np.zeros((1, 3)), np.ones((1, 1))]]))
    volume = fourd_to_unwrapped(volume4d)

    n_volumes = data4d.shape[-1]
    gradient_keys = sorted(k for k in header if k.startswith('DWMRI_gradient_'))
    if len(gradient_keys) != n_volumes:
        raise DWIConfigurationError(
            f"number of Gradients doesn't match number of volumes: {len(gradient_keys)} != {n_volumes}"
        )
    bvecs = np.array([[float(p) for p in str(header[k]).split()[:3]] for k in gradient_keys], dtype=float)

    try:
        nominal_bvalue = float(header['DWMRI_b-value'])
    except KeyError:
        raise DWIConfigurationError(f"Missing 'DWMRI_b-value' field in {nrrd_filepath}.")
    bvals = np.full(n_volumes, nominal_bvalue)

    fields = {
        key: str(value) for key, value in header.items()
        if key not in _NRRD_STANDARD_FIELDS and not key.startswith('DWMRI_') and key != 'modality'
    }
    return volume, GradientTable(bvecs, bvals, measurement_frame=measurement_frame), fields


class NrrdDWISource:
    """DWI source backed by an NRRD DWI file."""
    def __init__(self, nrrd_filepath: str, allow_lossy_conversion: bool = False):
        self.nrrd_filepath = nrrd_filepath
        self.allow_lossy_conversion = allow_lossy_conversion
        self._volume = None
        self._gradient_table = None
        self._fields = {}

    def load_from_disk(self) -> None:
        self._volume, self._gradient_table, self._fields = read_nrrd_dwi(
            self.nrrd_filepath, allow_lossy_conversion=self.allow_lossy_conversion)

    def extract_dwi_data(self) -> tuple[Volume, GradientTable]:
        if self._volume is None:
            raise RuntimeError("load_from_disk() must be called before extract_dwi_data().")
        return self._volume, self._gradient_table

    def get_common_dicom_fields_map(self) -> dict:
        return dict(self._fields)
