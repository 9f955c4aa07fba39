import os
import logging
import numpy as np
import pydicom
from pydicom.errors import InvalidDicomError
from pydicom.multival import MultiValue

from .errors import DWIConfigurationError, DWIGeometryError
from .gradients import GradientTable
from .volume import Volume, as_short_samples

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

# Standard DICOM tags for diffusion
BVALUE_TAG = (0x0018, 0x9087) # DiffusionBValue
BVECTOR_TAG = (0x0018, 0x9089) # DiffusionGradientOrientation
BMATRIX_SEQUENCE_TAG = (0x0018, 0x9601) # DiffusionBMatrixSequence
BMATRIX_KEYWORDS = (
    'DiffusionBValueXX', 'DiffusionBValueXY', 'DiffusionBValueXZ',
    'DiffusionBValueYY', 'DiffusionBValueYZ', 'DiffusionBValueZZ',
)

# Acquisition attributes copied into the output header as DICOM_gggg_eeee_Keyword:=value
COMMON_DICOM_FIELDS = (
    'Modality',
    'Manufacturer',
    'ManufacturerModelName',
    'SeriesDescription',
    'ProtocolName',
    'MagneticFieldStrength',
    'RepetitionTime',
    'EchoTime',
    'FlipAngle',
    'PixelBandwidth',
    'SliceThickness',
    'SpacingBetweenSlices',
    'ScanningSequence',
    'SequenceVariant',
    'SeriesInstanceUID',
)

# Slice positions closer than this along the slice normal (mm) are the same slice.
SLICE_POSITION_TOLERANCE = 1e-3


def read_dicom_series(dicom_dir: str) -> list[pydicom.FileDataset]:
    """
    Reads all DICOM files from a directory, sorts them, and returns a list of datasets.

    Args:
        dicom_dir (str): Path to the directory containing DICOM files.

    Returns:
        list[pydicom.FileDataset]: A sorted list of pydicom.FileDataset objects.
                                   Returns an empty list if directory is not found
                                   or contains no DICOM image files.
    """
    if not os.path.isdir(dicom_dir):
        logger.error(f"DICOM directory not found: {dicom_dir}")
        return []

    indexed_datasets: list[tuple[pydicom.FileDataset, str]] = []

    logger.info(f"Reading DICOM files from directory: {dicom_dir}")
    for root, _, files in os.walk(dicom_dir):
        for filename in sorted(files):
            filepath = os.path.join(root, filename)
            try:
                ds = pydicom.dcmread(filepath, force=True) # force=True to try reading non-conformant files
            except InvalidDicomError:
                logger.debug(f"Skipping non-DICOM or invalid DICOM file: {filepath}")
                continue
            except Exception as e:
                logger.warning(f"Could not read or parse file {filepath} as DICOM: {e}")
                continue

            if 'PixelData' not in ds:
                logger.debug(f"Skipping non-image DICOM file (missing PixelData): {filepath}")
                continue
            indexed_datasets.append((ds, filepath))

    if not indexed_datasets:
        logger.warning(f"No valid DICOM files found in directory: {dicom_dir}")
        return []

    # Primary sort key: InstanceNumber, fallback AcquisitionNumber, then file name.
    has_instance_number = all(getattr(ds, 'InstanceNumber', None) is not None for ds, _ in indexed_datasets)
    has_acq_number = all(getattr(ds, 'AcquisitionNumber', None) is not None for ds, _ in indexed_datasets)

    if has_instance_number:
        logger.info("Sorting DICOM series by InstanceNumber.")
        indexed_datasets.sort(key=lambda item: (int(item[0].InstanceNumber), item[1]))
    elif has_acq_number:
        logger.warning("InstanceNumber missing or inconsistent across DICOM files. Sorting by AcquisitionNumber.")
        indexed_datasets.sort(key=lambda item: (int(item[0].AcquisitionNumber), item[1]))
    else:
        logger.warning("InstanceNumber and AcquisitionNumber are missing. "
                       "Sorting by filename. This might not be accurate for slice order.")
        indexed_datasets.sort(key=lambda item: item[1])

    dicom_datasets = [ds for ds, _ in indexed_datasets]
    logger.info(f"Successfully read and sorted {len(dicom_datasets)} DICOM datasets.")
    return dicom_datasets


def _format_field_value(value) -> str:
    if isinstance(value, MultiValue):
        return "\\".join(str(v) for v in value)
    return str(value)


def cluster_slice_locations(distances: np.ndarray, tolerance: float = SLICE_POSITION_TOLERANCE) -> tuple[np.ndarray, np.ndarray]:
    """
    Groups slice distances along the normal into locations.

    Neighbouring sorted distances no more than ``tolerance`` apart share a
    location, so jitter never splits a location however it falls.

    Returns:
        tuple[np.ndarray, np.ndarray]: Location index of every input distance
        (ascending along the normal) and the mean distance of each location.
    """
    distances = np.asarray(distances, dtype=float)
    labels = np.empty(len(distances), dtype=int)
    members: list[list[float]] = []
    previous = None
    for i in np.argsort(distances, kind='stable'):
        if previous is None or not np.isclose(distances[i], previous, rtol=0.0, atol=tolerance):
            members.append([])
        members[-1].append(distances[i])
        labels[i] = len(members) - 1
        previous = distances[i]
    return labels, np.array([np.mean(m) for m in members])


def bmatrix_to_gradient(bmatrix: np.ndarray) -> tuple[float, np.ndarray]:
    """
    Splits a symmetric 3x3 B-matrix into a b-value (its trace) and a unit
    direction (the principal eigenvector, largest component positive).
    """
    bmatrix = np.asarray(bmatrix, dtype=float)
    bval = float(np.trace(bmatrix))
    if bval <= 0:
        return 0.0, np.zeros(3)
    eigenvalues, eigenvectors = np.linalg.eigh(bmatrix)
    direction = eigenvectors[:, np.argmax(eigenvalues)]
    if direction[np.argmax(np.abs(direction))] < 0:
        direction = -direction
    return bval, direction


def extract_common_dicom_fields(ds: pydicom.Dataset) -> dict:
    """Collects the :data:`COMMON_DICOM_FIELDS` present in a dataset."""
    fields = {}
    for keyword in COMMON_DICOM_FIELDS:
        if keyword not in ds:
            continue
        elem = ds[keyword]
        if elem.value is None or elem.value == '':
            continue
        key = f"DICOM_{elem.tag.group:04X}_{elem.tag.element:04X}_{keyword}"
        fields[key] = _format_field_value(elem.value)
    return fields


class DicomDWISource:
    """
    DWI source backed by a directory of single-slice DICOM files using the
    standard diffusion attributes (0018,9087) and (0018,9089).

    Slices are grouped into gradient volumes by their repeated
    ImagePositionPatient, so both volume-major and slice-major acquisition
    orders are handled. Gradient vectors are in the patient (LPS) frame, so
    the measurement frame is identity.

    With ``use_bmatrix_gradient_directions`` the b-value and direction of
    each volume come from its DiffusionBMatrixSequence (0018,9601) instead.
    """
    def __init__(self, dicom_dir: str, small_gradient_threshold: float = 0.2, allow_lossy_conversion: bool = False,
                 use_bmatrix_gradient_directions: bool = False):
        self.dicom_dir = dicom_dir
        self.small_gradient_threshold = small_gradient_threshold
        self.allow_lossy_conversion = allow_lossy_conversion
        self.use_bmatrix_gradient_directions = use_bmatrix_gradient_directions
        self._datasets: list[pydicom.FileDataset] = []
        self._common_fields: dict = {}

    def load_from_disk(self) -> None:
        """
        Raises:
            FileNotFoundError: If no DICOM image files are found.
        """
        self._datasets = read_dicom_series(self.dicom_dir)
        if not self._datasets:
            raise FileNotFoundError(f"No DICOM image files found in {self.dicom_dir}")
        self._common_fields = extract_common_dicom_fields(self._datasets[0])

    def get_common_dicom_fields_map(self) -> dict:
        return dict(self._common_fields)

    def _order_slices(self, normal: np.ndarray) -> tuple[list[list[pydicom.Dataset]], np.ndarray]:
        """Returns the slices grouped per gradient volume, each sorted along the normal."""
        positions = np.array([np.asarray(ds.ImagePositionPatient, dtype=float) for ds in self._datasets])
        locations, unique_distances = cluster_slice_locations(positions @ normal)
        slices_per_volume = len(unique_distances)
        n_slices = len(self._datasets)
        leftover = n_slices % slices_per_volume
        if leftover != 0:
            raise DWIGeometryError(
                f"#of slices in volume not evenly divisible by the number of slice locations: "
                f"slices = {n_slices} locations = {slices_per_volume} left-over slices = {leftover}"
            )
        n_volumes = n_slices // slices_per_volume

        # The n-th time a location shows up, it belongs to the n-th volume.
        occurrences: dict[int, int] = {}
        volumes: list[list[tuple[int, pydicom.Dataset]]] = [[] for _ in range(n_volumes)]
        for ds, location in zip(self._datasets, locations):
            volume_index = occurrences.get(location, 0)
            occurrences[location] = volume_index + 1
            if volume_index >= n_volumes:
                raise DWIGeometryError(
                    f"Slice location {unique_distances[location]:g} repeats more often than the "
                    f"{n_volumes} gradient volumes."
                )
            volumes[volume_index].append((location, ds))

        ordered = [[ds for _, ds in sorted(vol, key=lambda item: item[0])] for vol in volumes]
        return ordered, unique_distances

    def extract_dwi_data(self) -> tuple[Volume, GradientTable]:
        """
        Builds the unwrapped volume and the gradient table.

        Raises:
            DWIGeometryError: If the slices do not form whole volumes.
            DWIConfigurationError: If a gradient is shorter than the small
                gradient threshold, or samples need lossy narrowing that was
                not allowed.
        """
        if not self._datasets:
            raise RuntimeError("load_from_disk() must be called before extract_dwi_data().")

        ref_ds = self._datasets[0]
        orientation = np.asarray(ref_ds.ImageOrientationPatient, dtype=float)
        row_cosine, col_cosine = orientation[:3], orientation[3:]
        normal = np.cross(row_cosine, col_cosine)
        normal = normal / (np.linalg.norm(normal) or 1.0)

        volumes, unique_distances = self._order_slices(normal)
        slices_per_volume = len(unique_distances)

        # PixelSpacing is [row spacing (y), column spacing (x)].
        pixel_spacing = [float(v) for v in ref_ds.PixelSpacing]
        if slices_per_volume > 1:
            slice_spacing = float(np.mean(np.diff(unique_distances)))
        elif getattr(ref_ds, 'SpacingBetweenSlices', None) is not None:
            slice_spacing = float(ref_ds.SpacingBetweenSlices)
        else:
            slice_spacing = float(getattr(ref_ds, 'SliceThickness', 1.0) or 1.0)

        rows, cols = int(ref_ds.Rows), int(ref_ds.Columns)
        ordered = [ds for vol in volumes for ds in vol]
        stacked = np.empty((cols, rows, len(ordered)), dtype=ref_ds.pixel_array.dtype, order='F')
        for k, ds in enumerate(ordered):
            slice_data = ds.pixel_array
            if slice_data.shape != (rows, cols):
                raise DWIGeometryError(f"Slice {k} data shape {slice_data.shape} mismatch with expected ({rows},{cols}).")
            stacked[:, :, k] = slice_data.T

        volume = Volume(as_short_samples(stacked, allow_lossy_conversion=self.allow_lossy_conversion),
                        spacing=[pixel_spacing[1], pixel_spacing[0], slice_spacing],
                        origin=np.asarray(volumes[0][0].ImagePositionPatient, dtype=float),
                        direction=np.column_stack([row_cosine, col_cosine, normal]))
        logger.info(f"Built unwrapped volume {volume.size}: {slices_per_volume} slices x {len(volumes)} volumes.")

        bvals, bvecs = [], []
        for k, vol in enumerate(volumes):
            bval, bvec = self._read_gradient(vol[0], k)
            bvals.append(bval)
            bvecs.append(bvec)
        return volume, GradientTable(np.array(bvecs), np.array(bvals))

    def _read_bmatrix(self, ds: pydicom.Dataset, volume_index: int) -> np.ndarray:
        if BMATRIX_SEQUENCE_TAG not in ds or len(ds[BMATRIX_SEQUENCE_TAG].value) == 0:
            raise DWIConfigurationError(
                f"B-matrix gradient directions requested, but volume {volume_index} has no DiffusionBMatrixSequence."
            )
        item = ds[BMATRIX_SEQUENCE_TAG].value[0]
        missing = [keyword for keyword in BMATRIX_KEYWORDS if keyword not in item]
        if missing:
            raise DWIConfigurationError(f"DiffusionBMatrixSequence of volume {volume_index} lacks {', '.join(missing)}.")
        xx, xy, xz, yy, yz, zz = (float(item[keyword].value) for keyword in BMATRIX_KEYWORDS)
        return np.array([[xx, xy, xz],
                         [xy, yy, yz],
                         [xz, yz, zz]])

    def _read_gradient(self, ds: pydicom.Dataset, volume_index: int) -> tuple[float, np.ndarray]:
        if self.use_bmatrix_gradient_directions:
            bval, bvec = bmatrix_to_gradient(self._read_bmatrix(ds, volume_index))
            logger.debug(f"Volume {volume_index}: b-value {bval:g} and direction {bvec} from the B-matrix.")
            return bval, bvec

        bval = float(ds[BVALUE_TAG].value) if BVALUE_TAG in ds else 0.0
        bvec = np.zeros(3)
        if BVECTOR_TAG in ds:
            raw = np.asarray(ds[BVECTOR_TAG].value, dtype=float).reshape(-1)
            if raw.shape == (3,):
                bvec = raw
            else:
                logger.warning(f"DiffusionGradientOrientation in volume {volume_index} has unexpected shape {raw.shape}.")
        elif bval > 0:
            logger.warning(f"Volume {volume_index} has b-value {bval} but no gradient direction; using [0,0,0].")

        if bval == 0:
            return 0.0, np.zeros(3)

        magnitude = np.linalg.norm(bvec)
        if 0 < magnitude < self.small_gradient_threshold:
            raise DWIConfigurationError(
                f"Gradient magnitude {magnitude} of volume {volume_index} is smaller than the "
                f"small gradient threshold {self.small_gradient_threshold}."
            )
        return bval, bvec
