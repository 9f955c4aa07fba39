import os
import logging
from typing import Protocol

import numpy as np

from .. import __version__
from .errors import DWIGeometryError
from .gradients import GradientTable
from .nifti import load_fsl_bvals, load_fsl_bvecs, write_fsl_formatted_file_set
from .nrrd_utils import DEFAULT_SMALL_GRADIENT_THRESHOLD, make_file_comment, write_dwi_nrrd
from .volume import Volume, space_direction_matrix, spacing_matrix, unwrapped_to_4d

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')


class DWISource(Protocol):
    """Anything that can load a DWI acquisition and hand it to :class:`DWIConverter`."""

    def load_from_disk(self) -> None:
        ...

    def extract_dwi_data(self) -> tuple[Volume, GradientTable]:
        ...

    def get_common_dicom_fields_map(self) -> dict:
        ...


class DWIConverter:
    """
    Holds one DWI acquisition (unwrapped volume, gradient table, provenance
    fields) and converts it between the NRRD and FSL conventions.

    The converter owns its volume and table: transforms mutate them in place
    and the writers consume them as they are at call time.

    Args:
        volume (Volume): Unwrapped 3D volume, all gradient volumes stacked along z.
        gradient_table (GradientTable): One entry per gradient volume.
        common_dicom_fields (dict, optional): ``key -> value`` fields copied
            into the NRRD header.
        fsl_file_format_horizontal_by_3_rows (bool, optional): Layout of the
            FSL sidecars written and read by this converter.

    Raises:
        ValueError: If the volume is not 3D or the table is empty.
        DWIGeometryError: If the slice count is not a multiple of the number
            of gradients.
    """
    def __init__(self, volume: Volume, gradient_table: GradientTable, common_dicom_fields: dict = None,
                 fsl_file_format_horizontal_by_3_rows: bool = True):
        if volume.ndim != 3:
            raise ValueError(f"DWIConverter expects an unwrapped 3D volume, got {volume.ndim}D.")
        if len(gradient_table) == 0:
            raise ValueError("DWIConverter needs at least one gradient.")

        n_slices = volume.size[2]
        n_volumes = len(gradient_table)
        leftover = n_slices % n_volumes
        if leftover != 0:
            raise DWIGeometryError(
                f"#of slices in volume not evenly divisible by the number of volumes: "
                f"slices = {n_slices} volumes = {n_volumes} left-over slices = {leftover}"
            )

        self._volume = volume
        self._gradient_table = gradient_table
        self._common_dicom_fields = dict(common_dicom_fields) if common_dicom_fields else {}
        self.fsl_file_format_horizontal_by_3_rows = fsl_file_format_horizontal_by_3_rows

    @classmethod
    def from_source(cls, source: DWISource, **kwargs) -> "DWIConverter":
        """Loads ``source`` and builds a converter from what it extracts."""
        source.load_from_disk()
        volume, gradient_table = source.extract_dwi_data()
        logger.info(f"Loaded {len(gradient_table)} gradient volumes from {type(source).__name__}.")
        return cls(volume, gradient_table, common_dicom_fields=source.get_common_dicom_fields_map(), **kwargs)

    # --- State ---

    @property
    def volume(self) -> Volume:
        return self._volume

    @property
    def gradient_table(self) -> GradientTable:
        return self._gradient_table

    @property
    def common_dicom_fields(self) -> dict:
        return dict(self._common_dicom_fields)

    @property
    def measurement_frame(self) -> np.ndarray:
        return self._gradient_table.measurement_frame

    @property
    def n_volumes(self) -> int:
        return len(self._gradient_table)

    @property
    def slices_per_volume(self) -> int:
        return self._volume.size[2] // self.n_volumes

    def spacing_matrix(self) -> np.ndarray:
        return spacing_matrix(self._volume)

    def nrrd_space_direction(self) -> np.ndarray:
        return space_direction_matrix(self._volume)

    # --- Gradient transforms ---

    def convert_to_single_bvalue_scaled_diffusion_vectors(self) -> None:
        self._gradient_table.scale_to_single_bvalue()

    def convert_to_multiple_bvalues_unit_scaled_bvectors(self) -> None:
        self._gradient_table.scale_to_multiple_bvalues_unit_vectors()

    def convert_bvectors_to_identity_measurement_frame(self) -> None:
        self._gradient_table.rotate_to_identity_measurement_frame()

    def read_gradient_information(self, bval_file: str = None, bvec_file: str = None,
                                  volume_template: str = None) -> None:
        """
        Replaces the gradient table with the contents of FSL bval/bvec files.

        Missing paths default to ``<stem>.bval`` / ``<stem>.bvec`` next to
        ``volume_template``, where the stem drops every extension of the
        template's base name.

        Raises:
            ValueError: If a path is missing and there is no template to derive it from.
            DWIConfigurationError: If the counts disagree with each other or
                with the number of volumes. The table is left untouched.
        """
        if bval_file is None or bvec_file is None:
            if volume_template is None:
                raise ValueError("bval/bvec paths or a volume template to derive them from are required.")
            base = os.path.join(os.path.dirname(volume_template),
                                os.path.basename(volume_template).split('.')[0])
            bval_file = bval_file or base + ".bval"
            bvec_file = bvec_file or base + ".bvec"

        bvals = load_fsl_bvals(bval_file)
        bvecs = load_fsl_bvecs(bvec_file, horizontal_by_3_rows=self.fsl_file_format_horizontal_by_3_rows)
        logger.info(f"Read {len(bvals)} b-values from {bval_file} and {len(bvecs)} b-vectors from {bvec_file}.")
        self._gradient_table.replace(bvecs, bvals, self.n_volumes)

    # --- Output ---

    def make_file_comment(self, conversion_mode: str, use_identity_measurement_frame: bool = False,
                          small_gradient_threshold: float = DEFAULT_SMALL_GRADIENT_THRESHOLD,
                          use_bmatrix_gradient_directions: bool = False) -> str:
        return make_file_comment(__version__, conversion_mode,
                                 use_identity_measurement_frame=use_identity_measurement_frame,
                                 small_gradient_threshold=small_gradient_threshold,
                                 use_bmatrix_gradient_directions=use_bmatrix_gradient_directions)

    def write_nrrd(self, output_filepath: str, comment: str = "") -> str | None:
        """Writes the current state as NRRD; see :func:`write_dwi_nrrd`."""
        return write_dwi_nrrd(output_filepath, self._volume, self._gradient_table, self.n_volumes,
                              common_dicom_fields=self._common_dicom_fields, comment=comment)

    def to_4d(self) -> Volume:
        return unwrapped_to_4d(self._volume, self.n_volumes)

    def write_fsl_formatted_file_set(self, output_filepath: str, output_bval_filepath: str = None,
                                     output_bvec_filepath: str = None, volume4d: Volume = None) -> tuple[str, str]:
        """
        Writes the NIfTI volume and FSL sidecars; see
        :func:`~dwiconvert.data_io.nifti.write_fsl_formatted_file_set`.
        ``volume4d`` defaults to :meth:`to_4d`.
        """
        if volume4d is None:
            volume4d = self.to_4d()
        return write_fsl_formatted_file_set(output_filepath, volume4d, self._gradient_table,
                                            output_bval_filepath=output_bval_filepath,
                                            output_bvec_filepath=output_bvec_filepath,
                                            horizontal_by_3_rows=self.fsl_file_format_horizontal_by_3_rows)

    def __repr__(self) -> str:
        return f"DWIConverter(volume={self._volume!r}, gradient_table={self._gradient_table!r})"
