# __init__.py for dwiconvert.data_io

from .errors import (
    DWIConversionError,
    DWIConfigurationError,
    DWIGeometryError,
    MeasurementFrameError
)

from .volume import (
    Volume,
    as_short_samples,
    spacing_matrix,
    space_direction_matrix,
    unwrapped_to_4d,
    fourd_to_unwrapped
)

from .gradients import (
    GradientTable,
    create_gradient_table,
    is_identity_measurement_frame
)

from .nrrd_utils import (
    make_file_comment,
    write_dwi_nrrd,
    read_nrrd_dwi,
    NrrdDWISource
)

from .nifti import (
    load_fsl_bvals,
    load_fsl_bvecs,
    write_fsl_bvals,
    write_fsl_bvecs,
    load_nifti_dwi_volume,
    write_fsl_formatted_file_set,
    FSLDWISource
)

from .dicom_utils import (
    read_dicom_series,
    cluster_slice_locations,
    bmatrix_to_gradient,
    DicomDWISource
)

from .converter import (
    DWISource,
    DWIConverter
)

__all__ = [
    'DWIConversionError',
    'DWIConfigurationError',
    'DWIGeometryError',
    'MeasurementFrameError',
    'Volume',
    'as_short_samples',
    'spacing_matrix',
    'space_direction_matrix',
    'unwrapped_to_4d',
    'fourd_to_unwrapped',
    'GradientTable',
    'create_gradient_table',
    'is_identity_measurement_frame',
    'make_file_comment',
    'write_dwi_nrrd',
    'read_nrrd_dwi',
    'NrrdDWISource',
    'load_fsl_bvals',
    'load_fsl_bvecs',
    'write_fsl_bvals',
    'write_fsl_bvecs',
    'load_nifti_dwi_volume',
    'write_fsl_formatted_file_set',
    'FSLDWISource',
    'read_dicom_series',
    'cluster_slice_locations',
    'bmatrix_to_gradient',
    'DicomDWISource',
    'DWISource',
    'DWIConverter'
]
