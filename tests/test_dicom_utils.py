import unittest
from unittest import mock
import os
import tempfile
import numpy as np
import pydicom
from pydicom.dataset import Dataset, FileMetaDataset
from pydicom.errors import InvalidDicomError
from pydicom.uid import ExplicitVRLittleEndian, generate_uid

from dwiconvert.data_io.dicom_utils import (DicomDWISource, bmatrix_to_gradient, cluster_slice_locations,
                                            extract_common_dicom_fields, read_dicom_series)
from dwiconvert.data_io.errors import DWIConfigurationError, DWIGeometryError

ROWS, COLS = 3, 4
SLICE_POSITIONS = [0.0, 2.5]
GRADIENTS = [
    (0.0, [0.0, 0.0, 0.0]),
    (1000.0, [1.0, 0.0, 0.0]),
    (2000.0, [0.0, 0.6, 0.8]),
]


def slice_pixels(volume_index, slice_index):
    base = 100 * volume_index + 10 * slice_index
    return (base + np.arange(ROWS * COLS).reshape(ROWS, COLS)).astype(np.uint16)


# Helper to create a dummy DICOM dataset
def create_dummy_dicom_dataset(instance_number, volume_index, slice_index, bvalue, bvector,
                               pixel_spacing=(0.8, 0.9), bmatrix=None):
    ds = Dataset()
    ds.file_meta = FileMetaDataset()
    ds.file_meta.MediaStorageSOPClassUID = '1.2.840.10008.5.1.4.1.1.4' # MR Image Storage
    ds.file_meta.MediaStorageSOPInstanceUID = generate_uid()
    ds.file_meta.TransferSyntaxUID = ExplicitVRLittleEndian

    ds.SOPClassUID = ds.file_meta.MediaStorageSOPClassUID
    ds.SOPInstanceUID = ds.file_meta.MediaStorageSOPInstanceUID
    ds.Modality = "MR"
    ds.Manufacturer = "TestCorp"
    ds.RepetitionTime = "8000"
    ds.SeriesInstanceUID = "1.2.3"
    ds.InstanceNumber = instance_number
    ds.Rows = ROWS
    ds.Columns = COLS
    ds.PixelSpacing = list(pixel_spacing)
    ds.ImageOrientationPatient = [1, 0, 0, 0, 1, 0]
    ds.ImagePositionPatient = [-10.0, 5.0, SLICE_POSITIONS[slice_index]]
    ds.SliceThickness = 2.5
    ds.DiffusionBValue = bvalue
    ds.DiffusionGradientOrientation = list(bvector)
    if bmatrix is not None:
        item = Dataset()
        item.DiffusionBValueXX = float(bmatrix[0][0])
        item.DiffusionBValueXY = float(bmatrix[0][1])
        item.DiffusionBValueXZ = float(bmatrix[0][2])
        item.DiffusionBValueYY = float(bmatrix[1][1])
        item.DiffusionBValueYZ = float(bmatrix[1][2])
        item.DiffusionBValueZZ = float(bmatrix[2][2])
        ds.DiffusionBMatrixSequence = [item]

    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = "MONOCHROME2"
    ds.BitsAllocated = 16
    ds.BitsStored = 16
    ds.HighBit = 15
    ds.PixelRepresentation = 0 # Unsigned
    ds.PixelData = slice_pixels(volume_index, slice_index).tobytes()
    return ds


def write_series(dicom_dir, slice_major=False, gradients=GRADIENTS, n_slices=len(SLICE_POSITIONS), bmatrices=None):
    order = [(v, s) for v in range(len(gradients)) for s in range(n_slices)]
    if slice_major:
        order = [(v, s) for s in range(n_slices) for v in range(len(gradients))]
    for instance_number, (volume_index, slice_index) in enumerate(order, start=1):
        bvalue, bvector = gradients[volume_index]
        bmatrix = None if bmatrices is None else bmatrices[volume_index]
        ds = create_dummy_dicom_dataset(instance_number, volume_index, slice_index, bvalue, bvector, bmatrix=bmatrix)
        ds.save_as(os.path.join(dicom_dir, f"IM{instance_number:04d}.dcm"), enforce_file_format=True)


class TestReadDicomSeries(unittest.TestCase):

    def test_missing_directory(self):
        self.assertEqual(read_dicom_series("/nonexistent/dicom_dir"), [])

    def test_sorts_by_instance_number(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            write_series(tmpdir)
            os.rename(os.path.join(tmpdir, "IM0001.dcm"), os.path.join(tmpdir, "ZZ_last_name.dcm"))
            datasets = read_dicom_series(tmpdir)
        self.assertEqual([int(ds.InstanceNumber) for ds in datasets], list(range(1, 7)))

    @mock.patch('dwiconvert.data_io.dicom_utils.os.path.isdir', return_value=True)
    @mock.patch('dwiconvert.data_io.dicom_utils.os.walk')
    @mock.patch('dwiconvert.data_io.dicom_utils.pydicom.dcmread')
    def test_skips_invalid_and_non_image_files(self, mock_dcmread, mock_os_walk, mock_isdir):
        mock_os_walk.return_value = [('/fake/dicom_dir', [], ['b.dcm', 'a.dcm', 'notes.txt', 'report.dcm'])]
        image_a = create_dummy_dicom_dataset(2, 0, 0, 0.0, [0, 0, 0])
        image_b = create_dummy_dicom_dataset(1, 0, 1, 0.0, [0, 0, 0])
        report = Dataset()
        report.InstanceNumber = 3

        def dcmread_side_effect(filepath, force=False):
            name = os.path.basename(filepath)
            if name == 'notes.txt':
                raise InvalidDicomError("Not a DICOM")
            return {'a.dcm': image_a, 'b.dcm': image_b, 'report.dcm': report}[name]
        mock_dcmread.side_effect = dcmread_side_effect

        datasets = read_dicom_series('/fake/dicom_dir')
        self.assertEqual(datasets, [image_b, image_a])


class TestCommonDicomFields(unittest.TestCase):

    def test_field_names_carry_tag_and_keyword(self):
        ds = create_dummy_dicom_dataset(1, 0, 0, 0.0, [0, 0, 0])
        ds.ScanningSequence = ["EP", "SE"]
        fields = extract_common_dicom_fields(ds)
        self.assertEqual(fields["DICOM_0008_0070_Manufacturer"], "TestCorp")
        self.assertEqual(fields["DICOM_0018_0080_RepetitionTime"], "8000")
        self.assertEqual(fields["DICOM_0018_0020_ScanningSequence"], "EP\\SE")
        self.assertNotIn("DICOM_0008_1030_StudyDescription", fields)


class TestGradientGeometryHelpers(unittest.TestCase):

    def test_cluster_slice_locations_uses_tolerance(self):
        labels, centers = cluster_slice_locations([2.5, 0.00004999, 2.5000002, 0.00005001, 5.0])
        np.testing.assert_array_equal(labels, [1, 0, 1, 0, 2])
        np.testing.assert_array_almost_equal(centers, [0.00005, 2.5000001, 5.0])

    def test_cluster_slice_locations_keeps_distinct_slices(self):
        labels, centers = cluster_slice_locations([0.0, 0.01, 0.02])
        np.testing.assert_array_equal(labels, [0, 1, 2])
        self.assertEqual(len(centers), 3)

    def test_bmatrix_to_gradient(self):
        direction = np.array([0.0, -0.6, -0.8])
        bval, bvec = bmatrix_to_gradient(1500.0 * np.outer(direction, direction))
        self.assertAlmostEqual(bval, 1500.0)
        np.testing.assert_array_almost_equal(bvec, [0.0, 0.6, 0.8])
        bval, bvec = bmatrix_to_gradient(np.zeros((3, 3)))
        self.assertEqual(bval, 0.0)
        np.testing.assert_array_equal(bvec, [0.0, 0.0, 0.0])


class TestDicomDWISource(unittest.TestCase):

    def _extract(self, tmpdir, **kwargs):
        source = DicomDWISource(tmpdir, **kwargs)
        source.load_from_disk()
        return source, source.extract_dwi_data()

    def _check_unwrapped(self, volume, table):
        self.assertEqual(volume.size, (COLS, ROWS, 6))
        for volume_index in range(3):
            for slice_index in range(2):
                k = volume_index * 2 + slice_index
                np.testing.assert_array_equal(volume.data[:, :, k], slice_pixels(volume_index, slice_index).T)
        np.testing.assert_array_almost_equal(volume.spacing, [0.9, 0.8, 2.5])
        np.testing.assert_array_almost_equal(volume.origin, [-10.0, 5.0, 0.0])
        np.testing.assert_array_almost_equal(volume.direction, np.eye(3))
        np.testing.assert_array_equal(table.bvals, [0.0, 1000.0, 2000.0])
        np.testing.assert_array_almost_equal(table.bvecs, [g for _, g in GRADIENTS])
        np.testing.assert_array_equal(table.measurement_frame, np.eye(3))

    def test_volume_major_series(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            write_series(tmpdir)
            source, (volume, table) = self._extract(tmpdir)
        self._check_unwrapped(volume, table)
        self.assertEqual(source.get_common_dicom_fields_map()["DICOM_0008_0070_Manufacturer"], "TestCorp")

    def test_slice_major_series(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            write_series(tmpdir, slice_major=True)
            _, (volume, table) = self._extract(tmpdir)
        self._check_unwrapped(volume, table)

    def test_b0_forces_zero_vector(self):
        gradients = [(0.0, [0.3, 0.3, 0.3]), (1000.0, [1.0, 0.0, 0.0])]
        with tempfile.TemporaryDirectory() as tmpdir:
            write_series(tmpdir, gradients=gradients)
            _, (_, table) = self._extract(tmpdir)
        np.testing.assert_array_equal(table.bvecs[0], [0.0, 0.0, 0.0])

    def test_small_gradient_is_rejected(self):
        gradients = [(0.0, [0.0, 0.0, 0.0]), (1000.0, [0.1, 0.0, 0.0])]
        with tempfile.TemporaryDirectory() as tmpdir:
            write_series(tmpdir, gradients=gradients)
            with self.assertRaises(DWIConfigurationError):
                self._extract(tmpdir)
            _, (_, table) = self._extract(tmpdir, small_gradient_threshold=0.05)
        np.testing.assert_array_almost_equal(table.bvecs[1], [0.1, 0.0, 0.0])

    def test_incomplete_series(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            write_series(tmpdir)
            os.remove(os.path.join(tmpdir, "IM0006.dcm"))
            with self.assertRaisesRegex(DWIGeometryError, "left-over slices = 1"):
                self._extract(tmpdir)

    def test_jittered_positions_stay_one_location(self):
        # Either side of a 4-decimal rounding boundary, still the same slice.
        jittered_z = {"IM0001.dcm": 0.00004999, "IM0003.dcm": 0.00005001}
        with tempfile.TemporaryDirectory() as tmpdir:
            write_series(tmpdir)
            for name, z in jittered_z.items():
                path = os.path.join(tmpdir, name)
                ds = pydicom.dcmread(path)
                ds.ImagePositionPatient = [-10.0, 5.0, z]
                ds.save_as(path)
            _, (volume, table) = self._extract(tmpdir)
        self.assertEqual(volume.size, (COLS, ROWS, 6))
        self.assertAlmostEqual(volume.spacing[2], 2.5, places=3)
        np.testing.assert_array_equal(volume.data[:, :, 2], slice_pixels(1, 0).T)
        np.testing.assert_array_equal(table.bvals, [0.0, 1000.0, 2000.0])

    def test_bmatrix_gradient_directions(self):
        # Orientation attributes disagree on purpose; the B-matrix must win.
        gradients = [(0.0, [0.0, 0.0, 0.0]), (500.0, [0.0, 1.0, 0.0]), (500.0, [1.0, 0.0, 0.0])]
        bmatrices = [np.zeros((3, 3)),
                     1000.0 * np.outer([1.0, 0.0, 0.0], [1.0, 0.0, 0.0]),
                     2000.0 * np.outer([0.0, -0.6, -0.8], [0.0, -0.6, -0.8])]
        with tempfile.TemporaryDirectory() as tmpdir:
            write_series(tmpdir, gradients=gradients, bmatrices=bmatrices)
            _, (_, table) = self._extract(tmpdir, use_bmatrix_gradient_directions=True)
        np.testing.assert_array_almost_equal(table.bvals, [0.0, 1000.0, 2000.0])
        np.testing.assert_array_almost_equal(table.bvecs, [g for _, g in GRADIENTS])

    def test_bmatrix_requested_but_missing(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            write_series(tmpdir)
            with self.assertRaisesRegex(DWIConfigurationError, "DiffusionBMatrixSequence"):
                self._extract(tmpdir, use_bmatrix_gradient_directions=True)

    def test_empty_directory(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertRaises(FileNotFoundError):
                DicomDWISource(tmpdir).load_from_disk()

    def test_extract_before_load(self):
        with self.assertRaises(RuntimeError):
            DicomDWISource("/fake").extract_dwi_data()


if __name__ == '__main__':
    unittest.main()
