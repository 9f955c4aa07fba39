import unittest
import numpy as np
import pytest

from dwiconvert.data_io.errors import DWIConfigurationError, DWIGeometryError
from dwiconvert.data_io.volume import (Volume, as_short_samples, fourd_to_unwrapped, geometry_from_ras_affine,
                                       space_direction_matrix, spacing_matrix, unwrapped_to_4d,
                                       volume_to_ras_affine)


def make_unwrapped_volume(size=(6, 5, 12), spacing=(1.5, 2.0, 3.0), origin=(-10.0, 20.0, 5.0), direction=None):
    rng = np.random.default_rng(0)
    data = rng.integers(-3000, 3000, size=size, dtype=np.int16)
    return Volume(data, spacing=spacing, origin=origin, direction=direction)


class TestVolume(unittest.TestCase):

    def test_rejects_non_short_samples(self):
        with self.assertRaises(ValueError):
            Volume(np.zeros((2, 2, 2), dtype=np.float32))

    def test_rejects_bad_geometry(self):
        data = np.zeros((2, 2, 2), dtype=np.int16)
        with self.assertRaises(ValueError):
            Volume(data, spacing=[1.0, 0.0, 1.0])
        with self.assertRaises(ValueError):
            Volume(data, origin=[0.0, 0.0])
        with self.assertRaises(ValueError):
            Volume(data, direction=np.eye(4))
        with self.assertRaises(ValueError):
            Volume(np.zeros((2, 2), dtype=np.int16))

    def test_tobytes_is_little_endian_x_fastest(self):
        data = np.zeros((2, 1, 1), dtype=np.int16)
        data[0, 0, 0] = 1
        data[1, 0, 0] = 0x0102
        volume = Volume(data)
        self.assertEqual(volume.tobytes(), b'\x01\x00\x02\x01')

    def test_geometry_properties_are_copies(self):
        volume = make_unwrapped_volume()
        volume.spacing[0] = 99.0
        volume.direction[0, 0] = 99.0
        self.assertEqual(volume.spacing[0], 1.5)
        self.assertEqual(volume.direction[0, 0], 1.0)


class TestGeometryMatrices(unittest.TestCase):

    def test_spacing_matrix_is_diagonal(self):
        volume = make_unwrapped_volume()
        np.testing.assert_array_equal(spacing_matrix(volume), np.diag([1.5, 2.0, 3.0]))

    def test_space_direction_scales_columns(self):
        direction = np.array([[0.0, 1.0, 0.0],
                              [1.0, 0.0, 0.0],
                              [0.0, 0.0, -1.0]])
        volume = make_unwrapped_volume(direction=direction)
        expected = np.array([[0.0, 2.0, 0.0],
                             [1.5, 0.0, 0.0],
                             [0.0, 0.0, -3.0]])
        np.testing.assert_array_almost_equal(space_direction_matrix(volume), expected)

    def test_ras_affine_round_trip(self):
        direction = np.array([[0.0, 1.0, 0.0],
                              [1.0, 0.0, 0.0],
                              [0.0, 0.0, -1.0]])
        volume = make_unwrapped_volume(direction=direction)
        affine = volume_to_ras_affine(volume)
        np.testing.assert_array_almost_equal(affine[:3, 3], [10.0, -20.0, 5.0])

        spacing, origin, recovered_direction = geometry_from_ras_affine(affine)
        np.testing.assert_array_almost_equal(spacing, volume.spacing)
        np.testing.assert_array_almost_equal(origin, volume.origin)
        np.testing.assert_array_almost_equal(recovered_direction, direction)


class TestReshaping(unittest.TestCase):

    def test_96x96x60_with_5_volumes(self):
        data = np.arange(96 * 96 * 60, dtype=np.int64) % 32000
        volume = Volume(data.reshape((96, 96, 60), order='F').astype(np.int16),
                        spacing=[2.0, 2.0, 2.5], origin=[1.0, 2.0, 3.0])

        volume4d = unwrapped_to_4d(volume, 5)
        self.assertEqual(volume4d.size, (96, 96, 12, 5))
        np.testing.assert_array_equal(volume4d.spacing, [2.0, 2.0, 2.5, 1.0])
        np.testing.assert_array_equal(volume4d.origin, [1.0, 2.0, 3.0, 0.0])
        np.testing.assert_array_equal(volume4d.direction, np.eye(4))

        flattened = fourd_to_unwrapped(volume4d)
        self.assertEqual(flattened.size, (96, 96, 60))
        self.assertEqual(flattened.tobytes(), volume.tobytes())
        np.testing.assert_array_equal(flattened.data, volume.data)

    def test_slice_k_belongs_to_volume_k_div_slices_per_volume(self):
        volume = make_unwrapped_volume(size=(3, 2, 12))
        volume4d = unwrapped_to_4d(volume, 4)
        for k in range(12):
            np.testing.assert_array_equal(volume4d.data[:, :, k % 3, k // 3], volume.data[:, :, k])

    def test_bytes_unchanged_by_reshape(self):
        volume = make_unwrapped_volume()
        self.assertEqual(unwrapped_to_4d(volume, 3).tobytes(), volume.tobytes())

    def test_metadata_carried_over(self):
        volume = make_unwrapped_volume()
        volume.metadata['origin_note'] = 'scanner'
        volume4d = unwrapped_to_4d(volume, 2)
        self.assertEqual(volume4d.metadata, {'origin_note': 'scanner'})
        self.assertEqual(fourd_to_unwrapped(volume4d).metadata, {'origin_note': 'scanner'})

    def test_non_divisible_slice_count_reports_remainder(self):
        volume = make_unwrapped_volume(size=(4, 4, 10))
        with self.assertRaisesRegex(DWIGeometryError, "left-over slices = 1"):
            unwrapped_to_4d(volume, 3)

    def test_wrong_dimensionality(self):
        volume = make_unwrapped_volume()
        with self.assertRaises(ValueError):
            fourd_to_unwrapped(volume)
        with self.assertRaises(ValueError):
            unwrapped_to_4d(unwrapped_to_4d(volume, 2), 2)


@pytest.mark.parametrize("dtype, top", [(np.uint8, 255), (np.int32, 32767), (np.uint16, 300)])
def test_as_short_samples_lossless_integers(dtype, top):
    data = np.array([[[0, 1], [2, top]]], dtype=dtype)
    converted = as_short_samples(data)
    assert converted.dtype == np.int16
    np.testing.assert_array_equal(converted, data.astype(np.int64))


def test_as_short_samples_rejects_lossy_without_opt_in():
    with pytest.raises(DWIConfigurationError):
        as_short_samples(np.array([[[1.5]]], dtype=np.float32))
    with pytest.raises(DWIConfigurationError):
        as_short_samples(np.array([[[40000]]], dtype=np.uint16))


def test_as_short_samples_lossy_rounds_and_clips():
    data = np.array([[[1.4, 2.6, -70000.0, 70000.0]]])
    converted = as_short_samples(data, allow_lossy_conversion=True)
    np.testing.assert_array_equal(converted, [[[1, 3, -32768, 32767]]])
