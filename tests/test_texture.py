"""Tests for Tamura and Gabor texture descriptors."""

import numpy as np
import pytest

from image_retrieval.errors import ExtractionError
from image_retrieval.texture import (
    extract_tamura, extract_gabor, _gabor_bank,
    TAMURA_DIM, TAMURA_DIRECTION_BINS, GABOR_DIM, GABOR_SCALES, GABOR_ORIENTATIONS,
)


@pytest.fixture
def vertical_stripes():
    img = np.zeros((128, 128, 3), dtype=np.uint8)
    for x in range(0, 128, 16):
        img[:, x:x + 8] = 255
    return img


class TestTamura:

    def test_output_shape(self, textured_image):
        desc = extract_tamura(textured_image)
        assert desc.shape == (TAMURA_DIM,)
        assert desc.dtype == np.float32

    def test_flat_image_has_no_contrast_or_direction(self, gray_image):
        desc = extract_tamura(gray_image)
        assert desc[1] == 0
        assert np.all(desc[2:] == 0)

    def test_directionality_sums_to_one_when_edges_exist(self, textured_image):
        desc = extract_tamura(textured_image)
        assert desc[2:].sum() == pytest.approx(1.0, abs=1e-5)

    def test_vertical_stripes_point_one_way(self, vertical_stripes):
        directions = extract_tamura(vertical_stripes)[2:]
        assert len(directions) == TAMURA_DIRECTION_BINS
        assert directions[0] > 0.9

    def test_coarseness_in_unit_range(self, noise_image, textured_image):
        for image in (noise_image, textured_image):
            assert 0 < extract_tamura(image)[0] <= 1

    def test_rejects_small_image(self):
        with pytest.raises(ExtractionError):
            extract_tamura(np.zeros((10, 40, 3), dtype=np.uint8))


class TestGabor:

    def test_output_shape(self, textured_image):
        desc = extract_gabor(textured_image)
        assert desc.shape == (GABOR_DIM,)
        assert desc.dtype == np.float32

    def test_bank_size(self):
        assert len(_gabor_bank()) == GABOR_SCALES * GABOR_ORIENTATIONS

    def test_kernels_are_zero_mean(self):
        for kernel in _gabor_bank():
            assert abs(float(kernel.mean())) < 1e-5

    def test_flat_image_has_near_zero_energy(self, gray_image):
        assert np.all(extract_gabor(gray_image) < 1e-3)

    def test_texture_has_energy(self, textured_image, gray_image):
        assert extract_gabor(textured_image).sum() > extract_gabor(gray_image).sum()

    def test_deterministic(self, noise_image):
        assert np.array_equal(extract_gabor(noise_image), extract_gabor(noise_image))

    def test_no_nan_or_inf(self, noise_image):
        assert np.all(np.isfinite(extract_gabor(noise_image)))
