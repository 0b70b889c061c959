"""Shared test fixtures for image retrieval tests."""

import numpy as np
import cv2
import pytest


@pytest.fixture
def red_square_image():
    """Generate a 200x200 red square on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    img[40:160, 40:160] = [200, 30, 30]  # Red square
    return img


@pytest.fixture
def blue_circle_image():
    """Generate a 200x200 blue circle on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    cv2.circle(img, (100, 100), 60, (30, 30, 200), -1)
    return img


@pytest.fixture
def green_rectangle_image():
    """Generate a 200x200 green rectangle on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    img[30:170, 60:140] = [30, 180, 30]  # Tall green rectangle
    return img


@pytest.fixture
def textured_image():
    """Generate a 200x200 checkerboard texture."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 200
    for y in range(0, 200, 20):
        for x in range(0, 200, 20):
            if (x // 20 + y // 20) % 2 == 0:
                img[y:y+20, x:x+20] = [50, 50, 50]
    return img


@pytest.fixture
def noise_image():
    """Generate a 200x200 random noise image."""
    rng = np.random.RandomState(42)
    return rng.randint(0, 255, (200, 200, 3), dtype=np.uint8)


@pytest.fixture
def gray_image():
    """Generate a 64x64 uniform mid-grey image."""
    return np.full((64, 64, 3), 128, dtype=np.uint8)


@pytest.fixture
def tiny_image():
    """10x10 image: large enough for some extractors, too small for others."""
    rng = np.random.RandomState(7)
    return rng.randint(0, 255, (10, 10, 3), dtype=np.uint8)


@pytest.fixture
def sample_images(red_square_image, blue_circle_image, green_rectangle_image,
                  textured_image, noise_image):
    """Five visually distinct images keyed by a stable id."""
    return {
        "blue_circle.png": blue_circle_image,
        "green_rectangle.png": green_rectangle_image,
        "noise.png": noise_image,
        "red_square.png": red_square_image,
        "textured.png": textured_image,
    }


@pytest.fixture
def image_dir(tmp_path, sample_images):
    """Write the sample images (plus one corrupt file) to a directory."""
    directory = tmp_path / "images"
    directory.mkdir()
    for name, image in sample_images.items():
        cv2.imwrite(str(directory / name), cv2.cvtColor(image, cv2.COLOR_RGB2BGR))
    (directory / "broken.png").write_bytes(b"this is not an image")
    (directory / "notes.txt").write_text("ignored")
    return directory
