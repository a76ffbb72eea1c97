"""Shared fixtures: tiny MNIST-format files and small helpers."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest


def write_mnist(directory: Path, images: np.ndarray, labels: np.ndarray,
                image_magic: int = 2051, label_magic: int = 2049) -> tuple[str, str]:
    """Write images (N, rows, cols) and labels (N,) as an MNIST file pair."""
    img_path = directory / "images-idx3-ubyte"
    label_path = directory / "labels-idx1-ubyte"
    count, rows, cols = images.shape
    header = np.array([image_magic, count, rows, cols], dtype=">i4").tobytes()
    img_path.write_bytes(header + images.astype(np.uint8).tobytes())
    header = np.array([label_magic, labels.shape[0]], dtype=">i4").tobytes()
    label_path.write_bytes(header + labels.astype(np.uint8).tobytes())
    return str(img_path), str(label_path)


@pytest.fixture
def mnist_data():
    """25 distinct 4x4 images with labels 0..9 repeating."""
    count = 25
    images = (np.arange(count * 16).reshape(count, 4, 4) * 7 % 256).astype(np.uint8)
    images[:, 0, 0] = np.arange(count)  # keep every image distinct
    labels = (np.arange(count) % 10).astype(np.uint8)
    return images, labels


@pytest.fixture
def mnist_files(tmp_path, mnist_data):
    images, labels = mnist_data
    return write_mnist(tmp_path, images, labels)
