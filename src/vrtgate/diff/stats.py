"""Cheap whole-image statistics used to skip unchanged pairs."""

import numpy as np

from .types import ImageStats


def luma(rgb: np.ndarray) -> np.ndarray:
    """BT.601 luma rounded to 0..255."""
    rgb = rgb.astype(np.float32)
    y = 0.299 * rgb[..., 0] + 0.587 * rgb[..., 1] + 0.114 * rgb[..., 2]
    return np.clip(np.rint(y), 0, 255).astype(np.uint8)


def luma_histogram(gray: np.ndarray) -> np.ndarray:
    """256-bin histogram normalized to sum to 1."""
    hist = np.bincount(gray.ravel(), minlength=256).astype(np.float64)
    total = hist.sum()
    return hist / total if total else hist


def histogram_distance(hist_a: np.ndarray, hist_b: np.ndarray) -> float:
    """Half the L1 distance between normalized histograms, in [0, 1]."""
    return float(np.abs(hist_a - hist_b).sum() / 2.0)


def edge_density(gray: np.ndarray, magnitude: float = 30.0) -> float:
    """Fraction of pixels whose central-difference gradient exceeds ``magnitude``."""
    height, width = gray.shape
    if height < 3 or width < 3:
        return 0.0
    g = gray.astype(np.float32)
    gx = g[1:-1, :-2] - g[1:-1, 2:]
    gy = g[:-2, 1:-1] - g[2:, 1:-1]
    edges = np.count_nonzero(np.sqrt(gx * gx + gy * gy) > magnitude)
    return edges / float(height * width)


def compare_stats(a: np.ndarray, b: np.ndarray, edge_magnitude: float = 30.0) -> ImageStats:
    gray_a, gray_b = luma(a), luma(b)
    return ImageStats(
        histogram_distance=histogram_distance(
            luma_histogram(gray_a), luma_histogram(gray_b)
        ),
        edge_density_delta=abs(
            edge_density(gray_a, edge_magnitude) - edge_density(gray_b, edge_magnitude)
        ),
    )
