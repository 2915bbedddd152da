"""Anti-alias aware, perceptual pixel comparison on numpy arrays."""

import numpy as np
from pixelmatch import pixelmatch

from ..config.types import PixelBackend
from .types import PixelDiff

# Largest possible YIQ delta between two colours
MAX_YIQ_DELTA = 35215.0

# Neighbour offsets, x-major then y, matching the scan order of the
# anti-aliasing detector so ties resolve to the first neighbour found.
_OFFSETS = [(dx, dy) for dx in (-1, 0, 1) for dy in (-1, 0, 1) if (dx, dy) != (0, 0)]
_DX = np.array([o[0] for o in _OFFSETS], dtype=np.int64)
_DY = np.array([o[1] for o in _OFFSETS], dtype=np.int64)

_CHUNK = 1 << 18


def _yiq(rgb: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    r = rgb[..., 0].astype(np.float64)
    g = rgb[..., 1].astype(np.float64)
    b = rgb[..., 2].astype(np.float64)
    y = r * 0.29889531 + g * 0.58662247 + b * 0.11448223
    i = r * 0.59597799 - g * 0.27417610 - b * 0.32180189
    q = r * 0.21147017 - g * 0.52261711 + b * 0.31114694
    return y, i, q


def _luma(rgb: np.ndarray) -> np.ndarray:
    rgb = rgb.astype(np.float64)
    return rgb[..., 0] * 0.29889531 + rgb[..., 1] * 0.58662247 + rgb[..., 2] * 0.11448223


def _pack(rgb: np.ndarray) -> np.ndarray:
    rgb = rgb.astype(np.int32)
    return (rgb[..., 0] << 16) | (rgb[..., 1] << 8) | rgb[..., 2]


class YIQPixelComparator:
    """Counts pixels whose YIQ colour distance exceeds a threshold.

    ``threshold`` is in [0, 1]; smaller is stricter. Pixels that look like
    anti-aliasing in either image are ignored unless
    ``include_antialiasing`` is set.
    """

    def compare(
        self,
        a: np.ndarray,
        b: np.ndarray,
        threshold: float = 0.1,
        include_antialiasing: bool = False,
    ) -> PixelDiff:
        if a.shape != b.shape:
            raise ValueError(f"Image sizes do not match: {a.shape} vs {b.shape}")

        height, width = a.shape[:2]
        mask = np.zeros((height, width), dtype=bool)

        changed = np.any(a != b, axis=2)
        ys, xs = np.nonzero(changed)
        if ys.size == 0:
            return PixelDiff(mask=mask, count=0)

        y1, i1, q1 = _yiq(a[ys, xs])
        y2, i2, q2 = _yiq(b[ys, xs])
        delta = 0.5053 * (y1 - y2) ** 2 + 0.299 * (i1 - i2) ** 2 + 0.1957 * (q1 - q2) ** 2

        over = delta > MAX_YIQ_DELTA * threshold * threshold
        ys, xs = ys[over], xs[over]

        if ys.size and not include_antialiasing:
            aa = self._antialiased(a, b, ys, xs)
            ys, xs = ys[~aa], xs[~aa]

        mask[ys, xs] = True
        return PixelDiff(mask=mask, count=int(ys.size))

    def _antialiased(
        self, a: np.ndarray, b: np.ndarray, ys: np.ndarray, xs: np.ndarray
    ) -> np.ndarray:
        luma_a = np.pad(_luma(a), 1, constant_values=np.nan)
        luma_b = np.pad(_luma(b), 1, constant_values=np.nan)
        packed_a = np.pad(_pack(a), 1, constant_values=-1)
        packed_b = np.pad(_pack(b), 1, constant_values=-1)
        height, width = a.shape[:2]

        result = np.empty(ys.size, dtype=bool)
        for start in range(0, ys.size, _CHUNK):
            cy = ys[start : start + _CHUNK]
            cx = xs[start : start + _CHUNK]
            result[start : start + _CHUNK] = _detect(
                luma_a, packed_a, packed_b, cy, cx, height, width
            ) | _detect(luma_b, packed_b, packed_a, cy, cx, height, width)
        return result


def _on_edge(ys: np.ndarray, xs: np.ndarray, height: int, width: int) -> np.ndarray:
    return (xs == 0) | (ys == 0) | (xs == width - 1) | (ys == height - 1)


def _detect(
    luma: np.ndarray,
    packed: np.ndarray,
    packed_other: np.ndarray,
    ys: np.ndarray,
    xs: np.ndarray,
    height: int,
    width: int,
) -> np.ndarray:
    """Whether each pixel looks like an anti-aliased edge pixel in ``luma``.

    Arrays are padded by one pixel (NaN / -1) so out-of-bounds neighbours
    never count.
    """
    py, px = ys + 1, xs + 1
    center = luma[py, px][:, None]
    neighbours = luma[py[:, None] + _DY, px[:, None] + _DX]
    deltas = center - neighbours

    valid = ~np.isnan(deltas)
    zeroes = _on_edge(ys, xs, height, width).astype(np.int64)
    zeroes = zeroes + np.sum(valid & (deltas == 0), axis=1)

    has_darker = np.any(valid & (deltas < 0), axis=1)
    has_brighter = np.any(valid & (deltas > 0), axis=1)
    candidate = (zeroes <= 2) & has_darker & has_brighter

    result = np.zeros(ys.size, dtype=bool)
    if not candidate.any():
        return result

    idx = np.nonzero(candidate)[0]
    d = deltas[idx]
    min_k = np.argmin(np.where(np.isnan(d), np.inf, d), axis=1)
    max_k = np.argmax(np.where(np.isnan(d), -np.inf, d), axis=1)

    min_y, min_x = ys[idx] + _DY[min_k], xs[idx] + _DX[min_k]
    max_y, max_x = ys[idx] + _DY[max_k], xs[idx] + _DX[max_k]

    darkest = _many_siblings(packed, min_y, min_x, height, width) & _many_siblings(
        packed_other, min_y, min_x, height, width
    )
    brightest = _many_siblings(packed, max_y, max_x, height, width) & _many_siblings(
        packed_other, max_y, max_x, height, width
    )
    result[idx] = darkest | brightest
    return result


def _many_siblings(
    packed: np.ndarray, ys: np.ndarray, xs: np.ndarray, height: int, width: int
) -> np.ndarray:
    """More than two neighbours with exactly the same colour."""
    py, px = ys + 1, xs + 1
    center = packed[py, px][:, None]
    neighbours = packed[py[:, None] + _DY, px[:, None] + _DX]
    same = np.sum(neighbours == center, axis=1)
    return (same + _on_edge(ys, xs, height, width)) > 2


class PixelmatchComparator:
    """Same contract as ``YIQPixelComparator``, delegated to the pixelmatch port.

    pixelmatch runs a pure Python loop per pixel, so it suits small pages
    and cross-checks better than full-page screenshots.
    """

    def compare(
        self,
        a: np.ndarray,
        b: np.ndarray,
        threshold: float = 0.1,
        include_antialiasing: bool = False,
    ) -> PixelDiff:
        if a.shape != b.shape:
            raise ValueError(f"Image sizes do not match: {a.shape} vs {b.shape}")

        height, width = a.shape[:2]
        output = bytearray(width * height * 4)
        count = pixelmatch(
            _rgba(a),
            _rgba(b),
            width,
            height,
            output,
            threshold=threshold,
            includeAA=include_antialiasing,
            diff_mask=True,
        )
        # Only differing pixels are drawn into the zeroed output, fully opaque
        mask = np.frombuffer(bytes(output), dtype=np.uint8).reshape(height, width, 4)[..., 3] > 0
        return PixelDiff(mask=mask, count=int(count))


def _rgba(rgb: np.ndarray) -> bytes:
    alpha = np.full(rgb.shape[:2] + (1,), 255, dtype=np.uint8)
    return np.concatenate([rgb.astype(np.uint8), alpha], axis=2).tobytes()


def comparator_for(backend: PixelBackend):
    if backend == PixelBackend.PIXELMATCH:
        return PixelmatchComparator()
    return YIQPixelComparator()
