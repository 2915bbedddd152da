"""Connected change regions from a pixel diff mask."""

from typing import Optional

import numpy as np

from .types import BoundingBox, Region, RegionKind


def classify_area(area: int, layout_area: int = 10000, content_area: int = 1000) -> RegionKind:
    if area > layout_area:
        return RegionKind.LAYOUT
    if area > content_area:
        return RegionKind.CONTENT
    return RegionKind.MINOR


def extract_regions(
    mask: np.ndarray,
    min_area: int = 100,
    layout_area: int = 10000,
    content_area: int = 1000,
) -> list[Region]:
    """4-connected components of ``mask`` larger than ``min_area`` pixels.

    Uses an explicit stack of flat indices and a flat visited array, so
    large regions never hit the recursion limit.
    """
    height, width = mask.shape
    flat = mask.ravel().tolist()
    visited = bytearray(height * width)
    regions: list[Region] = []

    for seed in np.flatnonzero(mask).tolist():
        if visited[seed]:
            continue

        visited[seed] = 1
        stack = [seed]
        area = 0
        min_x, min_y = width, height
        max_x = max_y = -1

        while stack:
            idx = stack.pop()
            y, x = divmod(idx, width)
            area += 1
            if x < min_x:
                min_x = x
            if x > max_x:
                max_x = x
            if y < min_y:
                min_y = y
            if y > max_y:
                max_y = y

            if x > 0:
                n = idx - 1
                if flat[n] and not visited[n]:
                    visited[n] = 1
                    stack.append(n)
            if x < width - 1:
                n = idx + 1
                if flat[n] and not visited[n]:
                    visited[n] = 1
                    stack.append(n)
            if y > 0:
                n = idx - width
                if flat[n] and not visited[n]:
                    visited[n] = 1
                    stack.append(n)
            if y < height - 1:
                n = idx + width
                if flat[n] and not visited[n]:
                    visited[n] = 1
                    stack.append(n)

        if area > min_area:
            regions.append(
                Region(
                    bounding_box=BoundingBox(
                        x=min_x,
                        y=min_y,
                        width=max_x - min_x + 1,
                        height=max_y - min_y + 1,
                    ),
                    area=area,
                    classification=classify_area(area, layout_area, content_area),
                )
            )

    regions.sort(key=lambda r: r.area, reverse=True)
    return regions


def dominant_kind(regions: list[Region]) -> Optional[RegionKind]:
    kinds = {r.classification for r in regions}
    for kind in (RegionKind.LAYOUT, RegionKind.CONTENT, RegionKind.MINOR):
        if kind in kinds:
            return kind
    return None


_KIND_WEIGHT = {
    RegionKind.LAYOUT: 0.9,
    RegionKind.CONTENT: 0.7,
    RegionKind.MINOR: 0.5,
}


def confidence(regions: list[Region]) -> float:
    """min(regions / 5, 1) scaled by the weight of the most severe kind."""
    kind = dominant_kind(regions)
    if kind is None:
        return 0.0
    return min(len(regions) / 5.0, 1.0) * _KIND_WEIGHT[kind]
