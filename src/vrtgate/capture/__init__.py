"""Page rendering, snapshot encoding and batch capture."""

from .browser import (
    PlaywrightRenderSession,
    PlaywrightSessionFactory,
    RenderSessionPool,
    translate_playwright_error,
)
from .cache import SnapshotCache, cache_key
from .codec import (
    clip_to_common,
    content_hash,
    decode,
    encode,
    make_snapshot,
    pad_to_common,
    render_diff_overlay,
    snapshot_from_bytes,
    to_array,
)
from .pool import CapturePool, build_options
from .types import (
    CaptureBatch,
    CaptureError,
    CaptureMetrics,
    CaptureOptions,
    CaptureResult,
    CaptureTarget,
    RenderSession,
    Snapshot,
    WaitCondition,
)

__all__ = [
    "CapturePool",
    "build_options",
    "RenderSessionPool",
    "PlaywrightRenderSession",
    "PlaywrightSessionFactory",
    "translate_playwright_error",
    "SnapshotCache",
    "cache_key",
    "decode",
    "encode",
    "to_array",
    "content_hash",
    "make_snapshot",
    "snapshot_from_bytes",
    "pad_to_common",
    "clip_to_common",
    "render_diff_overlay",
    "CaptureBatch",
    "CaptureError",
    "CaptureMetrics",
    "CaptureOptions",
    "CaptureResult",
    "CaptureTarget",
    "RenderSession",
    "Snapshot",
    "WaitCondition",
]
