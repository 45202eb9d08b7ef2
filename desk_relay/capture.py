"""
Screen capture module using mss for ultra-low memory usage.
Supports turbojpeg for fast encoding, falls back to Pillow.

Grabbing and encoding block, so ``capture_frame`` runs them on a dedicated
worker thread and the event loop stays free while a frame is in flight.
"""

import asyncio
import io
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Tuple

import mss

# Try to import turbojpeg for faster encoding
try:
    import numpy as np
    from turbojpeg import TurboJPEG
    _jpeg = TurboJPEG()
    TURBOJPEG_AVAILABLE = True
except (ImportError, OSError, RuntimeError):
    TURBOJPEG_AVAILABLE = False
    _jpeg = None

# Fallback to Pillow
from PIL import Image


logger = logging.getLogger(__name__)


class ScreenCapture:
    """
    Screen capture collaborator for the frame streamer.

    Memory optimization:
    - One mss instance, created on and reused by the capture thread
    - Uses turbojpeg when available (10x faster, less memory)
    - Frames are plain JPEG bytes, never kept after they are returned
    """

    def __init__(
        self,
        monitor: int = 1,
        quality: int = 30,
        scale: float = 1.0,
        use_turbojpeg: bool = True
    ):
        """
        Initialize screen capture.

        Args:
            monitor: Monitor index (0 = all monitors combined, 1+ = specific monitor)
            quality: JPEG quality (1-95)
            scale: Scale factor (0.1-1.0)
            use_turbojpeg: Try to use turbojpeg if available
        """
        self.monitor_index = monitor
        self.quality = max(1, min(95, quality))
        self.scale = max(0.1, min(1.0, scale))
        self.use_turbojpeg = use_turbojpeg and TURBOJPEG_AVAILABLE

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="capture")
        self._closed = False
        self._local = threading.local()
        self._monitor: Optional[dict] = None
        self._width = 0
        self._height = 0

    def _sct(self) -> "mss.base.MSSBase":
        # mss handles are bound to the thread that opened them
        sct = getattr(self._local, "sct", None)
        if sct is None:
            sct = self._local.sct = mss.mss()
        return sct

    def _select_monitor(self, sct) -> dict:
        monitors = sct.monitors

        # Monitor 0 is the combined virtual screen, 1+ are individual monitors
        if self.monitor_index < len(monitors):
            mon = monitors[self.monitor_index]
        else:
            # Fallback to primary (index 1) or combined (index 0)
            mon = monitors[1] if len(monitors) > 1 else monitors[0]

        self._monitor = mon
        self._width = mon["width"]
        self._height = mon["height"]
        return mon

    def screen_dimensions(self) -> Tuple[int, int]:
        """Original (unscaled) size of the captured monitor."""
        if self._monitor is None:
            with mss.mss() as sct:
                self._select_monitor(sct)
        return self._width, self._height

    @property
    def scaled_size(self) -> Tuple[int, int]:
        width, height = self.screen_dimensions()
        return max(1, int(width * self.scale)), max(1, int(height * self.scale))

    def capture_jpeg(self) -> bytes:
        """
        Capture screen and return JPEG bytes (blocking).

        Returns:
            JPEG image as bytes
        """
        sct = self._sct()
        monitor = self._monitor or self._select_monitor(sct)

        # Grab screen (returns raw BGRA bytes)
        sct_img = sct.grab(monitor)

        if self.use_turbojpeg and _jpeg is not None:
            return self._encode_turbojpeg(sct_img)
        return self._encode_pillow(sct_img)

    async def capture_frame(self) -> Optional[bytes]:
        """
        Capture one frame without blocking the event loop.

        Returns:
            JPEG bytes, or None if the capture failed
        """
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, self.capture_jpeg)
        except Exception as e:
            logger.warning("Screen capture failed: %s", e)
            return None

    def _to_image(self, sct_img) -> Image.Image:
        img = Image.frombytes("RGB", sct_img.size, sct_img.bgra, "raw", "BGRX")
        if self.scale < 1.0:
            img = img.resize(self.scaled_size, Image.Resampling.LANCZOS)
        return img

    def _encode_turbojpeg(self, sct_img) -> bytes:
        """Encode using turbojpeg (fast, low memory)."""
        if self.scale < 1.0:
            arr = np.asarray(self._to_image(sct_img))[:, :, ::-1]
        else:
            arr = np.frombuffer(sct_img.raw, dtype=np.uint8).reshape(
                (sct_img.height, sct_img.width, 4)
            )[:, :, :3]
        # turbojpeg's default pixel format is BGR
        return _jpeg.encode(np.ascontiguousarray(arr), quality=self.quality)

    def _encode_pillow(self, sct_img) -> bytes:
        """Encode using Pillow (fallback, slower)."""
        img = self._to_image(sct_img)
        buffer = io.BytesIO()
        img.save(buffer, format="JPEG", quality=self.quality, optimize=False)
        return buffer.getvalue()

    def set_quality(self, quality: int) -> None:
        """Update JPEG quality."""
        self.quality = max(1, min(95, quality))

    def set_scale(self, scale: float) -> None:
        """Update scale factor."""
        self.scale = max(0.1, min(1.0, scale))

    def close(self) -> None:
        """Clean up resources."""
        if self._closed:
            return
        self._closed = True

        def _close_thread_sct():
            sct = getattr(self._local, "sct", None)
            if sct is not None:
                sct.close()
                self._local.sct = None

        self._executor.submit(_close_thread_sct)
        self._executor.shutdown(wait=True)
