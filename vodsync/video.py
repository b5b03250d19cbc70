"""Frame capture surface: seek a recording, wait for the seek, rasterise, encode."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Tuple

import cv2
import numpy as np

from .settings import settings

logger = logging.getLogger(__name__)

DEFAULT_SIZE: Tuple[int, int] = settings.capture_size
END_GUARD_SEC = 0.1


class CaptureError(RuntimeError):
    """Raised when a frame cannot be read or encoded."""


class SeekTimeoutError(CaptureError):
    """Raised when a seek does not settle within the configured timeout."""


class VideoHandle:
    """One opened recording plus the lock that owns its playback head.

    ``capture`` is anything shaped like ``cv2.VideoCapture`` (``get``, ``set``,
    ``read``, ``isOpened``, ``release``). Every seek goes through :attr:`lock`
    so sampling, verification, calibration and manual jumps never interleave.
    """

    def __init__(
        self,
        capture: Any,
        *,
        source: str = "<memory>",
        seek_timeout: Optional[float] = None,
    ) -> None:
        self._cap = capture
        self.source = source
        self.seek_timeout = float(seek_timeout or settings.CAPTURE_SEEK_TIMEOUT_SEC)
        self.lock = asyncio.Lock()
        self.position = 0.0
        self.fps = float(capture.get(cv2.CAP_PROP_FPS) or 0.0)
        frame_count = float(capture.get(cv2.CAP_PROP_FRAME_COUNT) or 0.0)
        self.duration = frame_count / self.fps if self.fps > 0 else 0.0
        self._closed = False
        self._stalled: Optional["asyncio.Future[Any]"] = None

    @classmethod
    def open(cls, path: str, **kwargs: Any) -> "VideoHandle":
        cap = cv2.VideoCapture(path)
        if not cap.isOpened():
            cap.release()
            raise CaptureError(f"unable to open video: {path}")
        handle = cls(cap, source=path, **kwargs)
        logger.info(
            "video_opened",
            extra={"source": path, "duration": round(handle.duration, 3), "fps": handle.fps},
        )
        return handle

    def __enter__(self) -> "VideoHandle":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cap.release()

    async def aclose(self) -> None:
        """Release the capture once no read holds the playback head."""

        async with self.lock:
            self.close()

    def clamp(self, t: float) -> float:
        upper = max(self.duration - END_GUARD_SEC, 0.0)
        if t < 0.0 or t > upper:
            clamped = min(max(t, 0.0), upper)
            logger.warning(
                "capture_out_of_range",
                extra={"requested": t, "clamped": clamped, "duration": self.duration},
            )
            return clamped
        return t

    def _seek_and_read(self, t: float) -> np.ndarray:
        self._cap.set(cv2.CAP_PROP_POS_MSEC, t * 1000.0)
        ok, frame = self._cap.read()
        if not ok or frame is None:
            raise CaptureError(f"no frame decoded at {t:.3f}s")
        return frame

    def _release_after_stall(self, work: "asyncio.Future[Any]") -> None:
        error = None if work.cancelled() else work.exception()
        self.lock.release()
        logger.info(
            "abandoned_read_settled",
            extra={"source": self.source, "error": str(error) if error else None},
        )

    async def _on_head(self, label: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run blocking ``fn`` on a worker thread while owning the playback head.

        A call that times out raises right away, but the lock stays held until
        the abandoned worker returns, so the capture never sees two threads.
        Later callers wait at most ``seek_timeout`` for such a worker.
        """

        stalled = self._stalled
        if stalled is not None and not stalled.done():
            done, _ = await asyncio.wait({stalled}, timeout=self.seek_timeout)
            if not done:
                raise SeekTimeoutError(f"{label}: previous read is still decoding")

        await self.lock.acquire()
        if self._closed:
            self.lock.release()
            raise CaptureError("video handle is closed")
        work = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            return await asyncio.wait_for(asyncio.shield(work), timeout=self.seek_timeout)
        except asyncio.TimeoutError as exc:
            raise SeekTimeoutError(
                f"{label} did not settle within {self.seek_timeout:.1f}s"
            ) from exc
        finally:
            if work.done():
                self.lock.release()
            else:
                self._stalled = work
                work.add_done_callback(self._release_after_stall)

    async def read_at(self, t: float) -> np.ndarray:
        """Seek to ``t`` seconds and return the decoded frame once the seek settles."""

        if self._closed:
            raise CaptureError("video handle is closed")
        frame = await self._on_head(f"seek to {t:.3f}s", self._seek_and_read, t)
        self.position = t
        return frame

    async def seek(self, t: float) -> float:
        """Move the playback head without decoding; used for manual jumps."""

        if self._closed:
            raise CaptureError("video handle is closed")
        target = self.clamp(t)
        await self._on_head(
            f"seek to {target:.3f}s", self._cap.set, cv2.CAP_PROP_POS_MSEC, target * 1000.0
        )
        self.position = target
        return target


def encode_jpeg(
    frame: np.ndarray,
    size: Optional[Tuple[int, int]] = DEFAULT_SIZE,
    quality: float = 0.7,
) -> bytes:
    """Resize ``frame`` to ``size`` (width, height; ``None`` keeps native) and JPEG-encode it."""

    if size is not None:
        width, height = size
        if frame.shape[1] != width or frame.shape[0] != height:
            frame = cv2.resize(frame, (int(width), int(height)), interpolation=cv2.INTER_AREA)
    q = int(round(max(0.0, min(1.0, quality)) * 100))
    ok, buf = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), q])
    if not ok:
        raise CaptureError("JPEG encode failed")
    return buf.tobytes()


async def capture_frame(
    video: VideoHandle,
    t: float,
    *,
    size: Optional[Tuple[int, int]] = DEFAULT_SIZE,
    quality: float = 0.7,
) -> bytes:
    """Capture one encoded frame at ``t`` seconds of ``video``.

    Out-of-range positions are clamped into the recording with a warning.
    Raises :class:`SeekTimeoutError` or :class:`CaptureError`.
    """

    target = video.clamp(t)
    frame = await video.read_at(target)
    return await asyncio.to_thread(encode_jpeg, frame, size, quality)
