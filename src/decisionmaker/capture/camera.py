"""Webcam capture.

A camera exposes a snapshot as a JPEG data URL plus the media stream behind
it. Stopping every track of the stream hands the device back; a stopped
camera is never reopened.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Literal, Protocol

import cv2

from decisionmaker.ml.preprocessing import encode_data_url

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

TrackState = Literal["live", "ended"]


class MediaTrack(Protocol):
    """One track of a media stream."""

    @property
    def kind(self) -> str: ...

    @property
    def ready_state(self) -> TrackState: ...

    def stop(self) -> None: ...


class MediaStream:
    """A set of tracks fed by a single capture device."""

    def __init__(self, tracks: Sequence[MediaTrack]) -> None:
        self._tracks = list(tracks)

    def get_tracks(self) -> list[MediaTrack]:
        return list(self._tracks)

    @property
    def active(self) -> bool:
        """True while at least one track is still live."""
        return any(track.ready_state == "live" for track in self._tracks)


class Camera(Protocol):
    """Protocol for snapshot-capable cameras."""

    @property
    def stream(self) -> MediaStream | None:
        """The attached media stream, or None if capture never started."""
        ...

    def get_screenshot(self) -> str | None:
        """Return the current frame as a data URL, or None if no frame is available."""
        ...


class _VideoCaptureTrack:
    """Video track backed by an OpenCV capture handle."""

    kind = "video"

    def __init__(self, capture: cv2.VideoCapture, index: int) -> None:
        self._capture = capture
        self._index = index
        self._lock = threading.Lock()
        self._ended = False

    @property
    def ready_state(self) -> TrackState:
        return "ended" if self._ended else "live"

    def read(self) -> cv2.typing.MatLike | None:
        with self._lock:
            if self._ended:
                return None
            ok, frame = self._capture.read()
        if not ok or frame is None:
            return None
        return frame

    def stop(self) -> None:
        with self._lock:
            if self._ended:
                return
            self._ended = True
            self._capture.release()
        logger.info("Camera %d released", self._index)


class OpenCVCamera:
    """Local webcam read through OpenCV.

    CAMERA_INDEX selects the device; ``quality`` is the JPEG quality in (0, 1].
    """

    def __init__(self, index: int = 0, quality: float = 0.92) -> None:
        self._index = index
        self._quality = max(1, min(100, round(quality * 100)))
        self._track: _VideoCaptureTrack | None = None
        self._stream: MediaStream | None = None

    @property
    def stream(self) -> MediaStream | None:
        return self._stream

    def start(self) -> bool:
        """Open the capture device. Returns False if it cannot be opened."""
        if self._stream is not None:
            return self._stream.active

        capture = cv2.VideoCapture(self._index)
        if not capture.isOpened():
            logger.warning("Failed to open camera device %d", self._index)
            capture.release()
            return False

        self._track = _VideoCaptureTrack(capture, self._index)
        self._stream = MediaStream([self._track])
        logger.info("Camera %d started", self._index)
        return True

    def get_screenshot(self) -> str | None:
        if self._track is None:
            return None

        frame = self._track.read()
        if frame is None:
            if self._track.ready_state == "live":
                logger.warning("Frame capture failed on camera %d", self._index)
            return None

        ok, buf = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, self._quality])
        if not ok:
            logger.warning("JPEG encoding failed on camera %d", self._index)
            return None
        return encode_data_url(buf.tobytes(), "image/jpeg")


def stop_stream(camera: Camera | None) -> bool:
    """Stop every track of the camera's stream. Returns False if no stream was attached."""
    stream = camera.stream if camera is not None else None
    if stream is None:
        return False
    for track in stream.get_tracks():
        track.stop()
    return True
