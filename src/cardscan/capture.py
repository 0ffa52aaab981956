"""Frame sources for a scan session.

A source is the capture collaborator: it reports whether capture is
permitted, the screen size the ROI was drawn on, and yields frames.

Classes:
    Frame            - Immutable pixel buffer with a per-session sequence number
    VideoFrameSource - Camera device or video file via ``cv2.VideoCapture``
    ArrayFrameSource - Frames from in-memory arrays or image files
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Union

import cv2
import numpy as np

from cardscan.geometry import Size

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Frame:
    """A captured frame.  Pixels are write-protected."""

    pixels: np.ndarray
    sequence: int

    def __post_init__(self):
        view = self.pixels.view()
        view.setflags(write=False)
        object.__setattr__(self, "pixels", view)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def capture_extent(self) -> Size:
        return Size(float(self.width), float(self.height))


class VideoFrameSource:
    """Frames from a camera index or a video file.

    Capture counts as authorized when the device or file opens.

    Args:
        source: Camera index (e.g. ``0``) or path to a video file.
        screen_size: Size of the screen the ROI is expressed in.
        max_frames: Stop after this many frames (``None`` = until the stream ends).
    """

    def __init__(
        self,
        source: Union[int, str],
        screen_size: Size,
        max_frames: Optional[int] = None,
    ):
        self.source = source
        self.screen_size = screen_size
        self.max_frames = max_frames
        self._cap: Optional[cv2.VideoCapture] = None

    def _open(self) -> cv2.VideoCapture:
        if self._cap is None:
            self._cap = cv2.VideoCapture(self.source)
            if self._cap.isOpened():
                w = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH))
                h = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
                fps = self._cap.get(cv2.CAP_PROP_FPS)
                log.info("Opened capture %r: %dx%d @ %.1f fps", self.source, w, h, fps)
            else:
                log.error("Cannot open capture source %r", self.source)
        return self._cap

    def authorized(self) -> bool:
        return self._open().isOpened()

    def frames(self) -> Iterator[Frame]:
        cap = self._open()
        sequence = 0
        while cap.isOpened():
            if self.max_frames is not None and sequence >= self.max_frames:
                break
            ok, pixels = cap.read()
            if not ok or pixels is None:
                log.debug("Capture %r returned no frame, stopping", self.source)
                break
            yield Frame(pixels=pixels, sequence=sequence)
            sequence += 1

    def close(self) -> None:
        """Release the capture device."""
        if self._cap is not None:
            self._cap.release()
            self._cap = None

    def __enter__(self) -> "VideoFrameSource":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class ArrayFrameSource:
    """Frames from a fixed sequence of images.

    Args:
        images: BGR uint8 arrays, yielded in order.
        screen_size: Size of the screen the ROI is expressed in.
        authorized: Value reported by :meth:`authorized`.
    """

    def __init__(
        self,
        images: Iterable[np.ndarray],
        screen_size: Size,
        authorized: bool = True,
    ):
        self.images: List[np.ndarray] = list(images)
        self.screen_size = screen_size
        self._authorized = authorized

    @classmethod
    def from_files(
        cls, paths: Sequence[Union[str, Path]], screen_size: Size, **kwargs
    ) -> "ArrayFrameSource":
        """Load images with ``cv2.imread``."""
        images = []
        for path in paths:
            image = cv2.imread(str(path))
            if image is None:
                raise FileNotFoundError(f"Cannot read image: {path}")
            images.append(image)
        return cls(images, screen_size, **kwargs)

    def authorized(self) -> bool:
        return self._authorized

    def frames(self) -> Iterator[Frame]:
        for sequence, pixels in enumerate(self.images):
            yield Frame(pixels=pixels, sequence=sequence)

    def close(self) -> None:
        pass
