"""Region-of-interest geometry between screen, capture and analysis spaces.

A region of interest (ROI) is drawn in screen coordinates, but pixels have to
be cut out of the capture frame.  The two spaces differ in scale, in aspect
ratio, and in the direction of the vertical axis (capture space has its origin
at the bottom-left corner).  Conversions are always explicit; passing a
:class:`Rect` tagged with the wrong :class:`CoordinateSpace` is a programming
error and raises :class:`~cardscan.errors.CoordinateSpaceError`.

Functions:
    map_roi_to_capture  - Screen ROI -> capture crop with the card aspect ratio
    crop_to_rect        - Cut a capture-space rect out of a frame (no clamping)
    resize_to_fill      - Aspect-fill resize + center crop to the analysis size
    default_roi         - The card-shaped ROI centered on a screen
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Tuple

import cv2
import numpy as np

from cardscan.config import CARD_ASPECT_RATIO
from cardscan.errors import CoordinateSpaceError, InvalidRegion

log = logging.getLogger(__name__)

# Slack for floating point rounding when checking crop bounds (pixels)
_BOUNDS_EPS = 1e-6


class CoordinateSpace(Enum):
    """Coordinate systems a rectangle can live in."""

    SCREEN = "screen"  # Display points, top-left origin
    CAPTURE = "capture"  # Sensor frame pixels, bottom-left origin
    ANALYSIS = "analysis"  # Normalized [0, 1] of the OCR image, top-left origin


@dataclass(frozen=True)
class Size:
    width: float
    height: float


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle tagged with its coordinate space."""

    x: float
    y: float
    width: float
    height: float
    space: CoordinateSpace

    @property
    def max_x(self) -> float:
        return self.x + self.width

    @property
    def max_y(self) -> float:
        return self.y + self.height

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 0.0

    def require_space(self, space: CoordinateSpace) -> "Rect":
        """Raise CoordinateSpaceError unless this rect is in *space*."""
        if self.space is not space:
            raise CoordinateSpaceError(
                f"Expected a rect in {space.value} space, got {self.space.value}"
            )
        return self

    def contains(self, other: "Rect", eps: float = _BOUNDS_EPS) -> bool:
        """True if *other* (same space) lies entirely inside this rect."""
        other.require_space(self.space)
        return (
            other.x >= self.x - eps
            and other.y >= self.y - eps
            and other.max_x <= self.max_x + eps
            and other.max_y <= self.max_y + eps
        )

    def to_tuple(self) -> Tuple[float, float, float, float]:
        return (self.x, self.y, self.width, self.height)


def map_roi_to_capture(
    roi: Rect,
    capture_extent: Size,
    screen_size: Size,
    card_aspect_ratio: float = CARD_ASPECT_RATIO,
) -> Rect:
    """Map a screen-space ROI onto the capture frame.

    The preview fills the screen with a uniform scale, so one factor
    (the smaller of the two axis ratios) maps screen points to capture
    pixels.  Only the ROI height is scaled; the width is derived from
    *card_aspect_ratio* so the crop always has the shape of a card.
    The crop is centered horizontally, and the vertical origin is flipped
    because capture space counts rows from the bottom.

    The returned rect is not clamped.  :func:`crop_to_rect` rejects it if it
    does not fit the frame.

    Args:
        roi: Region of interest in ``SCREEN`` space.
        capture_extent: Capture frame size in pixels.
        screen_size: Screen size in points.
        card_aspect_ratio: Width/height ratio of the target object.

    Returns:
        Crop rectangle in ``CAPTURE`` space.
    """
    roi.require_space(CoordinateSpace.SCREEN)
    if screen_size.width <= 0 or screen_size.height <= 0:
        raise InvalidRegion(f"Screen size must be positive, got {screen_size}")
    if capture_extent.width <= 0 or capture_extent.height <= 0:
        raise InvalidRegion(f"Capture extent must be positive, got {capture_extent}")
    if roi.is_empty:
        raise InvalidRegion(f"ROI is empty: {roi}")
    if card_aspect_ratio <= 0:
        raise ValueError(f"card_aspect_ratio must be positive, got {card_aspect_ratio}")

    scale = min(
        capture_extent.width / screen_size.width,
        capture_extent.height / screen_size.height,
    )

    crop_height = roi.height * scale
    crop_width = crop_height * card_aspect_ratio
    crop_x = (capture_extent.width - crop_width) / 2.0
    crop_y = capture_extent.height - (roi.y + roi.height) * scale

    return Rect(crop_x, crop_y, crop_width, crop_height, CoordinateSpace.CAPTURE)


def crop_to_rect(image: np.ndarray, rect: Rect) -> np.ndarray:
    """Cut a ``CAPTURE``-space rect out of *image*.

    Out-of-bounds requests raise :class:`InvalidRegion` instead of being
    clamped, so a bad ROI never silently distorts the crop.

    Args:
        image: Frame pixels (H, W[, C]).
        rect: Crop rectangle in ``CAPTURE`` space (bottom-left origin).

    Returns:
        A copy of the cropped pixels.
    """
    rect.require_space(CoordinateSpace.CAPTURE)
    h, w = image.shape[:2]
    extent = Rect(0.0, 0.0, float(w), float(h), CoordinateSpace.CAPTURE)

    if rect.is_empty:
        raise InvalidRegion(f"Crop rect is empty: {rect}")
    if not extent.contains(rect):
        raise InvalidRegion(
            f"Crop rect {rect.to_tuple()} exceeds capture extent {w}x{h}"
        )

    # Bottom-left origin -> array rows counted from the top
    col0 = int(round(rect.x))
    col1 = int(round(rect.max_x))
    row0 = int(round(h - rect.max_y))
    row1 = int(round(h - rect.y))

    col0, row0 = max(col0, 0), max(row0, 0)
    col1, row1 = min(col1, w), min(row1, h)
    if col1 <= col0 or row1 <= row0:
        raise InvalidRegion(f"Crop rect {rect.to_tuple()} rounds to zero pixels")

    return image[row0:row1, col0:col1].copy()


def resize_to_fill(
    image: np.ndarray,
    target_size: Tuple[int, int] = (1586, 1000),
) -> np.ndarray:
    """Scale *image* to cover *target_size* and center-crop the overflow.

    Args:
        image: Input pixels (H, W[, C]).
        target_size: (width, height) of the output.

    Returns:
        Image of exactly ``target_size``.
    """
    target_w, target_h = target_size
    h, w = image.shape[:2]
    if h == 0 or w == 0:
        raise InvalidRegion("Cannot resize an empty image")

    scale = max(target_w / w, target_h / h)
    scaled_w = max(target_w, int(round(w * scale)))
    scaled_h = max(target_h, int(round(h * scale)))

    interpolation = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR
    scaled = cv2.resize(image, (scaled_w, scaled_h), interpolation=interpolation)

    x0 = (scaled_w - target_w) // 2
    y0 = (scaled_h - target_h) // 2
    return scaled[y0 : y0 + target_h, x0 : x0 + target_w]


def default_roi(
    screen_size: Size,
    margin: float = 10.0,
    card_aspect_ratio: float = CARD_ASPECT_RATIO,
) -> Rect:
    """Card-shaped ROI spanning the screen width minus *margin*, vertically centered."""
    box_width = screen_size.width - margin * 2
    if box_width <= 0:
        raise InvalidRegion(f"Screen width {screen_size.width} leaves no room for margin {margin}")
    box_height = box_width / card_aspect_ratio
    return Rect(
        margin,
        (screen_size.height - box_height) / 2.0,
        box_width,
        box_height,
        CoordinateSpace.SCREEN,
    )
