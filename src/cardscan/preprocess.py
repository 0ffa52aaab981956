"""
Adaptive preprocessing chain that improves text legibility before OCR.

Stages (applied in order, each feeding the next):
1. grayscale    - zero saturation, identity contrast/brightness
2. blur         - Gaussian blur to suppress sensor noise
3. threshold    - linear per-channel remap that emphasizes strokes
4. auto_adjust  - contrast/brightness from the mean luma, inverted on bright backgrounds

The chain is fail-soft: a stage that cannot produce output is reported as
degraded and the chain carries on with the last good image.  Recognition
tolerates imperfect input, so a degraded frame is still worth reading.

Stages work on float32 pixels that start in [0, 1].  Values outside that
range are carried from stage to stage unclipped; only the mean-colour
readback and the final uint8 conversion clamp to 8 bits.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Tuple

import cv2
import numpy as np

from cardscan.errors import PreprocessingDegraded

log = logging.getLogger(__name__)

# Rec.601 luma weights
_LUMA_R = 0.299
_LUMA_G = 0.587
_LUMA_B = 0.114


@dataclass(frozen=True)
class PreprocessConfig:
    """Per-frame preprocessing parameters.

    ``bright_background``, ``luma``, ``contrast`` and ``brightness`` are
    derived from image statistics by the auto-adjust stage and stay ``None``
    until it has run.
    """

    blur_radius: float = 2.0
    threshold: float = 1.8
    bright_luma: float = 192.0
    bright_offset: float = -15.0

    bright_background: Optional[bool] = None
    luma: Optional[float] = None
    contrast: Optional[float] = None
    brightness: Optional[float] = None


@dataclass
class StageOutcome:
    """Output of one stage: either an image or the error that stopped it."""

    stage: str
    image: Optional[np.ndarray] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PreprocessReport:
    """Result of running the chain on one image."""

    image: np.ndarray
    config: PreprocessConfig
    outcomes: List[StageOutcome] = field(default_factory=list)

    @property
    def degraded_stages(self) -> List[str]:
        return [o.stage for o in self.outcomes if not o.ok]

    @property
    def is_degraded(self) -> bool:
        return bool(self.degraded_stages)


Stage = Callable[[np.ndarray, PreprocessConfig], Tuple[np.ndarray, PreprocessConfig]]


# ---------------------------------------------------------------------------
# Channel helpers
# ---------------------------------------------------------------------------


def _split_alpha(image: np.ndarray) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """Split a BGRA image into (BGR, alpha); other layouts return (image, None)."""
    if image.ndim == 3 and image.shape[2] == 4:
        return image[:, :, :3], image[:, :, 3:]
    return image, None


def _join_alpha(color: np.ndarray, alpha: Optional[np.ndarray]) -> np.ndarray:
    if alpha is None:
        return color
    return np.concatenate([color, alpha], axis=2)


def _to_float(image: np.ndarray) -> np.ndarray:
    if image.dtype == np.uint8:
        return image.astype(np.float32) / 255.0
    return image.astype(np.float32)


def _to_uint8(image: np.ndarray) -> np.ndarray:
    return np.round(np.clip(image, 0.0, 1.0) * 255.0).astype(np.uint8)


def mean_rgb(image: np.ndarray) -> Tuple[int, int, int]:
    """Average (R, G, B) over the full extent, as 8-bit values.

    Equivalent to reducing the image to a single pixel and reading it back
    from an 8-bit buffer.
    """
    color, _ = _split_alpha(image)
    rendered = _to_uint8(color) if color.dtype != np.uint8 else color
    if rendered.ndim == 2 or rendered.shape[2] == 1:
        v = int(cv2.mean(rendered)[0])
        return v, v, v
    b, g, r = cv2.mean(rendered)[:3]
    return int(r), int(g), int(b)


def luma_of(r: float, g: float, b: float) -> float:
    # Rounded so that pure white lands exactly on 255
    return round(_LUMA_R * r + _LUMA_G * g + _LUMA_B * b, 6)


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


def to_grayscale(image: np.ndarray, config: PreprocessConfig):
    """Stage 1: drop colour, keep tone."""
    color, alpha = _split_alpha(image)
    if color.ndim == 2:
        return image, config
    if color.shape[2] == 1:
        return image, config

    gray = cv2.cvtColor(np.ascontiguousarray(color), cv2.COLOR_BGR2GRAY)
    out = np.repeat(gray[:, :, np.newaxis], 3, axis=2)
    return _join_alpha(out, alpha), config


def gaussian_blur(image: np.ndarray, config: PreprocessConfig):
    """Stage 2: Gaussian blur, cropped back to the input extent."""
    if config.blur_radius <= 0:
        raise ValueError(f"blur_radius must be positive, got {config.blur_radius}")

    h, w = image.shape[:2]
    blurred = cv2.GaussianBlur(
        image, (0, 0), sigmaX=config.blur_radius, borderType=cv2.BORDER_REPLICATE
    )
    if blurred.ndim < image.ndim:
        # cv2 drops a trailing singleton channel
        blurred = blurred.reshape(image.shape[:2] + image.shape[2:])
    return blurred[:h, :w], config


def emphasize_threshold(image: np.ndarray, config: PreprocessConfig):
    """Stage 3: ``out = in * scale + bias`` on colour channels, alpha untouched.

    ``scale = 1 / (1 - threshold)`` and ``bias = -threshold * scale``.
    Thresholds above 1 flip the slope and push mid-tones to saturation.
    """
    if config.threshold == 1.0:
        raise ValueError("threshold of 1.0 has no defined scale")

    scale = 1.0 / (1.0 - config.threshold)
    bias = -config.threshold * scale

    color, alpha = _split_alpha(image)
    out = color * scale + bias
    return _join_alpha(out, alpha), config


def auto_adjust(image: np.ndarray, config: PreprocessConfig):
    """Stage 4: statistics-driven contrast/brightness and polarity correction.

    The mean luma of the image classifies the background.  Bright
    backgrounds get a small negative offset and are inverted afterwards so
    text ends up light on dark; darker ones are pulled towards mid grey.
    """
    r, g, b = mean_rgb(image)
    luma = luma_of(r, g, b)

    bright = luma > config.bright_luma
    contrast = 255.0 / (255.0 - luma) if luma < 255.0 else 1.0
    brightness = config.bright_offset if bright else 128.0 - luma

    color, alpha = _split_alpha(image)
    adjusted = ((color * 255.0 - 128.0) * contrast + 128.0 + brightness) / 255.0
    if bright:
        adjusted = 1.0 - adjusted

    derived = replace(
        config,
        bright_background=bright,
        luma=luma,
        contrast=contrast,
        brightness=brightness,
    )
    log.debug(
        "auto_adjust: luma=%.1f bright=%s contrast=%.3f brightness=%.1f",
        luma, bright, contrast, brightness,
    )
    return _join_alpha(adjusted, alpha), derived


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------


class PreprocessingChain:
    """
    Runs the four stages in order with last-good-image substitution.

    The chain holds no per-frame state; every call derives a fresh
    :class:`PreprocessConfig` from the pixels it is given.
    """

    STAGES: Tuple[Tuple[str, Stage], ...] = (
        ("grayscale", to_grayscale),
        ("blur", gaussian_blur),
        ("threshold", emphasize_threshold),
        ("auto_adjust", auto_adjust),
    )

    def __init__(
        self,
        blur_radius: float = 2.0,
        threshold: float = 1.8,
        bright_luma: float = 192.0,
        bright_offset: float = -15.0,
    ):
        """
        Args:
            blur_radius: Gaussian sigma in pixels
            threshold: Emphasis threshold (values > 1 are intentionally aggressive)
            bright_luma: Mean luma above which the background counts as bright
            bright_offset: Brightness offset for bright backgrounds (8-bit units)
        """
        self.base_config = PreprocessConfig(
            blur_radius=blur_radius,
            threshold=threshold,
            bright_luma=bright_luma,
            bright_offset=bright_offset,
        )

    @classmethod
    def from_settings(cls, settings) -> "PreprocessingChain":
        return cls(
            blur_radius=settings.blur_radius,
            threshold=settings.threshold,
            bright_luma=settings.bright_luma,
            bright_offset=settings.bright_offset,
        )

    @staticmethod
    def _run_stage(
        name: str,
        stage: Stage,
        image: np.ndarray,
        config: PreprocessConfig,
    ) -> Tuple[StageOutcome, PreprocessConfig]:
        try:
            out, derived = stage(image, config)
            if out is None or out.shape[:2] != image.shape[:2]:
                raise ValueError(f"stage produced no usable output (shape {getattr(out, 'shape', None)})")
            if not np.all(np.isfinite(out)):
                raise ValueError("stage produced non-finite pixels")
        except (cv2.error, ValueError, ArithmeticError) as e:
            return StageOutcome(stage=name, error=PreprocessingDegraded(name, e)), config
        return StageOutcome(stage=name, image=out), derived

    def run(self, image: np.ndarray) -> PreprocessReport:
        """
        Run every stage and report what happened.

        Args:
            image: uint8 (or float in [0, 1]) image, gray, BGR or BGRA

        Returns:
            PreprocessReport with the uint8 output image and derived config
        """
        config = self.base_config
        if not isinstance(image, np.ndarray) or image.size == 0:
            error = PreprocessingDegraded("input", ValueError("not a non-empty pixel array"))
            log.warning("%s", error)
            return PreprocessReport(
                image=image,
                config=config,
                outcomes=[StageOutcome(stage="input", error=error)],
            )

        current = _to_float(image)
        outcomes: List[StageOutcome] = []

        for name, stage in self.STAGES:
            outcome, config = self._run_stage(name, stage, current, config)
            outcomes.append(outcome)
            if outcome.ok:
                current = outcome.image
            else:
                log.warning("%s; continuing with last good image", outcome.error)

        return PreprocessReport(image=_to_uint8(current), config=config, outcomes=outcomes)

    def process(self, image: np.ndarray) -> np.ndarray:
        """Return the preprocessed image (never raises for stage failures)."""
        return self.run(image).image
