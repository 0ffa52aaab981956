"""
Text recognition adapter.

Wraps an external recognition engine behind a synchronous call that always
hands back a completed list of tokens:

- RecognitionConfig: accuracy mode, one language, language correction off
- RecognizedTextToken: text + confidence + bbox in analysis space
- RecognitionAdapter: validates input, calls the engine, filters low confidence
- EasyOCREngine: default engine backed by ``easyocr.Reader``

An engine is any object with
``recognize(image, config) -> List[Tuple[str, float, Rect]]`` where each
bbox is a :class:`~cardscan.geometry.Rect` in ``ANALYSIS`` space.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np

from cardscan.errors import InvalidImage
from cardscan.geometry import CoordinateSpace, Rect

log = logging.getLogger(__name__)

# Tokens below this confidence are never produced
MIN_TOKEN_CONFIDENCE = 0.3

RawObservation = Tuple[str, float, Rect]


@dataclass(frozen=True)
class RecognitionConfig:
    """Fixed engine configuration.

    Card numbers and names are not dictionary words, so language correction
    is always off; raw tokens are preferred over corrected guesses.
    """

    accuracy: str = "accurate"  # "accurate" or "fast"
    languages: Tuple[str, ...] = ("en",)
    language_correction: bool = False

    def __post_init__(self):
        if self.accuracy not in ("accurate", "fast"):
            raise ValueError(f"accuracy must be 'accurate' or 'fast', got {self.accuracy!r}")
        if len(self.languages) != 1:
            raise ValueError(f"Exactly one recognition language is supported, got {self.languages}")
        if self.language_correction:
            raise ValueError("Language correction is not supported; raw tokens are required")


@dataclass(frozen=True)
class RecognizedTextToken:
    """One recognized text fragment."""

    text: str
    confidence: float  # Always in [0.3, 1.0]
    bbox: Rect  # ANALYSIS space, normalized [0, 1], top-left origin

    def __post_init__(self):
        if not MIN_TOKEN_CONFIDENCE <= self.confidence <= 1.0:
            raise ValueError(
                f"Token confidence must be in [{MIN_TOKEN_CONFIDENCE}, 1], got {self.confidence}"
            )
        self.bbox.require_space(CoordinateSpace.ANALYSIS)

    @property
    def center(self) -> Tuple[float, float]:
        return (self.bbox.x + self.bbox.width / 2.0, self.bbox.y + self.bbox.height / 2.0)


def validate_image(image: Any) -> np.ndarray:
    """Raise InvalidImage unless *image* is a usable uint8 pixel buffer."""
    if not isinstance(image, np.ndarray):
        raise InvalidImage(f"Expected a numpy array, got {type(image).__name__}")
    if image.size == 0:
        raise InvalidImage("Image is empty")
    if image.dtype != np.uint8:
        raise InvalidImage(f"Expected uint8 pixels, got {image.dtype}")
    if image.ndim == 2:
        return image
    if image.ndim == 3 and image.shape[2] in (1, 3, 4):
        return image
    raise InvalidImage(f"Unsupported image shape {image.shape}")


class RecognitionAdapter:
    """
    Runs the recognition engine on a prepared image.

    The engine may work asynchronously internally; :meth:`recognize` only
    returns once the engine has produced its complete answer.  Empty results
    are a normal outcome, only malformed images raise.
    """

    def __init__(
        self,
        engine: Any,
        config: RecognitionConfig = RecognitionConfig(),
        min_confidence: float = MIN_TOKEN_CONFIDENCE,
    ):
        """
        Args:
            engine: Object with ``recognize(image, config)``
            config: Engine configuration
            min_confidence: Drop observations below this (cannot be below 0.3)
        """
        if not MIN_TOKEN_CONFIDENCE <= min_confidence <= 1.0:
            raise ValueError(
                f"min_confidence must be in [{MIN_TOKEN_CONFIDENCE}, 1], got {min_confidence}"
            )
        self.engine = engine
        self.config = config
        self.min_confidence = min_confidence

        self.stats = {"calls": 0, "kept": 0, "dropped": 0}

    def recognize(self, image: Any) -> List[RecognizedTextToken]:
        """
        Recognize text in *image*.

        Args:
            image: uint8 image (gray, BGR or BGRA)

        Returns:
            Tokens with confidence >= min_confidence, in engine order
        """
        image = validate_image(image)
        self.stats["calls"] += 1

        observations = self.engine.recognize(image, self.config) or []
        tokens = self._filter(observations)

        log.debug("Recognized %d token(s) from %d observation(s)", len(tokens), len(observations))
        return tokens

    def _filter(self, observations: Sequence[RawObservation]) -> List[RecognizedTextToken]:
        tokens: List[RecognizedTextToken] = []
        for text, confidence, bbox in observations:
            text = (text or "").strip()
            confidence = min(float(confidence), 1.0)

            if (
                not text
                or confidence < self.min_confidence
                or bbox.space is not CoordinateSpace.ANALYSIS
            ):
                self.stats["dropped"] += 1
                continue

            tokens.append(RecognizedTextToken(text=text, confidence=confidence, bbox=bbox))
            self.stats["kept"] += 1
        return tokens

    def get_stats(self) -> Dict[str, float]:
        """Get adapter statistics."""
        seen = max(self.stats["kept"] + self.stats["dropped"], 1)
        return {
            "calls": self.stats["calls"],
            "kept": self.stats["kept"],
            "dropped": self.stats["dropped"],
            "dropped_pct": 100 * self.stats["dropped"] / seen,
        }

    def reset_stats(self) -> None:
        """Reset statistics."""
        self.stats = {"calls": 0, "kept": 0, "dropped": 0}


# ---------------------------------------------------------------------------
# EasyOCR engine
# ---------------------------------------------------------------------------


class EasyOCREngine:
    """Recognition engine backed by EasyOCR.

    ``accurate`` mode uses beam search decoding, ``fast`` uses greedy
    decoding.  EasyOCR has no language-correction step, so its raw output
    already matches what the adapter expects.

    Args:
        languages: EasyOCR language codes (one).
        gpu: Run the reader on CUDA.
    """

    DECODERS = {"accurate": "beamsearch", "fast": "greedy"}

    def __init__(self, languages: Sequence[str] = ("en",), gpu: bool = False):
        import easyocr

        log.info("Initializing EasyOCR (languages=%s, gpu=%s)", list(languages), gpu)
        self.languages = tuple(languages)
        self.reader = easyocr.Reader(list(self.languages), gpu=gpu, verbose=False)

    def recognize(self, image: np.ndarray, config: RecognitionConfig) -> List[RawObservation]:
        if tuple(config.languages) != self.languages:
            raise ValueError(
                f"Reader was built for {self.languages}, config asks for {config.languages}"
            )
        h, w = image.shape[:2]
        results = self.reader.readtext(
            image,
            detail=1,
            paragraph=False,
            decoder=self.DECODERS[config.accuracy],
        )
        return [self.to_observation(points, text, conf, w, h) for points, text, conf in results]

    @staticmethod
    def to_observation(
        points: Sequence[Sequence[float]],
        text: str,
        confidence: float,
        width: int,
        height: int,
    ) -> RawObservation:
        """Convert an EasyOCR 4-point box to a normalized analysis-space rect."""
        xs = [float(p[0]) for p in points]
        ys = [float(p[1]) for p in points]
        x0 = min(max(min(xs) / width, 0.0), 1.0)
        x1 = min(max(max(xs) / width, 0.0), 1.0)
        y0 = min(max(min(ys) / height, 0.0), 1.0)
        y1 = min(max(max(ys) / height, 0.0), 1.0)
        bbox = Rect(x0, y0, x1 - x0, y1 - y0, CoordinateSpace.ANALYSIS)
        return text, float(confidence), bbox
