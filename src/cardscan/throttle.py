"""Frame throttling for the preprocessing chain."""

from typing import Dict


class ThrottleScheduler:
    """
    Decides per frame whether the heavy preprocessing chain runs.

    The chain is expensive compared to the per-frame budget of a live
    capture callback, so it only runs on every ``period``-th frame.  Frames
    that skip it are still cropped, resized and sent to recognition.

    The frame counter is not stored here: the caller owns it and passes it
    in, then calls :meth:`advance` to get the next value.  The counter is an
    unsigned 8-bit value that wraps from 255 back to 0.
    """

    def __init__(self, period: int = 3, modulus: int = 256):
        """
        Args:
            period: Run heavy preprocessing when ``frame_index % period == 0``
            modulus: Counter wraps to 0 at this value
        """
        if period < 1:
            raise ValueError(f"period must be >= 1, got {period}")
        if modulus < 1:
            raise ValueError(f"modulus must be >= 1, got {modulus}")
        self.period = period
        self.modulus = modulus

        self.stats = {"heavy": 0, "light": 0}

    def _check(self, frame_index: int) -> None:
        if not 0 <= frame_index < self.modulus:
            raise ValueError(
                f"frame_index must be in [0, {self.modulus - 1}], got {frame_index}"
            )

    def should_run_heavy_preprocessing(self, frame_index: int) -> bool:
        """Return True if the frame at *frame_index* gets the full chain."""
        self._check(frame_index)
        heavy = frame_index % self.period == 0
        self.stats["heavy" if heavy else "light"] += 1
        return heavy

    def advance(self, frame_index: int) -> int:
        """Return the counter value for the next frame (wraps, never raises on 255)."""
        self._check(frame_index)
        return (frame_index + 1) % self.modulus

    def get_stats(self) -> Dict[str, float]:
        """Get throttling statistics."""
        total = max(self.stats["heavy"] + self.stats["light"], 1)
        return {
            "heavy": self.stats["heavy"],
            "heavy_pct": 100 * self.stats["heavy"] / total,
            "light": self.stats["light"],
            "light_pct": 100 * self.stats["light"] / total,
        }

    def reset_stats(self) -> None:
        """Reset statistics."""
        self.stats = {"heavy": 0, "light": 0}
