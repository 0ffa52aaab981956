"""
Result aggregation.

Turns per-frame tokens into card records and keeps the latest record for
each card number:

- ScanResult: public record for one card (immutable, always fully built)
- ResultSet: card number -> latest ScanResult
- FieldAggregator: classify, decrypt, upsert
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence

from cardscan.fields import ExtractedFields, HeuristicCardClassifier, PlainDecryptor
from cardscan.recognition import RecognizedTextToken

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanResult:
    """A scanned card, or a terminal error when ``error`` is set."""

    card_number: str = ""
    holder_name: str = ""
    expiry_date: str = ""  # MM/YY, empty unless month and year are both known
    issuing_network: str = ""
    error: str = ""

    @property
    def is_complete(self) -> bool:
        """Card number and expiry both present (the session's stop condition)."""
        return bool(self.card_number) and bool(self.expiry_date)

    @property
    def is_error(self) -> bool:
        return bool(self.error)

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


def compose_expiry(month: Optional[str], year: Optional[str]) -> str:
    """Build ``MM/YY``; empty when either part is missing or not numeric."""
    month = (month or "").strip()
    year = (year or "").strip()
    if not (month.isdigit() and year.isdigit()):
        return ""
    m = int(month)
    if not 1 <= m <= 12:
        return ""
    return f"{m:02d}/{year[-2:].zfill(2)}"


class ResultSet:
    """Latest ScanResult per card number.

    Not thread-safe; the session only mutates it from the aggregation thread
    and hands out copies from :meth:`snapshot`.
    """

    def __init__(self, results: Optional[Dict[str, ScanResult]] = None):
        self._results: Dict[str, ScanResult] = dict(results or {})

    def upsert(self, result: ScanResult) -> bool:
        """Insert or replace the entry for ``result.card_number``.

        Returns:
            True if the card number was new
        """
        if not result.card_number:
            raise ValueError("ResultSet entries require a non-empty card number")
        is_new = result.card_number not in self._results
        self._results[result.card_number] = result
        return is_new

    def get(self, card_number: str) -> Optional[ScanResult]:
        return self._results.get(card_number)

    def __getitem__(self, card_number: str) -> ScanResult:
        return self._results[card_number]

    def __contains__(self, card_number: object) -> bool:
        return card_number in self._results

    def __len__(self) -> int:
        return len(self._results)

    def __iter__(self) -> Iterator[str]:
        return iter(self._results)

    def values(self) -> List[ScanResult]:
        return list(self._results.values())

    def clear(self) -> None:
        self._results = {}

    def snapshot(self) -> "ResultSet":
        """Independent copy; ScanResults are immutable so a shallow copy suffices."""
        return ResultSet(self._results)

    def to_dict(self) -> Dict[str, Dict[str, str]]:
        return {number: result.to_dict() for number, result in self._results.items()}

    def export(self, filepath: str) -> None:
        """Export results to a JSON file."""
        data = [result.to_dict() for result in self._results.values()]
        with open(filepath, "w") as f:
            json.dump(data, f, indent=2)

    def __repr__(self) -> str:
        return f"ResultSet({len(self)} card(s))"


class FieldAggregator:
    """
    Classifies tokens into card fields and merges them by card number.

    A frame whose classification has no card number changes nothing.
    Otherwise every field is decrypted on its own, a complete ScanResult is
    built, and it replaces any earlier result for the same number.
    """

    def __init__(self, classifier: Any = None, decryptor: Any = None):
        """
        Args:
            classifier: Object with ``classify(tokens)``; defaults to HeuristicCardClassifier
            decryptor: Object with ``decrypt(str)``; defaults to PlainDecryptor
        """
        self.classifier = classifier or HeuristicCardClassifier()
        self.decryptor = decryptor or PlainDecryptor()
        self.results = ResultSet()

        self.stats = {"submitted": 0, "inserted": 0, "updated": 0, "no_match": 0}

    def _decrypt(self, value: Optional[str]) -> str:
        if not value:
            return ""
        return self.decryptor.decrypt(value) or ""

    def submit(self, tokens: Sequence[RecognizedTextToken]) -> Optional[ScanResult]:
        """
        Classify one frame's tokens and record the result.

        Args:
            tokens: Recognized tokens from one frame

        Returns:
            The new ScanResult, or None if no card number was found
        """
        self.stats["submitted"] += 1
        fields = ExtractedFields.coerce(self.classifier.classify(tokens))

        if not fields.card_number:
            self.stats["no_match"] += 1
            return None

        card_number = self._decrypt(fields.card_number)
        if not card_number:
            self.stats["no_match"] += 1
            log.warning("Card number decrypted to an empty string; ignoring frame")
            return None

        result = ScanResult(
            card_number=card_number,
            holder_name=self._decrypt(fields.holder_name),
            expiry_date=compose_expiry(
                self._decrypt(fields.expiry_month),
                self._decrypt(fields.expiry_year),
            ),
            issuing_network=self._decrypt(fields.issuing_network),
        )

        if self.results.upsert(result):
            self.stats["inserted"] += 1
            log.info("Added new card ending %s", card_number[-4:])
        else:
            self.stats["updated"] += 1
            log.info("Updated card ending %s", card_number[-4:])
        return result

    def current_results(self) -> ResultSet:
        """Snapshot of the result set."""
        return self.results.snapshot()

    def clear(self) -> None:
        self.results.clear()

    def get_stats(self) -> Dict[str, int]:
        """Get aggregation statistics."""
        return dict(self.stats)

    def reset_stats(self) -> None:
        """Reset statistics."""
        self.stats = {"submitted": 0, "inserted": 0, "updated": 0, "no_match": 0}
