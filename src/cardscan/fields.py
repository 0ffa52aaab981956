"""
Field classification collaborators.

The aggregator hands recognized tokens to a classifier and every extracted
string to a decryptor.  Both are external collaborators; this module holds
their record type and the defaults shipped with the package:

- ExtractedFields: card number, holder name, expiry, network (all optional)
- HeuristicCardClassifier: Luhn + IIN table + regex rules over OCR tokens
- PlainDecryptor: identity transform for engines that emit plain text

A classifier is any object with ``classify(tokens) -> ExtractedFields``
(a plain mapping with the same keys is accepted too).  A decryptor is any
object with ``decrypt(str) -> str`` that maps "" to "".
"""

import logging
import re
from dataclasses import dataclass
from statistics import median
from typing import Any, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from cardscan.recognition import RecognizedTextToken

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtractedFields:
    """Semantic fields pulled out of one frame's tokens."""

    card_number: Optional[str] = None
    holder_name: Optional[str] = None
    expiry_month: Optional[str] = None
    expiry_year: Optional[str] = None
    issuing_network: Optional[str] = None

    @classmethod
    def coerce(cls, value: Any) -> "ExtractedFields":
        """Accept an ExtractedFields, a mapping with the same keys, or None."""
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        if isinstance(value, Mapping):
            keys = ("card_number", "holder_name", "expiry_month", "expiry_year", "issuing_network")
            return cls(**{k: (str(value[k]) if value.get(k) else None) for k in keys})
        raise TypeError(f"Classifier returned unsupported type {type(value).__name__}")


class PlainDecryptor:
    """Decryptor for classifiers that already emit plain text."""

    def decrypt(self, value: Optional[str]) -> str:
        return value or ""


# ---------------------------------------------------------------------------
# Card networks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CardNetwork:
    """Issuing network identified by IIN prefix ranges and valid lengths."""

    name: str
    iin_ranges: Tuple[Tuple[str, str], ...]  # Inclusive (low, high) prefixes of equal length
    lengths: FrozenSet[int]

    def prefix_match(self, number: str) -> int:
        """Length of the longest matching IIN prefix, 0 if none."""
        best = 0
        for low, high in self.iin_ranges:
            n = len(low)
            if len(number) >= n and low <= number[:n] <= high:
                best = max(best, n)
        return best


CARD_NETWORKS: Tuple[CardNetwork, ...] = (
    CardNetwork("Visa", (("4", "4"),), frozenset({13, 16, 19})),
    CardNetwork("Mastercard", (("51", "55"), ("2221", "2720")), frozenset({16})),
    CardNetwork("American Express", (("34", "34"), ("37", "37")), frozenset({15})),
    CardNetwork(
        "Discover",
        (("6011", "6011"), ("644", "649"), ("65", "65"), ("622126", "622925")),
        frozenset({16, 17, 18, 19}),
    ),
    CardNetwork("JCB", (("3528", "3589"),), frozenset({16, 17, 18, 19})),
    CardNetwork(
        "Diners Club",
        (("300", "305"), ("36", "36"), ("38", "39")),
        frozenset({14, 15, 16, 17, 18, 19}),
    ),
    CardNetwork("UnionPay", (("62", "62"),), frozenset({16, 17, 18, 19})),
)


def luhn_valid(number: str) -> bool:
    """Luhn (mod 10) checksum."""
    if not number.isdigit():
        return False
    total = 0
    for i, ch in enumerate(reversed(number)):
        d = int(ch)
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total % 10 == 0


def detect_network(number: str) -> Optional[CardNetwork]:
    """Network with the longest matching IIN prefix whose lengths allow *number*."""
    best: Optional[CardNetwork] = None
    best_len = 0
    for network in CARD_NETWORKS:
        if len(number) not in network.lengths:
            continue
        n = network.prefix_match(number)
        if n > best_len:
            best, best_len = network, n
    return best


# ---------------------------------------------------------------------------
# Heuristic classifier
# ---------------------------------------------------------------------------


class HeuristicCardClassifier:
    """
    Extract card fields from OCR tokens with simple rules.

    Rules:
    - Card number: digit-dominated tokens get letter-to-digit cleanup, then
      single tokens and same-line token groups are searched for 13-19 digit
      runs that pass Luhn and match a network's IIN and length.
    - Expiry: MM/YY or MM/YYYY; the latest date wins (valid-thru over
      member-since).
    - Holder name: uppercase alphabetic token of 2-4 words, not a card
      keyword; highest confidence wins.
    - Network: derived from the accepted card number.
    """

    # Common OCR letter-to-digit confusions on embossed/printed numbers
    LETTER_TO_DIGIT = {
        "O": "0",
        "o": "0",
        "Q": "0",
        "D": "0",
        "I": "1",
        "l": "1",
        "|": "1",
        "Z": "2",
        "S": "5",
        "s": "5",
        "G": "6",
        "b": "6",
        "B": "8",
        "g": "9",
    }

    CARD_KEYWORDS = frozenset(
        {
            "VALID", "THRU", "FROM", "GOOD", "MONTH", "YEAR", "EXPIRES", "EXP",
            "MEMBER", "SINCE", "BANK", "CARD", "CREDIT", "DEBIT", "PLATINUM",
            "GOLD", "CLASSIC", "BUSINESS", "WORLD", "ELITE", "SIGNATURE",
            "INFINITE", "ELECTRON", "PREPAID", "VISA", "MASTERCARD", "AMERICAN",
            "EXPRESS", "DISCOVER", "JCB", "DINERS", "CLUB", "UNIONPAY",
            "INTERNATIONAL", "CUSTOMER", "SERVICE", "AUTHORIZED",
        }
    )

    _EXPIRY_RE = re.compile(r"(?<!\d)(0[1-9]|1[0-2])\s?[/\-]\s?(\d{4}|\d{2})(?!\d)")
    _NAME_RE = re.compile(r"^[A-Z][A-Z.'\-]*(?: [A-Z][A-Z.'\-]*){1,3}$")

    def __init__(
        self,
        min_number_length: int = 13,
        max_number_length: int = 19,
        min_name_letters: int = 5,
        digit_ratio: float = 0.6,
        century_pivot: int = 70,
    ):
        """
        Args:
            min_number_length: Shortest accepted card number
            max_number_length: Longest accepted card number
            min_name_letters: Minimum letters in a holder name
            digit_ratio: Fraction of digits that marks a token as numeric
            century_pivot: Two-digit years up to this value are 20YY, above it 19YY
        """
        self.min_number_length = min_number_length
        self.max_number_length = max_number_length
        self.min_name_letters = min_name_letters
        self.digit_ratio = digit_ratio
        self.century_pivot = century_pivot

    def classify(self, tokens: Sequence[RecognizedTextToken]) -> ExtractedFields:
        if not tokens:
            return ExtractedFields()

        number, network = self._find_card_number(tokens)
        month, year = self._find_expiry(tokens)
        name = self._find_holder_name(tokens)

        return ExtractedFields(
            card_number=number,
            holder_name=name,
            expiry_month=month,
            expiry_year=year,
            issuing_network=network,
        )

    # -- card number -------------------------------------------------------

    def _is_numeric(self, text: str) -> bool:
        compact = re.sub(r"[\s\-]", "", text)
        if not compact:
            return False
        digits = sum(c.isdigit() for c in compact)
        return digits / len(compact) >= self.digit_ratio

    def clean_digits(self, text: str) -> str:
        """Letter-to-digit cleanup, then keep digits only."""
        chars = [self.LETTER_TO_DIGIT.get(c, c) for c in text]
        return "".join(c for c in chars if c.isdigit())

    def _group_lines(self, tokens: Sequence[RecognizedTextToken]) -> List[List[RecognizedTextToken]]:
        """Group tokens whose vertical centers are within half a median height."""
        if not tokens:
            return []
        tolerance = median(t.bbox.height for t in tokens) / 2.0
        lines: List[List[RecognizedTextToken]] = []
        for token in sorted(tokens, key=lambda t: t.center[1]):
            if lines and abs(token.center[1] - lines[-1][-1].center[1]) <= tolerance:
                lines[-1].append(token)
            else:
                lines.append([token])
        return [sorted(line, key=lambda t: t.bbox.x) for line in lines]

    def _find_card_number(
        self, tokens: Sequence[RecognizedTextToken]
    ) -> Tuple[Optional[str], Optional[str]]:
        numeric = [t for t in tokens if self._is_numeric(t.text)]
        candidates: List[Tuple[str, float]] = []

        for token in numeric:
            candidates.append((self.clean_digits(token.text), token.confidence))
        for line in self._group_lines(numeric):
            if len(line) > 1:
                digits = "".join(self.clean_digits(t.text) for t in line)
                conf = sum(t.confidence for t in line) / len(line)
                candidates.append((digits, conf))

        best: Optional[Tuple[str, float, str]] = None
        for digits, conf in candidates:
            if not self.min_number_length <= len(digits) <= self.max_number_length:
                continue
            if not luhn_valid(digits):
                continue
            network = detect_network(digits)
            if network is None:
                continue
            if best is None or (len(digits), conf) > (len(best[0]), best[1]):
                best = (digits, conf, network.name)

        if best is None:
            return None, None
        log.debug("Card number candidate %s (%s, conf %.2f)", _mask(best[0]), best[2], best[1])
        return best[0], best[2]

    # -- expiry ------------------------------------------------------------

    def _find_expiry(
        self, tokens: Sequence[RecognizedTextToken]
    ) -> Tuple[Optional[str], Optional[str]]:
        found: List[Tuple[int, str]] = []
        for token in tokens:
            texts = {token.text}
            if self._is_numeric(token.text):
                texts.add("".join(self.LETTER_TO_DIGIT.get(c, c) for c in token.text))
            for text in texts:
                for month, year in self._EXPIRY_RE.findall(text):
                    found.append((self.full_year(year), month))

        if not found:
            return None, None
        year, month = max(found)
        return month, f"{year % 100:02d}"

    def full_year(self, year: str) -> int:
        """Four-digit year; two-digit years up to the pivot are 20YY, later ones 19YY."""
        value = int(year)
        if len(year) == 4:
            return value
        return 2000 + value if value <= self.century_pivot else 1900 + value

    # -- holder name -------------------------------------------------------

    def _find_holder_name(self, tokens: Sequence[RecognizedTextToken]) -> Optional[str]:
        best: Optional[RecognizedTextToken] = None
        for token in tokens:
            text = " ".join(token.text.split())
            if not self._NAME_RE.match(text):
                continue
            words = text.split(" ")
            if any(w.strip(".'-") in self.CARD_KEYWORDS for w in words):
                continue
            if sum(c.isalpha() for c in text) < self.min_name_letters:
                continue
            if best is None or (token.confidence, len(text)) > (best.confidence, len(best.text)):
                best = token
        return " ".join(best.text.split()) if best else None


def _mask(number: str) -> str:
    """Hide all but the last four digits for logging."""
    return "*" * max(len(number) - 4, 0) + number[-4:]
