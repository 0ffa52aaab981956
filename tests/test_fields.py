"""Tests for card field classification."""

import pytest

from cardscan.fields import (
    ExtractedFields,
    HeuristicCardClassifier,
    PlainDecryptor,
    detect_network,
    luhn_valid,
)
from cardscan.geometry import CoordinateSpace, Rect
from cardscan.recognition import RecognizedTextToken


def tok(text, conf=0.9, x=0.1, y=0.5, w=0.18, h=0.06):
    return RecognizedTextToken(text, conf, Rect(x, y, w, h, CoordinateSpace.ANALYSIS))


# ---------------------------------------------------------------------------
# Luhn / network Tests
# ---------------------------------------------------------------------------


class TestLuhn:
    """Tests for the Luhn checksum."""

    @pytest.mark.parametrize(
        "number",
        ["4111111111111111", "5500000000000004", "378282246310005", "79927398713"],
    )
    def test_valid(self, number):
        assert luhn_valid(number) is True

    @pytest.mark.parametrize("number", ["4111111111111112", "79927398710", "4111-1111", ""])
    def test_invalid(self, number):
        assert luhn_valid(number) is False


class TestDetectNetwork:
    """Tests for IIN-based network detection."""

    @pytest.mark.parametrize(
        "number,network",
        [
            ("4111111111111111", "Visa"),
            ("4222222222222", "Visa"),
            ("5500000000000004", "Mastercard"),
            ("2221000000000009", "Mastercard"),
            ("378282246310005", "American Express"),
            ("6011111111111117", "Discover"),
            ("3530111333300000", "JCB"),
            ("30569309025904", "Diners Club"),
            ("6200000000000005", "UnionPay"),
        ],
    )
    def test_known_networks(self, number, network):
        assert detect_network(number).name == network

    def test_longest_prefix_wins(self):
        """622126 belongs to Discover even though 62 is UnionPay."""
        assert detect_network("6221260000000000").name == "Discover"

    def test_length_must_match(self):
        """Amex prefix with a 16-digit number is not Amex."""
        assert detect_network("3782822463100050") is None

    def test_unknown_prefix(self):
        assert detect_network("1234567812345670") is None


# ---------------------------------------------------------------------------
# ExtractedFields / PlainDecryptor Tests
# ---------------------------------------------------------------------------


class TestExtractedFields:
    """Tests for ExtractedFields."""

    def test_coerce_mapping(self):
        fields = ExtractedFields.coerce({"card_number": "4111111111111111", "holder_name": ""})

        assert fields.card_number == "4111111111111111"
        assert fields.holder_name is None
        assert fields.expiry_month is None

    def test_coerce_none(self):
        assert ExtractedFields.coerce(None) == ExtractedFields()

    def test_coerce_unsupported(self):
        with pytest.raises(TypeError):
            ExtractedFields.coerce(42)

    def test_plain_decryptor(self):
        decryptor = PlainDecryptor()

        assert decryptor.decrypt("4111") == "4111"
        assert decryptor.decrypt("") == ""
        assert decryptor.decrypt(None) == ""


# ---------------------------------------------------------------------------
# HeuristicCardClassifier Tests
# ---------------------------------------------------------------------------


class TestHeuristicCardClassifier:
    """Tests for HeuristicCardClassifier."""

    @pytest.fixture
    def classifier(self):
        return HeuristicCardClassifier()

    @pytest.fixture
    def card_tokens(self):
        """A typical card front: four number groups, expiry, name."""
        return [
            tok("4111", x=0.10, y=0.50),
            tok("1111", x=0.30, y=0.50),
            tok("1111", x=0.50, y=0.50),
            tok("1111", x=0.70, y=0.50),
            tok("VALID THRU", x=0.30, y=0.68),
            tok("12/27", x=0.50, y=0.70),
            tok("JOHN SMITH", conf=0.8, x=0.10, y=0.85, w=0.4),
        ]

    def test_full_card(self, classifier, card_tokens):
        fields = classifier.classify(card_tokens)

        assert fields.card_number == "4111111111111111"
        assert fields.issuing_network == "Visa"
        assert fields.expiry_month == "12"
        assert fields.expiry_year == "27"
        assert fields.holder_name == "JOHN SMITH"

    def test_token_order_does_not_matter(self, classifier, card_tokens):
        fields = classifier.classify(list(reversed(card_tokens)))

        assert fields.card_number == "4111111111111111"

    def test_no_tokens(self, classifier):
        assert classifier.classify([]) == ExtractedFields()

    def test_single_token_number(self, classifier):
        fields = classifier.classify([tok("5500 0000 0000 0004", w=0.8)])

        assert fields.card_number == "5500000000000004"
        assert fields.issuing_network == "Mastercard"

    def test_letter_confusions_cleaned(self, classifier):
        fields = classifier.classify([tok("4lll 1111 1111 1111", w=0.8)])

        assert fields.card_number == "4111111111111111"

    def test_luhn_failure_rejected(self, classifier):
        fields = classifier.classify([tok("4111 1111 1111 1112", w=0.8)])

        assert fields.card_number is None
        assert fields.issuing_network is None

    def test_numbers_on_different_lines_not_joined(self, classifier):
        fields = classifier.classify([
            tok("4111", y=0.2),
            tok("1111", y=0.4),
            tok("1111", y=0.6),
            tok("1111", y=0.8),
        ])

        assert fields.card_number is None

    def test_latest_expiry_wins(self, classifier):
        fields = classifier.classify([tok("MEMBER SINCE 05/19"), tok("09/28", y=0.7)])

        assert (fields.expiry_month, fields.expiry_year) == ("09", "28")

    def test_last_century_member_since(self, classifier):
        """A 1990s member-since date does not beat the valid-thru date."""
        fields = classifier.classify([
            tok("MEMBER SINCE 09/98"),
            tok("VALID THRU 11/27", y=0.7),
        ])

        assert (fields.expiry_month, fields.expiry_year) == ("11", "27")

    def test_mixed_year_widths(self, classifier):
        fields = classifier.classify([tok("01/2031"), tok("12/30", y=0.7)])

        assert (fields.expiry_month, fields.expiry_year) == ("01", "31")

    @pytest.mark.parametrize(
        "year,expected",
        [("27", 2027), ("70", 2070), ("71", 1971), ("98", 1998), ("2029", 2029)],
    )
    def test_full_year(self, classifier, year, expected):
        assert classifier.full_year(year) == expected

    def test_four_digit_year(self, classifier):
        fields = classifier.classify([tok("03/2029")])

        assert (fields.expiry_month, fields.expiry_year) == ("03", "29")

    def test_invalid_month_ignored(self, classifier):
        fields = classifier.classify([tok("13/27")])

        assert fields.expiry_month is None

    def test_keywords_are_not_names(self, classifier):
        fields = classifier.classify([tok("VALID THRU"), tok("PLATINUM CARD", y=0.7)])

        assert fields.holder_name is None

    def test_most_confident_name(self, classifier):
        fields = classifier.classify([
            tok("ANN LEE WONG", conf=0.6),
            tok("JANE DOE", conf=0.9, y=0.8),
        ])

        assert fields.holder_name == "JANE DOE"

    def test_lowercase_not_a_name(self, classifier):
        fields = classifier.classify([tok("john smith")])

        assert fields.holder_name is None
