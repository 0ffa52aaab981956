"""Tests for result aggregation."""

import json

import pytest

from cardscan.aggregation import FieldAggregator, ResultSet, ScanResult, compose_expiry
from cardscan.fields import ExtractedFields
from cardscan.geometry import CoordinateSpace, Rect
from cardscan.recognition import RecognizedTextToken


VISA = "4111111111111111"
MASTERCARD = "5500000000000004"


class ScriptedClassifier:
    """Returns the given fields in order, one per call."""

    def __init__(self, *fields):
        self.fields = list(fields)
        self.seen = []

    def classify(self, tokens):
        self.seen.append(list(tokens))
        return self.fields.pop(0)


class ReversingDecryptor:
    def decrypt(self, value):
        return value[::-1]


# ---------------------------------------------------------------------------
# ScanResult / compose_expiry Tests
# ---------------------------------------------------------------------------


class TestScanResult:
    """Tests for ScanResult."""

    def test_complete(self):
        assert ScanResult(card_number=VISA, expiry_date="12/27").is_complete
        assert not ScanResult(card_number=VISA, holder_name="ANN LEE").is_complete
        assert not ScanResult(expiry_date="12/27").is_complete

    def test_error_result(self):
        result = ScanResult(error="Camera permission is required.")

        assert result.is_error
        assert result.card_number == ""
        assert not result.is_complete

    def test_to_dict(self):
        result = ScanResult(card_number=VISA, issuing_network="Visa")

        assert result.to_dict() == {
            "card_number": VISA,
            "holder_name": "",
            "expiry_date": "",
            "issuing_network": "Visa",
            "error": "",
        }


class TestComposeExpiry:
    """Tests for compose_expiry."""

    @pytest.mark.parametrize(
        "month,year,expected",
        [
            ("12", "27", "12/27"),
            ("1", "27", "01/27"),
            ("03", "2029", "03/29"),
            ("12", None, ""),
            (None, "27", ""),
            ("", "", ""),
            ("13", "27", ""),
            ("ab", "27", ""),
        ],
    )
    def test_compose(self, month, year, expected):
        assert compose_expiry(month, year) == expected


# ---------------------------------------------------------------------------
# ResultSet Tests
# ---------------------------------------------------------------------------


class TestResultSet:
    """Tests for ResultSet."""

    def test_upsert_new_then_update(self):
        results = ResultSet()

        assert results.upsert(ScanResult(card_number=VISA, holder_name="ANN LEE")) is True
        assert results.upsert(ScanResult(card_number=VISA, holder_name="JANE DOE")) is False
        assert len(results) == 1
        assert results[VISA].holder_name == "JANE DOE"

    def test_keyed_by_card_number(self):
        results = ResultSet()
        results.upsert(ScanResult(card_number=VISA))
        results.upsert(ScanResult(card_number=MASTERCARD))

        assert set(results) == {VISA, MASTERCARD}
        assert VISA in results
        assert results.get("0000") is None

    def test_empty_number_rejected(self):
        with pytest.raises(ValueError):
            ResultSet().upsert(ScanResult(holder_name="ANN LEE"))

    def test_snapshot_is_independent(self):
        results = ResultSet()
        results.upsert(ScanResult(card_number=VISA))

        snapshot = results.snapshot()
        results.clear()

        assert len(results) == 0
        assert len(snapshot) == 1

    def test_export(self, tmp_path):
        results = ResultSet()
        results.upsert(ScanResult(card_number=VISA, expiry_date="12/27"))
        path = tmp_path / "results.json"

        results.export(str(path))

        with open(path) as f:
            data = json.load(f)
        assert data == [results[VISA].to_dict()]


# ---------------------------------------------------------------------------
# FieldAggregator Tests
# ---------------------------------------------------------------------------


class TestFieldAggregator:
    """Tests for FieldAggregator."""

    @pytest.fixture
    def tokens(self):
        rect = Rect(0.1, 0.5, 0.8, 0.06, CoordinateSpace.ANALYSIS)
        return [RecognizedTextToken("4111 1111 1111 1111", 0.9, rect)]

    def test_no_card_number_changes_nothing(self, tokens):
        aggregator = FieldAggregator(ScriptedClassifier(ExtractedFields(holder_name="ANN LEE")))

        result = aggregator.submit(tokens)

        assert result is None
        assert len(aggregator.current_results()) == 0
        assert aggregator.get_stats()["no_match"] == 1

    def test_empty_card_number_after_existing_entry(self, tokens):
        aggregator = FieldAggregator(
            ScriptedClassifier(
                ExtractedFields(card_number=VISA, holder_name="ANN LEE"),
                ExtractedFields(card_number="", holder_name="JANE DOE"),
            )
        )

        aggregator.submit(tokens)
        before = aggregator.current_results().to_dict()
        assert aggregator.submit(tokens) is None

        assert aggregator.current_results().to_dict() == before

    def test_latest_holder_wins(self, tokens):
        aggregator = FieldAggregator(
            ScriptedClassifier(
                ExtractedFields(card_number=VISA, holder_name="A"),
                ExtractedFields(card_number=VISA, holder_name="B"),
            )
        )

        aggregator.submit(tokens)
        result = aggregator.submit(tokens)

        assert result.holder_name == "B"
        assert len(aggregator.results) == 1
        assert aggregator.results[VISA].holder_name == "B"
        assert aggregator.get_stats()["inserted"] == 1
        assert aggregator.get_stats()["updated"] == 1

    def test_later_frame_can_drop_a_field(self, tokens):
        """Each frame replaces the whole record; fields are not merged."""
        aggregator = FieldAggregator(
            ScriptedClassifier(
                ExtractedFields(card_number=VISA, expiry_month="12", expiry_year="27"),
                ExtractedFields(card_number=VISA),
            )
        )

        aggregator.submit(tokens)
        aggregator.submit(tokens)

        assert aggregator.results[VISA].expiry_date == ""

    def test_each_field_decrypted(self, tokens):
        aggregator = FieldAggregator(
            ScriptedClassifier(
                ExtractedFields(
                    card_number="4321",
                    holder_name="NNA",
                    expiry_month="21",
                    expiry_year="72",
                    issuing_network="asiV",
                )
            ),
            ReversingDecryptor(),
        )

        result = aggregator.submit(tokens)

        assert result == ScanResult(
            card_number="1234",
            holder_name="ANN",
            expiry_date="12/27",
            issuing_network="Visa",
        )

    def test_expiry_needs_month_and_year(self, tokens):
        aggregator = FieldAggregator(
            ScriptedClassifier(ExtractedFields(card_number=VISA, expiry_month="12"))
        )

        assert aggregator.submit(tokens).expiry_date == ""

    def test_mapping_from_classifier(self, tokens):
        aggregator = FieldAggregator(ScriptedClassifier({"card_number": VISA}))

        assert aggregator.submit(tokens).card_number == VISA

    def test_default_classifier(self, tokens):
        aggregator = FieldAggregator()

        result = aggregator.submit(tokens)

        assert result.card_number == VISA
        assert result.issuing_network == "Visa"

    def test_clear(self, tokens):
        aggregator = FieldAggregator(ScriptedClassifier(ExtractedFields(card_number=VISA)))
        aggregator.submit(tokens)

        aggregator.clear()

        assert len(aggregator.current_results()) == 0
