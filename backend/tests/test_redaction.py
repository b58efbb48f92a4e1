"""Tests for cloak.redaction: placeholder maps, the pattern set and its options."""

from __future__ import annotations

import pytest

from cloak.pii_detector import (
    LegacyPatternDetector,
    PIIDetection,
    PIIScanResult,
    PIIType,
    Severity,
)
from cloak.redaction import (
    RedactionMap,
    iban_valid,
    nhs_number_valid,
    ni_number_valid,
    redact,
    redaction_pattern,
)


@pytest.fixture
def detector() -> LegacyPatternDetector:
    return LegacyPatternDetector()


class TestRedactionMap:
    """Placeholders are sequential per label and stable per value."""

    def test_placeholder_format(self):
        redaction_map = RedactionMap()
        assert redaction_map.placeholder_for("a@b.io", "EMAIL") == "[EMAIL_1]"
        assert redaction_map.placeholder_for("c@d.io", "EMAIL") == "[EMAIL_2]"
        assert redaction_map.placeholder_for("555-123-4567", "PHONE") == "[PHONE_1]"

    def test_same_value_same_placeholder(self):
        redaction_map = RedactionMap()
        first = redaction_map.placeholder_for("a@b.io", "EMAIL")
        assert redaction_map.placeholder_for("a@b.io", "EMAIL") == first
        assert len(redaction_map) == 1

    def test_restore_prefers_longer_tokens(self):
        redaction_map = RedactionMap()
        for i in range(10):
            redaction_map.placeholder_for(f"user{i}@corp.io", "EMAIL")
        text = "[EMAIL_10] wrote to [EMAIL_1]"
        assert redaction_map.restore(text) == "user9@corp.io wrote to user0@corp.io"

    def test_unknown_placeholders_are_left_alone(self):
        redaction_map = RedactionMap()
        assert redaction_map.restore("see [PHONE_7]") == "see [PHONE_7]"


# -----------------------------------------------------------------------
# Scan-driven redaction
# -----------------------------------------------------------------------


class TestRedactWithScan:
    """Spans from a scan are replaced and can be restored."""

    def test_redacts_email_and_phone(self, detector: LegacyPatternDetector):
        text = "Reach jane@example.com or 555-123-4567 today"
        result = redact(text, detector.scan(text))
        assert result.text == "Reach [EMAIL_1] or [PHONE_US_1] today"
        assert result.redaction_map.restore(result.text) == text
        assert result.detection_stats == {"EMAIL": 1, "PHONE_US": 1}
        assert result.pii_detected

    def test_repeated_value_reuses_placeholder(self, detector: LegacyPatternDetector):
        text = "jane@example.com then jane@example.com"
        result = redact(text, detector.scan(text))
        assert result.text == "[EMAIL_1] then [EMAIL_1]"
        assert result.redaction_map.placeholders() == {"[EMAIL_1]": "jane@example.com"}
        assert result.detection_stats == {"EMAIL": 1}

    def test_scan_only_labels_use_detection_type(self, detector: LegacyPatternDetector):
        text = "Reach jane@example.com or 555-123-4567 today"
        result = redact(text, detector.scan(text), patterns=(), include_names=False)
        assert result.text == "Reach [EMAIL_1] or [PHONE_1] today"

    def test_overlapping_detections_collapse_to_outer_span(self):
        text = "ref: abcdefghijklmnop."
        scan = PIIScanResult(
            detections=(
                PIIDetection(PIIType.EMAIL, "abcdef", 5, 11, Severity.HIGH, "e"),
                PIIDetection(PIIType.URL, "abcdefghijklmnop", 5, 21, Severity.LOW, "u"),
            )
        )
        result = redact(text, scan, patterns=(), include_names=False, include_addresses=False)
        assert result.text == "ref: [URL_1]."

    def test_name_grammar_outranks_scan_names(self):
        text = "name: John Smith."
        scan = PIIScanResult(
            detections=(
                PIIDetection(PIIType.POSSIBLE_NAME, "John", 6, 10, Severity.HIGH, "n"),
                PIIDetection(PIIType.STANDALONE_NAME, "John Smith", 6, 16, Severity.MEDIUM, "n"),
            )
        )
        assert redact(text, scan, patterns=()).text == "name: [NAME_1]."

    def test_clean_text_is_unchanged(self, detector: LegacyPatternDetector):
        text = "Nothing sensitive here."
        result = redact(text, detector.scan(text))
        assert result.text == text
        assert not result.pii_detected


# -----------------------------------------------------------------------
# Pattern set
# -----------------------------------------------------------------------


class TestRedactionPatterns:
    """UK and financial identifiers beyond the scan categories."""

    def test_ni_number(self):
        result = redact("My NI number is AB 12 34 56 C.")
        assert result.text == "My NI number is [NI_NUMBER_1]."

    def test_ni_number_with_reserved_prefix_is_kept(self):
        text = "Code GB 12 34 56 C is a sample"
        assert redact(text).text == text

    def test_valid_iban(self):
        result = redact("Pay into GB82 WEST 1234 5698 7654 32 today")
        assert result.text == "Pay into [IBAN_1] today"

    def test_iban_with_bad_checksum_is_kept(self):
        text = "Pay into GB00 WEST 1234 5698 7654 32 today"
        assert redact(text).text == text

    def test_full_address_outranks_postcode(self):
        result = redact("Send it to 10 Downing Street, London SW1A 2AA please")
        assert result.text == "Send it to [ADDRESS_1] please"

    def test_addresses_can_be_left_to_postcodes(self):
        result = redact(
            "Send it to 10 Downing Street, London SW1A 2AA please",
            include_addresses=False,
            include_names=False,
        )
        assert "[POSTCODE_UK_1]" in result.text
        assert "[ADDRESS" not in result.text

    def test_names_option(self):
        text = "I spoke with Alice Carter yesterday"
        assert redact(text).text == "I spoke with [NAME_1] yesterday"
        assert redact(text, include_names=False).text == text

    def test_place_after_preposition_is_not_a_name(self):
        text = "We met in Central Park"
        assert redact(text).text == text

    def test_custom_patterns(self):
        case_ref = redaction_pattern("CASE_REF", r"\bCASE-\d{4}\b", 100)
        result = redact("Ref CASE-2041 attached", custom_patterns=[case_ref])
        assert result.text == "Ref [CASE_REF_1] attached"

    def test_invalid_card_is_kept(self):
        text = "Card 4111 1111 1111 1112 declined"
        assert "[CREDIT_CARD" not in redact(text, include_names=False).text


class TestValidators:
    def test_ni_number_rules(self):
        assert ni_number_valid("AB123456C")
        assert not ni_number_valid("GB123456C")
        assert not ni_number_valid("DA123456C")
        assert not ni_number_valid("AO123456C")

    def test_iban_checksum(self):
        assert iban_valid("GB82 WEST 1234 5698 7654 32")
        assert not iban_valid("GB82 WEST 1234 5698 7654 33")
        # Known country with the wrong length
        assert not iban_valid("GB82 WEST 1234 5698 7654")

    def test_nhs_check_digit(self):
        assert nhs_number_valid("943 476 5919")
        assert not nhs_number_valid("943 476 5918")
        assert not nhs_number_valid("12345")
