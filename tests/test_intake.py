"""
test_intake.py
---------------
Test suite for the bill intake layers: everything that runs when a new
bill is uploaded or extracted.

Run from the project root:
    python -m pytest tests/ -v

Tests are organized by layer:
    - Provider Registry & Matcher
    - Duplicate Detector
    - Extraction Validator & Post-processing
    - Abuse Guards
    - Activity Monitor
    - Intake Pipeline (integration)
"""

import sys
import os
import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import date

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import reset_config
from core.models import Bill, DuplicateCandidate
from core.provider_registry import (
    get_registry, slugify, lookup_provider_id_by_name, resolve_provider,
    get_provider_name, get_category_from_provider,
)
from core.provider_matcher import fuzzy_match_provider, normalize, token_overlap, levenshtein
from core.duplicate_detector import DuplicateDetector, check_for_duplicate, candidate_from_fields
from core.extraction_validator import validate_extraction, try_parse_date
from core.extraction import (
    parse_model_response, sanitize_string, overall_confidence, build_extraction_result,
)
from guards.abuse_guards import GuardStore, RateLimiter, HashDeduplicator, content_hash
from monitoring.activity_monitor import ActivityMonitor
from pipeline import BillIntelligencePipeline


TODAY = date(2026, 10, 19)
DAY_MS = 24 * 60 * 60 * 1000


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config_cache():
    """Clears config cache before each test for isolation."""
    reset_config()
    yield
    reset_config()


class FakeClock:
    """Callable clock returning seconds; advanced by hand."""

    def __init__(self, start: float = 1_800_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return GuardStore()


def _existing_rogers(bill_id: str = "b1", **kwargs) -> Bill:
    values = dict(
        id=bill_id, company_name="Rogers", provider_id="rogers",
        total_amount=85.50, due_date=date(2026, 11, 1),
    )
    values.update(kwargs)
    return Bill(**values)


# =============================================================================
# PROVIDER REGISTRY & MATCHER TESTS
# =============================================================================

class TestProviderRegistry:
    def test_registry_loads_in_file_order(self):
        registry = get_registry()
        assert len(registry) > 100
        assert next(iter(registry)) == "hydro_one"

    def test_registry_is_read_only(self):
        with pytest.raises(TypeError):
            get_registry()["new_provider"] = None

    def test_exact_lookup_is_case_sensitive(self):
        assert lookup_provider_id_by_name("Rogers") == "rogers"
        assert lookup_provider_id_by_name("  Rogers ") == "rogers"
        assert lookup_provider_id_by_name("rogers") is None

    def test_resolve_known_provider(self):
        resolved = resolve_provider("Hudson's Bay")
        assert resolved.provider_id == "hudsons_bay"
        assert resolved.is_custom is False

    def test_resolve_custom_provider(self):
        resolved = resolve_provider(" Joe's Plumbing & Heating ")
        assert resolved.provider_id == "custom_joes_plumbing_heating"
        assert resolved.provider_name == "Joe's Plumbing & Heating"
        assert resolved.is_custom is True

    @pytest.mark.parametrize("name,slug", [
        ("Hudson's Bay", "hudsons_bay"),
        ("Hudson’s Bay", "hudsons_bay"),
        ("  --Corner  Gym--  ", "corner_gym"),
        ("A&W", "a_w"),
    ])
    def test_slugify(self, name, slug):
        assert slugify(name) == slug

    def test_name_and_category_lookups(self):
        assert get_provider_name("netflix") == "Netflix"
        assert get_provider_name("nope") is None
        assert get_category_from_provider("rogers") == {"category": "telecom", "subcategory": "mobile"}
        assert get_category_from_provider("nope") is None


class TestProviderMatcher:
    def test_normalize(self):
        assert normalize("  Hydro-Québec   Inc. ") == "hydroqubec inc"

    def test_token_overlap_counts_over_shorter_token_list(self):
        assert token_overlap("Bell Mobile", "Bell Mobility Canada") == pytest.approx(0.5)
        assert token_overlap("Bell Mobility Canada", "Bell Mobile") == pytest.approx(0.5)
        assert token_overlap("Rogers", "Rogers Cable") == pytest.approx(1.0)
        assert token_overlap("Bell Canada", "Bell Canada") == pytest.approx(1.0)

    def test_levenshtein(self):
        assert levenshtein("kitten", "sitting") == 3
        assert levenshtein("", "abc") == 3
        assert levenshtein("bell", "bell") == 0

    def test_single_token_entry_fully_overlapping_is_accepted(self):
        match = fuzzy_match_provider("Hydro Power Utility Bill")
        assert match is not None
        assert match.provider_id == "hydro_quebec"
        assert match.score >= 0.4

    def test_exact_normalized_match(self):
        match = fuzzy_match_provider("NETFLIX!")
        assert match.provider_id == "netflix"
        assert match.score == 1.0

    def test_containment_scores_point_nine(self):
        match = fuzzy_match_provider("Hydro One Networks Inc")
        assert match.provider_id == "hydro_one"
        assert match.score == 0.9
        assert match.category == "utilities"

    def test_earlier_entry_wins_containment_tie(self):
        match = fuzzy_match_provider("Rogers Communications")
        assert match.provider_id == "rogers"

    def test_unrelated_vendor_has_no_match(self):
        assert fuzzy_match_provider("zzzzqqq") is None

    @pytest.mark.parametrize("vendor", ["", "   ", "!!!"])
    def test_blank_vendor_has_no_match(self, vendor):
        assert fuzzy_match_provider(vendor) is None


# =============================================================================
# DUPLICATE DETECTOR TESTS
# =============================================================================

class TestDuplicateDetector:
    def test_exact_duplicate(self):
        candidate = DuplicateCandidate("Rogers", 85.50, date(2026, 11, 1))
        result = check_for_duplicate(candidate, [_existing_rogers()], "rogers")
        assert result.is_duplicate is True
        assert result.match_score == 1.0
        assert result.matched_bill_id == "b1"
        assert result.matched_bill_name == "Rogers"
        assert result.reason == "Possible duplicate: same provider, same amount, same due date"

    def test_amount_and_date_alone_reach_threshold(self):
        candidate = DuplicateCandidate("Bell", 85.50, date(2026, 11, 1))
        result = check_for_duplicate(candidate, [_existing_rogers()], "bell")
        assert result.is_duplicate is True
        assert result.match_score == pytest.approx(0.6)

    def test_name_fallback_with_similar_amount(self):
        candidate = DuplicateCandidate("Rogers Communications", 100.0, None)
        bill = _existing_rogers(provider_id="unknown", total_amount=101.5)
        result = check_for_duplicate(candidate, [bill], "rogers")
        assert result.is_duplicate is True
        assert result.reason == "Possible duplicate: same provider, similar amount"

    def test_empty_names_never_match(self):
        candidate = DuplicateCandidate("", 85.50, None)
        score, reasons = DuplicateDetector().score(candidate, _existing_rogers(provider_id="unknown"))
        assert "same provider" not in reasons
        assert score == pytest.approx(0.35)

    def test_near_due_date(self):
        candidate = DuplicateCandidate("Rogers", 85.50, date(2026, 11, 4))
        score, reasons = DuplicateDetector().score(candidate, _existing_rogers(), "rogers")
        assert score == pytest.approx(0.85)
        assert "similar due date" in reasons

    def test_first_match_wins(self):
        near = _existing_rogers("near", due_date=date(2026, 11, 3))
        exact = _existing_rogers("exact")
        candidate = DuplicateCandidate("Rogers", 85.50, date(2026, 11, 1))
        detector = DuplicateDetector()

        first = detector.check(candidate, [near, exact], "rogers")
        assert first.matched_bill_id == "near"
        assert first.match_score == pytest.approx(0.85)

        best = detector.best_match(candidate, [near, exact], "rogers")
        assert best.matched_bill_id == "exact"
        assert best.match_score == 1.0

    def test_no_duplicate(self):
        candidate = DuplicateCandidate("Netflix", 16.49, date(2026, 1, 1))
        result = check_for_duplicate(candidate, [_existing_rogers()], "netflix")
        assert result.is_duplicate is False
        assert result.match_score == 0.0
        assert result.matched_bill_id is None

    def test_candidate_from_fields(self):
        candidate = candidate_from_fields("Rogers", 85.5, "2026-11-01")
        assert candidate.due_date == date(2026, 11, 1)
        assert candidate_from_fields(None, None, None) == DuplicateCandidate("", None, None)


# =============================================================================
# EXTRACTION VALIDATOR TESTS
# =============================================================================

class TestExtractionValidator:
    def test_clean_input_passes(self):
        result = validate_extraction({"amount": 85.5, "dueDate": "2026-11-01"}, today=TODAY)
        assert result.is_valid is True
        assert result.corrected_amount == 85.5
        assert result.corrected_date == "2026-11-01"
        assert result.warnings == []

    def test_missing_fields_are_not_errors(self):
        result = validate_extraction({}, today=TODAY)
        assert result.is_valid is True
        assert result.corrected_amount is None
        assert result.corrected_date is None

    def test_non_numeric_amount_is_an_error(self):
        result = validate_extraction({"amount": "abc"}, today=TODAY)
        assert result.is_valid is False
        assert result.errors == ["Extracted amount is not a valid number"]
        assert result.corrected_amount is None

    def test_negative_amount_made_positive(self):
        result = validate_extraction({"amount": -42.5}, today=TODAY)
        assert result.corrected_amount == 42.5
        assert result.is_valid is True
        assert len(result.warnings) == 1

    def test_large_amount_kept_with_warning(self):
        result = validate_extraction({"amount": 150000}, today=TODAY)
        assert result.corrected_amount == 150000.0
        assert result.warnings == ["Amount over $100,000 - please verify"]

    def test_tiny_amount_rounds_to_cents(self):
        result = validate_extraction({"amount": 0.001}, today=TODAY)
        assert result.corrected_amount == 0.0
        assert len(result.warnings) == 1
        assert validate_extraction({"amount": "19.999"}, today=TODAY).corrected_amount == 20.0

    def test_integer_too_large_for_float_is_an_error(self):
        result = validate_extraction({"amount": 10 ** 400}, today=TODAY)
        assert result.is_valid is False
        assert result.errors == ["Extracted amount is not a valid number"]
        assert result.corrected_amount is None

    def test_day_month_year_reformatted(self):
        result = validate_extraction({"dueDate": "15/03/2026"}, today=TODAY)
        assert result.corrected_date == "2026-03-15"
        assert result.warnings == ["Date format corrected to 2026-03-15"]
        assert result.is_valid is True

    def test_impossible_iso_date_is_an_error(self):
        result = validate_extraction({"due_date": "2026-13-40"}, today=TODAY)
        assert result.is_valid is False
        assert result.errors == ["Extracted date is invalid"]
        assert result.corrected_date is None

    def test_unreadable_date_is_an_error(self):
        result = validate_extraction({"dueDate": "not a date"}, today=TODAY)
        assert result.errors == ["Could not parse the extracted date"]

    def test_literal_slot_fallback_rejected(self):
        result = validate_extraction({"dueDate": "45/99/2026"}, today=TODAY)
        assert result.is_valid is False
        assert result.errors == ["Extracted date is invalid"]

    def test_far_past_and_future_warn_only(self):
        past = validate_extraction({"dueDate": "2025-01-01"}, today=TODAY)
        future = validate_extraction({"dueDate": "2029-01-01"}, today=TODAY)
        assert past.is_valid and future.is_valid
        assert "in the past" in past.warnings[0]
        assert "in the future" in future.warnings[0]

    @pytest.mark.parametrize("text,expected", [
        ("15/03/2026", "2026-03-15"),
        ("03/15/2026", "2026-03-15"),
        ("05.04.2026", "2026-04-05"),
        ("5-4-2026", "2026-04-05"),
        ("March 15, 2026", "2026-03-15"),
        ("gibberish", None),
    ])
    def test_try_parse_date(self, text, expected):
        assert try_parse_date(text) == expected


# =============================================================================
# EXTRACTION POST-PROCESSING TESTS
# =============================================================================

class TestExtraction:
    def test_parse_fenced_json(self):
        assert parse_model_response('```json\n{"vendor": "Rogers"}\n```') == {"vendor": "Rogers"}

    def test_parse_json_wrapped_in_prose(self):
        text = 'Here is the bill: {"vendor": "Bell", "amount": 10} Let me know.'
        assert parse_model_response(text) == {"vendor": "Bell", "amount": 10}

    @pytest.mark.parametrize("text", ["", "no json here", "[1, 2]", "{broken"])
    def test_unparseable_response(self, text):
        assert parse_model_response(text) is None

    def test_sanitize_string(self):
        assert sanitize_string("<b>Hi</b>") == "bHi/b"
        assert sanitize_string(123) == ""
        assert sanitize_string("x" * 300, 200) == "x" * 200

    def test_overall_confidence(self):
        assert overall_confidence({}) == pytest.approx(0.5)
        raw = {"confidenceVendor": 0.9, "confidenceAmount": 1.0, "confidenceDueDate": 0.8}
        assert overall_confidence(raw) == pytest.approx(0.91)

    def test_build_result_for_known_provider(self):
        raw = {
            "vendor": "Rogers Communications",
            "amount": "85.5",
            "dueDate": "2026-11-01",
            "accountNumber": "<1234 5678>",
            "confidenceVendor": 0.9,
        }
        extraction, validation = build_extraction_result(raw, today=TODAY)
        assert validation.is_valid is True
        assert extraction.amount == 85.5
        assert extraction.due_date == "2026-11-01"
        assert extraction.account_number == "1234 5678"
        assert extraction.currency == "CAD"
        assert extraction.category == "telecom"
        assert extraction.subcategory == "mobile"
        assert extraction.matched_provider_id == "rogers"
        assert extraction.is_custom_provider is False
        assert extraction.confidence["vendor"] == 0.9
        assert extraction.confidence["amount"] == 0.5

    def test_build_result_for_custom_provider(self):
        raw = {"vendor": "zzzzqqq", "amount": 20, "currency": "USD", "category": "other"}
        extraction, _ = build_extraction_result(raw, today=TODAY)
        assert extraction.is_custom_provider is True
        assert extraction.matched_provider_id is None
        assert extraction.category == "other"
        assert extraction.subcategory is None
        assert extraction.currency == "USD"

    def test_malformed_vendor_and_confidences_fall_back(self):
        raw = {
            "vendor": 12345,
            "amount": 10,
            "confidenceVendor": "high",
            "confidenceAmount": float("nan"),
        }
        extraction, validation = build_extraction_result(raw, today=TODAY)
        assert validation.is_valid is True
        assert extraction.vendor == ""
        assert extraction.is_custom_provider is True
        assert extraction.confidence["vendor"] == 0.5
        assert extraction.confidence["amount"] == 0.5
        assert overall_confidence(raw) == pytest.approx(0.5)

    def test_long_integer_amount_from_model_reply_does_not_raise(self):
        raw = parse_model_response('{"vendor": "Bell", "amount": 1' + "0" * 400 + "}")
        extraction, validation = build_extraction_result(raw, today=TODAY)
        assert validation.is_valid is False
        assert extraction.amount is None


# =============================================================================
# ABUSE GUARD TESTS
# =============================================================================

class TestRateLimiter:
    def test_allows_up_to_limit(self, store, clock):
        limiter = RateLimiter(store, clock=clock)
        remaining = [limiter.check("user-1").remaining for _ in range(10)]
        assert remaining == list(range(9, -1, -1))

        blocked = limiter.check("user-1")
        assert blocked.allowed is False
        assert blocked.remaining == 0
        assert blocked.resets_in_ms == DAY_MS

    def test_resets_in_counts_down(self, store, clock):
        limiter = RateLimiter(store, clock=clock)
        limiter.check("user-1")
        clock.advance(3600)
        assert limiter.check("user-1").resets_in_ms == DAY_MS - 3600 * 1000

    def test_window_expiry_opens_fresh_window(self, store, clock):
        limiter = RateLimiter(store, clock=clock)
        for _ in range(11):
            limiter.check("user-1")
        clock.advance(24 * 3600)
        result = limiter.check("user-1")
        assert result.allowed is True
        assert result.remaining == 9

    def test_keys_are_independent(self, store, clock):
        limiter = RateLimiter(store, clock=clock)
        for _ in range(10):
            limiter.check("user-1")
        assert limiter.check("user-2").allowed is True
        assert limiter.check(limiter.ip_key("10.0.0.1")).allowed is True
        assert "ip_10.0.0.1" in store.rate_limits

    def test_concurrent_checks_never_exceed_limit(self, store):
        limiter = RateLimiter(store)
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: limiter.check("user-1"), range(50)))
        assert sum(1 for r in results if r.allowed) == 10


class TestContentHash:
    def test_known_value(self):
        # "a" is sampled as "aa": 97 * 31 + 97 = 3104 = "2e8" in base36.
        assert content_hash("a") == "2e8_1"

    def test_deterministic_and_length_sensitive(self):
        payload = "QUJD" * 2000
        assert content_hash(payload) == content_hash(payload)
        assert content_hash(payload) != content_hash(payload + "QUJD")
        assert content_hash(payload).endswith("_668")  # 8000 in base36

    def test_only_head_and_tail_are_sampled(self):
        head, tail = "H" * 1000, "T" * 1000
        assert content_hash(head + "x" * 50 + tail) == content_hash(head + "y" * 50 + tail)


class TestHashDeduplicator:
    def test_repeat_upload_rejected_within_window(self, store, clock):
        dedup = HashDeduplicator(store, clock=clock)
        assert dedup.check_and_record("user-1", "abc_1") is False
        assert dedup.check_and_record("user-1", "abc_1") is True
        assert dedup.check_and_record("user-2", "abc_1") is False

    def test_expired_hash_is_forgotten(self, store, clock):
        dedup = HashDeduplicator(store, clock=clock)
        dedup.check_and_record("user-1", "abc_1")
        clock.advance(60 * 60)
        assert dedup.check_and_record("user-1", "abc_1") is False

    def test_store_clear(self, store, clock):
        dedup = HashDeduplicator(store, clock=clock)
        dedup.check_and_record("user-1", "abc_1")
        store.clear()
        assert dedup.check_and_record("user-1", "abc_1") is False


# =============================================================================
# ACTIVITY MONITOR TESTS
# =============================================================================

class TestActivityMonitor:
    def test_rapid_creation_alerts_at_threshold(self, clock):
        monitor = ActivityMonitor(clock=clock)
        assert all(monitor.track_bill_creation() is None for _ in range(9))
        alert = monitor.track_bill_creation()
        assert alert.activity_type == "rapid_bill_creation"
        assert alert.severity == "medium"
        assert alert.metadata["count"] == 10

    def test_high_severity_at_double_threshold(self, clock):
        monitor = ActivityMonitor(clock=clock)
        alerts = [monitor.track_bill_creation() for _ in range(20)]
        assert alerts[-1].severity == "high"
        summary = monitor.report().summary
        assert summary == {"total_alerts": 11, "high_alerts": 1, "medium_alerts": 10}

    def test_spaced_failures_do_not_alert(self, clock):
        monitor = ActivityMonitor(clock=clock)
        for _ in range(6):
            assert monitor.track_failed_scan("parse_error") is None
            clock.advance(11 * 60)

    def test_burst_failures_alert(self, clock):
        monitor = ActivityMonitor(clock=clock)
        alerts = [monitor.track_failed_scan("parse_error") for _ in range(5)]
        assert alerts[-1].activity_type == "excessive_scan_failures"
        assert alerts[-1].metadata["error_type"] == "parse_error"

    def test_suspicious_payment(self, clock):
        monitor = ActivityMonitor(clock=clock)
        alert = monitor.track_suspicious_payment("b1", "Payment exceeds bill total")
        assert alert.metadata == {"bill_id": "b1"}
        assert monitor.report().alerts == [alert]


# =============================================================================
# INTAKE PIPELINE TESTS
# =============================================================================

class TestPipelineIntake:
    def test_upload_then_same_file_rejected(self, store, clock):
        pipeline = BillIntelligencePipeline(guard_store=store, clock=clock)
        assert pipeline.admit_upload("user-1", "10.0.0.1", "QUJD").allowed is True
        decision = pipeline.admit_upload("user-1", "10.0.0.1", "QUJD")
        assert decision.allowed is False
        assert decision.reason == "duplicate_file"

    def test_user_rate_limit(self, store, clock):
        pipeline = BillIntelligencePipeline(guard_store=store, clock=clock)
        for i in range(10):
            assert pipeline.admit_upload("user-1", f"10.0.0.{i}", f"file-{i}").allowed is True
        decision = pipeline.admit_upload("user-1", "10.0.0.99", "file-new")
        assert decision.reason == "rate_limited_user"
        assert decision.message == "Daily scan limit reached. Try again in 24 hours."
        assert decision.resets_in_ms == DAY_MS

    def test_ip_rate_limit(self, store, clock):
        pipeline = BillIntelligencePipeline(guard_store=store, clock=clock)
        for i in range(10):
            assert pipeline.admit_upload(f"user-{i}", "10.0.0.1", "same-file").allowed is True
        decision = pipeline.admit_upload("user-new", "10.0.0.1", "same-file")
        assert decision.reason == "rate_limited_ip"

    def test_missing_ip_uses_shared_key(self, store, clock):
        pipeline = BillIntelligencePipeline(guard_store=store, clock=clock)
        pipeline.admit_upload("user-1", None, "QUJD")
        assert "ip_unknown" in store.rate_limits

    def test_extraction_matching_existing_bill_not_accepted(self, store, clock):
        pipeline = BillIntelligencePipeline(guard_store=store, clock=clock)
        raw = {"vendor": "Rogers", "amount": 85.5, "dueDate": "2026-11-01"}
        outcome = pipeline.process_extraction(raw, [_existing_rogers()], today=TODAY)
        assert outcome.validation.is_valid is True
        assert outcome.duplicate.is_duplicate is True
        assert outcome.duplicate.matched_bill_id == "b1"
        assert outcome.accepted is False

    def test_new_extraction_accepted(self, store, clock):
        pipeline = BillIntelligencePipeline(guard_store=store, clock=clock)
        raw = {"vendor": "Netflix", "amount": 16.49, "dueDate": "05/11/2026"}
        outcome = pipeline.process_extraction(raw, [_existing_rogers()], today=TODAY)
        assert outcome.extraction.due_date == "2026-11-05"
        assert outcome.extraction.matched_provider_id == "netflix"
        assert outcome.accepted is True

    def test_invalid_extractions_tracked_as_scan_failures(self, store, clock):
        pipeline = BillIntelligencePipeline(guard_store=store, clock=clock)
        raw = {"vendor": "Bell", "amount": 50, "dueDate": "sometime soon"}
        outcomes = [pipeline.process_extraction(raw, [], today=TODAY) for _ in range(5)]
        assert all(not o.accepted for o in outcomes)
        report = pipeline.monitor.report()
        assert report.summary["total_alerts"] == 1
        assert report.alerts[0].activity_type == "excessive_scan_failures"


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    pytest.main([__file__, "-v"])
