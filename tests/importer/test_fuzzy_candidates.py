from __future__ import annotations

import pytest

from venture_crm.importer import service
from venture_crm.importer.pipeline.fuzzy_candidates import (
    FuzzyCandidateDetector,
    name_similarity,
    normalize_linkedin,
    score_pair,
)
from venture_crm.models.importer.schema import DuplicateCandidate, DuplicateMatchType, DuplicateStatus


@pytest.mark.parametrize(
    "left, right, expected",
    [
        ("Acme Ventures", "  acme   VENTURES", 100),
        ("Acme", "Acme Ventures", (80 * 4) // 13),
        ("", "Acme", 0),
        (None, None, 0),
    ],
)
def test_name_similarity_rules(left, right, expected):
    assert name_similarity(left, right) == expected


def test_name_similarity_falls_back_to_edit_ratio():
    score = name_similarity("Jon Smith", "John Smith")
    assert 90 <= score < 100
    assert name_similarity("Jon Smith", "Grace Hopper") < 50


def test_short_names_do_not_count_as_containment():
    assert name_similarity("Al", "Alan Turing") != (80 * 2) // 11


def test_linkedin_normalization():
    assert normalize_linkedin("https://www.LinkedIn.com/in/ada/") == "linkedin.com/in/ada"
    assert normalize_linkedin("  ") is None


def test_score_pair_classifies_match_type(investor_factory):
    ada = investor_factory(full_name="Ada Lovelace", email="ada@example.com")
    same_email = investor_factory(full_name="Countess of Lovelace", email="ADA@example.com ")
    same_both = investor_factory(full_name="Ada Lovelace", email="ada@example.com")
    similar_name = investor_factory(full_name="Ada Lovelase")
    unrelated = investor_factory(full_name="Grace Hopper")

    assert score_pair(ada, same_email, "investor").match_type is DuplicateMatchType.EXACT_IDENTITY
    combined = score_pair(ada, same_both, "investor")
    assert combined.match_type is DuplicateMatchType.COMBINED
    assert combined.score == 100
    fuzzy = score_pair(ada, similar_name, "investor")
    assert fuzzy.match_type is DuplicateMatchType.FUZZY_NAME
    assert fuzzy.score == fuzzy.features["name_score"]
    assert score_pair(ada, unrelated, "investor") is None


def test_contacts_match_on_either_email_column(contact_factory):
    left = contact_factory(full_name="Grace Hopper", work_email="grace@navy.test")
    right = contact_factory(full_name="G. Hopper", personal_email="grace@navy.test")

    result = score_pair(left, right, "contact")

    assert result.match_type is DuplicateMatchType.EXACT_IDENTITY
    assert result.features["shared_email"] == ["grace@navy.test"]


def test_linkedin_identity_match(firm_factory):
    left = firm_factory(name="Acme", linkedin_url="https://linkedin.com/company/acme")
    right = firm_factory(name="Totally Different", linkedin_url="http://www.linkedin.com/company/acme/")

    assert score_pair(left, right, "firm").match_type is DuplicateMatchType.EXACT_IDENTITY


def test_detector_records_pending_candidates_once(investor_factory):
    jon = investor_factory(full_name="Jon Smith")
    john = investor_factory(full_name="John Smith")
    investor_factory(full_name="Ada Lovelace")
    investor_factory(full_name="John Smith", is_active=False)

    first = FuzzyCandidateDetector("investor").run()
    second = FuzzyCandidateDetector("investor").run()

    assert first.pairs_considered == 3
    assert first.candidates_created == 1
    assert first.fuzzy_name == 1
    assert second.candidates_created == 0
    assert second.skipped_existing == 1

    candidate = DuplicateCandidate.query.one()
    assert (candidate.primary_id, candidate.duplicate_id) == (jon.id, john.id)
    assert candidate.status is DuplicateStatus.PENDING
    assert candidate.features_json["name_score"] == candidate.score


def test_review_threshold_filters_weak_pairs(investor_factory):
    investor_factory(full_name="Jon Smith")
    investor_factory(full_name="John Smith")

    summary = FuzzyCandidateDetector("investor", review_threshold=99).run()

    assert summary.candidates_created == 0
    assert DuplicateCandidate.query.count() == 0


def test_service_uses_configured_thresholds(app, monkeypatch, investor_factory):
    monkeypatch.setitem(app.config, "IMPORTER_DEDUPE_NAME_THRESHOLD", 99)
    investor_factory(full_name="Jon Smith")
    investor_factory(full_name="John Smith")

    result = service.detect_duplicate_candidates("investors")

    assert result["candidatesCreated"] == 0
    assert result["pairsConsidered"] == 1
