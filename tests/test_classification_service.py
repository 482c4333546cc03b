from unittest.mock import patch

import pytest

from app.services.classification_service import (
    ASK,
    BUCKET_GENERIC,
    BUCKET_PRIVATE,
    BUCKET_PUBLIC,
    apply_knowledge_update,
    classify,
    classify_by_rules,
    is_degenerate_rewrite,
    match_rule_buckets,
)
from app.services.knowledge_service import PRIVATE, PUBLIC


class TestRuleBuckets:
    @pytest.mark.parametrize(
        "text",
        [
            "the safe code is 1234",
            "Our supplier charges 5 AZN per bottle wholesale",
            "note to self: call the accountant",
            "код от двери 4455",
        ],
    )
    def test_private_signals(self, text):
        assert BUCKET_PRIVATE in match_rule_buckets(text)

    @pytest.mark.parametrize(
        "text",
        [
            "Our hours are 9-6 Monday to Friday",
            "Haircut price is now 25 AZN",
            "We moved to a new address on Nizami street",
            "Цены на маникюр выросли",
        ],
    )
    def test_public_signals(self, text):
        assert BUCKET_PUBLIC in match_rule_buckets(text)

    def test_generic_update_phrase(self):
        assert BUCKET_GENERIC in match_rule_buckets("Remember that Aysel is on vacation")


class TestClassifyByRules:
    def test_public_only(self):
        decision = classify_by_rules("Our hours are 9-6 Monday to Friday")
        assert decision.wants_update is True
        assert decision.target == PUBLIC
        assert decision.source == "rules"

    def test_private_only(self):
        assert classify_by_rules("the safe code is 1234").target == PRIVATE

    def test_both_buckets_asks(self):
        decision = classify_by_rules("Our supplier price went up, haircut price is now 30 AZN")
        assert decision.target == ASK

    def test_generic_only_asks(self):
        assert classify_by_rules("Remember that Aysel is on vacation").target == ASK

    def test_no_rule_returns_none(self):
        assert classify_by_rules("what do you think about my logo?") is None


class TestClassify:
    @patch("app.services.classification_service.extract_json")
    def test_rules_skip_llm(self, mock_extract):
        classify("Our hours are 9-6 Monday to Friday", has_public_kb=False, has_private_vault=False)
        mock_extract.assert_not_called()

    @patch("app.services.classification_service.extract_json", return_value=None)
    def test_malformed_llm_output_means_no_update(self, mock_extract):
        decision = classify("how is business going?", has_public_kb=True, has_private_vault=False)
        assert decision.wants_update is False
        mock_extract.assert_called_once()

    @patch(
        "app.services.classification_service.extract_json",
        return_value={"wants_update": True, "target": "everywhere"},
    )
    def test_unknown_llm_target_means_no_update(self, mock_extract):
        assert classify("hmm", has_public_kb=True, has_private_vault=True).wants_update is False

    @patch(
        "app.services.classification_service.extract_json",
        return_value={"wants_update": True, "target": "public"},
    )
    def test_llm_decision_used(self, mock_extract):
        decision = classify("the new girl is called Leyla", has_public_kb=True, has_private_vault=True)
        assert decision.wants_update is True
        assert decision.target == PUBLIC
        assert decision.source == "llm"


class TestDegenerateRewrite:
    def test_empty_candidate_rejected(self):
        assert is_degenerate_rewrite("some text", "") is True
        assert is_degenerate_rewrite("", "   ") is True

    def test_empty_original_accepts_anything(self):
        assert is_degenerate_rewrite(None, "x") is False

    def test_shrunk_below_fraction_rejected(self):
        assert is_degenerate_rewrite("a" * 100, "a" * 39) is True

    def test_at_fraction_accepted(self):
        assert is_degenerate_rewrite("a" * 100, "a" * 40) is False


class TestApplyKnowledgeUpdate:
    def test_scenario_public_then_private(self, db, make_profile):
        profile = make_profile(knowledge_base=None)

        decision = classify("Our hours are 9-6 Monday to Friday", has_public_kb=False, has_private_vault=False)
        assert decision.target == PUBLIC
        with patch(
            "app.services.classification_service.generate_text",
            return_value="Hours: 9-6 Monday to Friday",
        ):
            assert apply_knowledge_update(db, profile.id, decision.target, "Our hours are 9-6 Monday to Friday")

        db.refresh(profile)
        assert profile.knowledge_base == "Hours: 9-6 Monday to Friday"

        decision = classify("the safe code is 1234", has_public_kb=True, has_private_vault=False)
        assert decision.target == PRIVATE
        with patch("app.services.classification_service.generate_text", return_value="Safe code: 1234"):
            assert apply_knowledge_update(db, profile.id, decision.target, "the safe code is 1234")

        db.refresh(profile)
        assert profile.private_vault == "Safe code: 1234"
        assert profile.knowledge_base == "Hours: 9-6 Monday to Friday"

    def test_guard_rejection_leaves_store_unchanged(self, db, make_profile):
        original = "Haircut 30 AZN. Beard trim 15 AZN. Coloring 60 AZN. Open 10:00-20:00 every day."
        profile = make_profile(knowledge_base=original, knowledge_base_ru="ru copy")

        with patch("app.services.classification_service.generate_text", return_value="Haircut 35"):
            assert apply_knowledge_update(db, profile.id, PUBLIC, "haircut is 35 now") is False

        db.refresh(profile)
        assert profile.knowledge_base == original
        assert profile.knowledge_base_ru == "ru copy"

    def test_editor_failure_rejected(self, db, make_profile):
        profile = make_profile()
        with patch("app.services.classification_service.generate_text", side_effect=Exception("timeout")):
            assert apply_knowledge_update(db, profile.id, PRIVATE, "wifi password is 1") is False

    def test_ask_is_not_a_tier(self, db, make_profile):
        profile = make_profile()
        with pytest.raises(ValueError):
            apply_knowledge_update(db, profile.id, ASK, "x")
