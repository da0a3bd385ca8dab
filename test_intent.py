"""
Tests for intent classification and strategy selection.
"""

from agent.intent import IntentClassifier, classify_heuristic
from agent.strategy import profile_for, select_strategy, should_escalate_strategy
from agent.types import Mode, Strategy, Tier
from bedrock_service import GenerationResult
from config import app_config


class FakeClassifierService:
    def __init__(self, content):
        self.content = content
        self.calls = 0

    def generate_response(self, **kwargs):
        self.calls += 1
        return GenerationResult(content=self.content)


def test_trivial_mutation():
    intent = classify_heuristic("make the button blue")
    assert intent.tier == Tier.TRIVIAL
    assert intent.implies_mutation
    assert not intent.question


def test_question_does_not_mutate():
    intent = classify_heuristic("What does the header section render?")
    assert not intent.implies_mutation
    assert intent.question


def test_tier_hints():
    assert classify_heuristic("add a size chart feature to the product page").tier == Tier.COMPLEX
    assert classify_heuristic("migrate every section to the new schema").tier == Tier.ARCHITECTURAL
    assert classify_heuristic("update the footer links").tier == Tier.SIMPLE


def test_ask_mode_never_implies_mutation():
    classifier = IntentClassifier(use_model=False)
    assert classifier.classify("make the button blue", Mode.CODE).implies_mutation
    assert not classifier.classify("make the button blue", Mode.ASK).implies_mutation


def test_model_classification_is_cached_per_instance():
    service = FakeClassifierService('{"question": false, "mutation": true, "tier": "complex"}')
    classifier = IntentClassifier(service, use_model=True)
    intent = classifier.classify("make the button blue")
    assert intent.tier == Tier.COMPLEX
    assert intent.source == "model"
    classifier.classify("Make the button blue ")
    assert service.calls == 1
    IntentClassifier(service, use_model=True).classify("make the button blue")
    assert service.calls == 2


def test_bad_model_output_falls_back_to_heuristic():
    classifier = IntentClassifier(FakeClassifierService("not json"), use_model=True)
    intent = classifier.classify("make the button blue")
    assert intent.source == "heuristic"
    assert intent.tier == Tier.TRIVIAL


def test_strategy_selection_and_profiles():
    assert select_strategy(Tier.TRIVIAL) == Strategy.MINIMAL
    assert select_strategy(Tier.SIMPLE) == Strategy.HYBRID
    assert select_strategy(Tier.ARCHITECTURAL) == Strategy.MAXIMAL
    assert select_strategy(Tier.TRIVIAL, Strategy.MAXIMAL) == Strategy.MAXIMAL
    assert profile_for(Strategy.MAXIMAL).line_edits_only
    assert not profile_for(Strategy.MINIMAL).allow_delegation
    assert profile_for(Strategy.HYBRID).max_iterations == app_config.hybrid_max_iterations


def test_hybrid_escalates_only_when_stalled_at_complex():
    stall = app_config.stall_iterations
    assert should_escalate_strategy(Strategy.HYBRID, Tier.COMPLEX, stall, 0)
    assert not should_escalate_strategy(Strategy.HYBRID, Tier.COMPLEX, stall - 1, 0)
    assert not should_escalate_strategy(Strategy.HYBRID, Tier.SIMPLE, stall, 0)
    assert not should_escalate_strategy(Strategy.HYBRID, Tier.COMPLEX, stall, 1)
    assert not should_escalate_strategy(Strategy.MINIMAL, Tier.COMPLEX, stall, 0)
    assert not should_escalate_strategy(Strategy.HYBRID, Tier.COMPLEX, stall, 0, already_escalated=True)
