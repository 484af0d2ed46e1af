"""
Unit tests for task complexity classification.
"""

import pytest

from subagent_orchestrator.models.core import Priority
from subagent_orchestrator.orchestration.classification import (
    CallableComplexityClassifier, ComplexityCategory, ComplexityClassifier,
    KeywordComplexityClassifier, LengthComplexityClassifier, suggest_capabilities
)


class TestKeywordComplexityClassifier:

    @pytest.fixture
    def classifier(self):
        return KeywordComplexityClassifier()

    @pytest.mark.parametrize("description,category,priority", [
        ("show a basic list", ComplexityCategory.SIMPLE, Priority.LOW),
        ("explain and compare both designs", ComplexityCategory.MODERATE, Priority.MEDIUM),
        ("optimize the algorithm architecture", ComplexityCategory.COMPLEX, Priority.HIGH),
        ("novel research on advanced topics", ComplexityCategory.EXPERT, Priority.HIGH),
    ])
    def test_keyword_categories(self, classifier, description, category, priority):
        assessment = classifier.classify(description)

        assert assessment.category == category
        assert assessment.suggested_priority == priority

    def test_empty_description(self, classifier):
        assessment = classifier.classify("")

        assert assessment.category == ComplexityCategory.SIMPLE
        assert assessment.score == 0
        assert assessment.confidence == 0

    def test_tie_keeps_simpler_category(self, classifier):
        assessment = classifier.classify("show and analyze")
        assert assessment.category == ComplexityCategory.SIMPLE

    def test_modifier_bonus(self, classifier):
        assessment = classifier.classify("explain several options")

        assert assessment.category == ComplexityCategory.MODERATE
        assert assessment.score == 2

    def test_question_bonus(self, classifier):
        assessment = classifier.classify("why?")

        assert assessment.score == 0.5
        assert assessment.confidence == pytest.approx(50 / 3)

    def test_length_bonus(self, classifier):
        assessment = classifier.classify(" ".join(["word"] * 51))
        assert assessment.score == 1

        assessment = classifier.classify(" ".join(["word"] * 101))
        assert assessment.score == 2

    def test_confidence_capped(self, classifier):
        assessment = classifier.classify("show a basic simple quick list display")

        assert assessment.score == 6
        assert assessment.confidence == 100
        assert set(assessment.matched_keywords) == {"show", "basic", "simple", "quick", "list", "display"}

    def test_suggested_capabilities(self, classifier):
        assessment = classifier.classify("Write tests for the React frontend API")
        assert assessment.suggested_capabilities == {"testing", "react", "apis"}


class TestOtherClassifiers:

    @pytest.mark.parametrize("words,category", [
        (10, ComplexityCategory.SIMPLE),
        (30, ComplexityCategory.MODERATE),
        (100, ComplexityCategory.COMPLEX),
        (200, ComplexityCategory.EXPERT),
    ])
    def test_length_classifier(self, words, category):
        assessment = LengthComplexityClassifier().classify(" ".join(["word"] * words))
        assert assessment.category == category

    def test_callable_classifier(self):
        classifier = CallableComplexityClassifier(lambda description: "expert")
        assessment = classifier.classify("anything")

        assert assessment.category == ComplexityCategory.EXPERT
        assert assessment.suggested_priority == Priority.HIGH

    def test_callable_classifier_rejects_unknown_category(self):
        classifier = CallableComplexityClassifier(lambda description: "trivial")
        with pytest.raises(ValueError):
            classifier.classify("anything")

    def test_protocol_conformance(self):
        assert isinstance(KeywordComplexityClassifier(), ComplexityClassifier)
        assert isinstance(LengthComplexityClassifier(), ComplexityClassifier)
        assert isinstance(CallableComplexityClassifier(str), ComplexityClassifier)


def test_suggest_capabilities_matches_whole_words():
    assert suggest_capabilities("Deploy with docker") == {"ci-cd", "docker"}
    assert suggest_capabilities("contest results") == set()
