"""
Task complexity classification ("auto mode").

A classifier turns a free-text task description into a suggested priority and
capability set. The dispatcher accepts any object implementing
``ComplexityClassifier``; the keyword scorer is the default.
"""

import re
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Set, runtime_checkable

from pydantic import BaseModel, Field

from ..models.core import Priority


class ComplexityCategory(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    EXPERT = "expert"


CATEGORY_PRIORITIES: Dict[ComplexityCategory, Priority] = {
    ComplexityCategory.SIMPLE: Priority.LOW,
    ComplexityCategory.MODERATE: Priority.MEDIUM,
    ComplexityCategory.COMPLEX: Priority.HIGH,
    ComplexityCategory.EXPERT: Priority.HIGH,
}

CATEGORY_KEYWORDS: Dict[ComplexityCategory, List[str]] = {
    ComplexityCategory.SIMPLE: ["list", "show", "display", "basic", "simple", "quick"],
    ComplexityCategory.MODERATE: ["analyze", "compare", "explain", "implement", "design"],
    ComplexityCategory.COMPLEX: ["optimize", "refactor", "architecture", "algorithm", "system", "complex"],
    ComplexityCategory.EXPERT: ["research", "innovation", "breakthrough", "novel", "advanced", "cutting-edge"],
}

# Keyword -> capability tag suggested when the keyword appears
CAPABILITY_KEYWORDS: Dict[str, str] = {
    "test": "testing",
    "tests": "testing",
    "review": "code-review",
    "security": "security-audit",
    "refactor": "refactoring",
    "deploy": "ci-cd",
    "docker": "docker",
    "kubernetes": "kubernetes",
    "database": "databases",
    "sql": "databases",
    "api": "apis",
    "react": "react",
    "frontend": "react",
    "design": "design-systems",
    "prototype": "prototyping",
    "accessibility": "accessibility",
    "performance": "performance-testing",
    "monitoring": "monitoring",
}

_MODIFIER_PATTERN = re.compile(r"\b(multiple|several|various|complex|difficult)\b", re.IGNORECASE)
_WORD_PATTERN = re.compile(r"[a-z0-9][a-z0-9\-]*")


class ComplexityAssessment(BaseModel):
    """Result of classifying a task description."""
    category: ComplexityCategory
    suggested_priority: Priority
    suggested_capabilities: Set[str] = Field(default_factory=set)
    confidence: float = Field(default=0.0, ge=0.0, le=100.0)
    matched_keywords: List[str] = Field(default_factory=list)
    score: float = 0.0


@runtime_checkable
class ComplexityClassifier(Protocol):
    def classify(self, description: str) -> ComplexityAssessment:
        ...


def suggest_capabilities(description: str) -> Set[str]:
    """Capability tags hinted at by words in the description."""
    words = set(_WORD_PATTERN.findall(description.lower()))
    return {tag for keyword, tag in CAPABILITY_KEYWORDS.items() if keyword in words}


def _assessment(category: ComplexityCategory, description: str, score: float,
                matched: Optional[List[str]] = None) -> ComplexityAssessment:
    return ComplexityAssessment(
        category=category,
        suggested_priority=CATEGORY_PRIORITIES[category],
        suggested_capabilities=suggest_capabilities(description),
        confidence=min(score / 3, 1.0) * 100,
        matched_keywords=matched or [],
        score=score
    )


class KeywordComplexityClassifier:
    """
    Scores each category by keyword hits plus length and phrasing bonuses and
    picks the highest score. Ties keep the earlier (simpler) category.
    """

    def __init__(self, keywords: Optional[Dict[ComplexityCategory, List[str]]] = None):
        self.keywords = keywords or CATEGORY_KEYWORDS

    def classify(self, description: str) -> ComplexityAssessment:
        text = (description or "").lower()
        word_count = len(text.split(" "))

        bonus = 0.0
        if word_count > 50:
            bonus += 1
        if word_count > 100:
            bonus += 1
        if "?" in text:
            bonus += 0.5
        if _MODIFIER_PATTERN.search(text):
            bonus += 1

        best_category = ComplexityCategory.SIMPLE
        best_score = 0.0
        best_matches: List[str] = []
        for category in ComplexityCategory:
            matches = [keyword for keyword in self.keywords.get(category, []) if keyword in text]
            score = len(matches) + bonus
            if score > best_score:
                best_category, best_score, best_matches = category, score, matches

        return _assessment(best_category, description or "", best_score, best_matches)


class LengthComplexityClassifier:
    """Classifies purely by word count."""

    def __init__(self, thresholds: tuple = (20, 60, 150)):
        self.thresholds = thresholds

    def classify(self, description: str) -> ComplexityAssessment:
        word_count = len((description or "").split())
        moderate, complex_, expert = self.thresholds
        if word_count > expert:
            category = ComplexityCategory.EXPERT
        elif word_count > complex_:
            category = ComplexityCategory.COMPLEX
        elif word_count > moderate:
            category = ComplexityCategory.MODERATE
        else:
            category = ComplexityCategory.SIMPLE
        return _assessment(category, description or "", float(list(ComplexityCategory).index(category) + 1))


class CallableComplexityClassifier:
    """Adapts any callable returning a category (or its name) to the protocol."""

    def __init__(self, func: Callable[[str], str]):
        self.func = func

    def classify(self, description: str) -> ComplexityAssessment:
        category = ComplexityCategory(self.func(description or ""))
        return _assessment(category, description or "", 3.0)
