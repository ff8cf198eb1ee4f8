"""Request classification.

The engine depends only on the ``Classifier`` protocol; ``KeywordClassifier``
is a small rule-based implementation that ships as the default.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from conductor.routing.models import Classification

UNCLASSIFIED = "general"


class Classifier(Protocol):
    async def classify(
        self, text: str, session_context: Mapping[str, Any] | None = None
    ) -> Classification: ...


@dataclass(frozen=True)
class KeywordRule:
    type: str
    triggers: tuple[str, ...]
    confidence: float


DEFAULT_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(
        "frontend",
        ("visual", "design", "look", "color", "layout", "pretty", "style", "ui", "interface", "page"),
        0.95,
    ),
    KeywordRule(
        "backend",
        ("api", "endpoint", "server", "backend", "login", "register", "auth", "logic"),
        0.90,
    ),
    KeywordRule(
        "database",
        ("database", "schema", "query", "table", "model", "store", "save", "migration"),
        0.91,
    ),
    KeywordRule(
        "deployment",
        ("live", "online", "deploy", "publish", "domain", "hosting", "production"),
        0.95,
    ),
    KeywordRule(
        "testing",
        ("test", "tests", "bug", "broken", "error", "check", "verify", "fix", "quality"),
        0.85,
    ),
)

_TOKEN = re.compile(r"[a-z0-9][a-z0-9/+-]*")


class KeywordClassifier:
    """
    Rule-based classifier over trigger keywords.

    Confidence for a rule grows with the number of distinct triggers hit:
    one hit gives 75% of the rule's confidence, two or more give all of it.
    Ties go to the earlier rule.
    """

    def __init__(self, rules: Sequence[KeywordRule] = DEFAULT_RULES) -> None:
        self.rules = tuple(rules)

    async def classify(
        self, text: str, session_context: Mapping[str, Any] | None = None
    ) -> Classification:
        tokens = set(_TOKEN.findall(text.lower()))
        best: Classification | None = None
        for rule in self.rules:
            hits = tuple(t for t in rule.triggers if t in tokens)
            if not hits:
                continue
            confidence = round(rule.confidence * min(1.0, 0.5 + 0.25 * len(hits)), 4)
            if best is None or confidence > best.confidence:
                best = Classification(rule.type, confidence, hits)
        return best or Classification(UNCLASSIFIED, 0.0, ())
