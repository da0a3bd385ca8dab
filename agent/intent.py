"""
Intent classification for coding requests.
Decides the complexity tier and whether the request implies a file mutation.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from config import app_config

from .types import Mode, Tier

logger = logging.getLogger(__name__)


CLASSIFY_SYSTEM = """You are a task classifier for a coding agent working on a storefront theme or code project. Analyze the user's message and return ONLY valid JSON:
{"question": true/false, "mutation": true/false, "tier": "trivial"|"simple"|"complex"|"architectural"}

**Tiers**:
- **trivial**: one value in one file (a color, a label, a number, a typo)
- **simple**: a single-file edit or a question about specific code
- **complex**: several files, a new feature in an existing area, debugging with an unknown cause
- **architectural**: restructuring across many files, migrations, audits, new subsystems

**Field rules**:
- **question** = true ONLY when the user asks for an explanation and wants no code change.
- **mutation** = true when fulfilling the request requires changing, creating or deleting files.

**Examples**:
- "make the button blue" -> {"question": false, "mutation": true, "tier": "trivial"}
- "What does the header section render?" -> {"question": true, "mutation": false, "tier": "simple"}
- "Add a size chart to the product page" -> {"question": false, "mutation": true, "tier": "complex"}
- "Migrate all sections to the new settings schema" -> {"question": false, "mutation": true, "tier": "architectural"}

When uncertain: question=false, mutation=true, tier="complex".
Return ONLY the JSON object, no explanation."""


@dataclass(frozen=True)
class Intent:
    tier: Tier
    implies_mutation: bool
    question: bool = False
    source: str = "heuristic"


_QUESTION_STARTERS = (
    "what", "why", "how", "explain", "can you explain", "tell me", "describe",
    "is it", "are there", "where", "which", "does", "do you",
)
_MUTATION_VERBS = (
    "make", "change", "set", "add", "remove", "delete", "fix", "update", "rename",
    "replace", "create", "move", "hide", "show", "increase", "decrease", "use",
    "implement", "refactor", "convert", "edit", "adjust", "turn", "swap", "style",
)
_TRIVIAL_HINTS = (
    "color", "colour", "blue", "red", "green", "black", "white", "font size",
    "padding", "margin", "typo", "label", "text to", "rename",
)
_COMPLEX_HINTS = (
    "feature", "across", "every", "all sections", "all templates", "multiple",
    "debug", "investigate", "integrate", "new section", "why is",
)
_ARCHITECTURAL_HINTS = (
    "audit", "refactor", "migrate", "migration", "redesign", "overhaul",
    "architecture", "end to end", "end-to-end", "entire codebase", "whole theme",
)


def classify_heuristic(request: str) -> Intent:
    """Keyword classification used when no model call is made."""
    stripped = request.strip().rstrip("!.").lower()
    if not stripped:
        return Intent(tier=Tier.TRIVIAL, implies_mutation=False)
    words = stripped.split()
    is_question = stripped.endswith("?") or any(stripped.startswith(q + " ") for q in _QUESTION_STARTERS)
    has_verb = any(w in _MUTATION_VERBS for w in words[:4]) or any(
        f" {v} " in f" {stripped} " for v in ("change", "add", "fix", "remove", "update", "make")
    )
    implies_mutation = has_verb and not (is_question and words[0] not in _MUTATION_VERBS)

    if any(k in stripped for k in _ARCHITECTURAL_HINTS):
        tier = Tier.ARCHITECTURAL
    elif any(k in stripped for k in _COMPLEX_HINTS) or len(words) > 40:
        tier = Tier.COMPLEX
    elif any(k in stripped for k in _TRIVIAL_HINTS) and len(words) <= 12:
        tier = Tier.TRIVIAL
    else:
        tier = Tier.SIMPLE
    return Intent(tier=tier, implies_mutation=implies_mutation, question=is_question and not implies_mutation)


def _extract_json(text: str) -> Dict[str, Any]:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[-1].rsplit("```", 1)[0].strip()
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end < start:
        raise ValueError("no JSON object in classifier output")
    return json.loads(text[start:end + 1])


class IntentClassifier:
    """Heuristic classification, optionally refined by a fast model call."""

    def __init__(self, service=None, use_model: Optional[bool] = None):
        self.service = service
        self.use_model = app_config.llm_intent_classification if use_model is None else use_model
        self._cache: Dict[str, Intent] = {}

    def classify(self, request: str, mode: Mode = Mode.CODE) -> Intent:
        cache_key = request.strip()[:200].lower()
        intent = self._cache.get(cache_key)
        if intent is None:
            intent = self._classify_uncached(request)
            self._cache[cache_key] = intent
        if not Mode(mode).allows_mutation and intent.implies_mutation:
            intent = Intent(tier=intent.tier, implies_mutation=False, question=intent.question, source=intent.source)
        return intent

    def _classify_uncached(self, request: str) -> Intent:
        fallback = classify_heuristic(request)
        if not self.use_model or self.service is None:
            return fallback
        try:
            from bedrock_service import GenerationConfig
            resp = self.service.generate_response(
                messages=[{"role": "user", "content": request.strip()}],
                system_prompt=CLASSIFY_SYSTEM,
                model_id=app_config.fast_model,
                config=GenerationConfig(max_tokens=80),
            )
            data = _extract_json(resp.content)
            tier_name = data.get("tier", fallback.tier.value)
            tier = Tier(tier_name) if tier_name in Tier._value2member_map_ else fallback.tier
            intent = Intent(
                tier=tier,
                implies_mutation=bool(data.get("mutation", fallback.implies_mutation)),
                question=bool(data.get("question", False)),
                source="model",
            )
            logger.info(f"Intent classification: {intent} for: {request[:80]}")
            return intent
        except Exception as e:
            logger.warning(f"Intent classification failed ({e}), using heuristic")
            return fallback
