"""Deterministic intent classification for change requests."""

from gitmind.db.models import IntentResult

# Checked in order; the first rule with a matching keyword wins.
INTENT_RULES: list[tuple[tuple[str, ...], IntentResult]] = [
    (("refactor",), IntentResult("refactor", 0.92, "medium")),
    (("fix", "bug"), IntentResult("bugfix", 0.88, "low")),
    (("add", "create", "new"), IntentResult("feature_addition", 0.85, "medium")),
    (("delete", "remove"), IntentResult("remove_code", 0.90, "high")),
    (("test",), IntentResult("add_tests", 0.87, "low")),
    (("style", "css", "ui"), IntentResult("ui_update", 0.83, "low")),
    (("config",), IntentResult("config_change", 0.80, "high")),
]

DEFAULT_INTENT = IntentResult("general_edit", 0.70, "medium")

INTENT_TYPES = tuple(outcome.intent_type for _, outcome in INTENT_RULES) + (
    DEFAULT_INTENT.intent_type,
)


def classify(text: str | None) -> IntentResult:
    """Map a free-text change request to an intent, confidence and risk tier."""
    lower = (text or "").lower()
    for keywords, outcome in INTENT_RULES:
        if any(k in lower for k in keywords):
            return outcome
    return DEFAULT_INTENT
