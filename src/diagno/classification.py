import re

from diagno.states import UrgencyLevel

# Checked in order: any urgent keyword wins over priority keywords.
URGENT_KEYWORDS = (
    "urgent",
    "douleur thoracique",
    "difficulté à respirer",
    "perte de conscience",
    "hémorragie",
    "samu",
    "15",
)

PRIORITY_KEYWORDS = (
    "fièvre élevée",
    "douleur intense",
    "consultation rapide",
)


def contains_keyword(text: str, keyword: str) -> bool:
    """Case-insensitive substring match; numeric keywords must be whole numbers."""
    # Numbers must stand alone: a bare substring test would mark "150 mg" or
    # "2015" as urgent. Keywords are lowercased too, so "SAMU" matches.
    lower = text.lower()
    if keyword.isdigit():
        return re.search(rf"(?<!\d){re.escape(keyword)}(?!\d)", lower) is not None
    return keyword.lower() in lower


def match_any_keyword(text: str, keywords) -> bool:
    return any(contains_keyword(text, kw) for kw in keywords)


def classify_urgency(text: str) -> UrgencyLevel:
    """Coarse triage label for an assistant reply."""
    if match_any_keyword(text, URGENT_KEYWORDS):
        return UrgencyLevel.URGENT
    if match_any_keyword(text, PRIORITY_KEYWORDS):
        return UrgencyLevel.PRIORITAIRE
    return UrgencyLevel.NORMAL
