import json
import logging
import re
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from diagno.errors import MalformedAnalysisReply

logger = logging.getLogger(__name__)

# Order matters: the first detected symptom becomes the conversation topic.
SYMPTOM_KEYWORDS = {
    "headache": ("headache", "head hurt", "head pain", "migraine"),
    "fever": ("fever", "temperature", "hot", "chills", "shivering"),
    "cough": ("cough", "coughing", "throat", "sore throat"),
    "pain": ("pain", "hurt", "ache", "aching", "sore"),
    "fatigue": ("tired", "fatigue", "exhausted", "weak", "weakness"),
    "nausea": ("nausea", "nauseous", "sick", "vomit", "throw up"),
    "dizziness": ("dizzy", "dizziness", "lightheaded", "faint"),
    "shortness_of_breath": ("breath", "breathing", "breathe", "air"),
    "chest_pain": ("chest pain", "chest hurt", "heart"),
}

SEVERITY_MIN = 1
SEVERITY_MAX = 10

DURATION_PATTERN = re.compile(r"(few|several|\d+)\s*(hour|day|week|month)s?", re.IGNORECASE)
DURATION_HINTS = ("hour", "day", "week")
VAGUE_DURATION = "recently"

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def extract_symptoms(text: str) -> list[str]:
    """Return every symptom whose keyword variants appear in text (substring match)."""
    lower = text.lower()
    return [
        symptom
        for symptom, keywords in SYMPTOM_KEYWORDS.items()
        if any(kw in lower for kw in keywords)
    ]


def extract_severity(text: str) -> Optional[int]:
    """First integer in text, if it sits on the 1-10 scale."""
    match = re.search(r"\d+", text)
    if not match:
        return None
    value = int(match.group(0))
    if SEVERITY_MIN <= value <= SEVERITY_MAX:
        return value
    return None


def extract_duration(text: str) -> Optional[str]:
    match = DURATION_PATTERN.search(text)
    if match:
        return match.group(0)
    lower = text.lower()
    if any(hint in lower for hint in DURATION_HINTS):
        return VAGUE_DURATION
    return None


class SymptomAnalysis(BaseModel):
    urgency: int = Field(ge=1, le=5)
    questions: list[str]
    recommendations: str
    specialists: list[str]


def parse_symptom_analysis(content: str) -> SymptomAnalysis:
    """Parse the model's structured-output reply.

    Models often wrap JSON in a Markdown fence; that is stripped first.
    Anything that is not the expected object raises MalformedAnalysisReply.
    """
    raw = (content or "").strip()
    fenced = _CODE_FENCE.match(raw)
    if fenced:
        raw = fenced.group(1)
    try:
        data = json.loads(raw)
    except ValueError as e:
        logger.warning("Symptom analysis is not JSON: %s", e)
        raise MalformedAnalysisReply(f"analysis reply is not JSON: {e}") from e
    try:
        return SymptomAnalysis.model_validate(data)
    except ValidationError as e:
        logger.warning("Symptom analysis failed validation: %s", e)
        raise MalformedAnalysisReply(f"analysis reply does not match schema: {e}") from e
