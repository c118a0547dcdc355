"""Local conversation reasoner.

Rule-based triage used when the voice controller runs without the relay:
keyword symptom detection, severity/duration capture and a fixed assessment
policy.  ``next_utterance`` is pure; the caller owns the context and the
random source used to pick follow-up questions.
"""

import logging
import random
import re
from typing import Optional

from diagno.extraction import extract_duration, extract_severity, extract_symptoms
from diagno.session import ConversationContext
from diagno.states import Stage

logger = logging.getLogger(__name__)

GREETING_PATTERN = re.compile(r"\b(hello|hi|good)\b")

GREETING_REPLY = (
    "Hello! I'm here to help with your health concerns. "
    "What brings you here today? Are you experiencing any symptoms?"
)
DESCRIBE_REPLY = (
    "I see. Can you tell me more about what you're experiencing? "
    "What symptoms are bothering you?"
)
CLARIFY_REPLY = (
    "I want to make sure I understand correctly. Could you describe your symptoms? "
    "For example, are you feeling pain, nausea, fatigue, or something else?"
)
RECOMMENDATION_INTRO = "Based on what you've told me, here is my recommendation."

SYMPTOM_RESPONSES = {
    "headache": "I understand you have a headache. On a scale from 1 to 10, how would you rate the pain? And when did it start?",
    "fever": "You mentioned having a fever. Have you taken your temperature? Do you also have chills or body aches?",
    "cough": "I see you have a cough. Is it a dry cough or are you bringing up phlegm? Any difficulty breathing?",
    "pain": "You're experiencing pain. Can you tell me exactly where it hurts and how long you've had this pain?",
    "fatigue": "Fatigue can be concerning. How long have you been feeling this tired? Are you getting enough sleep?",
    "nausea": "Nausea can be very uncomfortable. Are you actually vomiting, or just feeling nauseous? Any stomach pain?",
    "dizziness": "Dizziness can have various causes. Do you feel like the room is spinning, or more like you might faint?",
    "shortness_of_breath": "Breathing difficulties are important to assess. Is this new for you? Any chest pain with it?",
    "chest_pain": "Chest pain needs immediate attention. Can you describe the pain? Is it sharp, dull, or crushing?",
}

FOLLOW_UP_QUESTIONS = (
    "What makes your symptoms better or worse?",
    "Have you taken any medication for this?",
    "Any other symptoms you're experiencing?",
    "Does this interfere with your daily activities?",
    "Have you had similar episodes before?",
)

URGENT_CARE_MESSAGE = (
    "Based on your symptoms, I recommend seeking immediate medical attention. "
    "Please consider visiting an emergency room or calling emergency services."
)
SAME_DAY_CARE_MESSAGE = (
    "The combination of fever and breathing difficulties warrants prompt medical evaluation. "
    "I'd suggest contacting your doctor today or visiting urgent care."
)
SEE_PROVIDER_MESSAGE = (
    "Your symptom severity suggests you should see a healthcare provider within the next day or two. "
    "In the meantime, rest and stay hydrated."
)
SELF_MONITOR_MESSAGE = (
    "Your symptoms seem manageable for now. Monitor them closely, and if they worsen or persist "
    "beyond a few days, consider seeing your doctor. Is there anything else you'd like to discuss?"
)


def assess(context: ConversationContext) -> str:
    """Assessment policy, first match wins."""
    severity = context.severity or 0
    if "chest_pain" in context.symptoms or severity >= 8:
        return URGENT_CARE_MESSAGE
    if "fever" in context.symptoms and "shortness_of_breath" in context.symptoms:
        return SAME_DAY_CARE_MESSAGE
    if severity >= 6:
        return SEE_PROVIDER_MESSAGE
    return SELF_MONITOR_MESSAGE


def _severity_reply(severity: int) -> str:
    if severity >= 7:
        return (
            f"A severity of {severity} is quite high. Have you tried any medication for this? "
            "How long has it been this severe?"
        )
    if severity >= 4:
        return "That's a moderate level of discomfort. What seems to make it better or worse?"
    return "That's manageable pain. Any other symptoms you're experiencing along with this?"


def _add_symptoms(context: ConversationContext, symptoms: list[str]) -> None:
    for symptom in symptoms:
        if symptom not in context.symptoms:
            context.symptoms.append(symptom)


def _capture_details(text: str, context: ConversationContext) -> Optional[str]:
    """Record severity and duration (each only once); reply for the first new one."""
    reply = None
    if context.severity is None:
        severity = extract_severity(text)
        if severity is not None:
            context.severity = severity
            reply = _severity_reply(severity)
    if context.duration is None:
        duration = extract_duration(text)
        if duration is not None:
            context.duration = duration
            if reply is None:
                reply = (
                    f"So this has been going on for {duration}. That's helpful to know. "
                    "Any triggers you've noticed that make it worse?"
                )
    return reply


def _symptom_turn(text: str, context: ConversationContext) -> Optional[str]:
    symptoms = extract_symptoms(text)
    if not symptoms:
        return None
    _add_symptoms(context, symptoms)
    context.current_topic = symptoms[0]
    context.stage = Stage.FOLLOW_UP
    return _capture_details(text, context) or SYMPTOM_RESPONSES[symptoms[0]]


def _follow_up_turn(text: str, context: ConversationContext, rng: random.Random) -> str:
    _add_symptoms(context, extract_symptoms(text))
    reply = _capture_details(text, context)
    if reply:
        return reply

    available = [q for q in FOLLOW_UP_QUESTIONS if q not in context.asked_questions]
    if available:
        question = rng.choice(available)
        context.asked_questions.append(question)
        return f"I see. {question}"

    context.stage = Stage.ASSESSMENT
    return f"{RECOMMENDATION_INTRO} {assess(context)}"


def next_utterance(
    transcript: str,
    context: ConversationContext,
    rng: random.Random,
) -> tuple[str, ConversationContext]:
    """Produce the assistant's next line and the updated context.

    The given context is left untouched.
    """
    ctx = context.copy()
    text = transcript.strip()
    lower = text.lower()

    if ctx.stage is Stage.GREETING:
        if GREETING_PATTERN.search(lower):
            ctx.stage = Stage.SYMPTOM_INQUIRY
            reply = GREETING_REPLY
        else:
            reply = _symptom_turn(text, ctx)
            if reply is None:
                ctx.stage = Stage.SYMPTOM_INQUIRY
                reply = DESCRIBE_REPLY
    elif ctx.stage is Stage.SYMPTOM_INQUIRY:
        reply = _symptom_turn(text, ctx) or CLARIFY_REPLY
    elif ctx.stage is Stage.FOLLOW_UP:
        reply = _follow_up_turn(text, ctx, rng)
    else:
        reply = assess(ctx)

    if ctx.stage is Stage.FOLLOW_UP and ctx.ready_for_assessment:
        ctx.stage = Stage.ASSESSMENT

    logger.debug("Reasoner %s -> %s (symptoms=%s)", context.stage.value, ctx.stage.value, ctx.symptoms)
    return reply, ctx


class LocalReplySource:
    """Reply source backed by the local reasoner; one per call."""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()
        self.context = ConversationContext()

    async def reply(self, transcript: str) -> str:
        reply, self.context = next_utterance(transcript, self.context, self.rng)
        return reply

    async def close(self) -> None:
        pass
