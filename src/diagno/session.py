import time
from dataclasses import dataclass, field
from typing import Optional

from diagno.circuit_breaker import CircuitBreaker
from diagno.states import CallPhase, RelayPhase, Stage, UrgencyLevel

ROLES = ("user", "assistant", "system")


@dataclass(frozen=True)
class Utterance:
    role: str
    content: str
    urgency: Optional[UrgencyLevel] = None
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"unknown role: {self.role!r}")

    def as_message(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass
class ConsultationSession:
    """Relay-side conversation, owned by exactly one connection task."""

    session_id: str
    phase: RelayPhase = RelayPhase.OPEN
    created_at: float = field(default_factory=time.time)
    history: list[Utterance] = field(default_factory=list)
    turn_count: int = 0
    # Failures of this session's completion calls only.
    circuit: CircuitBreaker = field(
        default_factory=lambda: CircuitBreaker(label="Mistral API"), repr=False, compare=False,
    )

    def append(self, role: str, content: str, urgency: Optional[UrgencyLevel] = None) -> Utterance:
        utterance = Utterance(role=role, content=content, urgency=urgency)
        self.history.append(utterance)
        if role == "user":
            self.turn_count += 1
        return utterance

    def messages(self) -> list[dict]:
        return [u.as_message() for u in self.history]

    def close(self) -> None:
        self.phase = RelayPhase.CLOSED
        self.history = []


@dataclass
class CallState:
    """Per-call controller state.

    Listening, speaking and waiting-for-reply are read from ``phase`` so the
    call can never be listening and speaking at the same time.
    """

    phase: CallPhase = CallPhase.IDLE
    connected: bool = False
    conversation_started: bool = False
    muted: bool = False
    video_enabled: bool = True
    listening_disabled: bool = False
    last_speech_at: float = 0.0
    message_count: int = 0

    @property
    def listening(self) -> bool:
        return self.phase.is_listening

    @property
    def speaking(self) -> bool:
        return self.phase is CallPhase.SPEAKING

    @property
    def waiting_for_reply(self) -> bool:
        return self.phase is CallPhase.WAITING_FOR_REPLY


@dataclass
class ConversationContext:
    stage: Stage = Stage.GREETING
    symptoms: list[str] = field(default_factory=list)
    current_topic: str = ""
    severity: Optional[int] = None
    duration: Optional[str] = None
    asked_questions: list[str] = field(default_factory=list)

    def copy(self) -> "ConversationContext":
        return ConversationContext(
            stage=self.stage,
            symptoms=list(self.symptoms),
            current_topic=self.current_topic,
            severity=self.severity,
            duration=self.duration,
            asked_questions=list(self.asked_questions),
        )

    @property
    def ready_for_assessment(self) -> bool:
        return bool(self.severity and self.duration and self.symptoms)
