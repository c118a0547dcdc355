from enum import Enum

LISTENING_PHASES = {"listening", "waiting_for_reply"}
TERMINAL_PHASES = {"ended"}


class CallPhase(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    GREETING_PENDING = "greeting_pending"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    WAITING_FOR_REPLY = "waiting_for_reply"
    ENDED = "ended"

    @property
    def is_listening(self) -> bool:
        return self.value in LISTENING_PHASES

    @property
    def accepts_speech(self) -> bool:
        return self.value in LISTENING_PHASES

    @property
    def is_terminal(self) -> bool:
        return self.value in TERMINAL_PHASES


class RelayPhase(Enum):
    OPEN = "open"
    ACTIVE = "active"
    CLOSED = "closed"


class Stage(Enum):
    GREETING = "greeting"
    SYMPTOM_INQUIRY = "symptom_inquiry"
    FOLLOW_UP = "follow_up"
    ASSESSMENT = "assessment"

    @property
    def is_terminal(self) -> bool:
        return self is Stage.ASSESSMENT


class UrgencyLevel(str, Enum):
    URGENT = "URGENT"
    PRIORITAIRE = "PRIORITAIRE"
    NORMAL = "NORMAL"
