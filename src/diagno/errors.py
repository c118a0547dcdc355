"""Exception taxonomy for the consultation service.

Capture errors are raised by the media/recognizer/synthesizer ports and
handled by the controller.  Remote errors are raised by the HTTP and
WebSocket clients and converted to user-visible messages at the relay and
HTTP boundaries.
"""

FATAL_RECOGNIZER_CODES = frozenset({"not-allowed", "service-not-allowed", "permission-denied"})


class ConsultationError(Exception):
    """Base class for all service errors."""


class DeviceUnavailable(ConsultationError):
    """Microphone/camera permission denied or hardware missing."""


class RecognizerError(ConsultationError):
    def __init__(self, code: str, message: str = ""):
        super().__init__(message or f"speech recognition error: {code}")
        self.code = code


class RecognizerTransientError(RecognizerError):
    """Network hiccup, no-speech, aborted: worth one retry."""


class RecognizerFatalError(RecognizerError):
    """Permission or service denial: listening is disabled for the call."""


class SynthesisError(ConsultationError):
    pass


class RemoteAPIError(ConsultationError):
    def __init__(self, message: str, status_code: int | None = None, detail=None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class MalformedAnalysisReply(ConsultationError):
    """Structured symptom analysis could not be parsed."""


def recognizer_error(code: str, message: str = "") -> RecognizerError:
    if code in FATAL_RECOGNIZER_CODES:
        return RecognizerFatalError(code, message)
    return RecognizerTransientError(code, message)
