"""Turn-taking controller for a live voice consultation.

One controller drives one call:

  idle -> connecting -> greeting_pending -> speaking -> waiting_for_reply
       -> processing -> speaking -> ... -> ended

The call phase is a single ``CallPhase`` value.  Every delayed action
(greeting, listen-after-speech, reply timeout, recognizer restart/retry,
unmute resume) is a named asyncio task owned by the controller; starting a
timer replaces the one with the same name and ``end_call`` cancels them all.
Speaking and turn processing run in one "work" task so a new utterance always
cancels the previous one first.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from diagno.capture import CaptureAdapter, SpeechOutcome, TranscriptEvent
from diagno.errors import DeviceUnavailable, RecognizerError, RecognizerFatalError
from diagno.replies import ReplySource
from diagno.session import CallState
from diagno.states import CallPhase

logger = logging.getLogger(__name__)

GREETING = "Hello! I'm your AI medical assistant. How can I help you today?"
PROMPT_AGAIN = "I'm still here to help. Could you tell me more about your symptoms?"
APOLOGY = (
    "I apologize, but I'm having trouble processing your request right now. "
    "Could you please repeat what you said?"
)

STATUS_CONNECTING = "Connecting..."
STATUS_READY = "Ready for consultation"
STATUS_DEVICE_ERROR = "Camera/microphone access error"
STATUS_NO_RECOGNITION = "Speech recognition not supported"
STATUS_RECOGNITION_DENIED = "Speech recognition is not available. Please check microphone permissions."
STATUS_RECOGNITION_LOST = "Speech recognition interrupted. Toggle the microphone to try again."
STATUS_ENDED = "Call ended"

LISTENING_TIMERS = ("listen", "restart", "retry", "reply_timeout", "unmute")


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class ConsultationController:
    GREETING_DELAY_S = 1.0
    LISTEN_DELAY_S = 1.5
    REPLY_TIMEOUT_S = 10.0
    RESTART_DELAY_S = 1.0
    RECOGNIZER_RETRY_S = 2.0
    UNMUTE_DELAY_S = 0.5
    MAX_RECOGNIZER_RETRIES = 1

    def __init__(
        self,
        adapter: CaptureAdapter,
        replies: ReplySource,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self.adapter = adapter
        self.replies = replies
        self.call = CallState()
        self.current_message = ""
        self._on_status = on_status
        self._timers: dict[str, asyncio.Task] = {}
        self._work: Optional[asyncio.Task] = None
        self._reprompting = False
        self._recognizer_retries = 0
        self._cleanup_started = False

    @property
    def phase(self) -> CallPhase:
        return self.call.phase

    @property
    def pending_timers(self) -> list[str]:
        return sorted(name for name, task in self._timers.items() if not task.done())

    def _set_phase(self, phase: CallPhase) -> None:
        if self.call.phase is phase:
            return
        logger.debug("Call phase %s -> %s", self.call.phase.value, phase.value)
        self.call.phase = phase

    def _status(self, message: str) -> None:
        self.current_message = message
        if self._on_status is not None:
            self._on_status(message)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Acquire devices and voices, then schedule the opening line."""
        if self.call.phase is not CallPhase.IDLE or self._cleanup_started:
            return
        self._set_phase(CallPhase.CONNECTING)
        self._status(STATUS_CONNECTING)

        try:
            await self.adapter.start_capture()
        except DeviceUnavailable as e:
            logger.error("Initialization error: %s", e)
            self.end_call(status=STATUS_DEVICE_ERROR)
            return
        await self.adapter.load_voices()
        if self._cleanup_started:
            return

        self.call.connected = True
        self._set_phase(CallPhase.GREETING_PENDING)
        if self.adapter.can_listen:
            self._status(STATUS_READY)
        else:
            logger.warning("Speech recognition not supported")
            self.call.listening_disabled = True
            self._status(STATUS_NO_RECOGNITION)
        self._schedule("greeting", self.GREETING_DELAY_S, self._greet)

    def end_call(self, status: str = STATUS_ENDED) -> None:
        """Release everything and enter ``ended``; later calls are no-ops."""
        if self._cleanup_started:
            logger.debug("end_call ignored: cleanup already done")
            return
        self._cleanup_started = True
        logger.info("Cleaning up call resources")

        self._cancel_timers(*list(self._timers))
        work, self._work = self._work, None
        if work is not None and not work.done() and work is not _current_task():
            work.cancel()
        self.adapter.stop_listening()
        self.adapter.cancel_speech()
        if self.adapter.release():
            logger.info("Media tracks released")

        self.call.connected = False
        self._reprompting = False
        self._set_phase(CallPhase.ENDED)
        self._status(status)

    # ── Controls ──

    def set_muted(self, muted: bool) -> None:
        if self.call.phase.is_terminal:
            return
        self.call.muted = muted
        self.adapter.set_muted(muted)
        logger.info("Microphone %s", "muted" if muted else "enabled")

        if muted:
            self._cancel_timers(*LISTENING_TIMERS)
            self.adapter.stop_listening()
            if self.call.phase.accepts_speech:
                self._set_phase(CallPhase.IDLE)
            return

        if (
            self.call.conversation_started
            and not self.call.listening_disabled
            and self.call.phase is CallPhase.IDLE
        ):
            self._recognizer_retries = 0
            self._schedule("unmute", self.UNMUTE_DELAY_S, self._resume_listening)

    def toggle_mute(self) -> bool:
        self.set_muted(not self.call.muted)
        return self.call.muted

    def set_video_enabled(self, enabled: bool) -> None:
        if self.call.phase.is_terminal:
            return
        self.call.video_enabled = enabled
        self.adapter.set_video_enabled(enabled)
        logger.info("Video %s", "enabled" if enabled else "disabled")

    def toggle_video(self) -> bool:
        self.set_video_enabled(not self.call.video_enabled)
        return self.call.video_enabled

    # ── Recognition listener ──

    def on_transcript(self, event: TranscriptEvent) -> None:
        if self.call.phase.is_terminal:
            return
        self.call.last_speech_at = time.monotonic()
        self._recognizer_retries = 0

        text = event.text.strip()
        if not event.is_final or not text:
            # The user is still talking: push the re-prompt back.
            if self.call.phase is CallPhase.WAITING_FOR_REPLY:
                self._arm_reply_timeout()
            return

        accepts = self.call.phase.accepts_speech or (
            self.call.phase is CallPhase.SPEAKING and self._reprompting
        )
        if not accepts:
            logger.info("Ignoring transcript while %s: %s", self.call.phase.value, text)
            return

        # Cancel the timeout before anything else so it cannot re-prompt over this turn.
        self._cancel_timers("reply_timeout")
        self._cancel_timers("listen", "restart", "retry", "unmute")
        logger.info("User said (final): %s", text)
        self._reprompting = False
        self._set_phase(CallPhase.PROCESSING)
        self.call.message_count += 1
        self.adapter.stop_listening()
        self._run_work(self._process_turn(text))

    def on_recognition_end(self) -> None:
        if self._cleanup_started:
            return
        if self.call.muted or self.call.listening_disabled or not self.call.phase.accepts_speech:
            logger.debug("Recognition ended; no restart in %s", self.call.phase.value)
            return
        logger.debug("Recognition ended; restarting in %.1fs", self.RESTART_DELAY_S)
        self._schedule("restart", self.RESTART_DELAY_S, self._restart_listening)

    def on_recognition_error(self, error: RecognizerError) -> None:
        if self._cleanup_started:
            return

        if isinstance(error, RecognizerFatalError):
            logger.error("Speech recognition denied (%s); listening disabled for this call", error.code)
            self.call.listening_disabled = True
            self._stop_listening_degraded(STATUS_RECOGNITION_DENIED)
            return

        if self.call.muted or not self.call.phase.accepts_speech:
            return

        if self._recognizer_retries >= self.MAX_RECOGNIZER_RETRIES:
            logger.error("Speech recognition failed again after retry (%s)", error.code)
            self._stop_listening_degraded(STATUS_RECOGNITION_LOST)
            return

        self._recognizer_retries += 1
        logger.info("Attempting restart after error (%s) in %.1fs", error.code, self.RECOGNIZER_RETRY_S)
        self._schedule("retry", self.RECOGNIZER_RETRY_S, self._restart_listening)

    # ── Turn handling ──

    def _greet(self) -> None:
        if self.call.phase is not CallPhase.GREETING_PENDING:
            return
        self.call.conversation_started = True
        self._run_work(self._speak(GREETING))

    async def _process_turn(self, text: str) -> None:
        try:
            reply = await self.replies.reply(text)
        except Exception as e:
            logger.error("AI communication error: %s", e)
            reply = APOLOGY
        if self.call.phase is not CallPhase.PROCESSING:
            return
        await self._speak(reply or APOLOGY)

    async def _speak(self, text: str, reprompt: bool = False) -> None:
        self._cancel_timers(*LISTENING_TIMERS)
        # A re-prompt keeps the recognizer on so a late answer can still barge in.
        if not reprompt:
            self.adapter.stop_listening()
        self._set_phase(CallPhase.SPEAKING)
        self._reprompting = reprompt
        self._status(text)

        outcome = await self.adapter.speak(text)
        if outcome is SpeechOutcome.INTERRUPTED or self.call.phase is not CallPhase.SPEAKING:
            return
        self._reprompting = False
        self._after_speech()

    def _after_speech(self) -> None:
        self.call.last_speech_at = time.monotonic()
        self._recognizer_retries = 0
        if self.call.muted or self.call.listening_disabled:
            self._set_phase(CallPhase.IDLE)
            return
        self._set_phase(CallPhase.WAITING_FOR_REPLY)
        self._schedule("listen", self.LISTEN_DELAY_S, self._begin_waiting)

    def _begin_waiting(self) -> None:
        if self.call.phase is not CallPhase.WAITING_FOR_REPLY:
            return
        self._start_listening()
        if self.call.phase is CallPhase.WAITING_FOR_REPLY:
            self._arm_reply_timeout()

    def _arm_reply_timeout(self) -> None:
        self._schedule("reply_timeout", self.REPLY_TIMEOUT_S, self._on_reply_timeout)

    def _on_reply_timeout(self) -> None:
        if self.call.phase is not CallPhase.WAITING_FOR_REPLY:
            return
        logger.info("No response timeout, asking again")
        self._run_work(self._speak(PROMPT_AGAIN, reprompt=True))

    # ── Listening ──

    def _start_listening(self) -> None:
        if (
            self._cleanup_started
            or self.call.muted
            or self.call.listening_disabled
            or self.call.phase in (CallPhase.SPEAKING, CallPhase.PROCESSING)
        ):
            logger.debug(
                "Listening blocked: phase=%s muted=%s disabled=%s",
                self.call.phase.value, self.call.muted, self.call.listening_disabled,
            )
            return
        if not self.call.phase.accepts_speech:
            self._set_phase(CallPhase.LISTENING)
        try:
            self.adapter.listen(self)
        except RecognizerError as e:
            logger.warning("Recognition start error: %s", e)
            self.on_recognition_error(e)

    def _restart_listening(self) -> None:
        if self.call.phase.accepts_speech and not self.call.muted and not self.call.listening_disabled:
            self._start_listening()

    def _resume_listening(self) -> None:
        if self.call.phase is CallPhase.IDLE and not self.call.muted:
            self._start_listening()

    def _stop_listening_degraded(self, status: str) -> None:
        self._cancel_timers(*LISTENING_TIMERS)
        self.adapter.stop_listening()
        if self.call.phase.accepts_speech:
            self._set_phase(CallPhase.IDLE)
        self._status(status)

    # ── Task bookkeeping ──

    def _run_work(self, coro: Awaitable[None]) -> None:
        previous = self._work
        if previous is not None and not previous.done() and previous is not _current_task():
            previous.cancel()
        self._work = asyncio.ensure_future(coro)
        self._work.add_done_callback(self._on_work_done)

    @staticmethod
    def _on_work_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Consultation turn failed: %s", exc, exc_info=exc)

    def _schedule(self, name: str, delay: float, callback: Callable[[], None]) -> None:
        self._cancel_timers(name)
        self._timers[name] = asyncio.create_task(
            self._fire(name, delay, callback), name=f"consultation-{name}"
        )

    async def _fire(self, name: str, delay: float, callback: Callable[[], None]) -> None:
        await asyncio.sleep(delay)
        self._timers.pop(name, None)
        if self._cleanup_started:
            return
        try:
            callback()
        except Exception:
            logger.exception("Scheduled %s callback failed", name)

    def _cancel_timers(self, *names: str) -> None:
        current = _current_task()
        for name in names:
            task = self._timers.pop(name, None)
            if task is not None and not task.done() and task is not current:
                task.cancel()
