"""Capture & synthesis adapter.

Wraps three ports (media devices, speech recognizer, speech synthesizer)
behind one object the controller talks to.  Port implementations live
elsewhere (the pipecat ones in ``diagno.processor``); tests use fakes.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol

from diagno.errors import DeviceUnavailable, RecognizerError, SynthesisError

logger = logging.getLogger(__name__)

PREFERRED_LANGS = ("en-GB", "en-US")
PREFERRED_VENDORS = ("Google", "Microsoft", "Apple")


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    is_final: bool


@dataclass(frozen=True)
class Voice:
    name: str
    lang: str


@dataclass
class MediaTrack:
    kind: str
    enabled: bool = True
    stopped: bool = False
    stop_count: int = 0

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        self.stop_count += 1
        logger.info("Track %s stopped", self.kind)


@dataclass
class MediaHandles:
    audio: list[MediaTrack] = field(default_factory=list)
    video: list[MediaTrack] = field(default_factory=list)

    def tracks(self) -> list[MediaTrack]:
        return [*self.audio, *self.video]


class SpeechOutcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class RecognitionListener(Protocol):
    def on_transcript(self, event: TranscriptEvent) -> None: ...

    def on_recognition_end(self) -> None: ...

    def on_recognition_error(self, error: RecognizerError) -> None: ...


class MediaDevices(ABC):
    @abstractmethod
    async def acquire(self, audio: bool = True, video: bool = True) -> MediaHandles:
        """Open capture tracks; raise DeviceUnavailable when refused or missing."""


class Recognizer(ABC):
    def __init__(self):
        self.listener: Optional[RecognitionListener] = None

    def bind(self, listener: RecognitionListener) -> None:
        self.listener = listener

    @abstractmethod
    def start(self) -> None:
        """Begin emitting transcript events; may raise RecognizerError."""

    @abstractmethod
    def stop(self) -> None:
        ...


class Synthesizer(ABC):
    async def load_voices(self) -> list[Voice]:
        return []

    def use_voice(self, voice: Voice) -> None:
        pass

    @abstractmethod
    async def speak(self, text: str) -> None:
        """Return once the utterance has been played; raise SynthesisError on failure."""

    @abstractmethod
    def cancel(self) -> None:
        ...


def select_voice(voices: list[Voice]) -> Optional[Voice]:
    """Prefer a native UK/US English voice from a major vendor."""
    english = [
        v for v in voices
        if v.lang.startswith("en-") and any(vendor in v.name for vendor in PREFERRED_VENDORS)
    ]
    for voice in english:
        if voice.lang in PREFERRED_LANGS:
            return voice
    if english:
        return english[0]
    return voices[0] if voices else None


class CaptureAdapter:
    """Single entry point to capture, recognition and synthesis for one call."""

    def __init__(
        self,
        devices: MediaDevices,
        recognizer: Optional[Recognizer] = None,
        synthesizer: Optional[Synthesizer] = None,
    ):
        self._devices = devices
        self._recognizer = recognizer
        self._synthesizer = synthesizer
        self._listener: Optional[RecognitionListener] = None
        self._active = False
        self._speech_task: Optional[asyncio.Task] = None
        self._released = False
        self.handles: Optional[MediaHandles] = None
        self.voice: Optional[Voice] = None
        if recognizer is not None:
            recognizer.bind(self)

    # ── Capture ──

    async def start_capture(self, audio: bool = True, video: bool = True) -> MediaHandles:
        if self.handles is not None:
            return self.handles
        try:
            self.handles = await self._devices.acquire(audio=audio, video=video)
        except DeviceUnavailable:
            raise
        except (PermissionError, OSError) as e:
            raise DeviceUnavailable(str(e)) from e
        if self._released:
            # The call ended while the devices were opening.
            for track in self.handles.tracks():
                track.stop()
        logger.info(
            "Capture started: %d audio / %d video tracks",
            len(self.handles.audio), len(self.handles.video),
        )
        return self.handles

    async def load_voices(self) -> Optional[Voice]:
        if self._synthesizer is None:
            return None
        voices = await self._synthesizer.load_voices()
        self.voice = select_voice(voices)
        if self.voice is not None:
            self._synthesizer.use_voice(self.voice)
            logger.info("Selected voice: %s (%s)", self.voice.name, self.voice.lang)
        return self.voice

    def set_muted(self, muted: bool) -> None:
        if self.handles:
            for track in self.handles.audio:
                track.enabled = not muted

    def set_video_enabled(self, enabled: bool) -> None:
        if self.handles:
            for track in self.handles.video:
                track.enabled = enabled

    def release(self) -> bool:
        """Stop everything; True only the first time."""
        if self._released:
            return False
        self._released = True
        self.stop_listening()
        self.cancel_speech()
        if self.handles:
            for track in self.handles.tracks():
                track.stop()
        return True

    @property
    def released(self) -> bool:
        return self._released

    # ── Recognition ──

    @property
    def can_listen(self) -> bool:
        return self._recognizer is not None

    @property
    def listening(self) -> bool:
        return self._active

    def listen(self, listener: RecognitionListener) -> bool:
        """Start recognition; a no-op while already listening."""
        if self._released or self._recognizer is None or self._active:
            return False
        self._listener = listener
        self._recognizer.start()
        self._active = True
        logger.debug("Recognition started")
        return True

    def stop_listening(self) -> None:
        if self._recognizer is not None and self._active:
            self._active = False
            self._recognizer.stop()
            logger.debug("Recognition stopped")

    def on_transcript(self, event: TranscriptEvent) -> None:
        if self._listener is not None and self._active:
            self._listener.on_transcript(event)

    def on_recognition_end(self) -> None:
        # An end that follows our own stop() is only a confirmation.
        if not self._active:
            return
        self._active = False
        if self._listener is not None:
            self._listener.on_recognition_end()

    def on_recognition_error(self, error: RecognizerError) -> None:
        self._active = False
        logger.warning("Speech recognition error: %s", error.code)
        if self._listener is not None:
            self._listener.on_recognition_error(error)

    # ── Synthesis ──

    async def speak(self, text: str) -> SpeechOutcome:
        """Speak text, replacing whatever is currently being spoken."""
        if self._synthesizer is None or self._released:
            return SpeechOutcome.FAILED
        self.cancel_speech()
        logger.info("AI speaking: %s", text[:50])
        task = asyncio.ensure_future(self._synthesizer.speak(text))
        self._speech_task = task
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._speech_task is task or (current is not None and current.cancelling()):
                # The caller itself was cancelled, not replaced by a newer utterance.
                if self._speech_task is task:
                    self._speech_task = None
                    self._synthesizer.cancel()
                task.cancel()
                raise
            return SpeechOutcome.INTERRUPTED
        except SynthesisError as e:
            logger.warning("Voice synthesis error: %s", e)
            return SpeechOutcome.FAILED
        finally:
            if self._speech_task is task and task.done():
                self._speech_task = None
        return SpeechOutcome.COMPLETED

    def cancel_speech(self) -> None:
        task, self._speech_task = self._speech_task, None
        if task is not None and not task.done():
            task.cancel()
            if self._synthesizer is not None:
                self._synthesizer.cancel()
