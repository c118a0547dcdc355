"""Turn-taking behaviour of ConsultationController, driven through fake ports."""

import pytest

from conftest import FakeDevices, FakeRecognizer, FakeReplies, FakeSynthesizer, settle
from diagno.capture import CaptureAdapter, TranscriptEvent
from diagno.controller import (
    APOLOGY,
    GREETING,
    PROMPT_AGAIN,
    STATUS_DEVICE_ERROR,
    STATUS_ENDED,
    STATUS_NO_RECOGNITION,
    STATUS_READY,
    STATUS_RECOGNITION_DENIED,
    STATUS_RECOGNITION_LOST,
    ConsultationController,
)
from diagno.errors import DeviceUnavailable
from diagno.states import CallPhase


def _fast(ctrl: ConsultationController) -> ConsultationController:
    ctrl.GREETING_DELAY_S = 0
    ctrl.LISTEN_DELAY_S = 0
    ctrl.RESTART_DELAY_S = 0
    ctrl.RECOGNIZER_RETRY_S = 0
    ctrl.UNMUTE_DELAY_S = 0
    return ctrl


async def _greeted(controller):
    await controller.start()
    await settle()
    assert controller.phase is CallPhase.WAITING_FOR_REPLY


class TestStartup:
    @pytest.mark.asyncio
    async def test_greeting_spoken_then_waits_for_reply(self, controller, synthesizer, recognizer):
        statuses = []
        controller._on_status = statuses.append
        await controller.start()
        assert controller.phase is CallPhase.GREETING_PENDING
        assert statuses == ["Connecting...", STATUS_READY]

        await settle()
        assert synthesizer.spoken == [GREETING]
        assert controller.call.conversation_started
        assert controller.phase is CallPhase.WAITING_FOR_REPLY
        assert recognizer.active
        assert "reply_timeout" in controller.pending_timers
        controller.end_call()

    @pytest.mark.asyncio
    async def test_device_unavailable_ends_call(self, recognizer, synthesizer, replies):
        adapter = CaptureAdapter(FakeDevices(error=DeviceUnavailable("denied")), recognizer, synthesizer)
        controller = _fast(ConsultationController(adapter, replies))
        await controller.start()
        await settle()
        assert controller.phase is CallPhase.ENDED
        assert controller.current_message == STATUS_DEVICE_ERROR
        assert synthesizer.spoken == []

    @pytest.mark.asyncio
    async def test_permission_error_from_devices_ends_call(self, recognizer, synthesizer, replies):
        adapter = CaptureAdapter(FakeDevices(error=PermissionError("blocked")), recognizer, synthesizer)
        controller = _fast(ConsultationController(adapter, replies))
        await controller.start()
        assert controller.phase is CallPhase.ENDED
        assert controller.current_message == STATUS_DEVICE_ERROR

    @pytest.mark.asyncio
    async def test_without_recognizer_call_continues_degraded(self, devices, synthesizer, replies):
        statuses = []
        adapter = CaptureAdapter(devices, recognizer=None, synthesizer=synthesizer)
        controller = _fast(ConsultationController(adapter, replies, on_status=statuses.append))
        await controller.start()
        await settle()
        assert STATUS_NO_RECOGNITION in statuses
        assert controller.call.listening_disabled
        assert synthesizer.spoken == [GREETING]
        assert controller.phase is CallPhase.IDLE
        controller.end_call()

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, controller, devices):
        await controller.start()
        await controller.start()
        await settle()
        assert devices.acquire_count == 1
        controller.end_call()


class TestTurns:
    @pytest.mark.asyncio
    async def test_final_transcript_gets_reply(self, controller, synthesizer, recognizer, replies):
        await _greeted(controller)
        recognizer.say("I have a headache")
        assert controller.phase is CallPhase.PROCESSING
        assert not recognizer.active

        await settle()
        assert replies.transcripts == ["I have a headache"]
        assert synthesizer.spoken[-1] == "echo: I have a headache"
        assert controller.call.message_count == 1
        assert controller.phase is CallPhase.WAITING_FOR_REPLY
        assert recognizer.active
        controller.end_call()

    @pytest.mark.asyncio
    async def test_interim_transcript_rearms_timeout_only(self, controller, recognizer, replies):
        await _greeted(controller)
        before = controller._timers["reply_timeout"]
        recognizer.say("I have", final=False)
        assert replies.transcripts == []
        assert controller.phase is CallPhase.WAITING_FOR_REPLY
        assert controller._timers["reply_timeout"] is not before
        controller.end_call()

    @pytest.mark.asyncio
    async def test_blank_final_transcript_ignored(self, controller, recognizer, replies):
        await _greeted(controller)
        recognizer.say("   ")
        await settle()
        assert replies.transcripts == []
        assert controller.call.message_count == 0
        controller.end_call()

    @pytest.mark.asyncio
    async def test_reply_failure_speaks_apology(self, controller, synthesizer, recognizer, replies):
        replies.replies.append(RuntimeError("model down"))
        await _greeted(controller)
        recognizer.say("I feel dizzy")
        await settle()
        assert synthesizer.spoken[-1] == APOLOGY
        assert controller.phase is CallPhase.WAITING_FOR_REPLY
        controller.end_call()

    @pytest.mark.asyncio
    async def test_transcript_while_speaking_ignored(self, controller, synthesizer, replies):
        synthesizer.hold = True
        await controller.start()
        await settle()
        assert controller.phase is CallPhase.SPEAKING

        controller.on_transcript(TranscriptEvent("hello", True))
        assert replies.transcripts == []
        assert controller.phase is CallPhase.SPEAKING
        controller.end_call()

    @pytest.mark.asyncio
    async def test_synthesis_failure_still_moves_to_waiting(self, devices, recognizer, replies):
        from diagno.errors import SynthesisError

        synthesizer = FakeSynthesizer(error=SynthesisError("tts down"))
        controller = _fast(ConsultationController(CaptureAdapter(devices, recognizer, synthesizer), replies))
        await controller.start()
        await settle()
        assert synthesizer.spoken == [GREETING]
        assert controller.phase is CallPhase.WAITING_FOR_REPLY
        controller.end_call()


class TestReplyTimeout:
    @pytest.mark.asyncio
    async def test_prompt_again_repeats(self, controller, synthesizer):
        controller.REPLY_TIMEOUT_S = 0.02
        await controller.start()
        await settle(0.2)
        assert synthesizer.spoken.count(PROMPT_AGAIN) >= 2
        controller.end_call()

    @pytest.mark.asyncio
    async def test_transcript_beats_pending_reprompt(self, controller, synthesizer, recognizer):
        await _greeted(controller)
        controller._on_reply_timeout()
        recognizer.say("My chest hurts")
        await settle()
        assert synthesizer.spoken == [GREETING, "echo: My chest hurts"]
        controller.end_call()

    @pytest.mark.asyncio
    async def test_transcript_cancels_reprompt_in_progress(self, controller, adapter, recognizer, synthesizer, replies):
        await _greeted(controller)
        synthesizer.hold = True
        controller._on_reply_timeout()
        await settle()
        assert controller.phase is CallPhase.SPEAKING
        assert synthesizer.spoken[-1] == PROMPT_AGAIN
        assert adapter.listening

        recognizer.say("my chest hurts")
        synthesizer.hold = False
        await settle()
        assert replies.transcripts == ["my chest hurts"]
        assert synthesizer.spoken == [GREETING, PROMPT_AGAIN, "echo: my chest hurts"]
        assert synthesizer.cancel_count == 1
        assert controller.phase is CallPhase.WAITING_FOR_REPLY
        controller.end_call()


class TestRecognizerRecovery:
    @pytest.mark.asyncio
    async def test_end_of_stream_restarts(self, controller, recognizer):
        await _greeted(controller)
        recognizer.end()
        await settle()
        assert recognizer.start_count == 2
        assert recognizer.active
        controller.end_call()

    @pytest.mark.asyncio
    async def test_end_of_stream_while_muted_no_restart(self, controller, recognizer):
        await _greeted(controller)
        controller.set_muted(True)
        controller.on_recognition_end()
        await settle()
        assert recognizer.start_count == 1
        controller.end_call()

    @pytest.mark.asyncio
    async def test_fatal_error_disables_listening(self, controller, recognizer):
        await _greeted(controller)
        recognizer.fail("not-allowed")
        assert controller.call.listening_disabled
        assert controller.phase is CallPhase.IDLE
        assert controller.current_message == STATUS_RECOGNITION_DENIED
        assert controller.pending_timers == []

        await settle()
        assert recognizer.start_count == 1
        assert controller.phase is not CallPhase.ENDED
        controller.end_call()

    @pytest.mark.asyncio
    async def test_transient_error_retried_once(self, controller, recognizer):
        await _greeted(controller)
        recognizer.fail("network")
        await settle()
        assert recognizer.start_count == 2
        assert recognizer.active

        recognizer.fail("network")
        await settle()
        assert recognizer.start_count == 2
        assert controller.phase is CallPhase.IDLE
        assert controller.current_message == STATUS_RECOGNITION_LOST

        controller.toggle_mute()
        controller.toggle_mute()
        await settle()
        assert recognizer.start_count == 3
        assert controller.phase is CallPhase.LISTENING
        controller.end_call()

    @pytest.mark.asyncio
    async def test_transcript_resets_retry_count(self, controller, recognizer):
        await _greeted(controller)
        recognizer.fail("no-speech")
        await settle()
        recognizer.say("still", final=False)
        recognizer.fail("no-speech")
        await settle()
        assert recognizer.start_count == 3
        assert controller.phase is CallPhase.WAITING_FOR_REPLY
        controller.end_call()

    @pytest.mark.asyncio
    async def test_start_error_is_retried(self, devices, synthesizer, replies):
        from diagno.errors import RecognizerTransientError

        recognizer = FakeRecognizer(start_errors=[RecognizerTransientError("aborted")])
        controller = _fast(ConsultationController(CaptureAdapter(devices, recognizer, synthesizer), replies))
        await controller.start()
        await settle()
        assert recognizer.start_count == 2
        assert recognizer.active
        controller.end_call()


class TestControls:
    @pytest.mark.asyncio
    async def test_mute_stops_listening_and_timers(self, controller, recognizer, devices):
        await _greeted(controller)
        controller.set_muted(True)
        assert controller.phase is CallPhase.IDLE
        assert not recognizer.active
        assert controller.pending_timers == []
        assert devices.handles.audio[0].enabled is False
        assert devices.acquire_count == 1

    @pytest.mark.asyncio
    async def test_unmute_resumes_listening(self, controller, recognizer, devices):
        await _greeted(controller)
        controller.set_muted(True)
        controller.set_muted(False)
        await settle()
        assert controller.phase is CallPhase.LISTENING
        assert recognizer.active
        assert devices.handles.audio[0].enabled is True
        controller.end_call()

    @pytest.mark.asyncio
    async def test_muted_during_speech_goes_idle(self, controller, synthesizer, recognizer):
        synthesizer.hold = True
        await controller.start()
        await settle()
        controller.set_muted(True)
        assert controller.phase is CallPhase.SPEAKING

        synthesizer.finish()
        await settle()
        assert controller.phase is CallPhase.IDLE
        assert recognizer.start_count == 0
        controller.end_call()

    @pytest.mark.asyncio
    async def test_unmute_before_conversation_does_not_listen(self, controller, recognizer):
        controller.GREETING_DELAY_S = 10
        await controller.start()
        controller.set_muted(True)
        controller.set_muted(False)
        await settle()
        assert controller.phase is CallPhase.GREETING_PENDING
        assert recognizer.start_count == 0
        controller.end_call()

    @pytest.mark.asyncio
    async def test_toggles_apply_to_open_tracks(self, controller, devices):
        await _greeted(controller)
        assert controller.toggle_video() is False
        assert devices.handles.video[0].enabled is False
        assert controller.toggle_mute() is True
        assert devices.handles.audio[0].enabled is False
        assert devices.acquire_count == 1
        controller.end_call()


class TestEndCall:
    @pytest.mark.asyncio
    async def test_releases_tracks_once(self, controller, devices):
        await _greeted(controller)
        controller.end_call()
        controller.end_call()
        assert controller.phase is CallPhase.ENDED
        assert controller.current_message == STATUS_ENDED
        assert controller.pending_timers == []
        assert not controller.call.connected
        assert [t.stop_count for t in devices.handles.tracks()] == [1, 1]

    @pytest.mark.asyncio
    async def test_end_during_speech_cancels_it(self, controller, synthesizer):
        synthesizer.hold = True
        await controller.start()
        await settle()
        controller.end_call()
        await settle()
        assert synthesizer.cancel_count == 1
        assert synthesizer.spoken == [GREETING]
        assert controller.phase is CallPhase.ENDED

    @pytest.mark.asyncio
    async def test_events_after_end_ignored(self, controller, recognizer, replies):
        await _greeted(controller)
        controller.end_call()
        controller.on_transcript(TranscriptEvent("hello?", True))
        controller.on_recognition_end()
        await settle()
        assert replies.transcripts == []
        assert recognizer.start_count == 1
        assert controller.phase is CallPhase.ENDED

    @pytest.mark.asyncio
    async def test_end_before_greeting_cancels_it(self, controller, synthesizer):
        controller.GREETING_DELAY_S = 0.05
        await controller.start()
        controller.end_call()
        await settle(0.1)
        assert synthesizer.spoken == []
