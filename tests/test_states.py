from diagno.states import CallPhase, RelayPhase, Stage, UrgencyLevel


def test_all_call_phases_exist():
    expected = {
        "idle", "connecting", "greeting_pending", "listening",
        "processing", "speaking", "waiting_for_reply", "ended",
    }
    assert {p.value for p in CallPhase} == expected


def test_listening_phases():
    assert CallPhase.LISTENING.is_listening
    assert CallPhase.WAITING_FOR_REPLY.is_listening
    assert not CallPhase.SPEAKING.is_listening
    assert not CallPhase.PROCESSING.is_listening


def test_only_listening_phases_accept_speech():
    accepting = {p for p in CallPhase if p.accepts_speech}
    assert accepting == {CallPhase.LISTENING, CallPhase.WAITING_FOR_REPLY}


def test_only_ended_is_terminal():
    assert [p for p in CallPhase if p.is_terminal] == [CallPhase.ENDED]


def test_assessment_is_terminal_stage():
    assert Stage.ASSESSMENT.is_terminal
    assert not Stage.FOLLOW_UP.is_terminal


def test_relay_phases():
    assert {p.value for p in RelayPhase} == {"open", "active", "closed"}


def test_urgency_levels_serialize_as_strings():
    assert UrgencyLevel.URGENT.value == "URGENT"
    assert UrgencyLevel("PRIORITAIRE") is UrgencyLevel.PRIORITAIRE
