from diagno.reasoner import LocalReplySource
from diagno.relay_client import RelayReplySource
from diagno.replies import build_reply_source


def test_local_by_default(monkeypatch):
    monkeypatch.delenv("CONSULTATION_REPLY_MODE", raising=False)
    monkeypatch.delenv("RELAY_URL", raising=False)
    assert isinstance(build_reply_source(), LocalReplySource)


def test_relay_mode(monkeypatch):
    monkeypatch.setenv("CONSULTATION_REPLY_MODE", "Relay")
    monkeypatch.setenv("RELAY_URL", "ws://localhost:8081/ws/relay")
    source = build_reply_source()
    assert isinstance(source, RelayReplySource)
    assert source.client.url == "ws://localhost:8081/ws/relay"
    assert not source.client.connected


def test_relay_mode_without_url_falls_back(monkeypatch, caplog):
    monkeypatch.setenv("CONSULTATION_REPLY_MODE", "relay")
    monkeypatch.delenv("RELAY_URL", raising=False)
    assert isinstance(build_reply_source(), LocalReplySource)
    assert "RELAY_URL" in caplog.text


def test_each_call_gets_its_own_source(monkeypatch):
    monkeypatch.delenv("CONSULTATION_REPLY_MODE", raising=False)
    assert build_reply_source() is not build_reply_source()
