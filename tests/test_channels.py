import requests

from followup.services import channels
from followup.services.channels import (
    ChannelSender,
    LogProvider,
    UnavailableProvider,
    WebhookProvider,
    build_channel_sender,
)


class _FakeResponse:
    def __init__(self, status_code, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def _sender(**overrides):
    providers = {
        "email": LogProvider("email"),
        "sms": UnavailableProvider("sms transport not configured"),
        "whatsapp": LogProvider("whatsapp"),
        "dashboard": LogProvider("dashboard"),
    }
    providers.update(overrides)
    return ChannelSender(**providers)


def test_log_provider_succeeds_with_message_id():
    outcome = _sender().send("email", "ana@example.com", "Hi", "Body")
    assert outcome.success is True
    assert outcome.provider_message_id.startswith("log-")


def test_unconfigured_channel_fails_without_raising():
    outcome = _sender().send("sms", "+15550100", "Hi", "Body")
    assert outcome.success is False
    assert "not configured" in outcome.error


def test_unknown_channel_fails():
    outcome = _sender().send("fax", "ana@example.com", "Hi", "Body")
    assert outcome.success is False
    assert "Unsupported channel" in outcome.error


def test_webhook_provider_posts_payload(monkeypatch):
    captured = {}

    def _post(url, json=None, headers=None, timeout=None):
        captured.update(url=url, json=json, headers=headers, timeout=timeout)
        return _FakeResponse(202, {"id": "gw-17"})

    monkeypatch.setattr(channels.requests, "post", _post)
    provider = WebhookProvider("whatsapp", "https://gateway.test/send", token="s3cret")

    outcome = _sender(whatsapp=provider).send("WhatsApp", "+15550100", "Hi", "Body")

    assert outcome.success is True
    assert outcome.provider_message_id == "gw-17"
    assert captured["json"] == {"channel": "whatsapp", "to": "+15550100", "subject": "Hi", "message": "Body"}
    assert captured["headers"]["Authorization"] == "Bearer s3cret"


def test_webhook_errors_become_failed_outcomes(monkeypatch):
    monkeypatch.setattr(channels.requests, "post", lambda *a, **k: _FakeResponse(503, text="busy"))
    provider = WebhookProvider("sms", "https://gateway.test/send")
    outcome = _sender(sms=provider).send("sms", "+15550100", "Hi", "Body")
    assert outcome.success is False
    assert "status=503" in outcome.error

    def _timeout(*_a, **_k):
        raise requests.Timeout("read timed out")

    monkeypatch.setattr(channels.requests, "post", _timeout)
    outcome = _sender(sms=provider).send("sms", "+15550100", "Hi", "Body")
    assert outcome.success is False
    assert "read timed out" in outcome.error


def test_build_channel_sender_without_transport(monkeypatch):
    monkeypatch.delenv("SMTP_HOST", raising=False)
    monkeypatch.delenv("SMS_WEBHOOK_URL", raising=False)
    monkeypatch.setenv("WHATSAPP_WEBHOOK_URL", "https://gateway.test/wa")
    monkeypatch.setattr(channels.settings, "smtp_host", None)
    monkeypatch.setattr(channels.settings, "sms_webhook_url", None)

    sender = build_channel_sender()

    assert isinstance(sender.email, LogProvider)
    assert isinstance(sender.sms, UnavailableProvider)
    assert isinstance(sender.whatsapp, WebhookProvider)
    assert isinstance(sender.dashboard, LogProvider)
