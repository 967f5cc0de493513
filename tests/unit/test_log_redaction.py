"""Unit tests for secret masking in structured logs."""

from willtank.middleware.logging import MASK, redact_secrets


class TestRedactSecrets:
    def test_top_level_secrets_masked(self):
        event = {"event": "unlock_code_redeemed", "code": "12345678", "token": "abc", "request_id": "r-1"}

        result = redact_secrets(None, "info", event)

        assert result["code"] == MASK
        assert result["token"] == MASK
        assert result["request_id"] == "r-1"

    def test_payload_secrets_masked_without_mutating_the_event_payload(self):
        payload = {"code": "12345678", "contact_name": "Carol"}
        event = {"event": "notification_not_delivered", "payload": payload}

        result = redact_secrets(None, "warning", event)

        assert result["payload"] == {"code": MASK, "contact_name": "Carol"}
        assert payload["code"] == "12345678"

    def test_events_without_secrets_untouched(self):
        event = {"event": "verification_scan_complete", "triggered": 2}
        assert redact_secrets(None, "info", dict(event)) == event
