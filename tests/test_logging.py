"""Tests for log payload helpers."""

from workitem_bridge.utils.logging import REDACTED, sanitize_payload, truncate_payload


class TestSanitizePayload:
    def test_sensitive_keys_redacted(self):
        payload = {"api_key": "k", "nested": {"Authorization": "Basic x", "Name": "Login"}}

        assert sanitize_payload(payload) == {
            "api_key": REDACTED,
            "nested": {"Authorization": REDACTED, "Name": "Login"},
        }

    def test_json_patch_values_redacted_by_path(self):
        operations = [
            {"op": "add", "path": "/fields/System.Title", "value": "Login"},
            {"op": "add", "path": "/fields/Custom.ApiToken", "value": "secret-value"},
        ]

        assert sanitize_payload(operations) == [
            {"op": "add", "path": "/fields/System.Title", "value": "Login"},
            {"op": "add", "path": "/fields/Custom.ApiToken", "value": REDACTED},
        ]

    def test_input_not_modified(self):
        payload = {"token": "t"}

        sanitize_payload(payload)

        assert payload == {"token": "t"}


def test_truncate_payload():
    text = truncate_payload({"value": "x" * 50}, max_size=20)

    assert len(text.splitlines()[0]) <= 20
    assert text.endswith("total chars]")
