"""
Tests for webhook signature checks and error sanitizing.
"""

import pytest

from src.api.shared.security import sanitize_error_message, verify_webhook_signature
from src.core.submissions.deliverers import sign_payload

SECRET = "whsec-test"
BODY = b'{"submission_id":"sub-1","status":"confirmed"}'
NOW = 1_790_000_000.0


def signed(timestamp=NOW, body=BODY, secret=SECRET):
    ts = str(int(timestamp))
    return sign_payload(secret, ts, body), ts


class TestVerifyWebhookSignature:
    """Test HMAC verification of inbound webhooks."""

    def test_valid(self):
        signature, ts = signed()
        assert verify_webhook_signature(SECRET, BODY, signature, ts, now=NOW) is True

    def test_rejected_without_secret(self):
        assert verify_webhook_signature("", BODY, None, None, now=NOW) is False

    def test_signed_request_still_rejected_without_secret(self):
        signature, ts = signed()
        assert verify_webhook_signature("", BODY, signature, ts, now=NOW) is False

    def test_unsigned_allowed_when_insecure(self):
        assert verify_webhook_signature("", BODY, None, None, now=NOW, allow_unsigned=True) is True

    def test_insecure_flag_ignored_when_secret_set(self):
        assert verify_webhook_signature(SECRET, BODY, None, None, now=NOW, allow_unsigned=True) is False

    @pytest.mark.parametrize("signature,timestamp", [(None, "1790000000"), ("sha256=abc", None), ("", "")])
    def test_missing_headers(self, signature, timestamp):
        assert verify_webhook_signature(SECRET, BODY, signature, timestamp, now=NOW) is False

    def test_tampered_body(self):
        signature, ts = signed()
        assert verify_webhook_signature(SECRET, BODY + b" ", signature, ts, now=NOW) is False

    def test_wrong_secret(self):
        signature, ts = signed(secret="other")
        assert verify_webhook_signature(SECRET, BODY, signature, ts, now=NOW) is False

    def test_stale_timestamp(self):
        signature, ts = signed(timestamp=NOW - 301)
        assert verify_webhook_signature(SECRET, BODY, signature, ts, now=NOW) is False

    def test_within_tolerance(self):
        signature, ts = signed(timestamp=NOW - 299)
        assert verify_webhook_signature(SECRET, BODY, signature, ts, now=NOW) is True

    def test_non_numeric_timestamp(self):
        signature, _ = signed()
        assert verify_webhook_signature(SECRET, BODY, signature, "yesterday", now=NOW) is False


class TestSanitizeErrorMessage:
    """Test scrubbing of internal details."""

    def test_database_url_removed(self):
        message = sanitize_error_message(
            Exception("connect failed: postgresql://app:hunter2@db:5432/recdelivery")
        )
        assert "hunter2" not in message
        assert "[database]" in message

    def test_secret_redacted(self):
        message = sanitize_error_message(Exception("bad config secret=abc123"))
        assert "abc123" not in message

    def test_truncated(self):
        message = sanitize_error_message(Exception("x" * 2000))
        assert len(message) == 503
