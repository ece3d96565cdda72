# ============================================================================
# JOB ENVELOPE TESTS
# ============================================================================
# STATUS: Tests - Envelope model and wire format
# PURPOSE: Verify retry policy coercion, wire shape and decode errors
# CREATED: 14 OCT 2026
# ============================================================================
"""
Job Envelope Tests

Covers:
1. RetryPolicy wire forms (false / true / N / 0)
2. Attempt accounting (N attempts means attempts 0..N-1)
3. Envelope wire format ("class" key, optional failure fields)
4. Decoding foreign bodies (handlerName alias, malformed JSON)
5. Immutable copies (renamed, next_attempt)

Run with:
    pytest tests/test_envelope.py -v
"""

import json

import pytest
from pydantic import ValidationError

from core.errors import EnvelopeDecodeError, HandlerExecutionError
from core.models.envelope import (
    DEFAULT_MAX_ATTEMPTS,
    DispatchOptions,
    JobEnvelope,
    RetryPolicy,
)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def envelope():
    return JobEnvelope(
        handler_name="EmailWorker",
        queue="email",
        args=("a@example.org", "Hi"),
        retry=3,
    )


# ============================================================================
# RETRY POLICY
# ============================================================================

class TestRetryPolicy:

    @pytest.mark.parametrize("wire, enabled, max_attempts", [
        (False, False, None),
        (True, True, None),
        (0, False, None),
        (5, True, 5),
    ])
    def test_coerce_wire_forms(self, wire, enabled, max_attempts):
        policy = RetryPolicy.coerce(wire)
        assert policy.enabled is enabled
        assert policy.max_attempts == max_attempts

    def test_coerce_dict_accepts_camel_case(self):
        policy = RetryPolicy.coerce({"enabled": True, "maxAttempts": 4})
        assert policy.max_attempts == 4

    def test_coerce_rejects_negative(self):
        with pytest.raises(ValueError):
            RetryPolicy.coerce(-1)

    def test_coerce_rejects_strings(self):
        with pytest.raises(ValueError):
            RetryPolicy.coerce("yes")

    def test_to_wire(self):
        assert RetryPolicy(enabled=False).to_wire() is False
        assert RetryPolicy().to_wire() is True
        assert RetryPolicy(max_attempts=7).to_wire() == 7

    def test_disabled_policy_allows_one_attempt(self):
        policy = RetryPolicy(enabled=False)
        assert policy.effective_max_attempts() == 1
        assert policy.allows_retry(0) is False

    def test_max_attempts_bounds_retries(self):
        """With max_attempts=3 only failures at attempts 0 and 1 are retried."""
        policy = RetryPolicy(max_attempts=3)
        assert policy.allows_retry(0) is True
        assert policy.allows_retry(1) is True
        assert policy.allows_retry(2) is False

    def test_enabled_without_count_uses_default(self):
        policy = RetryPolicy()
        assert policy.effective_max_attempts() == DEFAULT_MAX_ATTEMPTS
        assert policy.effective_max_attempts(default=2) == 2
        assert policy.allows_retry(1, default=2) is False


# ============================================================================
# DISPATCH OPTIONS
# ============================================================================

class TestDispatchOptions:

    def test_merge_is_per_key(self):
        defaults = DispatchOptions.build(queue="email", retry=5)
        merged = defaults.merged(DispatchOptions.build(retry=False))
        assert merged.queue == "email"
        assert merged.retry.enabled is False

    def test_unset_override_keeps_default(self):
        defaults = DispatchOptions.build(queue="email", retry=5)
        assert defaults.merged(DispatchOptions()) == defaults


# ============================================================================
# WIRE FORMAT
# ============================================================================

class TestEnvelopeWire:

    def test_wire_uses_class_key(self, envelope):
        data = json.loads(envelope.to_wire())
        assert data["class"] == "EmailWorker"
        assert "handler_name" not in data
        assert data["queue"] == "email"
        assert data["retry"] == 3
        assert data["args"] == ["a@example.org", "Hi"]
        assert data["attempt"] == 0
        assert data["jid"] == envelope.jid
        assert "enqueued_at" in data

    def test_failure_fields_omitted_until_set(self, envelope):
        data = envelope.to_dict()
        assert "error_class" not in data
        assert "failed_at" not in data

    def test_retry_false_on_wire(self):
        env = JobEnvelope(handler_name="EmailWorker", queue="email", retry=False)
        assert env.to_dict()["retry"] is False

    def test_decode_roundtrip_preserves_identity(self, envelope):
        decoded = JobEnvelope.from_wire(envelope.to_wire())
        assert decoded == envelope

    def test_decode_accepts_handler_name_aliases(self):
        for key in ("handlerName", "handler_name"):
            body = json.dumps({key: "EmailWorker", "queue": "email", "args": [1]})
            assert JobEnvelope.from_wire(body).handler_name == "EmailWorker"

    def test_decode_fills_defaults(self):
        env = JobEnvelope.from_wire('{"class": "EmailWorker", "queue": "email"}')
        assert env.args == ()
        assert env.attempt == 0
        assert env.retry.enabled is True
        assert env.jid

    def test_decode_bytes(self, envelope):
        assert JobEnvelope.from_wire(envelope.to_wire().encode("utf-8")).jid == envelope.jid

    @pytest.mark.parametrize("body", [
        "not json",
        "[1, 2]",
        '{"queue": "email"}',
        '{"class": "", "queue": "email"}',
        '{"class": "EmailWorker", "queue": "email", "args": "nope"}',
        '{"class": "EmailWorker", "queue": "email", "attempt": -1}',
    ])
    def test_decode_rejects_malformed(self, body):
        with pytest.raises(EnvelopeDecodeError) as exc_info:
            JobEnvelope.from_wire(body)
        assert exc_info.value.body == body

    def test_args_must_be_json_compatible(self):
        with pytest.raises(ValidationError):
            JobEnvelope(handler_name="EmailWorker", queue="email", args=(object(),))


# ============================================================================
# COPIES
# ============================================================================

class TestEnvelopeCopies:

    def test_envelope_is_frozen(self, envelope):
        with pytest.raises(ValidationError):
            envelope.queue = "other"

    def test_renamed_keeps_everything_else(self, envelope):
        renamed = envelope.renamed("Mailer::EmailWorker")
        assert renamed.handler_name == "Mailer::EmailWorker"
        assert renamed.jid == envelope.jid
        assert renamed.args == envelope.args
        assert envelope.handler_name == "EmailWorker"

    def test_next_attempt_records_failure(self, envelope):
        error = HandlerExecutionError("EmailWorker", "boom", cause=TimeoutError("smtp"))
        retried = envelope.next_attempt(error)

        assert retried.attempt == 1
        assert retried.jid == envelope.jid
        assert retried.error_class == "TimeoutError"
        assert "boom" in retried.error_message
        assert retried.failed_at is not None
        assert envelope.attempt == 0

        data = retried.to_dict()
        assert data["error_class"] == "TimeoutError"
        assert "failed_at" in data
