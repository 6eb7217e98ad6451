"""
Tests for the validated value types.
"""
import pytest

from newsletter.core.exceptions import InvalidIdempotencyKey, InvalidSubscriberEmail, ValidationError
from newsletter.domain.idempotency_key import IdempotencyKey
from newsletter.domain.subscriber_email import SubscriberEmail


class TestIdempotencyKey:
    """Test idempotency key parsing."""

    def test_accepts_uuid_shaped_key(self):
        key = IdempotencyKey.parse("11111111-1111-1111-1111-111111111111")
        assert key.value == "11111111-1111-1111-1111-111111111111"
        assert str(key) == key.value

    def test_rejects_empty_key(self):
        with pytest.raises(InvalidIdempotencyKey):
            IdempotencyKey.parse("")

    def test_length_bounds(self):
        """Test that 50 characters is accepted and 51 rejected."""
        assert IdempotencyKey.parse("a" * 50).value == "a" * 50
        with pytest.raises(InvalidIdempotencyKey, match="at most 50 characters"):
            IdempotencyKey.parse("a" * 51)

    def test_keys_are_case_sensitive_and_not_trimmed(self):
        assert IdempotencyKey.parse("Key") != IdempotencyKey.parse("key")
        assert IdempotencyKey.parse(" key ").value == " key "

    def test_invalid_key_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            IdempotencyKey.parse("")


class TestSubscriberEmail:
    """Test subscriber email validation."""

    def test_valid_email_is_kept_verbatim(self):
        assert SubscriberEmail.parse("Ursula.Le.Guin@acme.io").value == "Ursula.Le.Guin@acme.io"

    @pytest.mark.parametrize("raw", ["", "ursuladomain.com", "@domain.com", "ursula@"])
    def test_rejects_malformed_addresses(self, raw):
        with pytest.raises(InvalidSubscriberEmail):
            SubscriberEmail.parse(raw)
