"""
Redaction tests.

CRITICAL: Tokens NEVER appear in logs.
"""

import logging
from io import StringIO

import pytest

from ledgerlink.credentials.redaction import (
    AUDIT_LOGGER_NAME,
    REDACTED_VALUE,
    AuditEventType,
    CredentialAuditLogger,
    CredentialLoggingFilter,
    is_credential_secret_key,
    redact_credential_data,
    redact_credential_value,
)


@pytest.fixture
def log_capture():
    """Capture log output through the redaction filter."""
    log_stream = StringIO()
    handler = logging.StreamHandler(log_stream)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s %(message)s %(access_token)s"))
    handler.addFilter(CredentialLoggingFilter())

    logger = logging.getLogger("test_redaction")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)

    yield logger, log_stream

    logger.removeHandler(handler)


class TestSecretKeys:

    @pytest.mark.parametrize("key", ["access_token", "refresh_token", "client_secret", "Authorization"])
    def test_secret_keys(self, key):
        assert is_credential_secret_key(key)

    @pytest.mark.parametrize("key", ["account_name", "provider", "access_token_expires_at", "connection_id"])
    def test_safe_keys(self, key):
        assert not is_credential_secret_key(key)


class TestRedaction:

    def test_nested_data(self):
        data = {
            "connection": {"access_token": "abc", "account_name": "Acme Books"},
            "items": [{"refresh_token": "def"}],
        }
        redacted = redact_credential_data(data)

        assert redacted["connection"]["access_token"] == REDACTED_VALUE
        assert redacted["connection"]["account_name"] == "Acme Books"
        assert redacted["items"][0]["refresh_token"] == REDACTED_VALUE

    def test_bearer_value(self):
        redacted = redact_credential_value("Authorization: Bearer abc.def-ghi")
        assert "abc.def-ghi" not in redacted
        assert REDACTED_VALUE in redacted

    def test_vault_ciphertext_value(self, vault):
        ciphertext = vault.encrypt("token")
        assert ciphertext not in redact_credential_value(f"stored {ciphertext}")

    def test_non_string_passthrough(self):
        assert redact_credential_value(42) == 42


class TestLoggingFilter:

    def test_extra_token_field_redacted(self, log_capture):
        logger, stream = log_capture
        logger.info("Refreshed", extra={"access_token": "test_plain_token_value"})

        output = stream.getvalue()
        assert "test_plain_token_value" not in output
        assert REDACTED_VALUE in output


class TestAuditLogger:

    def test_audit_event_shape(self, caplog):
        audit = CredentialAuditLogger("user-1")
        with caplog.at_level(logging.INFO, logger=AUDIT_LOGGER_NAME):
            audit.log(
                event_type=AuditEventType.CONNECTION_STORED,
                connection_id="conn-1",
                provider="quickbooks",
                account_name="Acme Books",
                metadata={"refresh_token": "leak-me-not"},
            )

        record = caplog.records[-1]
        assert record.event_type == "connection.stored"
        assert record.connection_id == "conn-1"
        assert record.account_name == "Acme Books"
        assert record.refresh_token == REDACTED_VALUE
