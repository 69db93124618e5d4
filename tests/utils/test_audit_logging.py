"""Tests for connection audit logging and sensitive data redaction."""

import logging

from commerce_ingestor.utils.audit import (
    AuditAction,
    AuditEvent,
    AuditLogger,
    AuditOutcome,
    SensitiveFieldRedactor,
    get_audit_logger,
)


class TestSensitiveFieldRedactor:
    """Test sensitive data redaction."""

    def test_redact_webhook_secret_in_string(self):
        text = "configured with whsec_abc123XYZ for endpoint"
        redacted = SensitiveFieldRedactor.redact_string(text)
        assert "abc123XYZ" not in redacted
        assert "***REDACTED***" in redacted

    def test_redact_access_token_in_string(self):
        redacted = SensitiveFieldRedactor.redact_string("token=shpat_1234567890 in header")
        assert "shpat_1234567890" not in redacted

    def test_redact_email_partial(self):
        redacted = SensitiveFieldRedactor.redact_string("Customer: john.doe@example.com")
        assert "john.doe" not in redacted
        assert "joh***@example.com" in redacted

    def test_redact_sensitive_field_names(self):
        data = {
            "webhook_secret": "shpss_123",
            "credential": "sk_live_abc",
            "body": '{"email": "a@b.co"}',
            "topic": "orders/paid",
        }
        redacted = SensitiveFieldRedactor.redact_dict(data)
        assert redacted["webhook_secret"] == "***REDACTED***"
        assert redacted["credential"] == "***REDACTED***"
        assert redacted["body"] == "***REDACTED***"
        assert redacted["topic"] == "orders/paid"

    def test_redact_nested_dicts_and_lists(self):
        data = {
            "customer": {"email": "jane@example.com", "access_token": "abc"},
            "records": [{"payload": {"total": 10}}, "contact bob@example.com"],
        }
        redacted = SensitiveFieldRedactor.redact_dict(data)
        assert redacted["customer"]["email"] == "jan***@example.com"
        assert redacted["customer"]["access_token"] == "***REDACTED***"
        assert redacted["records"][0]["payload"] == "***REDACTED***"
        assert redacted["records"][1] == "contact bob***@example.com"

    def test_max_depth_stops_recursion(self):
        data = {"secret": "x"}
        assert SensitiveFieldRedactor.redact_dict(data, max_depth=0) == data


class TestAuditLogger:
    """Test audit log emission."""

    def test_connection_event_is_logged_with_action(self, caplog):
        caplog.set_level(logging.INFO, logger="commerce_ingestor.audit")

        AuditLogger().log_connection_event(
            AuditAction.CONNECTION_DISCONNECTED,
            AuditOutcome.SUCCESS,
            connection_id="conn-1",
            provider="shopify",
            reason="app/uninstalled",
        )

        [record] = [r for r in caplog.records if r.name == "commerce_ingestor.audit"]
        assert record.action == "connection.disconnected"
        assert record.outcome == "success"
        assert record.connection_id == "conn-1"
        assert record.audit_event["details"] == {"reason": "app/uninstalled"}

    def test_details_are_redacted(self, caplog):
        caplog.set_level(logging.INFO, logger="commerce_ingestor.audit")

        AuditLogger().log_connection_event(
            AuditAction.CUSTOMER_REDACTED,
            AuditOutcome.SUCCESS,
            connection_id="conn-1",
            provider="shopify",
            customer_email="private@example.com",
            webhook_secret="shpss_live",
        )

        record = caplog.records[-1]
        details = record.audit_event["details"]
        assert details["customer_email"] == "pri***@example.com"
        assert details["webhook_secret"] == "***REDACTED***"
        assert "private@example.com" not in str(record.audit_event)

    def test_redaction_can_be_disabled(self, caplog):
        caplog.set_level(logging.INFO, logger="commerce_ingestor.audit")

        AuditLogger(redact_sensitive=False).log_event(
            AuditEvent(
                action=AuditAction.WEBHOOK_REJECTED,
                outcome=AuditOutcome.DENIED,
                actor="stripe",
                actor_type="provider",
                details={"reason": "timestamp_out_of_tolerance"},
            )
        )

        record = caplog.records[-1]
        assert record.audit_event["outcome"] == "denied"
        assert record.connection_id == "-"

    def test_log_sync_maps_outcome_to_action(self, caplog):
        caplog.set_level(logging.INFO, logger="commerce_ingestor.audit")
        audit = AuditLogger()

        audit.log_sync(connection_id="conn-1", provider="stripe", outcome=AuditOutcome.PARTIAL)
        audit.log_sync(
            connection_id="conn-1",
            provider="stripe",
            outcome=AuditOutcome.FAILURE,
            error_message="provider down",
        )

        actions = [r.action for r in caplog.records if r.name == "commerce_ingestor.audit"]
        assert actions == ["sync.completed", "sync.failed"]
        assert caplog.records[-1].audit_event["error_message"] == "provider down"

    def test_global_audit_logger_is_shared(self):
        assert get_audit_logger() is get_audit_logger()
