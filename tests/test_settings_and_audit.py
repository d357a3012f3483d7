"""
Tests for configuration and the audit logger.
"""

import pytest

from pydantic import ValidationError

from my_pocket.audit import AuditLogger, create_correlation_id
from my_pocket.config import AppSettings, SyncSettings, get_settings, validate_all_settings
from my_pocket.models.audit import AuditEventBuilder, AuditEventType, AuditSeverity
from my_pocket.models.ledger import EntityRef, EntityType


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def despesa_ref() -> EntityRef:
    return EntityRef(workspace_id="w1", entity_type=EntityType.DESPESA, entity_id="d1")


class TestSettings:
    """Tests for environment driven configuration."""

    def test_sync_defaults(self, monkeypatch):
        for name in ["PUSH_MAX_ATTEMPTS", "AUTO_SYNC_INTERVAL_SECONDS"]:
            monkeypatch.delenv(f"MY_POCKET_SYNC_{name}", raising=False)
        settings = SyncSettings()
        assert settings.push_max_attempts == 3
        assert settings.auto_sync_interval_seconds == 5.0

    def test_sync_from_environment(self, monkeypatch):
        monkeypatch.setenv("MY_POCKET_SYNC_PUSH_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("MY_POCKET_SYNC_AUTO_SYNC_INTERVAL_SECONDS", "0")
        settings = get_settings().sync
        assert settings.push_max_attempts == 5
        assert settings.auto_sync_interval_seconds == 0.0

    def test_backoff_bounds_are_checked(self):
        with pytest.raises(ValidationError):
            SyncSettings(backoff_min_seconds=5.0, backoff_max_seconds=1.0)

    def test_log_level_is_normalized(self):
        assert AppSettings(log_level=" debug ").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            AppSettings(log_level="chatty")

    def test_remote_backend_choices(self, monkeypatch):
        monkeypatch.setenv("REMOTE_BACKEND", "memory")
        assert get_settings().app.remote_backend == "memory"
        with pytest.raises(ValidationError):
            AppSettings(remote_backend="postgres")

    def test_validate_all_settings_reports_missing_sheets_config(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_SHEETS_CREDENTIALS_PATH", raising=False)
        monkeypatch.delenv("GOOGLE_SHEETS_SPREADSHEET_ID", raising=False)
        results = validate_all_settings()
        assert results["google_sheets"] is False
        assert "google_sheets_error" in results
        assert results["sync"] is True


class TestAuditLogger:
    """Tests for the audit trail and diagnostics."""

    def test_keeps_recent_events_newest_first(self):
        audit = AuditLogger(buffer_size=10)
        audit.log_mutation_applied(despesa_ref(), "upsert", "ana")
        audit.log_push_accepted(despesa_ref(), 1, "m1")

        events = audit.recent()
        assert [event.event_type for event in events] == [
            AuditEventType.PUSH_ACCEPTED,
            AuditEventType.MUTATION_APPLIED,
        ]

    def test_buffer_is_bounded(self):
        audit = AuditLogger(buffer_size=10)
        for index in range(15):
            audit.log_push_accepted(despesa_ref(), index, f"m{index}")
        assert len(audit.recent(limit=100)) == 10

    def test_diagnostics_are_warnings_and_above(self):
        audit = AuditLogger()
        audit.log_mutation_applied(despesa_ref(), "upsert", "ana")
        audit.log_synced_with_conflict(despesa_ref(), 4, "m1")
        audit.log_degraded_sync("w2", 3, "offline")

        diagnostics = audit.diagnostics()
        assert [event.event_type for event in diagnostics] == [
            AuditEventType.DEGRADED_SYNC,
            AuditEventType.SYNCED_WITH_CONFLICT,
        ]
        assert [event.event_type for event in audit.diagnostics("w1")] == [
            AuditEventType.SYNCED_WITH_CONFLICT,
        ]

    def test_listeners_receive_diagnostics_only(self):
        audit = AuditLogger()
        received = []
        remove = audit.add_listener(received.append)

        audit.log_push_accepted(despesa_ref(), 1, "m1")
        audit.log_remote_rejected(despesa_ref(), "permission denied", "m2")
        remove()
        audit.log_remote_rejected(despesa_ref(), "permission denied", "m3")

        assert len(received) == 1
        assert received[0].severity == AuditSeverity.ERROR
        assert received[0].error_message == "permission denied"

    def test_failing_listener_never_raises(self):
        audit = AuditLogger()

        def broken(event):
            raise RuntimeError("ui gone")

        audit.add_listener(broken)
        assert audit.log(AuditEventBuilder.degraded_sync("w1", 1, "offline")) is False
        assert len(audit.diagnostics("w1")) == 1

    def test_correlation_ids_link_events(self):
        audit = AuditLogger()
        correlation_id = create_correlation_id()
        audit.log_reconcile_completed("w1", 2, 1, correlation_id)
        audit.log_reconcile_superseded("w1", 1, 2, correlation_id)
        assert {event.correlation_id for event in audit.recent()} == {correlation_id}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
