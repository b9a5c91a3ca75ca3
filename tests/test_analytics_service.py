"""
Tests for Firestore-backed billing analytics
"""

import pytest

from billing.core.config import settings
from billing.core.firebase import init_firebase
from billing.services.analytics_service import AnalyticsService


@pytest.fixture
def analytics_enabled(monkeypatch):
    monkeypatch.setattr(settings, "analytics_enabled", True)


@pytest.fixture
def firestore_db(mock_firebase_admin):
    """Firestore client handed out by the mocked SDK"""
    return mock_firebase_admin.return_value


class TestAnalyticsDisabled:

    def test_no_firestore_client_is_created(self, mock_firebase_admin):
        service = AnalyticsService()

        service.log_success(action="create_subscription", subject_id="sub_1")

        assert service.db is None
        mock_firebase_admin.assert_not_called()

    def test_init_firebase_is_skipped(self, monkeypatch):
        calls = []
        monkeypatch.setattr("firebase_admin.initialize_app", lambda *args, **kwargs: calls.append(args))

        init_firebase()

        assert calls == []


@pytest.mark.usefixtures("analytics_enabled")
class TestAnalyticsEnabled:

    def test_log_success_writes_event(self, firestore_db):
        service = AnalyticsService()

        service.log_success(action="change_plan", subject_id="sub_1", parameters={"change_type": "upgrade"})

        firestore_db.collection.assert_called_once_with("billing_events")
        event = firestore_db.collection.return_value.add.call_args.args[0]
        assert event["event_name"] == "change_plan_success"
        assert event["subject_id"] == "sub_1"
        assert event["parameters"] == {"status": "success", "change_type": "upgrade"}

    def test_log_failure_writes_event_and_error(self, firestore_db):
        service = AnalyticsService()

        service.log_failure(action="renew_subscription", error="Subscription cannot be renewed", subject_id="sub_1")

        collections = [call.args[0] for call in firestore_db.collection.call_args_list]
        assert collections == ["billing_events", "billing_errors"]
        error = firestore_db.collection.return_value.add.call_args.args[0]
        assert error["action"] == "renew_subscription"
        assert error["error_message"] == "Subscription cannot be renewed"

    def test_firestore_errors_are_swallowed(self, firestore_db):
        firestore_db.collection.return_value.add.side_effect = Exception("Firestore unavailable")
        service = AnalyticsService()

        service.log_failure(action="cancel_subscription", error="boom")

    def test_init_firebase_initializes_once(self, monkeypatch):
        calls = []
        monkeypatch.setattr("firebase_admin._apps", {})
        monkeypatch.setattr("firebase_admin.initialize_app", lambda *args, **kwargs: calls.append(kwargs or args))

        init_firebase()

        assert len(calls) == 1
