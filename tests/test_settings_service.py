import pytest

from app.core.crypto import decrypt_secret
from app.core.exceptions import AppException
from app.db.models import SystemSetting
from app.services.settings_service import get_settings_payload, get_settings_snapshot, save_settings


def test_defaults_without_row(db) -> None:
    snapshot = get_settings_snapshot(db)

    assert snapshot.approval_steps == 2
    assert snapshot.gates == ("228", "229", "230")
    assert snapshot.email_notifications and snapshot.sms_notifications and snapshot.check_in_out_notifications


def test_secrets_are_encrypted_and_never_returned(db) -> None:
    payload = save_settings(db, {"smtp_host": "smtp.example.com", "smtp_password": "hunter2", "approval_steps": 1})

    row = db.get(SystemSetting, 1)
    assert row.smtp_password != "hunter2"
    assert decrypt_secret(row.smtp_password) == "hunter2"
    assert payload["smtpPasswordSet"] is True
    assert "hunter2" not in str(payload)
    assert get_settings_snapshot(db).smtp_password == "hunter2"
    assert get_settings_snapshot(db).approval_steps == 1


def test_partial_update_keeps_other_fields(db, settings_row) -> None:
    settings_row(approval_steps=1, sms_notifications=False)

    save_settings(db, {"gates": ["300", " 301 ", ""]})

    payload = get_settings_payload(db)
    assert payload["gates"] == ["300", "301"]
    assert payload["approvalSteps"] == 1
    assert payload["smsNotifications"] is False


@pytest.mark.parametrize("changes", [{"approval_steps": 3}, {"gates": [" "]}])
def test_invalid_settings_rejected(db, changes) -> None:
    with pytest.raises(AppException):
        save_settings(db, changes)


def test_undecryptable_secret_is_treated_as_unset(db, settings_row) -> None:
    settings_row(sms_gateway_url="https://sms.example.com", sms_api_key="not-a-fernet-token")

    snapshot = get_settings_snapshot(db)

    assert snapshot.sms_gateway_url == "https://sms.example.com"
    assert snapshot.sms_api_key is None
