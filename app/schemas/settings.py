from pydantic import BaseModel


class SettingsUpdate(BaseModel):
    approvalSteps: int | None = None
    emailNotifications: bool | None = None
    smsNotifications: bool | None = None
    checkInOutNotifications: bool | None = None
    gates: list[str] | None = None
    smtpHost: str | None = None
    smtpPort: int | None = None
    smtpUser: str | None = None
    smtpPassword: str | None = None
    smsGatewayUrl: str | None = None
    smsApiKey: str | None = None
    emailGatewayUrl: str | None = None
    emailApiKey: str | None = None

    def to_changes(self) -> dict:
        """snake_case keys for the fields the caller actually sent."""
        mapping = {
            "approvalSteps": "approval_steps",
            "emailNotifications": "email_notifications",
            "smsNotifications": "sms_notifications",
            "checkInOutNotifications": "check_in_out_notifications",
            "gates": "gates",
            "smtpHost": "smtp_host",
            "smtpPort": "smtp_port",
            "smtpUser": "smtp_user",
            "smtpPassword": "smtp_password",
            "smsGatewayUrl": "sms_gateway_url",
            "smsApiKey": "sms_api_key",
            "emailGatewayUrl": "email_gateway_url",
            "emailApiKey": "email_api_key",
        }
        sent = self.model_dump(exclude_unset=True)
        return {mapping[key]: value for key, value in sent.items()}


class GatewayTestRequest(BaseModel):
    to: str
    overrides: SettingsUpdate | None = None


class BlacklistEntryPayload(BaseModel):
    name: str | None = None
    organization: str | None = None
    email: str | None = None
    phone: str | None = None
    reason: str | None = None
    active: bool | None = None
