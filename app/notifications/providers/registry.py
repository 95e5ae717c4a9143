"""Ordered provider resolution.

Each channel has a list of rules evaluated in priority order: stored settings
first, then process configuration. The first rule whose predicate holds builds
the provider. No match means the channel is not configured.
"""

from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from app.core.config import Settings
from app.db.models import DispatchChannel
from app.notifications.providers.base import EmailProvider, ProviderNotConfigured, SmsProvider
from app.notifications.providers.email import HttpEmailGatewayProvider, ResendEmailProvider, SmtpEmailProvider
from app.notifications.providers.sms import HttpSmsGatewayGetProvider, HttpSmsGatewayProvider, TwilioSmsProvider
from app.services.settings_service import SettingsSnapshot

P = TypeVar("P")


@dataclass(frozen=True)
class ProviderRule(Generic[P]):
    name: str
    applies: Callable[[SettingsSnapshot, Settings], bool]
    build: Callable[[SettingsSnapshot, Settings], P]


EMAIL_RULES: list[ProviderRule[EmailProvider]] = [
    ProviderRule(
        name="stored-smtp",
        applies=lambda s, env: bool(s.smtp_host and s.smtp_port and s.smtp_user and s.smtp_password),
        build=lambda s, env: SmtpEmailProvider(
            host=s.smtp_host,
            port=s.smtp_port,
            user=s.smtp_user,
            password=s.smtp_password,
            sender=env.EMAIL_FROM or s.smtp_user,
            timeout=env.PROVIDER_TIMEOUT_SECONDS,
        ),
    ),
    ProviderRule(
        name="stored-email-gateway",
        applies=lambda s, env: bool(s.email_gateway_url),
        build=lambda s, env: HttpEmailGatewayProvider(
            url=s.email_gateway_url,
            api_key=s.email_api_key,
            timeout=env.PROVIDER_TIMEOUT_SECONDS,
        ),
    ),
    ProviderRule(
        name="env-smtp",
        applies=lambda s, env: bool(env.SMTP_HOST and env.SMTP_PORT and env.SMTP_USER and env.SMTP_PASSWORD),
        build=lambda s, env: SmtpEmailProvider(
            host=env.SMTP_HOST,
            port=env.SMTP_PORT,
            user=env.SMTP_USER,
            password=env.SMTP_PASSWORD,
            sender=env.EMAIL_FROM or env.SMTP_USER,
            timeout=env.PROVIDER_TIMEOUT_SECONDS,
        ),
    ),
    ProviderRule(
        name="env-resend",
        applies=lambda s, env: bool(env.RESEND_API_KEY and env.EMAIL_FROM),
        build=lambda s, env: ResendEmailProvider(
            api_key=env.RESEND_API_KEY,
            sender=env.EMAIL_FROM,
            timeout=env.PROVIDER_TIMEOUT_SECONDS,
        ),
    ),
]

SMS_RULES: list[ProviderRule[SmsProvider]] = [
    ProviderRule(
        name="stored-sms-gateway",
        applies=lambda s, env: bool(s.sms_gateway_url),
        build=lambda s, env: HttpSmsGatewayProvider(
            url=s.sms_gateway_url,
            api_key=s.sms_api_key,
            timeout=env.PROVIDER_TIMEOUT_SECONDS,
        ),
    ),
    ProviderRule(
        name="env-sms-gateway",
        applies=lambda s, env: bool(env.SMS_BASE_URL),
        build=lambda s, env: HttpSmsGatewayGetProvider(
            base_url=env.SMS_BASE_URL,
            api_key=env.SMS_API_KEY or None,
            timeout=env.PROVIDER_TIMEOUT_SECONDS,
        ),
    ),
    ProviderRule(
        name="env-twilio",
        applies=lambda s, env: bool(env.TWILIO_ACCOUNT_SID and env.TWILIO_AUTH_TOKEN and env.TWILIO_FROM),
        build=lambda s, env: TwilioSmsProvider(
            account_sid=env.TWILIO_ACCOUNT_SID,
            auth_token=env.TWILIO_AUTH_TOKEN,
            sender=env.TWILIO_FROM,
            timeout=env.PROVIDER_TIMEOUT_SECONDS,
        ),
    ),
]


def resolve_first(rules: list[ProviderRule[P]], snapshot: SettingsSnapshot, env: Settings) -> P | None:
    for rule in rules:
        if rule.applies(snapshot, env):
            return rule.build(snapshot, env)
    return None


class ProviderRegistry:
    """Resolves one provider per channel and caches it for a processing pass."""

    def __init__(self, snapshot: SettingsSnapshot, env: Settings):
        self.snapshot = snapshot
        self.env = env
        self._resolved: dict[DispatchChannel, object | None] = {}

    def get(self, channel: DispatchChannel):
        if channel not in self._resolved:
            rules = EMAIL_RULES if channel == DispatchChannel.email else SMS_RULES
            self._resolved[channel] = resolve_first(rules, self.snapshot, self.env)
        provider = self._resolved[channel]
        if provider is None:
            raise ProviderNotConfigured(channel.value)
        return provider
