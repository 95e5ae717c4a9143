import httpx

from app.notifications.providers.base import SendResult, SmsPayload, get_with_timeout, post_with_timeout

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


class HttpSmsGatewayProvider:
    """JSON POST gateway configured from stored settings."""

    name = "sms-gateway"

    def __init__(self, url: str, api_key: str | None = None, timeout: float = 15.0, client: httpx.AsyncClient | None = None):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    async def send(self, payload: SmsPayload) -> SendResult:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        await post_with_timeout(
            self._client,
            "SMS gateway",
            self.url,
            self.timeout,
            json={"to": payload.to, "message": payload.message},
            headers=headers,
        )
        return SendResult(provider=self.name)


class HttpSmsGatewayGetProvider:
    """Query-string gateway configured from the environment (SMS_BASE_URL / SMS_API_KEY)."""

    name = "sms-gateway-get"

    def __init__(self, base_url: str, api_key: str | None = None, timeout: float = 15.0, client: httpx.AsyncClient | None = None):
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    async def send(self, payload: SmsPayload) -> SendResult:
        params = {"phonenumber": payload.to, "message": payload.message}
        if self.api_key:
            params = {"key": self.api_key, **params}
        await get_with_timeout(self._client, "SMS gateway", self.base_url, self.timeout, params=params)
        return SendResult(provider=self.name)


class TwilioSmsProvider:
    name = "twilio"

    def __init__(self, account_sid: str, auth_token: str, sender: str, timeout: float = 15.0, client: httpx.AsyncClient | None = None):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.sender = sender
        self.timeout = timeout
        self._client = client

    async def send(self, payload: SmsPayload) -> SendResult:
        response = await post_with_timeout(
            self._client,
            "Twilio",
            TWILIO_MESSAGES_URL.format(sid=self.account_sid),
            self.timeout,
            data={"From": self.sender, "To": payload.to, "Body": payload.message},
            auth=(self.account_sid, self.auth_token),
        )
        try:
            message_id = response.json().get("sid")
        except ValueError:
            message_id = None
        return SendResult(provider=self.name, message_id=message_id)
