from __future__ import annotations

from typing import Optional

import httpx

from keyward.logging import get_logger

logger = get_logger(__name__)


def redact_phone(phone: str) -> str:
    if len(phone) <= 4:
        return "***"
    return f"{phone[:3]}***{phone[-2:]}"


class SMSService:
    """Sends verification codes through an HTTP SMS gateway.

    The gateway receives a JSON ``{"to", "from", "text"}`` POST with a bearer
    token. Without a gateway URL the message is only logged.
    """

    def __init__(
        self,
        *,
        gateway_url: Optional[str] = None,
        gateway_token: Optional[str] = None,
        sender: str = "Keyward",
        code_ttl_minutes: int = 5,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.gateway_url = gateway_url
        self.gateway_token = gateway_token
        self.sender = sender
        self.code_ttl_minutes = code_ttl_minutes
        self.timeout = httpx.Timeout(timeout, connect=min(timeout, 5.0))
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.gateway_url)

    def _post(self, payload: dict) -> httpx.Response:
        headers = {"Accept": "application/json"}
        if self.gateway_token:
            headers["Authorization"] = f"Bearer {self.gateway_token}"
        if self._client is not None:
            return self._client.post(self.gateway_url, json=payload, headers=headers, timeout=self.timeout)
        return httpx.post(self.gateway_url, json=payload, headers=headers, timeout=self.timeout)

    def send_verification_code(self, phone: str, code: str) -> bool:
        text = f"Your Keyward code is {code}. It expires in {self.code_ttl_minutes} minutes."
        if not self.is_configured:
            logger.info("sms_dev_mode", to=redact_phone(phone))
            return True
        try:
            response = self._post({"to": phone, "from": self.sender, "text": text})
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "sms_gateway_rejected",
                to=redact_phone(phone),
                status_code=e.response.status_code,
            )
            return False
        except httpx.TimeoutException as e:
            logger.error("sms_gateway_timeout", to=redact_phone(phone), error=str(e))
            return False
        except httpx.HTTPError as e:
            logger.error(
                "sms_gateway_error",
                to=redact_phone(phone),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("sms_sent", to=redact_phone(phone))
        return True
