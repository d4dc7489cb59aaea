import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

from twilio.request_validator import RequestValidator
from twilio.rest import Client

from ..config import Settings, get_settings

# Set up logger
logger = logging.getLogger(__name__)


class TwilioClient:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        settings = settings or get_settings()
        self.public_base_url = settings.public_base_url
        self.simulated = not settings.twilio_enabled

        if self.simulated:
            self.client = None
            self.validator = None
            logger.info("TwilioClient initialized in simulation mode (no credentials provided)")
        else:
            self.client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
            self.validator = RequestValidator(settings.twilio_auth_token)
            logger.info("TwilioClient initialized with account credentials")

    async def send_sms(self, to_number: str, from_number: str, body: str) -> Dict[str, Any]:
        """Send an outbound text; returns the provider message sid and status."""
        logger.info(f"Sending SMS to {to_number}: {body[:60]}{'...' if len(body) > 60 else ''}")

        if self.simulated:
            logger.info(f"[SIMULATED] SMS to {to_number}: {body}")
            return {"sid": None, "status": "queued"}

        try:
            message = await asyncio.to_thread(
                self.client.messages.create,
                to=to_number,
                from_=from_number,
                body=body,
            )
        except Exception as e:
            logger.error(f"Error sending SMS to {to_number}: {str(e)}")
            raise
        return {"sid": message.sid, "status": message.status}

    def webhook_url(self, request_url: str, path: str, query: str = "") -> str:
        """The URL Twilio signed: the public base URL when set (behind a tunnel or proxy), else the request URL."""
        if self.public_base_url:
            url = f"{self.public_base_url}{path}"
            return f"{url}?{query}" if query else url
        return request_url

    def validate_request(self, url: str, params: Mapping[str, Any], signature: str) -> bool:
        if self.validator is None:
            return True  # allow in local dev
        is_valid = self.validator.validate(url, dict(params), signature or "")
        if not is_valid:
            logger.warning(f"Invalid Twilio signature for {url}")
        return is_valid
