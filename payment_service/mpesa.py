import base64
import logging
import math
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx

from payment_service.config import REQUIRED_MPESA_SETTINGS, Settings
from payment_service.schemas import PaymentRequest, PaymentResponse

logger = logging.getLogger(__name__)

ACCOUNT_REFERENCE_MAX_LENGTH = 12

class MpesaError(Exception):
    pass

class MpesaConfigError(MpesaError):
    def __init__(self, missing: List[str]):
        self.missing = missing
        super().__init__("M-Pesa credentials not configured: " + ", ".join(missing))

class MpesaGatewayError(MpesaError):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)

def normalize_phone_number(phone: str) -> str:
    """Best-effort conversion of a local phone number to the 2547XXXXXXXX form.

    Malformed input is passed through instead of rejected.
    """
    cleaned = re.sub(r"\D", "", phone)
    if cleaned.startswith("0"):
        return "254" + cleaned[1:]
    if cleaned.startswith("254"):
        return cleaned
    if len(cleaned) == 9:
        return "254" + cleaned
    return cleaned

def phone_number_variations(phone: str) -> List[str]:
    cleaned = re.sub(r"\D", "", phone)
    variations = [cleaned]
    if cleaned.startswith("0") and len(cleaned) == 10:
        variations.append("254" + cleaned[1:])
    if cleaned.startswith("254") and len(cleaned) == 12:
        variations.append("0" + cleaned[3:])
    if len(cleaned) == 9:
        variations.extend(["0" + cleaned, "254" + cleaned])
    return variations

def matches_whitelist(contact: str, entries: Iterable[str]) -> bool:
    """True when an email or phone number appears in the whitelist, in any local format."""
    contact = contact.strip()
    if not contact:
        return False
    if "@" in contact:
        email = contact.lower()
        return any(entry.strip().lower() == email for entry in entries if "@" in entry)
    wanted = set(phone_number_variations(contact))
    for entry in entries:
        if "@" in entry:
            continue
        if wanted.intersection(phone_number_variations(entry)):
            return True
    return False

def _error_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text

class MpesaClient:
    """Daraja STK-push client. The HTTP client is owned by the caller."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self.settings = settings
        self.http = http_client

    def _require_settings(self, names: Iterable[str] = REQUIRED_MPESA_SETTINGS):
        missing = [name for name in self.settings.missing_mpesa_settings() if name in names]
        if missing:
            raise MpesaConfigError(missing)

    async def get_access_token(self) -> str:
        self._require_settings(("MPESA_BASE_URL", "MPESA_CONSUMER_KEY", "MPESA_CONSUMER_SECRET"))

        credentials = f"{self.settings.mpesa_consumer_key}:{self.settings.mpesa_consumer_secret}"
        auth = base64.b64encode(credentials.encode()).decode()
        response = await self.http.get(
            f"{self.settings.mpesa_base_url}/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            headers={"Authorization": f"Basic {auth}"},
            timeout=self.settings.mpesa_timeout_seconds,
        )
        if response.is_error:
            body = _error_body(response)
            logger.error("OAuth token generation error: %s", body)
            raise MpesaGatewayError("Failed to generate OAuth token", response.status_code, body)

        token = response.json().get("access_token")
        if not token:
            raise MpesaGatewayError("OAuth response did not include an access token", response.status_code, response.json())
        return token

    def build_password(self, timestamp: str) -> str:
        raw = f"{self.settings.mpesa_shortcode}{self.settings.mpesa_passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    async def stk_push(
        self,
        phone_number: str,
        amount: float,
        service_type: str,
        action_type: str,
        callback_url: str,
    ) -> Dict[str, Any]:
        """Send the payment prompt to the payer's phone.

        Returns the gateway acknowledgement together with the timestamp used to sign it.
        """
        self._require_settings()

        token = await self.get_access_token()
        timestamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
        formatted_phone = normalize_phone_number(phone_number)

        request_data = {
            "BusinessShortCode": self.settings.mpesa_shortcode,
            "Password": self.build_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(math.floor(amount)),
            "PartyA": formatted_phone,
            "PartyB": self.settings.mpesa_shortcode,
            "PhoneNumber": formatted_phone,
            "CallBackURL": callback_url,
            "AccountReference": f"{service_type}-{action_type}"[:ACCOUNT_REFERENCE_MAX_LENGTH],
            "TransactionDesc": f"Payment for {service_type} {action_type}",
        }

        response = await self.http.post(
            f"{self.settings.mpesa_base_url}/mpesa/stkpush/v1/processrequest",
            json=request_data,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            timeout=self.settings.mpesa_timeout_seconds,
        )
        if response.is_error:
            body = _error_body(response)
            logger.error("STK Push error: %s", body)
            raise MpesaGatewayError("STK push request rejected", response.status_code, body)

        return {"data": response.json(), "timestamp": timestamp}

async def initiate_payment(client: MpesaClient, request: PaymentRequest, callback_url: str) -> PaymentResponse:
    """Validate and send an STK push, always answering with a structured response."""
    missing = request.missing_fields()
    if missing:
        return PaymentResponse(success=False, error="Missing required fields")

    logger.info(
        "Initiating STK Push for %s amount: KES %s (%s-%s)",
        request.phone_number, request.amount, request.service_type, request.action_type,
    )
    try:
        result = await client.stk_push(
            request.phone_number,
            request.amount,
            request.service_type,
            request.action_type,
            callback_url,
        )
    except MpesaGatewayError as e:
        return PaymentResponse(success=False, error=e.body if e.body is not None else str(e))
    except MpesaError as e:
        logger.error("STK Push error: %s", e)
        return PaymentResponse(success=False, error=str(e))
    except (httpx.HTTPError, ValueError) as e:
        logger.error("STK Push transport error: %s", e, exc_info=True)
        return PaymentResponse(success=False, error=str(e))

    return PaymentResponse(success=True, data=result["data"], timestamp=result["timestamp"])
