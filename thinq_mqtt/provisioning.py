"""Client certificate enrollment against the ThinQ v2 API."""

from __future__ import annotations

import asyncio
import base64
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Tuple

import aiohttp

from .certificates import strip_pem_armour
from .models import Gateway, Passport

LOGGER = logging.getLogger(__name__)

RESULT_OK = "0000"
DEFAULT_TIMEOUT_SECONDS = 10.0

SERVICE_HEADERS = {
    "x-service-code": "SVC202",
    "x-service-phase": "OP",
    "x-thinq-app-level": "PRD",
    "x-thinq-app-os": "ANDROID",
    "x-thinq-app-type": "NUTS",
    "x-thinq-app-ver": "3.0.1700",
    "x-origin": "app-native",
    "x-app-version": "LG ThinQ/3.6.12110",
}


class ProvisioningError(RuntimeError):
    """Raised when the broker certificate cannot be obtained."""


@dataclass(frozen=True, slots=True)
class Enrollment:
    certificate_pem: str
    topics: Tuple[str, ...]


class CertificateProvisioner(Protocol):
    """Trades a CSR for a signed client certificate and topic grants."""

    async def enroll(
        self, client_id: str, passport: Passport, gateway: Gateway, csr: str
    ) -> Enrollment:
        ...


class ThinqCertificateProvisioner:
    """HTTP implementation of :class:`CertificateProvisioner`."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self._session = session

    async def enroll(
        self, client_id: str, passport: Passport, gateway: Gateway, csr: str
    ) -> Enrollment:
        owns_session = self._session is None
        session = self._session or aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout)
        )
        base_url = gateway.thinq2_uri.rstrip("/")
        headers = self._headers(client_id, passport, gateway)

        try:
            LOGGER.debug("Registering client %s with %s", client_id, base_url)
            await self._post(session, f"{base_url}/service/users/client", headers, None)

            LOGGER.debug("Requesting broker certificate for client %s", client_id)
            result = await self._post(
                session,
                f"{base_url}/service/users/client/certificate",
                headers,
                {"csr": strip_pem_armour(csr)},
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProvisioningError(f"Certificate enrollment failed: {exc}") from exc
        finally:
            if owns_session:
                await session.close()

        try:
            certificate_pem = str(result["certificatePem"])
            subscriptions = result["subscriptions"]
        except (KeyError, TypeError) as exc:
            raise ProvisioningError(
                f"Enrollment response missing expected field: {exc}"
            ) from exc

        if not isinstance(subscriptions, list):
            raise ProvisioningError("Enrollment response subscriptions is not a list")

        topics = tuple(str(topic) for topic in subscriptions)
        LOGGER.info(
            "Broker certificate issued for client %s (%d topics)", client_id, len(topics)
        )
        return Enrollment(certificate_pem=certificate_pem, topics=topics)

    async def _post(
        self,
        session: aiohttp.ClientSession,
        url: str,
        headers: Dict[str, str],
        payload: Optional[Dict[str, Any]],
    ) -> Any:
        async with session.post(
            url,
            json=payload,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            if response.status != 200:
                detail = await response.text()
                raise ProvisioningError(
                    f"Unexpected response {response.status} from {url}: {detail.strip()}"
                )

            try:
                body = await response.json(content_type=None)
            except ValueError as exc:
                raise ProvisioningError(f"Invalid JSON from {url}") from exc

        if not isinstance(body, dict):
            raise ProvisioningError(f"Unexpected response body from {url}")

        code = str(body.get("resultCode", ""))
        if code != RESULT_OK:
            raise ProvisioningError(f"{url} rejected request with resultCode {code}")

        return body.get("result")

    def _headers(
        self, client_id: str, passport: Passport, gateway: Gateway
    ) -> Dict[str, str]:
        headers = dict(SERVICE_HEADERS)
        headers.update(
            {
                "x-client-id": client_id,
                "x-emp-token": passport.access_token,
                "x-user-no": passport.user_number,
                "x-country-code": gateway.country_code,
                "x-language-code": gateway.language_code,
                "x-message-id": _message_id(),
                "Accept": "application/json",
            }
        )
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers


def _message_id() -> str:
    raw = base64.urlsafe_b64encode(uuid.uuid4().bytes).decode("ascii")
    return raw.rstrip("=")