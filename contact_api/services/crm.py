# contact_api/services/crm.py
"""
Zoho CRM client: OAuth refresh-token exchange, lead search, create and update.

Every data call goes through the outbound rate limiter and then the circuit
breaker. The region (and so the accounts domain used for token exchange) is
resolved once when the config is built.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import aiohttp

from contact_api.core.config import Settings
from contact_api.core.exceptions import CRMError
from contact_api.core.logging import get_structlog_logger
from contact_api.schemas.contact import Interest, Locale, SanitizedSubmission
from contact_api.services.circuit_breaker import CircuitBreaker
from contact_api.services.rate_limiter import OutboundRateLimiter
from contact_api.services.store import Clock

logger = get_structlog_logger(__name__)

TOKEN_SAFETY_MARGIN_SECONDS = 300
CREATE_TRIGGERS = ["approval", "workflow", "blueprint"]


class CRMRegion(str, Enum):
    COM = "com"
    EU = "eu"
    IN = "in"
    AU = "com.au"
    JP = "jp"


REGION_ACCOUNTS_DOMAINS: Dict[CRMRegion, str] = {
    CRMRegion.COM: "https://accounts.zoho.com",
    CRMRegion.EU: "https://accounts.zoho.eu",
    CRMRegion.IN: "https://accounts.zoho.in",
    CRMRegion.AU: "https://accounts.zoho.com.au",
    CRMRegion.JP: "https://accounts.zoho.jp",
}

INTEREST_TYPES = {
    Interest.POS: "POS",
    Interest.ONLINE: "Online_Payment",
    Interest.ACCOUNT: "Payment_Account",
}

LANGUAGE_PREFERENCES = {
    Locale.FR: "French",
    Locale.AR: "Arabic",
    Locale.EN: "English",
}


def resolve_region(base_url: str) -> CRMRegion:
    """Map the API host's domain suffix to a region; anything else is international."""
    host = (urlsplit(base_url).hostname or "").lower()
    # com.au must be tested before the bare suffixes
    for region in (CRMRegion.AU, CRMRegion.EU, CRMRegion.IN, CRMRegion.JP):
        if host.endswith(f".{region.value}"):
            return region
    return CRMRegion.COM


@dataclass(frozen=True)
class CRMConfig:
    base_url: str
    region: CRMRegion
    accounts_url: str
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    timeout_seconds: float = 10.0

    @property
    def token_url(self) -> str:
        return f"{self.accounts_url}/oauth/v2/token"

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CRMConfig":
        base_url = settings.zoho_crm_base_url.rstrip("/")
        region = (
            CRMRegion(settings.zoho_crm_region)
            if settings.zoho_crm_region
            else resolve_region(base_url)
        )
        accounts_url = (settings.zoho_crm_accounts_url or REGION_ACCOUNTS_DOMAINS[region]).rstrip("/")
        return cls(
            base_url=base_url,
            region=region,
            accounts_url=accounts_url,
            client_id=settings.zoho_crm_client_id,
            client_secret=settings.zoho_crm_client_secret,
            refresh_token=settings.zoho_crm_refresh_token,
            timeout_seconds=settings.crm_timeout_seconds,
        )


@dataclass(frozen=True)
class LeadWriteResult:
    lead_id: Optional[str]
    status: str


def build_lead_record(
    submission: SanitizedSubmission,
    brand: str = "TKPay",
    lead_source: str = "Website Form",
) -> Dict[str, Any]:
    """Convert a sanitized submission into a Zoho ``Leads`` record."""
    first_name, _, last_name = submission.name.partition(" ")
    return {
        "First_Name": first_name,
        "Last_Name": last_name.strip(),
        "Company": submission.company or "",
        "Email": submission.email,
        "Phone": submission.phone,
        "Lead_Source": lead_source,
        "Description": (
            f"Lead submitted from {brand} landing page. "
            f"Interest: {submission.interest.value}. Language: {submission.locale.value}"
        ),
        "Interest_Type": INTEREST_TYPES[submission.interest],
        "Language_Preference": LANGUAGE_PREFERENCES[submission.locale],
        "Lead_Status": "New",
    }


class ZohoCRMClient:
    def __init__(
        self,
        config: CRMConfig,
        rate_limiter: Optional[OutboundRateLimiter] = None,
        breaker: Optional[CircuitBreaker] = None,
        clock: Clock = time.time,
    ):
        self.config = config
        self.rate_limiter = rate_limiter or OutboundRateLimiter()
        self.breaker = breaker or CircuitBreaker("zoho_crm")
        self.clock = clock

        self._session: Optional[aiohttp.ClientSession] = None
        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ZohoCRMClient":
        config = CRMConfig.from_settings(settings)
        logger.info(
            "crm.configured",
            region=config.region.value,
            accounts_url=config.accounts_url,
            base_url=config.base_url,
        )
        return cls(
            config,
            rate_limiter=OutboundRateLimiter(max_calls=settings.zoho_rate_limit, window_seconds=1.0),
            breaker=CircuitBreaker(
                "zoho_crm",
                failure_threshold=settings.circuit_failure_threshold,
                recovery_timeout=settings.circuit_recovery_timeout,
                success_threshold=settings.circuit_success_threshold,
            ),
        )

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds),
                headers={"User-Agent": "ContactGateway/1.0"},
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def circuit_state(self) -> Dict[str, Any]:
        return self.breaker.stats()

    def _invalidate_token(self) -> None:
        self._access_token = None
        self._token_expires_at = 0.0

    async def get_access_token(self) -> str:
        async with self._token_lock:
            if self._access_token and self.clock() < self._token_expires_at:
                return self._access_token

            if not self.config.has_credentials:
                raise CRMError("Missing Zoho CRM credentials in environment variables")

            form = {
                "grant_type": "refresh_token",
                "refresh_token": self.config.refresh_token,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            }
            try:
                async with self._get_session().post(self.config.token_url, data=form) as response:
                    if response.status != 200:
                        raise CRMError(
                            f"Failed to get access token: HTTP {response.status}",
                            status=response.status,
                        )
                    try:
                        data = await response.json(content_type=None)
                    except ValueError as e:
                        raise CRMError("Malformed JSON in token response from Zoho") from e
            except asyncio.TimeoutError as e:
                raise CRMError("Token exchange timed out") from e
            except aiohttp.ClientError as e:
                raise CRMError(f"Token exchange failed: {str(e)[:200]}") from e

            if not isinstance(data, dict):
                raise CRMError("Malformed token response from Zoho")
            if data.get("error"):
                raise CRMError(f"Zoho OAuth error: {data['error']}")
            if not data.get("access_token"):
                raise CRMError("No access token received from Zoho")

            expires_in = int(data.get("expires_in", 3600))
            self._access_token = data["access_token"]
            self._token_expires_at = self.clock() + expires_in - TOKEN_SAFETY_MARGIN_SECONDS

            logger.info("crm.token_refreshed", expires_in=expires_in)
            return self._access_token

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Any]:
        token = await self.get_access_token()
        url = f"{self.config.base_url}{path}"
        headers = {"Authorization": f"Zoho-oauthtoken {token}"}

        try:
            async with self._get_session().request(
                method, url, headers=headers, params=params, json=payload
            ) as response:
                status = response.status
                if status == 204:
                    return status, None
                if status == 401:
                    self._invalidate_token()
                if status >= 400:
                    error_text = await response.text()
                    raise CRMError(
                        f"{method} {path} failed: HTTP {status} - {error_text[:200]}",
                        status=status,
                    )
                try:
                    return status, await response.json(content_type=None)
                except ValueError as e:
                    raise CRMError(f"Malformed JSON from Zoho on {method} {path}", status=status) from e
        except asyncio.TimeoutError as e:
            raise CRMError(f"{method} {path} timed out") from e
        except aiohttp.ClientError as e:
            raise CRMError(f"{method} {path} failed: {str(e)[:200]}") from e

    async def _request(self, method: str, path: str, **kwargs: Any) -> Tuple[int, Any]:
        await self.rate_limiter.acquire()
        return await self.breaker.call(self._send, method, path, **kwargs)

    @staticmethod
    def _first_item(payload: Any) -> Dict[str, Any]:
        items = payload.get("data") if isinstance(payload, dict) else None
        if not items or not isinstance(items[0], dict):
            raise CRMError("Malformed response envelope from Zoho")
        return items[0]

    async def search_by_email(self, email: str) -> List[Dict[str, Any]]:
        """
        Leads whose Email equals ``email``.
        Search failures are logged and reported as "no match".
        """
        try:
            status, payload = await self._request(
                "GET",
                "/Leads/search",
                params={"criteria": f"(Email:equals:{email})"},
            )
        except CRMError as e:
            logger.warning("crm.search_failed", error=e.message, status=e.status)
            return []

        if status == 204 or not isinstance(payload, dict):
            return []
        return list(payload.get("data") or [])

    async def create_lead(self, lead: Dict[str, Any]) -> LeadWriteResult:
        _, payload = await self._request(
            "POST",
            "/Leads",
            payload={"data": [lead], "trigger": CREATE_TRIGGERS},
        )
        item = self._first_item(payload)
        if item.get("status") != "success":
            raise CRMError(f"Failed to create lead: {item.get('message', 'unknown error')}")

        lead_id = (item.get("details") or {}).get("id")
        logger.info("crm.lead_created", lead_id=lead_id)
        return LeadWriteResult(lead_id=lead_id, status=item["status"])

    async def update_lead(self, lead_id: str, lead: Dict[str, Any]) -> LeadWriteResult:
        _, payload = await self._request(
            "PUT",
            f"/Leads/{lead_id}",
            payload={"data": [lead]},
        )
        item = self._first_item(payload)
        if item.get("status") != "success":
            raise CRMError(f"Failed to update lead: {item.get('message', 'unknown error')}")

        logger.info("crm.lead_updated", lead_id=lead_id)
        return LeadWriteResult(lead_id=lead_id, status=item["status"])
