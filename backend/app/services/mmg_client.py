"""MMG gateway client - session tokens, transaction lookup, checkout URLs"""
import time
import uuid
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urlencode

import httpx

from app.core.config import settings, TOKEN_EXPIRY_BUFFER_SECONDS
from app.core.logging import mmg_logger
from app.core.metrics import gateway_requests_counter
from app.schemas.payments import LookupResult

DEFAULT_TOKEN_LIFETIME = 300  # seconds, used when the gateway omits expires_in


class MMGError(Exception):
    """Base class for gateway failures"""


class MMGAuthError(MMGError):
    """Session token could not be obtained"""


class MMGLookupError(MMGError):
    """Transaction lookup failed or the transaction is not successful"""


@dataclass
class MMGCredentials:
    api_url: str
    token_path: str
    lookup_path: str
    api_key: str
    username: str
    password: str
    merchant_mid: str
    merchant_key: str
    secret_key: str
    client_id: str
    checkout_url: str
    timeout: float

    @classmethod
    def from_settings(cls) -> "MMGCredentials":
        return cls(
            api_url=settings.MMG_API_URL,
            token_path=settings.MMG_TOKEN_PATH,
            lookup_path=settings.MMG_LOOKUP_PATH,
            api_key=settings.MMG_API_KEY,
            username=settings.MMG_USERNAME,
            password=settings.MMG_PASSWORD,
            merchant_mid=settings.MMG_MERCHANT_MID,
            merchant_key=settings.MMG_MERCHANT_KEY,
            secret_key=settings.MMG_SECRET_KEY,
            client_id=settings.MMG_CLIENT_ID,
            checkout_url=settings.MMG_CHECKOUT_URL,
            timeout=settings.MMG_HTTP_TIMEOUT,
        )

    @property
    def identity(self) -> str:
        """Cache key for session tokens: one token per gateway + login"""
        return f"{self.api_url}|{self.username}|{self.api_key}"

    @property
    def token_url(self) -> str:
        return f"{self.api_url.rstrip('/')}{self.token_path}"

    def lookup_url(self, transaction_id: str) -> str:
        return f"{self.api_url.rstrip('/')}{self.lookup_path.format(transaction_id=transaction_id)}"


@dataclass
class CachedToken:
    access_token: str
    expires_at: float  # time.monotonic() deadline

    def is_valid(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.monotonic()) < self.expires_at


class MMGClient:
    """Outbound calls to the MMG merchant API.

    Session tokens are cached on the instance, keyed by gateway identity.
    Concurrent refreshes are allowed; the last writer wins since tokens are
    interchangeable.
    """

    def __init__(self, credentials: Optional[MMGCredentials] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._credentials = credentials
        self._transport = transport
        self._tokens: Dict[str, CachedToken] = {}

    @property
    def credentials(self) -> MMGCredentials:
        return self._credentials or MMGCredentials.from_settings()

    def _http_client(self, creds: MMGCredentials) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=creds.timeout, transport=self._transport)

    def invalidate_session_token(self) -> None:
        self._tokens.pop(self.credentials.identity, None)

    async def get_session_token(self) -> str:
        """Return a cached session token, logging in again once it expires

        Raises:
            MMGAuthError: Missing configuration, rejected credentials, or transport failure
        """
        creds = self.credentials
        cached = self._tokens.get(creds.identity)
        if cached and cached.is_valid():
            return cached.access_token

        missing = [name for name, value in (
            ("MMG_API_URL", creds.api_url),
            ("MMG_API_KEY", creds.api_key),
            ("MMG_USERNAME", creds.username),
            ("MMG_PASSWORD", creds.password),
        ) if not value]
        if missing:
            raise MMGAuthError(f"MMG credentials not configured: {', '.join(missing)}")

        form = {
            "grant_type": "password",
            "api_key": creds.api_key,
            "username": creds.username,
            "password": creds.password,
        }

        mmg_logger.debug(f"Requesting MMG session token from {creds.token_url}")
        try:
            async with self._http_client(creds) as client:
                response = await client.post(
                    creds.token_url,
                    data=form,
                    headers={"Content-Type": "application/x-www-form-urlencoded"}
                )
        except httpx.TimeoutException as e:
            gateway_requests_counter.labels(operation="login", status="timeout").inc()
            raise MMGAuthError(f"MMG login timed out: {e}")
        except httpx.RequestError as e:
            gateway_requests_counter.labels(operation="login", status="error").inc()
            raise MMGAuthError(f"MMG login request failed: {e}")

        if response.status_code != 200:
            gateway_requests_counter.labels(operation="login", status="rejected").inc()
            mmg_logger.error(f"MMG login failed ({response.status_code}): {response.text[:500]}")
            raise MMGAuthError(f"MMG login failed ({response.status_code}): {response.text[:500]}")

        try:
            token_json = response.json()
        except ValueError:
            gateway_requests_counter.labels(operation="login", status="error").inc()
            raise MMGAuthError("MMG login returned a non-JSON response")

        access_token = token_json.get("access_token")
        if not access_token:
            gateway_requests_counter.labels(operation="login", status="error").inc()
            raise MMGAuthError("No access_token in MMG login response")

        try:
            expires_in = int(token_json.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_LIFETIME

        self._tokens[creds.identity] = CachedToken(
            access_token=access_token,
            expires_at=time.monotonic() + expires_in - TOKEN_EXPIRY_BUFFER_SECONDS
        )
        gateway_requests_counter.labels(operation="login", status="success").inc()
        mmg_logger.info(f"Obtained MMG session token (expires in {expires_in}s)")
        return access_token

    async def lookup_transaction(self, transaction_id: str) -> LookupResult:
        """Fetch a transaction from MMG and require it to be successful

        Raises:
            MMGAuthError: If a session token cannot be obtained
            MMGLookupError: On HTTP failure, unreadable body, or a non-successful transaction
        """
        creds = self.credentials
        token = await self.get_session_token()
        correlation_id = str(uuid.uuid4())

        headers = {
            "Authorization": f"Bearer {token}",
            "X-MMG-Merchant-MID": creds.merchant_mid,
            "X-MMG-Merchant-Key": creds.merchant_key,
            "X-MMG-Merchant-Secret": creds.secret_key,
            "X-API-Key": creds.api_key,
            "X-Correlation-ID": correlation_id,
            "Accept": "application/json",
        }

        mmg_logger.info(f"Looking up MMG transaction {transaction_id[:8]}... (correlation {correlation_id})")
        try:
            async with self._http_client(creds) as client:
                response = await client.get(creds.lookup_url(transaction_id), headers=headers)
        except httpx.TimeoutException as e:
            gateway_requests_counter.labels(operation="lookup", status="timeout").inc()
            raise MMGLookupError(f"MMG lookup timed out: {e}")
        except httpx.RequestError as e:
            gateway_requests_counter.labels(operation="lookup", status="error").inc()
            raise MMGLookupError(f"MMG lookup request failed: {e}")

        if response.status_code == 401:
            # Token revoked server-side before its advertised expiry
            self.invalidate_session_token()

        if response.status_code != 200:
            gateway_requests_counter.labels(operation="lookup", status=str(response.status_code)).inc()
            mmg_logger.warning(f"MMG lookup failed ({response.status_code}): {response.text[:500]}")
            raise MMGLookupError(f"MMG lookup failed ({response.status_code}): {response.text[:500]}")

        try:
            data = response.json()
        except ValueError:
            gateway_requests_counter.labels(operation="lookup", status="error").inc()
            raise MMGLookupError("MMG lookup returned a non-JSON response")

        if not isinstance(data, dict):
            gateway_requests_counter.labels(operation="lookup", status="error").inc()
            raise MMGLookupError("MMG lookup returned an unexpected payload")

        result = LookupResult.from_response(data)
        if not result.is_successful:
            gateway_requests_counter.labels(operation="lookup", status="not_successful").inc()
            raise MMGLookupError(f"Transaction status is {result.transaction_status or 'unknown'}, expected successful")

        gateway_requests_counter.labels(operation="lookup", status="success").inc()
        return result

    def build_checkout_url(self, token: str) -> str:
        """Hosted checkout URL carrying the encrypted token and merchant identifiers"""
        creds = self.credentials
        query = urlencode({
            "token": token,
            "merchantId": creds.merchant_mid,
            "X-Client-ID": creds.client_id,
        })
        return f"{creds.checkout_url}?{query}"


# Lazy initialization - the client reads settings on each call
_client: Optional[MMGClient] = None


def get_mmg_client() -> MMGClient:
    """Get the process-wide MMG client (FastAPI dependency)"""
    global _client
    if _client is None:
        _client = MMGClient()
    return _client
