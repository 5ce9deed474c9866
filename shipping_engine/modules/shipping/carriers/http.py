"""
Carrier HTTP helper

Shared request plumbing composed into each carrier adapter:
- One lazily created httpx.AsyncClient per adapter
- Adapter-supplied base URL and auth headers
- Every failure (timeout, network, HTTP >= 400, unparseable body) becomes a
  CarrierCallError so adapters and the rate aggregator see one error type

All external API calls are logged; bodies are truncated in log output.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx

from shipping_engine.core.exceptions import CarrierCallError

logger = logging.getLogger(__name__)

ERROR_SNIPPET_LENGTH = 500


class CarrierHTTPClient:
    """
    Usage:
        http = CarrierHTTPClient("ups", "UPS", base_url, auth_headers=self._auth_headers)
        data = await http.request("POST", "/rating/v1/Rate", json=payload)
    """

    def __init__(
        self,
        carrier: str,
        display_name: str,
        base_url: str,
        auth_headers: Callable[[], Dict[str, str]],
        timeout: float = 30.0,
        user_agent: str = "Shipping-Engine/1.0",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.carrier = carrier
        self.display_name = display_name
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.user_agent = user_agent
        self._auth_headers = auth_headers
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={
                    "Content-Type": "application/json",
                    "User-Agent": self.user_agent,
                },
                transport=self._transport,
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Make an authenticated request and return the decoded JSON body."""
        client = await self._get_http_client()
        url = f"{self.base_url}{path}"

        request_headers = {
            **self._auth_headers(),
            "X-Request-Id": f"{self.carrier}_{datetime.now().strftime('%Y%m%d%H%M%S%f')}",
            **(headers or {}),
        }

        try:
            response = await client.request(
                method.upper(),
                url,
                headers=request_headers,
                json=json,
                params=params,
            )
        except httpx.TimeoutException as e:
            logger.warning(f"{self.display_name} API {method} {path} timed out: {e}")
            raise CarrierCallError(
                message="timeout",
                carrier=self.carrier,
                code="TIMEOUT",
                details={"path": path},
            )
        except httpx.RequestError as e:
            logger.error(f"{self.display_name} API request failed: {e}")
            raise CarrierCallError(
                message=f"Network error: {e}",
                carrier=self.carrier,
                code="NETWORK_ERROR",
                details={"path": path},
            )

        logger.debug(f"{self.display_name} API {method} {path} -> {response.status_code}")

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {"raw": response.text[:ERROR_SNIPPET_LENGTH]}

            error_msg = f"{self.display_name} API error {response.status_code}"
            detail = _extract_error_message(error_data)
            if detail:
                error_msg = f"{error_msg}: {detail}"

            logger.error(f"{error_msg} ({method} {path})")
            raise CarrierCallError(
                message=error_msg,
                carrier=self.carrier,
                code=str(response.status_code),
                details={"path": path, "response": error_data},
            )

        if not response.content:
            return {}

        try:
            return response.json()
        except ValueError:
            logger.error(f"{self.display_name} API returned non-JSON body for {method} {path}")
            raise CarrierCallError(
                message=f"{self.display_name} API returned an invalid response",
                carrier=self.carrier,
                code="INVALID_RESPONSE",
                details={"path": path, "raw": response.text[:ERROR_SNIPPET_LENGTH]},
            )


def _extract_error_message(error_data: Any) -> Optional[str]:
    """Best guess at a human message across the carriers' error envelopes."""
    if not isinstance(error_data, dict):
        return None

    # UPS: {"response": {"errors": [{"code", "message"}]}}
    errors = error_data.get("response", {}).get("errors") if isinstance(error_data.get("response"), dict) else None
    # FedEx: {"errors": [{"code", "message"}]}
    if not errors:
        errors = error_data.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        return errors[0].get("message") or errors[0].get("code")

    # DHL: {"title", "detail"}
    for key in ("detail", "message", "title"):
        if error_data.get(key):
            return str(error_data[key])

    raw = error_data.get("raw")
    return raw[:ERROR_SNIPPET_LENGTH] if raw else None


def translation_error(carrier: str, display_name: str, operation: str, error: Exception) -> CarrierCallError:
    """Wrap a response-parsing failure (missing key, bad number) as a carrier error."""
    logger.error(f"{display_name} {operation} response could not be parsed: {error!r}")
    return CarrierCallError(
        message=f"{display_name} {operation} response could not be parsed",
        carrier=carrier,
        code="INVALID_RESPONSE",
        details={"error": repr(error)},
    )
