#  EdgeGuard - Governed HTTP Client
#
#  httpx.AsyncClient wrapper that sends every call through the
#  RequestGovernor and turns 429 responses into a typed ThrottledError,
#  so the governor backs off from a structured signal.
#
#  Depends on: services/request_governor.py, exceptions.py
#  Used by:    container.py, application code making outbound calls

import logging
import time
from email.utils import parsedate_to_datetime

import httpx

from edgeguard.exceptions import ThrottledError
from edgeguard.services.request_governor import RequestGovernor

logger = logging.getLogger("edgeguard.http")


def parse_retry_after(value: str | None) -> float | None:
    """Retry-After as delta seconds or an HTTP date. None if absent/unparseable."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, when.timestamp() - time.time())


class GovernedClient:
    """Outbound HTTP through a shared RequestGovernor.

    Duplicate concurrent calls share one httpx.Response. Non-429 error
    responses are returned as-is; callers decide what to raise.
    """

    def __init__(self, http_client: httpx.AsyncClient, governor: RequestGovernor):
        self._http = http_client
        self._governor = governor

    @property
    def governor(self) -> RequestGovernor:
        return self._governor

    async def request(
        self,
        method: str,
        url: str,
        *,
        json=None,
        headers: dict[str, str] | None = None,
        bypass_deduplication: bool = False,
        timeout: float | None = None,
        **kwargs,
    ) -> httpx.Response:
        # Fold query params into the URL so they take part in the signature
        params = kwargs.pop("params", None)
        if params:
            url = str(httpx.URL(url, params=params))

        async def _send() -> httpx.Response:
            resp = await self._http.request(method, url, json=json, headers=headers, **kwargs)
            if resp.status_code == 429:
                retry_after = parse_retry_after(resp.headers.get("retry-after"))
                logger.warning("Remote throttled %s %s (retry after %s)", method, url, retry_after)
                raise ThrottledError(
                    f"429 Too Many Requests from {url}",
                    url=url,
                    retry_after=retry_after,
                )
            return resp

        return await self._governor.enqueue(
            url,
            _send,
            method=method,
            body=json,
            headers=headers,
            bypass_deduplication=bypass_deduplication,
            timeout=timeout,
        )

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def aclose(self):
        await self._http.aclose()
