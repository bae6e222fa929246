"""Fyers API v3 REST async client.

Only the history endpoint is consumed; authentication is a configured
token. Retry policy lives in the historical fetcher, so every call here is
a single attempt.
"""

import logging

import httpx

from bullscan.broker.models import HistoryRequest, HistoryResponse
from bullscan.config import Config
from bullscan.errors import BrokerError

logger = logging.getLogger("bullscan.fetcher")


class FyersClient:
    """Async client wrapping the Fyers data REST API."""

    def __init__(self, config: Config, timeout: float = 30.0) -> None:
        self._base_url = config.api_base_url.rstrip("/")
        self._timeout = timeout
        self._headers = {
            "Authorization": config.socket_token,
            "Content-Type": "application/json",
        }

    async def get_history(self, request: HistoryRequest) -> HistoryResponse:
        """Fetch one window of historical candles.

        Returns:
            ``HistoryResponse``; ``status`` is ``"error"`` when the broker
            answered with a malformed or non-ok body.

        Raises:
            BrokerError: on transport errors or non-2xx HTTP status.
        """
        url = f"{self._base_url}/history"
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.get(
                    url,
                    headers=self._headers,
                    params=request.to_params(),
                    timeout=self._timeout,
                )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise BrokerError(
                f"history {request.symbol}@{request.resolution}: {exc}"
            ) from exc

        try:
            data = resp.json()
        except ValueError:
            return HistoryResponse(status="error", message="non-JSON body")
        if not isinstance(data, dict):
            return HistoryResponse(status="error", message="unexpected body")

        candles = data.get("candles")
        if not isinstance(candles, list):
            return HistoryResponse(
                status="error", message=str(data.get("message", "missing candles"))
            )
        return HistoryResponse(
            status=str(data.get("s", "error")),
            candles=candles,
            message=str(data.get("message", "")),
        )
