"""HTTP external signal provider."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx

from ..config import Settings
from ..exceptions import SignalProviderError
from ..models import Market
from ..redaction import sanitize_text
from .base import ExternalSignalProvider
from .models import ExternalSignal


def parse_yes_score(payload: dict[str, Any]) -> float | None:
    """Extract a 0-100 YES score from a provider payload.

    Accepts ``yes_probability`` (0-1), ``yes_score`` (0-100), or a
    ``recommendation`` of YES/NO/INCONCLUSIVE with a 0-1 ``confidence``.
    """
    if payload.get("yes_probability") is not None:
        probability = float(payload["yes_probability"])
        if not (0.0 <= probability <= 1.0):
            raise ValueError(f"yes_probability {probability} is outside [0, 1].")
        return probability * 100.0
    if payload.get("yes_score") is not None:
        score = float(payload["yes_score"])
        if not (0.0 <= score <= 100.0):
            raise ValueError(f"yes_score {score} is outside [0, 100].")
        return score
    recommendation = payload.get("recommendation")
    if recommendation is None:
        return None
    label = str(recommendation).strip().upper()
    if label == "INCONCLUSIVE":
        return 50.0
    confidence = float(payload.get("confidence", 0.5))
    if not (0.0 <= confidence <= 1.0):
        raise ValueError(f"confidence {confidence} is outside [0, 1].")
    if label == "YES":
        return confidence * 100.0
    if label == "NO":
        return (1.0 - confidence) * 100.0
    raise ValueError(f"Unknown recommendation {recommendation!r}.")


class HttpSignalProvider(ExternalSignalProvider):
    """Fetch per-market YES estimates from a JSON HTTP API."""

    provider_name = "http"

    def __init__(
        self,
        settings: Settings,
        logger: logging.Logger,
        client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        if settings.signal_api_base_url is None:
            raise SignalProviderError(
                "SIGNAL_API_BASE_URL is required for the HTTP signal provider.",
                category="validation",
            )
        self.settings = settings
        self.logger = logger
        self._now_provider = now_provider or (lambda: datetime.now(UTC))
        headers = {"Accept": "application/json"}
        if settings.signal_api_token:
            headers["Authorization"] = f"Bearer {settings.signal_api_token}"
        self._client = client or httpx.Client(
            base_url=str(settings.signal_api_base_url),
            timeout=settings.signal_timeout_seconds,
            headers=headers,
            transport=transport,
        )

    def __enter__(self) -> HttpSignalProvider:
        return self

    def __exit__(self, exc_type: Any, exc: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def fetch_signal(self, market: Market) -> ExternalSignal | None:
        """One request per call; retries are the caller's concern."""
        endpoint = self.settings.signal_endpoint_template.format(market_id=market.market_id)
        payload = self._request_json(endpoint)
        if payload is None:
            return None
        try:
            yes_score = parse_yes_score(payload)
        except (TypeError, ValueError) as exc:
            raise SignalProviderError(
                f"Signal payload for {market.market_id} is invalid: {sanitize_text(str(exc))}",
                category="validation",
            ) from exc
        if yes_score is None:
            return None
        return ExternalSignal(
            market_id=market.market_id,
            yes_score=yes_score,
            source=str(payload.get("source") or self.provider_name),
            fetched_at=self._now_provider(),
            raw_payload=payload,
        )

    def _request_json(self, endpoint: str) -> dict[str, Any] | None:
        try:
            response = self._client.get(endpoint)
            if response.status_code == 404:
                return None
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status == 429:
                category = "rate_limit"
            elif status >= 500:
                category = "server"
            elif status in (401, 403):
                category = "permission"
            else:
                category = "validation"
            raise SignalProviderError(
                f"Signal request failed with status {status}: "
                f"{sanitize_text(exc.response.text[:300])}",
                category=category,
                status_code=status,
            ) from exc
        except httpx.HTTPError as exc:
            raise SignalProviderError(
                f"Signal request failed: {sanitize_text(str(exc))}",
                category="network",
            ) from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise SignalProviderError(
                "Signal response was not valid JSON.",
                category="validation",
                status_code=response.status_code,
            ) from exc
        if not isinstance(body, dict):
            raise SignalProviderError(
                "Signal response must be a JSON object.",
                category="validation",
                status_code=response.status_code,
            )
        return body
