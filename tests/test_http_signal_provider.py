"""HTTP signal provider parsing and error categorization."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from market_engine.config import Settings
from market_engine.exceptions import SignalProviderError
from market_engine.models import Market
from market_engine.signals.http import HttpSignalProvider, parse_yes_score

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _market() -> Market:
    return Market(
        market_id="mkt-abc",
        question="Will it rain in Lisbon on March 2?",
        creator="carol",
        expires_at=NOW + timedelta(days=1),
        created_at=NOW - timedelta(days=1),
        collateral_token="CAST",
        fee_rate_bps=100,
        resolver="resolver",
    )


def _provider(
    handler: Callable[[httpx.Request], httpx.Response],
    **overrides: str,
) -> HttpSignalProvider:
    settings = Settings(signal_api_base_url="https://signals.example.com", **overrides)
    return HttpSignalProvider(
        settings,
        logging.getLogger("test_http_signal_provider"),
        transport=httpx.MockTransport(handler),
        now_provider=lambda: NOW,
    )


def test_fetches_probability_and_sends_bearer_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"yes_probability": 0.72, "source": "oracle-x"})

    with _provider(handler, signal_api_token="abc123") as provider:
        signal = provider.fetch_signal(_market())

    assert signal is not None
    assert signal.yes_score == pytest.approx(72.0)
    assert signal.source == "oracle-x"
    assert signal.fetched_at == NOW
    assert seen[0].url.path == "/v1/signals/mkt-abc"
    assert seen[0].headers["Authorization"] == "Bearer abc123"


def test_not_found_means_no_signal() -> None:
    provider = _provider(lambda request: httpx.Response(404, json={"detail": "unknown"}))
    assert provider.fetch_signal(_market()) is None


def test_payload_without_estimate_means_no_signal() -> None:
    provider = _provider(lambda request: httpx.Response(200, json={"note": "pending"}))
    assert provider.fetch_signal(_market()) is None


@pytest.mark.parametrize(
    ("status", "category"),
    [
        (429, "rate_limit"),
        (500, "server"),
        (503, "server"),
        (403, "permission"),
        (400, "validation"),
    ],
)
def test_http_errors_are_categorized(status: int, category: str) -> None:
    provider = _provider(lambda request: httpx.Response(status, text="token=abc123 failed"))

    with pytest.raises(SignalProviderError) as excinfo:
        provider.fetch_signal(_market())

    assert excinfo.value.category == category
    assert excinfo.value.status_code == status
    assert "abc123" not in str(excinfo.value)


def test_network_errors_are_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(SignalProviderError) as excinfo:
        _provider(handler).fetch_signal(_market())
    assert excinfo.value.category == "network"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="not json"),
        httpx.Response(200, json=[0.5]),
        httpx.Response(200, json={"yes_probability": 1.5}),
    ],
)
def test_malformed_payloads_are_validation_errors(response: httpx.Response) -> None:
    provider = _provider(lambda request: response)

    with pytest.raises(SignalProviderError) as excinfo:
        provider.fetch_signal(_market())
    assert excinfo.value.category == "validation"


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ({"yes_score": 64}, 64.0),
        ({"recommendation": "YES", "confidence": 0.9}, 90.0),
        ({"recommendation": "no", "confidence": 0.8}, 20.0),
        ({"recommendation": "INCONCLUSIVE", "confidence": 0.99}, 50.0),
        ({}, None),
    ],
)
def test_parse_yes_score(payload: dict[str, object], expected: float | None) -> None:
    result = parse_yes_score(payload)
    if expected is None:
        assert result is None
    else:
        assert result == pytest.approx(expected)


def test_requires_base_url() -> None:
    with pytest.raises(SignalProviderError):
        HttpSignalProvider(Settings(), logging.getLogger("test_http_signal_provider"))
