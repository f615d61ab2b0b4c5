"""Unit tests for Pyth oracle — price response parsing and error handling."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from liquidation_guard.config import PythConfig
from liquidation_guard.oracles.pyth import PythOracle


@pytest.fixture()
def oracle(sample_pyth_config: PythConfig) -> PythOracle:
    return PythOracle(sample_pyth_config)


def _make_pyth_response(items: list[dict]) -> dict:
    return {"parsed": items}


def _mock_session(status: int = 200, data: dict | None = None) -> AsyncMock:
    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.json = AsyncMock(return_value=data or {})
    mock_response.__aenter__ = AsyncMock(return_value=mock_response)
    mock_response.__aexit__ = AsyncMock(return_value=None)

    mock_session = AsyncMock()
    mock_session.get = MagicMock(return_value=mock_response)
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=None)
    return mock_session


class TestPythOracleFetchPrices:
    @pytest.mark.asyncio
    async def test_parses_response_correctly(self, oracle: PythOracle) -> None:
        session = _mock_session(
            data=_make_pyth_response(
                [
                    {"id": "aaa111", "price": {"price": "250000000000", "expo": "-8"}},
                    {"id": "bbb222", "price": {"price": "4500000000000", "expo": "-8"}},
                    {"id": "ccc333", "price": {"price": "100000000", "expo": "-8"}},
                ]
            )
        )

        with patch("liquidation_guard.oracles.pyth.aiohttp.ClientSession", return_value=session):
            with patch("liquidation_guard.oracles.pyth.aiohttp.TCPConnector"):
                prices = await oracle.fetch_prices()

        assert prices["ETH"] == pytest.approx(2500.0)
        assert prices["BTC"] == pytest.approx(45000.0)
        assert prices["USDC"] == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_accepts_0x_prefixed_ids(self, oracle: PythOracle) -> None:
        session = _mock_session(
            data=_make_pyth_response(
                [{"id": "0xAAA111", "price": {"price": "250000000000", "expo": "-8"}}]
            )
        )

        with patch("liquidation_guard.oracles.pyth.aiohttp.ClientSession", return_value=session):
            with patch("liquidation_guard.oracles.pyth.aiohttp.TCPConnector"):
                prices = await oracle.fetch_prices(["ETH"])

        assert prices == {"ETH": pytest.approx(2500.0)}

    @pytest.mark.asyncio
    async def test_discards_non_positive_prices(self, oracle: PythOracle) -> None:
        session = _mock_session(
            data=_make_pyth_response(
                [
                    {"id": "aaa111", "price": {"price": "0", "expo": "-8"}},
                    {"id": "ccc333", "price": {"price": "bad", "expo": "-8"}},
                    {"id": "bbb222", "price": {"price": "4500000000000", "expo": "-8"}},
                ]
            )
        )

        with patch("liquidation_guard.oracles.pyth.aiohttp.ClientSession", return_value=session):
            with patch("liquidation_guard.oracles.pyth.aiohttp.TCPConnector"):
                prices = await oracle.fetch_prices()

        assert set(prices) == {"BTC"}

    @pytest.mark.asyncio
    async def test_handles_http_error(self, oracle: PythOracle) -> None:
        session = _mock_session(status=500)

        with patch("liquidation_guard.oracles.pyth.aiohttp.ClientSession", return_value=session):
            with patch("liquidation_guard.oracles.pyth.aiohttp.TCPConnector"):
                prices = await oracle.fetch_prices()

        assert prices == {}

    @pytest.mark.asyncio
    async def test_handles_network_error(self, oracle: PythOracle) -> None:
        session = _mock_session()
        session.get = MagicMock(side_effect=ConnectionError("timeout"))

        with patch("liquidation_guard.oracles.pyth.aiohttp.ClientSession", return_value=session):
            with patch("liquidation_guard.oracles.pyth.aiohttp.TCPConnector"):
                prices = await oracle.fetch_prices()

        assert prices == {}

    @pytest.mark.asyncio
    async def test_symbol_filter(self, oracle: PythOracle) -> None:
        session = _mock_session(
            data=_make_pyth_response(
                [{"id": "aaa111", "price": {"price": "250000000000", "expo": "-8"}}]
            )
        )

        with patch("liquidation_guard.oracles.pyth.aiohttp.ClientSession", return_value=session):
            with patch("liquidation_guard.oracles.pyth.aiohttp.TCPConnector"):
                prices = await oracle.fetch_prices(symbols=["ETH", "DOGE"])

        assert "ETH" in prices
        # BTC and USDC not requested; DOGE has no feed
        assert "BTC" not in prices
        assert "DOGE" not in prices
        params = session.get.call_args.kwargs["params"]
        assert params == [("ids[]", "aaa111")]

    @pytest.mark.asyncio
    async def test_empty_feeds_returns_empty(self) -> None:
        oracle = PythOracle(PythConfig(hermes_url="https://x.com", feeds={}))
        prices = await oracle.fetch_prices()
        assert prices == {}
