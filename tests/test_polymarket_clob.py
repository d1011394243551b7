"""Tests for the CLOB connector's public reads."""

from __future__ import annotations

import httpx
import pytest

from copytrader.connectors.polymarket_clob import CLOBClient


def _client(handler) -> CLOBClient:
    return CLOBClient(transport=httpx.MockTransport(handler))


class TestMidpoint:
    @pytest.mark.asyncio
    async def test_mid_parsed(self):
        client = _client(lambda req: httpx.Response(200, json={"mid": "0.615"}))
        assert await client.get_midpoint("111") == pytest.approx(0.615)
        await client.close()

    @pytest.mark.asyncio
    async def test_missing_book_is_none(self):
        client = _client(lambda req: httpx.Response(404, json={"error": "No orderbook exists"}))
        assert await client.get_midpoint("111") is None
        await client.close()

    @pytest.mark.asyncio
    async def test_non_json_body_is_none(self):
        client = _client(lambda req: httpx.Response(200, text="<html>gateway</html>"))
        assert await client.get_midpoint("111") is None
        await client.close()

    @pytest.mark.asyncio
    async def test_non_dict_body_is_none(self):
        client = _client(lambda req: httpx.Response(200, json=["0.5"]))
        assert await client.get_midpoint("111") is None
        await client.close()


class TestMarketTokens:
    @pytest.mark.asyncio
    async def test_tokens_parsed(self):
        body = {"tokens": [
            {"token_id": "111", "outcome": "Yes", "price": 1, "winner": True},
            {"token_id": "222", "outcome": "No", "price": 0, "winner": False},
        ]}
        client = _client(lambda req: httpx.Response(200, json=body))
        tokens = await client.get_market_tokens("0xcond")
        assert [(t.token_id, t.winner) for t in tokens] == [("111", True), ("222", False)]
        await client.close()

    @pytest.mark.asyncio
    async def test_malformed_bodies_give_no_tokens(self):
        for response in (
            httpx.Response(200, text="not json"),
            httpx.Response(200, json=[1, 2]),
            httpx.Response(200, json={"tokens": "111"}),
        ):
            client = _client(lambda req, r=response: r)
            assert await client.get_market_tokens("0xcond") == []
            await client.close()

    @pytest.mark.asyncio
    async def test_bad_token_entries_skipped(self):
        body = {"tokens": ["111", {"token_id": "222", "outcome": "No", "price": "n/a"}]}
        client = _client(lambda req: httpx.Response(200, json=body))
        tokens = await client.get_market_tokens("0xcond")
        assert [(t.token_id, t.price) for t in tokens] == [("222", 0.0)]
        await client.close()
