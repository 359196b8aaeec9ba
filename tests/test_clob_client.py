"""Tests for order-book snapshots."""

import httpx
import pytest

from event_reports.exceptions import AppError, ErrorCode
from event_reports.providers.clob import ClobClient, build_snapshot, notable_walls, sorted_levels

from conftest import json_response


class TestBuildSnapshot:
    """Test order-book shaping."""

    def test_levels_sorted_and_truncated(self):
        """Bids descend, asks ascend, each side capped at top_levels."""
        bids = sorted_levels([{"price": "0.40", "size": "10"}, {"price": "0.45", "size": "5"},
                              {"price": "0.30", "size": "1"}], "bid", 2)
        asks = sorted_levels([{"price": 0.6, "size": 3}, {"price": 0.55, "size": 2}], "ask", 2)
        assert [level.price for level in bids] == [0.45, 0.40]
        assert [level.price for level in asks] == [0.55, 0.6]

    def test_spread_and_midpoint(self):
        """Spread and midpoint come from the best bid and ask."""
        snapshot = build_snapshot({
            "bids": [{"price": "0.48", "size": "100"}],
            "asks": [{"price": "0.52", "size": "100"}],
        })
        assert snapshot.spread == pytest.approx(0.04)
        assert snapshot.midpoint == pytest.approx(0.50)
        assert len(snapshot.bids) == 1 and len(snapshot.asks) == 1

    def test_one_sided_book(self):
        """Only one side present means no spread or midpoint."""
        snapshot = build_snapshot({"bids": [{"price": "0.48", "size": "1"}], "asks": []})
        assert snapshot.spread is None
        assert snapshot.midpoint is None
        assert len(snapshot.book_top_levels) == 1

    def test_missing_sides_give_empty_snapshot(self):
        """A payload without bid/ask arrays yields an empty snapshot."""
        snapshot = build_snapshot({"market": "x"})
        assert snapshot.book_top_levels == []
        assert snapshot.notable_walls == []

    def test_invalid_level_rejects_payload(self):
        """A non-positive size makes the whole payload invalid."""
        with pytest.raises(ValueError):
            build_snapshot({"bids": [{"price": "0.5", "size": "0"}], "asks": []})

    def test_notable_walls(self):
        """Walls are levels larger than mean * multiple."""
        levels = sorted_levels([{"price": 0.1 * i, "size": 1} for i in range(1, 10)]
                               + [{"price": 0.95, "size": 100}], "bid", 10)
        walls = notable_walls(levels, 5)
        assert len(walls) == 1
        assert walls[0].price == 0.95
        assert walls[0].multiple > 5


class TestClobClient:
    """Test the order-book client."""

    @pytest.mark.asyncio
    async def test_fetch_and_cache(self, settings, sleeps, clock):
        """The book is fetched once per TTL window."""
        calls = []

        def handler(request):
            calls.append(request.url.params["token_id"])
            return json_response({"bids": [{"price": "0.4", "size": "10"}],
                                  "asks": [{"price": "0.6", "size": "10"}]})

        client = ClobClient.from_settings(settings, transport=httpx.MockTransport(handler),
                                          sleep=sleeps, clock=clock)
        first = await client.get_order_book_summary("tok")
        second = await client.get_order_book_summary("tok")
        assert first == second
        assert calls == ["tok"]

        clock.advance(settings.CACHE_TTL_ORDERBOOK + 1)
        await client.get_order_book_summary("tok")
        assert calls == ["tok", "tok"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_invalid_payload_code(self, settings, sleeps, clock):
        """Malformed levels surface CLOB_RESPONSE_INVALID."""
        handler = lambda request: json_response({"bids": [{"price": "abc", "size": "1"}], "asks": []})
        client = ClobClient.from_settings(settings, transport=httpx.MockTransport(handler),
                                          sleep=sleeps, clock=clock)
        with pytest.raises(AppError) as exc_info:
            await client.get_order_book_summary("tok")
        assert exc_info.value.code == ErrorCode.PROVIDER_PM_CLOB_RESPONSE_INVALID
        assert not exc_info.value.retryable
        await client.aclose()
