"""Tests for HedgeOrderExecutor"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import ccxt
import pytest
from tenacity import wait_none

from hedgegrid.api.exceptions import (
    CredentialError,
    ExchangeRejectionError,
    InvalidOrderError,
)
from hedgegrid.api.exchange_client import ExchangeAPIClient
from hedgegrid.core.exceptions import ValidationError
from hedgegrid.core.hedge_executor import DelayProfile, HedgeOrderExecutor
from hedgegrid.core.models import IntentAction, LeverageSetting, OrderIntent, PositionSide

PRICES = {"AUSDT": Decimal("100"), "BUSDT": Decimal("100"), "CUSDT": Decimal("100")}


def _open(symbol: str, side: str = "LONG", **kwargs) -> OrderIntent:
    return OrderIntent(symbol=symbol, position_side=side, action=IntentAction.OPEN, **kwargs)


def _close(symbol: str, side: str = "LONG", **kwargs) -> OrderIntent:
    return OrderIntent(symbol=symbol, position_side=side, action=IntentAction.CLOSE, **kwargs)


@pytest.fixture
def client(btc_rules):
    client = MagicMock()
    client.market_rules = MagicMock(return_value=btc_rules)
    client.fetch_ticker = AsyncMock(return_value={"last": 50000})
    client.create_market_order = AsyncMock(
        side_effect=lambda **kw: {
            "id": f"{kw['symbol']}-{kw['position_side']}",
            "status": "closed",
            "average": 100,
            "filled": float(kw["amount"]),
        }
    )
    client.fetch_positions = AsyncMock(return_value=[])
    client.max_leverage = AsyncMock(return_value=125)
    client.set_leverage = AsyncMock(return_value={})
    return client


@pytest.fixture
def executor(client):
    pool = MagicMock()
    pool.get = AsyncMock(return_value=client)
    executor = HedgeOrderExecutor(pool, max_concurrency=2, leverage_delay=0)
    executor.delay_range = (0, 0)
    return executor


# =============================================================================
# Build positions
# =============================================================================


class TestBuildPositions:
    async def test_one_rejection_does_not_abort_others(self, executor, client, credential):
        def place(**kwargs):
            if kwargs["symbol"] == "BUSDT":
                raise InvalidOrderError('{"code":-1111,"msg":"Precision is over the maximum"}')
            return {"id": kwargs["symbol"], "status": "closed"}

        client.create_market_order.side_effect = place
        intents = [_open(s, quantity=Decimal("1")) for s in ("AUSDT", "BUSDT", "CUSDT")]

        batch = await executor.build_positions(credential, intents, PRICES)

        assert batch.success is True
        assert [r.symbol for r in batch.results] == ["AUSDT", "BUSDT", "CUSDT"]
        assert [r.success for r in batch.results] == [True, False, True]
        assert batch.results[1].error_code == -1111
        assert batch.summary.to_dict() == {"total": 3, "success": 2, "failed": 1}

    async def test_rate_limited_symbol_retried_then_failed_alone(self, credential):
        def market(symbol):
            base = symbol.replace("USDT", "").split("/")[0]
            return {
                "id": f"{base}USDT",
                "symbol": f"{base}/USDT:USDT",
                "precision": {"price": 0.1, "amount": 0.001},
                "limits": {"amount": {"min": 0.001}, "cost": {"min": 5}},
            }

        def place(symbol, side, amount, params):
            if symbol == "B/USDT:USDT":
                raise ccxt.RateLimitExceeded("binanceusdm 429 Too Many Requests")
            return {"id": symbol, "status": "closed", "filled": amount}

        exchange = AsyncMock()
        exchange.market = MagicMock(side_effect=market)
        exchange.create_market_order = AsyncMock(side_effect=place)
        client = ExchangeAPIClient(api_key="k", api_secret="s", rate_limit=False)
        client._exchange = exchange
        client._initialized = True
        pool = MagicMock()
        pool.get = AsyncMock(return_value=client)
        executor = HedgeOrderExecutor(pool, max_concurrency=3, leverage_delay=0)
        executor.delay_range = (0, 0)
        intents = [_open(s, quantity=Decimal("1")) for s in ("AUSDT", "BUSDT", "CUSDT")]

        with patch.object(ExchangeAPIClient.create_market_order.retry, "wait", wait_none()):
            batch = await executor.build_positions(credential, intents, PRICES)

        assert [r.success for r in batch.results] == [True, False, True]
        assert "Rate limit" in batch.results[1].error
        symbols = [c.kwargs["symbol"] for c in exchange.create_market_order.await_args_list]
        assert symbols.count("B/USDT:USDT") == 3
        assert symbols.count("A/USDT:USDT") == 1
        assert symbols.count("C/USDT:USDT") == 1

    async def test_hedge_legs_use_opposite_sides(self, executor, client, credential):
        intents = [
            _open("BTCUSDT", "LONG", quantity=Decimal("0.01")),
            _open("BTCUSDT", "SHORT", quantity=Decimal("0.01")),
        ]

        await executor.build_positions(credential, intents)

        calls = [c.kwargs for c in client.create_market_order.call_args_list]
        assert [(c["side"], c["position_side"]) for c in calls] == [
            ("buy", "LONG"),
            ("sell", "SHORT"),
        ]

    async def test_amount_converted_with_price(self, executor, client, credential):
        batch = await executor.build_positions(
            credential, [_open("BTCUSDT", amount=Decimal("100"))]
        )

        assert batch.results[0].quantity == Decimal("0.002")
        client.fetch_ticker.assert_awaited_once_with("BTCUSDT")

    async def test_below_min_notional(self, executor, client, credential):
        batch = await executor.build_positions(
            credential,
            [_open("BTCUSDT", quantity=Decimal("0.001"))],
            {"BTCUSDT": Decimal("1000")},
        )

        assert batch.success is False
        assert "notional" in batch.results[0].error
        client.create_market_order.assert_not_awaited()

    async def test_invalid_side_fails_item(self, executor, credential):
        batch = await executor.build_positions(
            credential, [_open("BTCUSDT", "BOTH", quantity=Decimal("1"))]
        )
        assert "position side" in batch.results[0].error

    async def test_missing_size_fails_item(self, executor, credential):
        batch = await executor.build_positions(credential, [_open("BTCUSDT")])
        assert batch.results[0].success is False

    async def test_credential_error_aborts_batch(self, executor, client, credential):
        client.create_market_order.side_effect = CredentialError("invalid key", code=-2015)

        with pytest.raises(CredentialError):
            await executor.build_positions(
                credential, [_open("AUSDT", quantity=Decimal("1"))], PRICES
            )


# =============================================================================
# Close positions
# =============================================================================


class TestClosePositions:
    @pytest.fixture(autouse=True)
    def positions(self, client):
        client.fetch_positions.return_value = [
            {
                "symbol": "BTCUSDT",
                "position_side": "LONG",
                "position_amt": Decimal("0.5"),
                "entry_price": Decimal("50000"),
                "leverage": 20,
            }
        ]

    async def test_quantity_capped_by_position(self, executor, client, credential):
        batch = await executor.close_positions(
            credential, [_close("BTCUSDT", quantity=Decimal("1"))], mode="quantity"
        )

        assert batch.success is True
        kwargs = client.create_market_order.call_args.kwargs
        assert kwargs["amount"] == Decimal("0.5")
        assert kwargs["side"] == "sell"

    async def test_percentage_mode(self, executor, client, credential):
        await executor.close_positions(
            credential, [_close("BTCUSDT", percentage=Decimal("50"))], mode="percentage"
        )
        assert client.create_market_order.call_args.kwargs["amount"] == Decimal("0.25")

    async def test_amount_mode(self, executor, client, credential):
        await executor.close_positions(
            credential,
            [_close("BTCUSDT", amount=Decimal("5000"))],
            mode="amount",
            reference_prices={"BTCUSDT": Decimal("50000")},
        )
        assert client.create_market_order.call_args.kwargs["amount"] == Decimal("0.1")

    async def test_invalid_items_skipped(self, executor, client, credential):
        intents = [
            _close("BTCUSDT", "SHORT", quantity=Decimal("1")),
            _close("BTCBUSD", quantity=Decimal("1")),
            _close("BTCUSDT", "LONG", percentage=Decimal("10")),
        ]

        batch = await executor.close_positions(credential, intents, mode="quantity")

        assert batch.success is False
        assert "No open SHORT position" in batch.results[0].error
        assert "USDT pairs" in batch.results[1].error
        assert "quantity is required" in batch.results[2].error
        client.create_market_order.assert_not_awaited()

    async def test_unknown_mode(self, executor, credential):
        with pytest.raises(ValidationError):
            await executor.close_positions(credential, [], mode="all")


# =============================================================================
# Grid execution
# =============================================================================


class TestExecute:
    async def test_close_rejection_keeps_code(self, executor, client, credential):
        client.create_market_order.side_effect = InvalidOrderError(
            '{"code":-2022,"msg":"ReduceOnly Order is rejected."}'
        )

        batch = await executor.execute(
            credential, [_close("BTCUSDT", quantity=Decimal("0.01"))], {}
        )

        assert batch.results[0].success is False
        assert batch.results[0].error_code == -2022
        client.fetch_positions.assert_not_awaited()

    async def test_open_and_close(self, executor, credential):
        intents = [
            _open("BTCUSDT", "LONG", quantity=Decimal("0.01")),
            _close("BTCUSDT", "SHORT", quantity=Decimal("0.01")),
        ]

        batch = await executor.execute(credential, intents, {"BTCUSDT": Decimal("50000")})

        assert [r.success for r in batch.results] == [True, True]
        assert batch.results[0].order_id == "BTCUSDT-LONG"
        assert batch.results[0].average_price == Decimal("100")


# =============================================================================
# Leverage
# =============================================================================


class TestLeverage:
    @pytest.mark.parametrize("leverage", [0, 126, 2.5, True, "20"])
    async def test_out_of_range_rejected_before_any_call(
        self, executor, client, credential, leverage
    ):
        with pytest.raises(ValidationError):
            await executor.set_leverage(
                credential,
                [LeverageSetting("BTCUSDT", 10), LeverageSetting("ETHUSDT", leverage)],
            )
        client.set_leverage.assert_not_awaited()

    async def test_empty_batch_rejected(self, executor, credential):
        with pytest.raises(ValidationError):
            await executor.set_leverage(credential, [])

    async def test_small_batch_is_synchronous(self, executor, client, credential):
        async def apply(leverage, symbol):
            if symbol == "DUSDT":
                raise ExchangeRejectionError('{"code":-4028,"msg":"Leverage is not valid"}')
            return {}

        client.set_leverage.side_effect = apply
        settings = [LeverageSetting(s, 10) for s in ("AUSDT", "BUSDT", "CUSDT", "DUSDT")]

        result = await executor.set_leverage(credential, settings)

        assert result.accepted is False
        assert len(result.results) == 4
        assert result.summary == {
            "total": 4,
            "success": 3,
            "failed": 1,
            "success_rate": "75.00%",
        }
        assert result.results[3].error_code == -4028

    async def test_large_batch_runs_in_background(self, executor, client, credential):
        settings = [LeverageSetting(f"S{i}USDT", 10) for i in range(6)]

        result = await executor.set_leverage(credential, settings)

        assert result.accepted is True
        assert result.results == []
        assert result.summary == {"total": 6}

        await asyncio.gather(*executor._background_tasks)
        assert client.set_leverage.await_count == 6

    async def test_clamped_to_exchange_maximum(self, executor, client, credential):
        client.max_leverage.return_value = 50

        result = await executor.set_leverage(credential, [LeverageSetting("BTCUSDT", 100)])

        item = result.results[0]
        assert item.applied_leverage == 50
        assert item.adjusted is True
        client.set_leverage.assert_awaited_once_with(50, "BTCUSDT")

    async def test_new_account_cap_retries_at_twenty(self, executor, client, credential):
        client.set_leverage.side_effect = [
            ExchangeRejectionError('{"code":-4300,"msg":"new account"}'),
            {},
        ]

        result = await executor.set_leverage(credential, [LeverageSetting("BTCUSDT", 50)])

        assert result.results[0].success is True
        assert result.results[0].applied_leverage == 20

    async def test_shutdown_cancels_background(self, executor, client, credential):
        async def slow(leverage, symbol):
            await asyncio.sleep(10)

        client.set_leverage.side_effect = slow
        await executor.set_leverage(
            credential, [LeverageSetting(f"S{i}USDT", 5) for i in range(6)]
        )

        await executor.shutdown()
        assert not executor._background_tasks


# =============================================================================
# Hedge symmetry
# =============================================================================


class TestHedgeSymmetry:
    async def test_reports_one_sided_symbols(self, executor, client, credential):
        client.fetch_positions.return_value = [
            {"symbol": "ETHUSDT", "position_side": "LONG", "position_amt": Decimal("1")},
            {"symbol": "ETHUSDT", "position_side": "SHORT", "position_amt": Decimal("1")},
            {"symbol": "BTCUSDT", "position_side": "LONG", "position_amt": Decimal("0.5")},
            {"symbol": "SOLUSDT", "position_side": "SHORT", "position_amt": Decimal("3")},
        ]

        imbalanced = await executor.inspect_hedge_symmetry(credential)

        assert [h.symbol for h in imbalanced] == ["BTCUSDT", "SOLUSDT"]
        assert imbalanced[0].missing_side == PositionSide.SHORT
        assert imbalanced[1].missing_side == PositionSide.LONG

    async def test_balanced_account(self, executor, credential):
        assert await executor.inspect_hedge_symmetry(credential) == []


def test_delay_profiles():
    pool = MagicMock()
    assert HedgeOrderExecutor(pool, delay_profile=DelayProfile.LONG).delay_range == (0.5, 1.0)
    assert HedgeOrderExecutor(pool, delay_profile="medium").delay_range == (0.3, 0.6)
