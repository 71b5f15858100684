"""
Tests for the QuoterV2 best-route search.
"""

import pytest

from liqcore.quoter import QuoteOptimizer, fee_tiers_to_try, mid_token_name
from liqcore.route import decode_v3_path

from conftest import QUOTER, USDC, USDT, WETH, QuoterMulticall

AMOUNT_IN = 4 * 10 ** 18


def table(quotes):
    """quote_fn backed by {(token_in, token_out, fee): amount_out}"""
    lowered = {(a.lower(), b.lower(), fee): out for (a, b, fee), out in quotes.items()}

    def quote_fn(token_in, token_out, amount_in, fee):
        return lowered.get((token_in, token_out, fee))

    return quote_fn


def optimizer_for(quotes):
    multicall = QuoterMulticall(table(quotes))
    return QuoteOptimizer(multicall, QUOTER), multicall


@pytest.mark.asyncio
async def test_direct_winner_by_fee_tier():
    """Two fee tiers, both succeed: the larger output wins."""
    optimizer, multicall = optimizer_for({
        (WETH, USDC, 500): 100,
        (WETH, USDC, 3000): 120,
    })

    quote = await optimizer.best_route(WETH, USDC, AMOUNT_IN, [500, 3000], {})

    assert quote is not None
    assert quote.mode == "quoterV2_fee_3000"
    assert quote.amount_out == 120
    assert quote.fees == [3000]
    assert quote.route == "single"
    assert multicall.batches == [2]


@pytest.mark.asyncio
async def test_two_hop_route_beats_direct():
    optimizer, multicall = optimizer_for({
        (WETH, USDC, 500): 100,
        (WETH, USDT, 500): 1_000,
        (USDT, USDC, 500): 150,
        (USDT, USDC, 3000): 140,
    })

    quote = await optimizer.best_route(WETH, USDC, AMOUNT_IN, [500, 3000], {"usdt": USDT})

    assert quote.mode == "quoterV2_2hop_usdt_500_500"
    assert quote.amount_out == 150
    assert multicall.batches == [4, 2]

    tokens, fees = decode_v3_path(quote.path)
    assert [t.lower() for t in tokens] == [WETH.lower(), USDT.lower(), USDC.lower()]
    assert fees == [500, 500]


@pytest.mark.asyncio
async def test_failures_counted_and_first_kept():
    optimizer, _ = optimizer_for({
        (WETH, USDC, 500): 100,
        (WETH, USDT, 500): 1_000,
        (USDT, USDC, 500): 150,
        (USDT, USDC, 3000): 140,
    })

    quote = await optimizer.best_route(WETH, USDC, AMOUNT_IN, [500, 3000], {"usdt": USDT})

    assert quote.attempts == 6
    assert quote.fails == 2
    assert quote.first_failure.leg == "single"
    assert quote.first_failure.fee == 3000
    assert quote.first_failure.msg == "Reverted"


@pytest.mark.asyncio
async def test_stage_two_skipped_without_hop1_output():
    optimizer, multicall = optimizer_for({
        (WETH, USDC, 500): 100,
        (WETH, USDT, 500): 0,
    })

    quote = await optimizer.best_route(WETH, USDC, AMOUNT_IN, [500, 3000], {"usdt": USDT})

    assert quote.mode == "quoterV2_fee_500"
    assert multicall.batches == [4]


@pytest.mark.asyncio
async def test_intermediates_equal_to_pair_are_ignored():
    optimizer, multicall = optimizer_for({(WETH, USDC, 500): 100})

    await optimizer.best_route(WETH, USDC, AMOUNT_IN, [500, 3000], {"weth": WETH, "usdc": USDC.lower()})

    assert multicall.batches == [2]


@pytest.mark.asyncio
async def test_hop_fees_limited_per_hop():
    optimizer, multicall = optimizer_for({(WETH, USDT, 100): 1_000})

    await optimizer.best_route(
        WETH, USDC, AMOUNT_IN, [100, 500, 3000, 10000], {"usdt": USDT}, max_fees_per_hop=2
    )

    # 4 direct + 2 hop1; then one hop1 output x 2 hop2 fees
    assert multicall.batches == [6, 2]


@pytest.mark.asyncio
async def test_no_positive_output_returns_none():
    optimizer, _ = optimizer_for({
        (WETH, USDC, 500): 0,
    })

    assert await optimizer.best_route(WETH, USDC, AMOUNT_IN, [500, 3000], {}) is None


@pytest.mark.asyncio
async def test_zero_amount_in_returns_none_without_calls():
    optimizer, multicall = optimizer_for({(WETH, USDC, 500): 100})

    assert await optimizer.best_route(WETH, USDC, 0, [500], {}) is None
    assert multicall.batches == []


@pytest.mark.asyncio
async def test_tie_keeps_first_found():
    optimizer, _ = optimizer_for({
        (WETH, USDC, 500): 120,
        (WETH, USDC, 3000): 120,
    })

    quote = await optimizer.best_route(WETH, USDC, AMOUNT_IN, [500, 3000], {})

    assert quote.mode == "quoterV2_fee_500"


@pytest.mark.asyncio
async def test_same_inputs_same_winner():
    quotes = {
        (WETH, USDC, 500): 100,
        (WETH, USDC, 3000): 99,
        (WETH, USDT, 500): 1_000,
        (USDT, USDC, 3000): 101,
    }
    optimizer, _ = optimizer_for(quotes)

    first = await optimizer.best_route(WETH, USDC, AMOUNT_IN, [500, 3000], {"usdt": USDT})
    second = await optimizer.best_route(WETH, USDC, AMOUNT_IN, [500, 3000], {"usdt": USDT})

    assert (first.mode, first.amount_out, first.path) == (second.mode, second.amount_out, second.path)
    assert first.mode == "quoterV2_2hop_usdt_500_3000"


@pytest.mark.asyncio
async def test_failed_batch_recorded_not_raised():
    optimizer, multicall = optimizer_for({
        (WETH, USDC, 500): 100,
        (WETH, USDC, 3000): 90,
        (WETH, USDT, 500): 1_000,
        (WETH, USDT, 3000): 1_000,
    })
    multicall.failing_batches = {2}

    quote = await optimizer.best_route(WETH, USDC, AMOUNT_IN, [500, 3000], {"usdt": USDT})

    assert quote.mode == "quoterV2_fee_500"
    assert quote.fails == 4
    assert quote.first_failure.leg == "hop2"
    assert "ClientConnectorError" in quote.first_failure.msg


@pytest.mark.asyncio
async def test_undecodable_result_counts_as_failure():
    class GarbageMulticall:
        last_batch_error = None

        async def aggregate(self, calls, allow_failure=True):
            return [(True, b"\x01") for _ in calls]

    optimizer = QuoteOptimizer(GarbageMulticall(), QUOTER)

    assert await optimizer.best_route(WETH, USDC, AMOUNT_IN, [500], {}) is None


def test_fee_tiers_to_try_dedupes_and_keeps_order():
    assert fee_tiers_to_try([500, 2500, 0, -1, 100]) == [100, 500, 3000, 10000, 2500]


def test_mid_token_name():
    assert mid_token_name(USDT.lower(), {"USDT": USDT}) == "usdt"
    assert mid_token_name(WETH, {"USDT": USDT}) == "mid"
