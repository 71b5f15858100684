"""
Tests for the profitability engine.

Validates:
1. net = gross - gas - flash fee - slippage for every row
2. Only quoted rows can pass for execution
3. Degraded ETH/USD pricing blocks execution unless explicitly allowed
4. Unsupported / degenerate candidates are skipped and counted
"""

import asyncio

import pytest

from liqcore.calculator import (
    MODE_MODEL,
    MODE_NO_ROUTE,
    NOTE_DEGRADED,
    NOTE_NO_QUOTE,
    NOTE_QUOTED_FAIL,
    NOTE_QUOTED_PASS,
    GasInputs,
    ProfitabilityEngine,
    apply_multiplier_wei,
    bonus_factor,
    summarize,
    to_units_approx,
)
from liqcore.models import STATUS_BELOW_WATCH, STATUS_WATCH
from liqcore.price_feed import EthPrice, L1FeeEstimate
from liqcore.quoter import QuoteOptimizer

from conftest import BORROWER, QUOTER, USDC, WETH, QuoterMulticall, make_candidate, make_settings

ETH_FRESH = EthPrice(usd=3000.0, source="env", stale=False, age_sec=0, updated_at=0, max_age_sec=180)
ETH_STALE = EthPrice(usd=3000.0, source="chainlink", stale=True, age_sec=900, updated_at=1, max_age_sec=180)

GAS = GasInputs(gas_price_wei=100_000_000, quoter_ok=True)


def quoting_engine(amount_out=10_500_000_000, settings=None, **kwargs):
    def quote_fn(token_in, token_out, amount_in, fee):
        if (token_in, token_out, fee) == (WETH.lower(), USDC.lower(), 500):
            return amount_out
        return None

    optimizer = QuoteOptimizer(QuoterMulticall(quote_fn), QUOTER)
    return ProfitabilityEngine(settings or make_settings(), optimizer=optimizer, **kwargs)


def assert_net_identity(row):
    expected = row.gross_profit_usd - row.estimated_gas_usd - row.flash_fee_usd - row.slippage_usd
    assert row.net_profit_usd == pytest.approx(expected, abs=1e-9)


class TestPureMath:

    def test_bonus_factor_typical_market(self):
        assert bonus_factor(0.86) == pytest.approx(0.3 / 0.86 + 0.7)

    def test_bonus_factor_capped(self):
        assert bonus_factor(0.5) == pytest.approx(1.15)

    def test_bonus_factor_floor(self):
        assert bonus_factor(1.2) == 1.0

    @pytest.mark.parametrize("lltv", [None, 0.0, -0.1, 1.5, 2.0])
    def test_bonus_factor_out_of_range(self, lltv):
        assert bonus_factor(lltv) == 1.0

    def test_bonus_factor_configurable(self):
        assert bonus_factor(0.5, beta=0.1, cap=2.0) == pytest.approx(0.1 * 2 + 0.9)

    def test_apply_multiplier_wei(self):
        assert apply_multiplier_wei(100, 1.5) == 150
        assert apply_multiplier_wei(1_000_000_007, 1.0) == 1_000_000_007

    def test_apply_multiplier_rejects_non_positive(self):
        with pytest.raises(ValueError):
            apply_multiplier_wei(100, 0)

    def test_to_units_approx_truncates(self):
        assert to_units_approx(1.23456789123, 18) == 1_234_567_890_000_000_000
        assert to_units_approx(0.1234567, 6, keep=6) == 123_456
        assert to_units_approx(10_000.0, 6, keep=6) == 10_000_000_000


class TestModelPath:

    @pytest.mark.asyncio
    async def test_model_row_without_optimizer(self):
        engine = ProfitabilityEngine(make_settings())
        row = await engine.evaluate(make_candidate(), ETH_FRESH, GAS)

        assert row.quote_mode == MODE_MODEL
        assert row.repay_usd == 10_000.0
        assert row.gross_profit_usd == pytest.approx(10_000.0 * (bonus_factor(0.86) - 1))
        assert row.slippage_usd == pytest.approx(50.0)
        assert row.flash_fee_usd == pytest.approx(5.0)
        assert not row.is_quoted
        assert not row.pass_exec
        assert row.pass_model
        assert row.note == NOTE_NO_QUOTE
        assert_net_identity(row)

    @pytest.mark.asyncio
    async def test_repay_uses_borrow_when_smaller(self):
        engine = ProfitabilityEngine(make_settings())
        row = await engine.evaluate(make_candidate(borrow_usd=1_234.0), ETH_FRESH, GAS)

        assert row.repay_usd == 1_234.0

    @pytest.mark.asyncio
    async def test_below_quote_cutoff_is_not_quoted(self):
        engine = quoting_engine(settings=make_settings(quote_proximity_cutoff=1.05))
        row = await engine.evaluate(make_candidate(proximity=1.02), ETH_FRESH, GAS)

        assert row.quote_mode == MODE_MODEL

    @pytest.mark.asyncio
    async def test_quoter_without_code_is_not_quoted(self):
        engine = quoting_engine()
        row = await engine.evaluate(
            make_candidate(), ETH_FRESH, GasInputs(gas_price_wei=100_000_000, quoter_ok=False)
        )

        assert row.quote_mode == MODE_MODEL


class TestQuotedPath:

    @pytest.mark.asyncio
    async def test_quoted_pass(self):
        row = await quoting_engine().evaluate(make_candidate(), ETH_FRESH, GAS)

        assert row.quote_mode == "quoterV2_fee_500"
        assert row.uni_path.startswith("0x") and len(row.uni_path) == 2 + 43 * 2
        assert row.amount_out_loan == 10_500_000_000
        assert row.amount_out_usd_adj == pytest.approx(10_500.0 * 0.995)
        assert row.gross_profit_usd == pytest.approx(10_500.0 * 0.995 - 10_000.0)
        assert row.slippage_usd == pytest.approx(10_500.0 * 0.005)
        assert row.is_quoted and row.pass_exec and row.passed
        assert row.note == NOTE_QUOTED_PASS
        assert_net_identity(row)

    @pytest.mark.asyncio
    async def test_amount_in_from_seized_collateral(self):
        row = await quoting_engine().evaluate(make_candidate(), ETH_FRESH, GAS)

        seized_tokens = 10_000.0 * bonus_factor(0.86) / 2500.0
        assert row.amount_in_collat == to_units_approx(seized_tokens, 18)

    @pytest.mark.asyncio
    async def test_quoted_fail_below_required(self):
        row = await quoting_engine(amount_out=10_050_000_000).evaluate(make_candidate(), ETH_FRESH, GAS)

        assert row.is_quoted
        assert not row.pass_exec
        assert row.note == NOTE_QUOTED_FAIL
        assert_net_identity(row)

    @pytest.mark.asyncio
    async def test_no_route(self):
        row = await quoting_engine(amount_out=None).evaluate(make_candidate(), ETH_FRESH, GAS)

        assert row.quote_mode == MODE_NO_ROUTE
        assert row.gross_profit_usd == -10_000.0
        assert row.slippage_usd == 0.0
        assert not row.is_quoted
        assert not row.passed
        assert row.note == NOTE_NO_QUOTE
        assert_net_identity(row)

    @pytest.mark.asyncio
    async def test_optimizer_error_becomes_no_route(self):
        class BrokenOptimizer:
            async def best_route(self, *args, **kwargs):
                raise RuntimeError("rpc down")

        engine = ProfitabilityEngine(make_settings(), optimizer=BrokenOptimizer())
        row = await engine.evaluate(make_candidate(), ETH_FRESH, GAS)

        assert row.quote_mode == MODE_NO_ROUTE
        assert not row.pass_exec


class TestDegradedPricing:

    @pytest.mark.asyncio
    async def test_stale_eth_price_blocks_exec(self):
        row = await quoting_engine().evaluate(make_candidate(), ETH_STALE, GAS)

        assert row.is_quoted
        assert not row.pass_exec
        assert row.note == NOTE_DEGRADED

    @pytest.mark.asyncio
    async def test_explicit_override_allows_exec(self):
        engine = quoting_engine(settings=make_settings(allow_exec_with_degraded_pricing=True))
        row = await engine.evaluate(make_candidate(), ETH_STALE, GAS)

        assert row.pass_exec
        assert row.note == NOTE_QUOTED_PASS


class TestGasCost:

    def test_gas_usd_includes_l1_fee(self):
        settings = make_settings(gas_limit=1_000_000, gas_price_multiplier=2.0)
        engine = ProfitabilityEngine(settings)
        l1 = L1FeeEstimate(mode="prices_per_unit", calldata_units=1024, fee_wei=10 ** 14, fee_usd=0.3)

        gas = engine.estimated_gas_usd(ETH_FRESH, GasInputs(gas_price_wei=10 ** 9, l1_fee=l1))

        # 2 gwei * 1e6 gas = 0.002 ETH = 6 USD
        assert gas == pytest.approx(6.0 + 0.3)

    def test_l1_fee_disabled(self):
        engine = ProfitabilityEngine(make_settings(l1_fee_enabled=False))
        l1 = L1FeeEstimate(mode="prices_per_unit", calldata_units=1024, fee_wei=10 ** 14, fee_usd=0.3)

        assert engine.l1_fee_usd(GasInputs(gas_price_wei=1, l1_fee=l1)) == 0.0


class TestBatch:

    @pytest.mark.asyncio
    async def test_unsupported_tokens_skipped(self):
        susds = "0xDDb46999F8891663a8F2828d25298f70416d7610"
        engine = ProfitabilityEngine(make_settings(), unsupported_tokens=[susds])

        assert await engine.evaluate(make_candidate(collateral_token=susds), ETH_FRESH, GAS) is None
        assert await engine.evaluate(make_candidate(loan_symbol="sUSDS"), ETH_FRESH, GAS) is None

    @pytest.mark.asyncio
    async def test_degenerate_decimals_skipped(self):
        engine = ProfitabilityEngine(make_settings())

        assert await engine.evaluate(make_candidate(loan_decimals=0), ETH_FRESH, GAS) is None

    @pytest.mark.asyncio
    async def test_evaluate_all_sorted_and_filtered(self):
        engine = ProfitabilityEngine(make_settings(profit_workers=2))
        candidates = [
            make_candidate(borrower="0x" + f"{i:040x}", borrow_usd=float(100 * (i + 1)), status=STATUS_WATCH)
            for i in range(5)
        ]
        candidates.append(make_candidate(borrower=BORROWER, status=STATUS_BELOW_WATCH, proximity=None))
        candidates.append(make_candidate(borrower="0x" + "9" * 40, loan_symbol="susds"))

        result = await engine.evaluate_all(candidates, ETH_FRESH, GAS)

        assert result.considered == 6
        assert result.skipped_unsupported == 1
        assert result.errors == 0
        assert len(result.opportunities) == 5
        nets = [o.net_profit_usd for o in result.opportunities]
        assert nets == sorted(nets, reverse=True)
        for row in result.opportunities:
            assert_net_identity(row)

    @pytest.mark.asyncio
    async def test_evaluate_all_bounded_concurrency(self):
        class CountingOptimizer:
            def __init__(self):
                self.in_flight = 0
                self.peak = 0
                self.calls = []

            async def best_route(self, token_in, token_out, amount_in, *args):
                self.in_flight += 1
                self.peak = max(self.peak, self.in_flight)
                self.calls.append(amount_in)
                for _ in range(3):
                    await asyncio.sleep(0)
                self.in_flight -= 1
                return None

        optimizer = CountingOptimizer()
        engine = ProfitabilityEngine(make_settings(profit_workers=3), optimizer=optimizer)
        candidates = [make_candidate(borrower="0x" + f"{i + 1:040x}") for i in range(8)]

        result = await engine.evaluate_all(candidates, ETH_FRESH, GAS)

        assert len(optimizer.calls) == 8
        assert len(result.opportunities) == 8
        assert 1 < optimizer.peak <= 3
        assert optimizer.in_flight == 0

    @pytest.mark.asyncio
    async def test_evaluate_all_empty(self):
        result = await ProfitabilityEngine(make_settings()).evaluate_all([], ETH_FRESH, GAS)

        assert result.opportunities == []
        assert result.considered == 0

    @pytest.mark.asyncio
    async def test_summarize(self):
        engine = quoting_engine()
        result = await engine.evaluate_all(
            [make_candidate(), make_candidate(borrower="0x" + "5" * 40, proximity=0.5, status=STATUS_WATCH)],
            ETH_FRESH,
            GAS,
        )

        diag = summarize(result)

        assert diag["considered"] == 2
        assert diag["produced"] == 2
        assert diag["passesExec"] == 1
        assert diag["bestExecMode"] == "quoterV2_fee_500"
        quoted = [row for row in result.opportunities if row.is_quoted]
        assert len(quoted) == 1
        assert diag["bestQuotedNet"] == pytest.approx(quoted[0].net_profit_usd)
