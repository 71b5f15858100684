#!/usr/bin/env python3
"""
Liquidation profitability engine.

Every evaluated candidate becomes one Opportunity row with the identity

    net = gross - gas - flash_fee - slippage

where `gas` already includes the L1 calldata fee (`l1_fee_usd` is reported
separately for information only).

🛡️ Safety Layers:
1. Only QUOTED rows (a real QuoterV2 route) can pass for execution
2. Degraded ETH/USD pricing blocks execution unless explicitly allowed
3. Required net = MIN_PROFIT_NET_USD + SAFETY_BUFFER_USD

Model fallback (no quote): gross = repay * (bonus - 1), slippage = repay * bps.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .artifacts import utc_now_iso
from .config_loader import LiquidationSettings
from .models import Candidate, Opportunity
from .price_feed import EthPrice, L1FeeEstimate
from .quoter import fee_tiers_to_try

logger = logging.getLogger(__name__)

# ============================================
# Constants
# ============================================

BPS_DENOMINATOR = 10_000
WEI_PER_ETH = 10 ** 18

MODE_MODEL = "model_bps"
MODE_NO_ROUTE = "no_route"

NOTE_DEGRADED = "pricing_degraded: blocked for exec"
NOTE_NO_QUOTE = "NO_QUOTE (not executable)"
NOTE_QUOTED_PASS = "QUOTED_PASS"
NOTE_QUOTED_FAIL = "QUOTED_FAIL"

DEFAULT_UNSUPPORTED_SYMBOLS = frozenset({"susds"})


# ============================================
# Pure math
# ============================================

def bonus_factor(lltv: Optional[float], beta: float = 0.3, cap: float = 1.15) -> float:
    """
    Liquidation incentive factor for a market.

    bonus = clamp(beta / lltv + (1 - beta), 1.0, cap); lltv outside (0, 1.5)
    or unknown yields 1.0 (no bonus).
    """
    if lltv is None or lltv != lltv or lltv <= 0 or lltv >= 1.5:
        return 1.0
    raw = beta * (1.0 / lltv) + (1.0 - beta)
    return min(cap, max(1.0, raw))


def apply_multiplier_wei(base_wei: int, multiplier: float) -> int:
    """Scale a wei amount by a float multiplier in integer math (3 decimals)."""
    if multiplier <= 0:
        raise ValueError(f"invalid gas price multiplier: {multiplier}")
    return (int(base_wei) * int(round(multiplier * 1000))) // 1000


def to_units_approx(amount: float, decimals: int, keep: int = 8) -> int:
    """
    Convert a float token amount to integer base units.

    At most `keep` fractional digits survive (truncated), decimals are
    clamped to [0, 18].
    """
    dp = min(max(int(decimals), 0), 18)
    digits = min(dp, keep)
    quantum = Decimal(1).scaleb(-digits)
    truncated = Decimal(repr(float(amount))).quantize(quantum, rounding=ROUND_DOWN)
    return int(truncated.scaleb(dp))


# ============================================
# Data Structures
# ============================================

@dataclass(frozen=True)
class GasInputs:
    """Live inputs shared by every evaluation in one simulate run."""
    gas_price_wei: int
    l1_fee: Optional[L1FeeEstimate] = None
    quoter_ok: bool = False


@dataclass
class EvaluationResult:
    """Output of evaluate_all (opportunities sorted by net profit, desc)."""
    opportunities: List[Opportunity] = field(default_factory=list)
    considered: int = 0
    skipped_unsupported: int = 0
    errors: int = 0


# ============================================
# Engine
# ============================================

class ProfitabilityEngine:
    """
    Evaluate candidates into Opportunity rows.

    Args:
        settings: strategy parameters
        optimizer: QuoteOptimizer (None disables quoting)
        intermediates: {name: address} tokens for two-hop routes
        unsupported_tokens: lower-cased token addresses never evaluated
    """

    def __init__(
        self,
        settings: LiquidationSettings,
        optimizer=None,
        intermediates: Optional[Mapping[str, str]] = None,
        unsupported_tokens: Iterable[str] = (),
    ):
        self.settings = settings
        self.optimizer = optimizer
        self.intermediates = dict(intermediates or {})
        self.unsupported_tokens = {t.lower() for t in unsupported_tokens}
        self.fee_tiers = fee_tiers_to_try(settings.quote_fees)

    # --------------------------------------------
    # Shared inputs
    # --------------------------------------------

    def l1_fee_usd(self, gas_inputs: GasInputs) -> float:
        if not self.settings.l1_fee_enabled or gas_inputs.l1_fee is None:
            return 0.0
        return gas_inputs.l1_fee.fee_usd

    def estimated_gas_usd(self, eth_price: EthPrice, gas_inputs: GasInputs) -> float:
        """(gas_price * multiplier) * gas_limit in USD, plus the L1 calldata fee."""
        adjusted = apply_multiplier_wei(gas_inputs.gas_price_wei, self.settings.gas_price_multiplier)
        gas_cost_wei = adjusted * int(self.settings.gas_limit)
        return gas_cost_wei / WEI_PER_ETH * eth_price.usd + self.l1_fee_usd(gas_inputs)

    def is_unsupported(self, candidate: Candidate) -> bool:
        if candidate.collateral_token.lower() in self.unsupported_tokens:
            return True
        if candidate.loan_token.lower() in self.unsupported_tokens:
            return True
        return (
            candidate.collateral_symbol.lower() in DEFAULT_UNSUPPORTED_SYMBOLS
            or candidate.loan_symbol.lower() in DEFAULT_UNSUPPORTED_SYMBOLS
        )

    def _can_quote(self, candidate: Candidate, gas_inputs: GasInputs) -> bool:
        return (
            self.settings.quote_enabled
            and self.optimizer is not None
            and gas_inputs.quoter_ok
            and candidate.collateral_price_usd is not None
            and candidate.loan_price_usd is not None
            and candidate.collateral_price_usd > 0
            and candidate.loan_price_usd > 0
            and candidate.proximity is not None
            and candidate.proximity >= self.settings.quote_proximity_cutoff
        )

    # --------------------------------------------
    # Single evaluation
    # --------------------------------------------

    async def evaluate(
        self,
        candidate: Candidate,
        eth_price: EthPrice,
        gas_inputs: GasInputs,
    ) -> Optional[Opportunity]:
        """
        Evaluate one candidate.

        Returns:
            Opportunity, or None for unsupported / degenerate candidates.
        """
        if self.is_unsupported(candidate):
            return None
        if candidate.collateral_decimals <= 0 or candidate.loan_decimals <= 0:
            return None

        s = self.settings
        slip = s.slippage_bps / BPS_DENOMINATOR

        repay_usd = (
            min(candidate.borrow_usd, s.max_repay_usd)
            if candidate.borrow_usd is not None
            else s.max_repay_usd
        )
        bonus = bonus_factor(candidate.lltv, s.bonus_beta, s.bonus_cap)
        flash_fee_usd = repay_usd * s.flashloan_fee_bps / BPS_DENOMINATOR
        l1_fee_usd = self.l1_fee_usd(gas_inputs)
        gas_usd = self.estimated_gas_usd(eth_price, gas_inputs)

        quote_mode = MODE_MODEL
        uni_path = ""
        amount_in: Optional[int] = None
        amount_out: Optional[int] = None
        amount_out_usd_adj: Optional[float] = None

        if self._can_quote(candidate, gas_inputs):
            seized_usd = repay_usd * bonus
            collateral_tokens = seized_usd / candidate.collateral_price_usd
            amount_in = to_units_approx(collateral_tokens, candidate.collateral_decimals)

            quote = None
            try:
                quote = await self.optimizer.best_route(
                    candidate.collateral_token,
                    candidate.loan_token,
                    amount_in,
                    self.fee_tiers,
                    self.intermediates,
                    s.quote_max_fees_per_hop,
                )
            except Exception as e:
                logger.warning(f"报价失败 {candidate.candidate_id}: {e}")

            if quote is not None and quote.amount_out > 0:
                quote_mode = quote.mode
                uni_path = quote.path
                amount_out = quote.amount_out
                out_usd = amount_out / 10 ** candidate.loan_decimals * candidate.loan_price_usd
                amount_out_usd_adj = out_usd * (1 - slip)
                gross_usd = amount_out_usd_adj - repay_usd
                slippage_usd = out_usd - amount_out_usd_adj
            else:
                # Nothing recovered: the whole repayment is at risk
                quote_mode = MODE_NO_ROUTE
                gross_usd = -repay_usd
                slippage_usd = 0.0
        else:
            gross_usd = repay_usd * (bonus - 1.0)
            slippage_usd = repay_usd * slip

        net_usd = gross_usd - gas_usd - flash_fee_usd - slippage_usd
        required = s.required_net_usd

        is_quoted = quote_mode not in (MODE_MODEL, MODE_NO_ROUTE) and amount_out is not None
        degraded_block = eth_price.stale and not s.allow_exec_with_degraded_pricing
        exec_ok = not degraded_block and is_quoted
        passed = exec_ok and net_usd >= required

        if degraded_block:
            note = NOTE_DEGRADED
        elif not is_quoted:
            note = NOTE_NO_QUOTE
        elif passed:
            note = NOTE_QUOTED_PASS
        else:
            note = NOTE_QUOTED_FAIL

        return Opportunity(
            ts=utc_now_iso(),
            candidate_id=candidate.candidate_id,
            market_id=candidate.market_id,
            borrower=candidate.borrower,
            collateral_token=candidate.collateral_token,
            loan_token=candidate.loan_token,
            oracle=candidate.oracle or "",
            irm=candidate.irm or "",
            lltv_wad=candidate.lltv_wad,
            collateral=candidate.collateral_symbol,
            loan=candidate.loan_symbol,
            status=candidate.status,
            reason=candidate.reason,
            lltv=candidate.lltv,
            proximity=candidate.proximity,
            repay_usd=repay_usd,
            bonus_factor=bonus,
            gross_profit_usd=gross_usd,
            estimated_gas_usd=gas_usd,
            l1_fee_usd=l1_fee_usd,
            flash_fee_usd=flash_fee_usd,
            slippage_usd=slippage_usd,
            net_profit_usd=net_usd,
            required_net_usd=required,
            quote_mode=quote_mode,
            uni_path=uni_path,
            is_quoted=is_quoted,
            pass_quoted=passed,
            pass_exec=passed,
            pass_model=quote_mode == MODE_MODEL and net_usd >= required,
            amount_in_collat=amount_in,
            amount_out_loan=amount_out,
            amount_out_usd_adj=amount_out_usd_adj,
            passed=passed,
            note=note,
        )

    # --------------------------------------------
    # Batch evaluation (bounded worker pool)
    # --------------------------------------------

    async def evaluate_all(
        self,
        candidates: Sequence[Candidate],
        eth_price: EthPrice,
        gas_inputs: GasInputs,
    ) -> EvaluationResult:
        """
        Evaluate every evaluable candidate with a fixed pool of workers.

        Only candidates with reason "ok" and status above below_watch are
        considered. Output is sorted by net profit, descending.
        """
        items = [c for c in candidates if c.is_evaluable]
        result = EvaluationResult(considered=len(items))
        slots: List[Optional[Opportunity]] = [None] * len(items)

        queue: asyncio.Queue = asyncio.Queue()
        for index, candidate in enumerate(items):
            queue.put_nowait((index, candidate))

        async def worker() -> None:
            while True:
                try:
                    index, candidate = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    opportunity = await self.evaluate(candidate, eth_price, gas_inputs)
                    if opportunity is None:
                        result.skipped_unsupported += 1
                    slots[index] = opportunity
                except Exception as e:
                    result.errors += 1
                    logger.error(f"评估候选失败 {candidate.candidate_id}: {e}")
                finally:
                    queue.task_done()

        workers = max(1, int(self.settings.profit_workers))
        await asyncio.gather(*(worker() for _ in range(min(workers, max(1, len(items))))))

        result.opportunities = sorted(
            (o for o in slots if o is not None),
            key=lambda o: o.net_profit_usd,
            reverse=True,
        )
        return result


def summarize(result: EvaluationResult) -> Dict[str, Any]:
    """Diagnostics block for tx_sim.json."""
    best_quoted_net: Optional[float] = None
    best_quoted_mode = "none"
    best_exec_net: Optional[float] = None
    best_exec_mode = "none"
    passes_quoted = 0
    passes_exec = 0

    for row in result.opportunities:
        if row.pass_quoted:
            passes_quoted += 1
        if row.pass_exec:
            passes_exec += 1
        if row.is_quoted and (best_quoted_net is None or row.net_profit_usd > best_quoted_net):
            best_quoted_net = row.net_profit_usd
            best_quoted_mode = row.quote_mode
        if row.pass_exec and (best_exec_net is None or row.net_profit_usd > best_exec_net):
            best_exec_net = row.net_profit_usd
            best_exec_mode = row.quote_mode

    return {
        "passesQuoted": passes_quoted,
        "passesExec": passes_exec,
        "bestQuotedNet": best_quoted_net,
        "bestQuotedMode": best_quoted_mode,
        "bestExecNet": best_exec_net,
        "bestExecMode": best_exec_mode,
        "skippedUnsupported": result.skipped_unsupported,
        "considered": result.considered,
        "produced": len(result.opportunities),
        "errors": result.errors,
    }
