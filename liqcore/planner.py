"""
MorphoLiq-Core 订单构建与执行计划

把机会表转换为 tx_plan.json：
1. 资格检查（冷却 → 过期 → 未报价 → 未通过执行过滤）
2. 可执行候选按净利润降序，取前 N 个构建订单
3. 其余行降级为 WATCH / SKIP，并在 note 中写明原因

订单中的金额全部是代币最小单位的整数，份额按向上取整计算。
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from web3.exceptions import Web3Exception

from .artifacts import ArtifactError, age_seconds, utc_now_iso
from .calculator import BPS_DENOMINATOR, to_units_approx
from .config_loader import LiquidationSettings
from .cooldown import CooldownStore
from .models import (
    STATUS_EXEC_READY,
    Candidate,
    MarketParams,
    Opportunity,
    Order,
    Plan,
    PlanAction,
    PlanItem,
)
from .morpho_blue import MarketTotals, assets_to_shares_up, compute_market_id
from .network import RPCError
from .route import encode_v3_path, path_from_hex

logger = logging.getLogger(__name__)

STABLE_SYMBOLS = frozenset({"USDC", "USDT", "DAI", "USDBC"})
STABLE_KEEP_DECIMALS = 6
MIN_DEADLINE_SEC = 60
MAX_EXEC_ORDERS_LIMIT = 200

_FEE_IN_MODE = re.compile(r"fee_(\d+)")


class OrderBuildError(Exception):
    """订单无法构建时抛出的异常（只影响单个候选）"""
    pass


# =====================================================
# 订单构建
# =====================================================

def usd_to_loan_units(usd: float, candidate: Candidate) -> int:
    """
    USD 金额换算为借出代币的最小单位

    稳定币按 1 USD 计（保留 6 位小数），其他代币除以实时 USD 价格。
    """
    if candidate.loan_symbol.upper() in STABLE_SYMBOLS:
        return to_units_approx(usd, candidate.loan_decimals, keep=STABLE_KEEP_DECIMALS)

    price = candidate.loan_price_usd
    if price is None or price <= 0:
        raise OrderBuildError(f"缺少借出代币价格: {candidate.loan_symbol or candidate.loan_token}")
    return to_units_approx(usd / price, candidate.loan_decimals)


def resolve_route(opportunity: Opportunity, candidate: Candidate) -> bytes:
    """优先使用报价得到的路径，否则按报价模式中的费率构建单跳路径"""
    if opportunity.uni_path and opportunity.uni_path not in ("0x", "0X"):
        return path_from_hex(opportunity.uni_path)

    match = _FEE_IN_MODE.search(opportunity.quote_mode or "")
    if not match:
        raise OrderBuildError(f"无法确定兑换路径 (quote_mode={opportunity.quote_mode!r})")
    return encode_v3_path(
        [candidate.collateral_token, candidate.loan_token],
        [int(match.group(1))],
    )


def build_order(
    opportunity: Opportunity,
    candidate: Candidate,
    totals: MarketTotals,
    settings: LiquidationSettings,
    now: float,
) -> Order:
    """
    为一个已通过执行过滤的机会构建清算订单

    参数:
        opportunity: 机会行（需有 amount_out_loan）
        candidate: 对应候选（提供 oracle / irm / lltv 与代币信息）
        totals: 市场借款总量
        settings: 策略参数
        now: 当前 unix 秒

    异常:
        OrderBuildError: 输入不完整或金额无效
        ProtocolMathError: 市场总量无法换算份额
    """
    if candidate.loan_decimals <= 0:
        raise OrderBuildError(f"借出代币精度无效: {candidate.loan_decimals}")
    if opportunity.repay_usd <= 0:
        raise OrderBuildError(f"偿还金额无效: {opportunity.repay_usd}")
    if opportunity.required_net_usd < 0:
        raise OrderBuildError(f"最低净利润无效: {opportunity.required_net_usd}")
    if opportunity.amount_out_loan is None:
        raise OrderBuildError("缺少 amount_out_loan")
    if not candidate.oracle or not candidate.irm:
        raise OrderBuildError("缺少 oracle/irm")
    if candidate.lltv_wad is None or candidate.lltv_wad <= 0:
        raise OrderBuildError("缺少 lltv_wad")
    try:
        expected_id = compute_market_id(
            candidate.loan_token, candidate.collateral_token, candidate.oracle, candidate.irm, candidate.lltv_wad
        )
    except ValueError as e:
        raise OrderBuildError(f"市场参数无效: {e}") from e
    if expected_id.lower() != candidate.market_id.lower():
        raise OrderBuildError(f"市场 id 与参数不符: {candidate.market_id} != {expected_id}")

    repay_assets = usd_to_loan_units(opportunity.repay_usd, candidate)
    min_profit = usd_to_loan_units(opportunity.required_net_usd, candidate)
    if repay_assets <= 0:
        raise OrderBuildError(f"偿还数量为零 (repay_usd={opportunity.repay_usd})")

    if totals.total_borrow_assets <= 0 or totals.total_borrow_shares <= 0:
        raise OrderBuildError(
            f"市场借款总量为零 (assets={totals.total_borrow_assets}, shares={totals.total_borrow_shares})"
        )

    repay_assets = min(repay_assets, totals.total_borrow_assets)
    repaid_shares = assets_to_shares_up(
        repay_assets, totals.total_borrow_assets, totals.total_borrow_shares
    )
    if repaid_shares <= 0:
        raise OrderBuildError("偿还份额为零")

    amount_out_min = int(opportunity.amount_out_loan) * (BPS_DENOMINATOR - settings.slippage_bps) // BPS_DENOMINATOR

    return Order(
        market=MarketParams(
            loan_token=candidate.loan_token,
            collateral_token=candidate.collateral_token,
            oracle=candidate.oracle,
            irm=candidate.irm,
            lltv=int(candidate.lltv_wad),
        ),
        borrower=candidate.borrower,
        repay_assets=repay_assets,
        repaid_shares=repaid_shares,
        seized_assets=0,
        uni_path=resolve_route(opportunity, candidate),
        amount_out_min=amount_out_min,
        min_profit=min_profit,
        deadline=int(now) + max(MIN_DEADLINE_SEC, int(settings.order_deadline_sec)),
        max_tx_gas_price=int(settings.max_tx_gas_price_wei),
        referral_code=int(settings.referral_code),
        nonce=int(now * 1000),
    )


# =====================================================
# 计划构建
# =====================================================

@dataclass
class _Row:
    opportunity: Opportunity
    eligible: bool
    reason: str
    exec_candidate: bool


class PlanBuilder:
    """
    执行计划构建器

    参数:
        settings: 策略参数
        reader: 提供 read_market_totals(market_id) 的对象（MorphoBlueReader）
        cooldown: 健康冷却存储
        clock: 返回当前 unix 秒的函数（测试可注入）
    """

    def __init__(
        self,
        settings: LiquidationSettings,
        reader,
        cooldown: CooldownStore,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.reader = reader
        self.cooldown = cooldown
        self.clock = clock
        self._totals_cache: Dict[str, MarketTotals] = {}

    @property
    def max_exec_orders(self) -> int:
        return min(MAX_EXEC_ORDERS_LIMIT, max(1, int(self.settings.plan_max_exec_orders)))

    def _is_stale(self, opportunity: Opportunity, now: float) -> bool:
        if not opportunity.ts:
            return True
        try:
            return age_seconds(opportunity.ts, now) > self.settings.plan_max_opp_age_sec
        except ArtifactError:
            return True

    def _classify(self, opportunity: Opportunity, cooling: Mapping[str, float], now: float) -> _Row:
        s = self.settings
        proximity = opportunity.proximity

        if opportunity.pass_exec and opportunity.candidate_id in cooling:
            reason = "HEALTHY_COOLDOWN"
        elif self._is_stale(opportunity, now):
            reason = f"STALE_OPPORTUNITY maxAge={s.plan_max_opp_age_sec:g}s"
        elif not opportunity.is_quoted:
            reason = "NO_QUOTE"
        elif not opportunity.pass_exec:
            reason = "EXEC_FILTER"
        elif proximity is None or proximity < s.watch_proximity:
            reason = f"PROXIMITY_BELOW_MIN prox={_fmt_prox(proximity)} min={s.watch_proximity:g}"
        else:
            reason = ""

        exec_candidate = (
            (opportunity.status == STATUS_EXEC_READY or opportunity.pass_exec)
            and proximity is not None
            and proximity >= s.exec_proximity
        )
        return _Row(opportunity, eligible=not reason, reason=reason, exec_candidate=exec_candidate)

    async def market_totals(self, market_id: str) -> MarketTotals:
        """读取市场总量（每个市场只读一次）"""
        key = market_id.lower()
        cached = self._totals_cache.get(key)
        if cached is not None:
            return cached
        totals = await self.reader.read_market_totals(market_id)
        self._totals_cache[key] = totals
        return totals

    async def _build_for(self, opportunity: Opportunity, candidate: Optional[Candidate], now: float) -> Order:
        if candidate is None:
            raise OrderBuildError("candidateId not found")
        totals = await self.market_totals(candidate.market_id)
        return build_order(opportunity, candidate, totals, self.settings, now)

    async def build(
        self,
        rows: Sequence[Opportunity],
        candidates: Mapping[str, Candidate],
    ) -> Plan:
        """
        构建执行计划

        参数:
            rows: 机会表（任意顺序）
            candidates: candidate_id → Candidate

        返回:
            Plan（items 与机会表顺序一致）
        """
        now = self.clock()
        s = self.settings
        cooling = self.cooldown.snapshot(now)
        classified = [self._classify(row, cooling, now) for row in rows]

        ranked = sorted(
            (r for r in classified if r.eligible and r.exec_candidate),
            key=lambda r: r.opportunity.net_profit_usd,
            reverse=True,
        )
        chosen = {id(r) for r in ranked[: self.max_exec_orders]}

        plan = Plan(generated_at=utc_now_iso(now))
        for row in classified:
            opp = row.opportunity
            prox = opp.proximity
            order: Optional[Order] = None

            if id(row) in chosen:
                try:
                    order = await self._build_for(opp, candidates.get(opp.candidate_id), now)
                    action, passed, note = PlanAction.EXEC, True, "EXEC_READY_WITH_ORDER"
                    plan.exec_built += 1
                except (OrderBuildError, ValueError, RPCError, Web3Exception) as e:
                    logger.warning(f"订单构建失败 {opp.candidate_id}: {e}")
                    action, passed, note = PlanAction.WATCH, False, f"ORDER_BUILD_FAILED: {e}"
                    plan.exec_downgraded += 1
            elif prox is None or prox < s.watch_proximity:
                action, passed = PlanAction.SKIP, False
                note = f"PROXIMITY_BELOW_MIN prox={_fmt_prox(prox)} min={s.watch_proximity:g}"
            elif not row.eligible:
                action, passed, note = PlanAction.WATCH, False, row.reason
            elif not row.exec_candidate:
                action, passed = PlanAction.WATCH, False
                note = f"WATCH_ONLY status={opp.status} prox={_fmt_prox(prox)} < minExec={s.exec_proximity:g}"
            else:
                action, passed = PlanAction.WATCH, False
                note = f"NOT_IN_TOP_N n={self.max_exec_orders}"

            plan.items.append(PlanItem(
                ts=opp.ts,
                candidate_id=opp.candidate_id,
                market_id=opp.market_id,
                borrower=opp.borrower,
                net_profit_usd=opp.net_profit_usd,
                proximity=prox,
                action=action,
                passed=passed,
                note=note,
                order=order,
            ))

        logger.info(
            f"计划完成: {len(plan.items)} 行, EXEC={plan.exec_built}, 降级={plan.exec_downgraded}"
        )
        return plan


def _fmt_prox(value: Optional[float]) -> str:
    return "n/a" if value is None else f"{value:.4f}"
