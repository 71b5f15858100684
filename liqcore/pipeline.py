"""
MorphoLiq-Core 阶段编排

ingest → simulate → plan → preflight → exec，每个阶段读取上一阶段的产物并写出自己的产物。
阶段内的单个候选错误写入产物的 note；阶段级错误向上抛出，由 CLI 记录并以退出码 1 结束。
"""

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from web3.exceptions import Web3Exception

from .artifacts import (
    CANDIDATES_FILE,
    COOLDOWN_FILE,
    TX_PLAN_FILE,
    TX_SIM_FILE,
    ArtifactError,
    age_seconds,
    data_path,
    read_json,
    utc_now_iso,
    write_json,
)
from .calculator import GasInputs, ProfitabilityEngine, summarize
from .candidates import index_by_id, load_candidates, normalize_api_position, save_candidates
from .config_loader import ChainConfig, LiquidationSettings
from .cooldown import JsonFileCooldownStore
from .executor import ExecutionReport, LiquidationExecutor
from .journal import OpportunityJournal
from .models import REASON_OK, STATUS_EXEC_READY, Candidate, Plan, PlanAction
from .morpho_blue import MorphoBlueReader
from .multicall import Multicall
from .network import RPCError
from .planner import PlanBuilder
from .price_feed import L1FeeCalculator, fetch_eth_price
from .quoter import QuoteOptimizer

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class PreflightError(Exception):
    """预检未通过时抛出的异常（携带状态字典）"""

    def __init__(self, message: str, status: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status = status or {}


def _cooldown_store(settings: LiquidationSettings, data_dir: Optional[Path]) -> JsonFileCooldownStore:
    return JsonFileCooldownStore(
        settings.healthy_cooldown_sec,
        data_path(COOLDOWN_FILE, data_dir=data_dir),
    )


async def _quoter_has_code(network, chain: ChainConfig) -> bool:
    code = await network.get_code(chain.contracts.quoter_v2)
    return len(code) > 0


# =====================================================
# ingest
# =====================================================

def _position_items(payload: Any) -> List[Mapping[str, Any]]:
    """接受仓位列表，或 GraphQL 响应 {"data": {"marketPositions": {"items": [...]}}}"""
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, Mapping):
        data = payload.get("data") or {}
        items = (data.get("marketPositions") or {}).get("items")
        if items is None:
            items = payload.get("items")
    else:
        items = None

    if not isinstance(items, list):
        raise ArtifactError("仓位文件格式无效: 需要列表或 data.marketPositions.items")
    return [item for item in items if isinstance(item, Mapping)]


def run_ingest(
    positions_path: Path,
    chain: ChainConfig,
    settings: LiquidationSettings,
    data_dir: Optional[Path] = None,
    clock: Clock = time.time,
) -> List[Candidate]:
    """
    候选导入：Morpho API 仓位 JSON → candidates.jsonl

    不访问网络；每条仓位按观察 / 执行阈值分类。
    """
    positions = _position_items(read_json(Path(positions_path)))
    ts = utc_now_iso(clock())
    candidates = [
        normalize_api_position(
            position,
            chain.chain_id,
            settings.watch_proximity,
            settings.exec_proximity,
            ts=ts,
        )
        for position in positions
    ]
    save_candidates(data_path(CANDIDATES_FILE, data_dir=data_dir), candidates)

    ready = sum(1 for c in candidates if c.status == STATUS_EXEC_READY)
    missing = sum(1 for c in candidates if c.reason != REASON_OK)
    logger.info(f"导入完成: {len(candidates)} 个候选, exec_ready={ready}, 字段不全/越界={missing}")
    return candidates


# =====================================================
# simulate
# =====================================================

async def run_simulate(
    network,
    chain: ChainConfig,
    settings: LiquidationSettings,
    data_dir: Optional[Path] = None,
    clock: Clock = time.time,
) -> Dict[str, Any]:
    """
    利润模拟：candidates.jsonl → opportunities.csv + tx_sim.json

    返回:
        tx_sim.json 的内容
    """
    candidates = load_candidates(data_path(CANDIDATES_FILE, data_dir=data_dir))

    gas_price_wei = await network.get_gas_price()
    eth_price = await fetch_eth_price(
        network,
        chain.contracts.eth_usd_feed,
        max_age_sec=settings.eth_usd_max_age_sec,
        override_usd=settings.eth_price_usd,
        now=clock(),
    )

    quoter_ok = False
    if settings.quote_enabled:
        quoter_ok = await _quoter_has_code(network, chain)
        if not quoter_ok:
            logger.warning(f"QuoterV2 无字节码: {chain.contracts.quoter_v2}，本轮不报价")

    l1_fee = None
    if settings.l1_fee_enabled:
        try:
            l1_fee = await L1FeeCalculator(network, chain.contracts.arb_gas_info).estimate(
                settings.calldata_bytes, eth_price.usd
            )
        except (RPCError, Web3Exception, ValueError) as e:
            logger.warning(f"L1 费用估算失败，按 0 计: {e}")

    gas_inputs = GasInputs(gas_price_wei=gas_price_wei, l1_fee=l1_fee, quoter_ok=quoter_ok)
    optimizer = QuoteOptimizer(Multicall(network, chain.contracts.multicall3), chain.contracts.quoter_v2)
    engine = ProfitabilityEngine(
        settings,
        optimizer=optimizer,
        intermediates=chain.quote_intermediates,
        unsupported_tokens=chain.unsupported_tokens,
    )

    result = await engine.evaluate_all(candidates, eth_price, gas_inputs)
    OpportunityJournal(data_dir).write(result.opportunities)

    summary = {
        "generatedAt": utc_now_iso(clock()),
        "requiredNetUsd": settings.required_net_usd,
        "quoteEnabled": settings.quote_enabled,
        "quoterOk": quoter_ok,
        "gasPriceWei": str(gas_price_wei),
        "estimatedGasUsd": engine.estimated_gas_usd(eth_price, gas_inputs),
        "l1Fee": {
            "mode": l1_fee.mode if l1_fee else "unavailable",
            "feeWei": str(l1_fee.fee_wei) if l1_fee else "0",
            "feeUsd": engine.l1_fee_usd(gas_inputs),
        },
        "ethPrice": eth_price.to_dict(),
        "pricingDegraded": eth_price.stale,
        "diagnostics": summarize(result),
    }
    write_json(data_path(TX_SIM_FILE, data_dir=data_dir), summary)
    logger.info(
        f"模拟完成: 评估 {result.considered}, 产出 {len(result.opportunities)}, "
        f"可执行 {summary['diagnostics']['passesExec']}"
    )
    return summary


# =====================================================
# plan
# =====================================================

async def run_plan(
    network,
    chain: ChainConfig,
    settings: LiquidationSettings,
    data_dir: Optional[Path] = None,
    clock: Clock = time.time,
) -> Plan:
    """执行计划：opportunities.csv + candidates.jsonl → tx_plan.json"""
    rows = OpportunityJournal(data_dir).read()
    candidates = index_by_id(load_candidates(data_path(CANDIDATES_FILE, data_dir=data_dir)))

    builder = PlanBuilder(
        settings,
        MorphoBlueReader(network, chain.contracts.morpho_blue),
        _cooldown_store(settings, data_dir),
        clock=clock,
    )
    plan = await builder.build(rows, candidates)
    write_json(data_path(TX_PLAN_FILE, data_dir=data_dir), plan.to_dict())
    return plan


# =====================================================
# preflight
# =====================================================

def _artifact_age(path: Path, now: float) -> Optional[float]:
    try:
        payload = read_json(path)
        return max(0.0, age_seconds(str(payload.get("generatedAt", "")), now))
    except (ArtifactError, AttributeError):
        return None


async def run_preflight(
    network,
    chain: ChainConfig,
    settings: LiquidationSettings,
    data_dir: Optional[Path] = None,
    clock: Clock = time.time,
) -> Dict[str, Any]:
    """
    预检：链 ID、产物新鲜度、Quoter 字节码、私钥

    异常:
        PreflightError: 任一检查未通过
    """
    now = clock()
    max_age = settings.preflight_max_artifact_age_sec

    rpc_chain_id = await network.get_chain_id()
    chain_ok = rpc_chain_id == chain.chain_id

    plan_path = data_path(TX_PLAN_FILE, data_dir=data_dir)
    plan = Plan.from_dict(read_json(plan_path))
    plan_age = _artifact_age(plan_path, now)
    exec_count = sum(1 for item in plan.items if item.action is PlanAction.EXEC)

    sim_age = _artifact_age(data_path(TX_SIM_FILE, data_dir=data_dir), now)

    quoter_ok = True
    if settings.quote_enabled:
        quoter_ok = await _quoter_has_code(network, chain)

    key_ok = bool(chain.private_key)
    plan_fresh = plan_age is not None and plan_age <= max_age
    sim_fresh = sim_age is not None and sim_age <= max_age

    stale_ok = plan_fresh if exec_count == 0 else (plan_fresh and sim_fresh)
    monitor_ok = chain_ok and quoter_ok and stale_ok
    ready_to_exec = exec_count > 0 and key_ok and settings.exec_enabled and plan_fresh and sim_fresh
    ok = monitor_ok and (not settings.exec_enabled or exec_count == 0 or ready_to_exec)

    status = {
        "rpcChainId": rpc_chain_id,
        "cfgChainId": chain.chain_id,
        "chainOk": chain_ok,
        "planGeneratedAt": plan.generated_at,
        "planAgeSec": plan_age,
        "execCount": exec_count,
        "simAgeSec": sim_age,
        "quoteEnabled": settings.quote_enabled,
        "quoterOk": quoter_ok,
        "privateKeyLoaded": key_ok,
        "execEnabled": settings.exec_enabled,
        "monitorOk": monitor_ok,
        "readyToExec": ready_to_exec,
        "ok": ok,
    }
    logger.info(f"预检状态: {status}")

    if not ok:
        raise PreflightError("preflight failed", status)
    return status


# =====================================================
# exec
# =====================================================

async def run_exec(
    network,
    chain: ChainConfig,
    settings: LiquidationSettings,
    data_dir: Optional[Path] = None,
    clock: Clock = time.time,
) -> ExecutionReport:
    """
    执行：tx_plan.json → 至多一笔清算交易（tx_exec.json）

    异常:
        ConfigValidationError: 执行未启用、缺少私钥或执行合约地址无效
    """
    multicall = Multicall(network, chain.contracts.multicall3)
    executor = LiquidationExecutor(
        network,
        settings,
        chain.contracts.executor,
        chain.private_key,
        _cooldown_store(settings, data_dir),
        reader=MorphoBlueReader(network, chain.contracts.morpho_blue, multicall),
        data_dir=data_dir,
        clock=clock,
    )
    plan = Plan.from_dict(read_json(data_path(TX_PLAN_FILE, data_dir=data_dir)))
    report = await executor.run_cycle(plan)
    await executor.drain_forensics()
    return report


# =====================================================
# cycle
# =====================================================

async def run_cycle(
    network,
    chain: ChainConfig,
    settings: LiquidationSettings,
    data_dir: Optional[Path] = None,
    clock: Clock = time.time,
) -> Dict[str, Any]:
    """完整流水线；执行未启用时跳过 exec（监控模式）"""
    start = time.time()

    logger.info(">> STEP: SIMULATE")
    sim = await run_simulate(network, chain, settings, data_dir, clock)

    logger.info(">> STEP: PLAN")
    plan = await run_plan(network, chain, settings, data_dir, clock)

    logger.info(">> STEP: PREFLIGHT")
    preflight = await run_preflight(network, chain, settings, data_dir, clock)

    report: Optional[ExecutionReport] = None
    if settings.exec_enabled:
        logger.info(">> STEP: EXEC")
        report = await run_exec(network, chain, settings, data_dir, clock)
    else:
        logger.info(">> STEP: EXEC skipped (EXEC_ENABLED=0, monitor mode)")

    duration = time.time() - start
    logger.info(f"✅ [CYCLE] 完成，用时 {duration:.2f}s")
    return {
        "sim": sim["diagnostics"],
        "planExecBuilt": plan.exec_built,
        "planExecDowngraded": plan.exec_downgraded,
        "preflight": preflight,
        "exec": report.to_dict() if report else None,
        "durationSec": duration,
    }
