#!/usr/bin/env python3
"""
Liquidation Executor - sequential state machine

One cycle sends at most one transaction:

    IDLE -> SELECTING -> REVALIDATING -> SIMULATING -> BROADCASTING -> DONE

Per-candidate outcomes are SKIPPED (position healthy, in cooldown) or FAILED
(bad order, other revert). A stale plan ends the cycle as ABORTED before
anything is evaluated or written.

🛡️ Safety Layers:
1. Plan age limit (EXEC_MAX_PLAN_AGE_SEC)
2. Live gas price ceiling (MAX_TX_GAS_PRICE_WEI)
3. Exactly one of repaidShares / seizedAssets is zero
4. eth_call + eth_estimateGas of the exact payload from the signer
"""

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import Web3Exception

from liqutils.abi_loader import encode_call, load_abi

from .artifacts import TX_EXEC_FILE, ArtifactError, age_seconds, data_path, utc_now_iso, write_json
from .config_loader import ConfigValidationError, LiquidationSettings, is_valid_address
from .cooldown import CooldownStore
from .models import Order, Plan, PlanAction, PlanItem
from .network import RPCError
from .planner import MIN_DEADLINE_SEC

logger = logging.getLogger(__name__)

HEALTHY_REVERT_MARKER = "position is healthy"
SENT_NOTE = "LIQUIDATION_SENT (simulation passed)"
BROADCAST_UNKNOWN_NOTE = "broadcast outcome unknown"

REVERT_HEALTHY = "healthy"
REVERT_OTHER = "other"


class ExecutionState(Enum):
    IDLE = "IDLE"
    SELECTING = "SELECTING"
    REVALIDATING = "REVALIDATING"
    SIMULATING = "SIMULATING"
    BROADCASTING = "BROADCASTING"
    DONE = "DONE"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"


@dataclass
class CandidateOutcome:
    """Final state of one candidate within a cycle"""
    candidate_id: str
    state: ExecutionState
    reason: str = ""


@dataclass
class ExecutionReport:
    """Result of one execution cycle"""
    state: ExecutionState = ExecutionState.IDLE
    tried: int = 0
    skipped_healthy: int = 0
    skipped_cooldown: int = 0
    failed: int = 0
    gas_aborted: int = 0
    tx_hash: Optional[str] = None
    selected: Optional[str] = None
    output_path: Optional[Path] = None
    reason: str = ""
    outcomes: List[CandidateOutcome] = field(default_factory=list)
    transitions: List[ExecutionState] = field(default_factory=lambda: [ExecutionState.IDLE])

    @property
    def sent(self) -> bool:
        return self.tx_hash is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "tried": self.tried,
            "skippedHealthy": self.skipped_healthy,
            "skippedCooldown": self.skipped_cooldown,
            "failed": self.failed,
            "gasAborted": self.gas_aborted,
            "txHash": self.tx_hash,
            "selected": self.selected,
            "reason": self.reason,
        }


def classify_revert(error: BaseException) -> str:
    """Classify a simulation error as a healthy-position revert or anything else."""
    parts = [str(error), str(getattr(error, "message", "") or "")]
    text = " ".join(parts).lower()
    return REVERT_HEALTHY if HEALTHY_REVERT_MARKER in text else REVERT_OTHER


class LiquidationExecutor:
    """
    Sequential liquidation executor

    Args:
        network: NetworkManager (or any object with the same coroutines)
        settings: strategy parameters (EXEC_ENABLED, gas ceiling, tip, ...)
        executor_address: deployed liquidation executor contract
        private_key: signer key
        cooldown: healthy cooldown store
        reader: MorphoBlueReader for forensic checks (optional)
        data_dir: where tx_exec.json is written
        clock: returns unix seconds

    Raises:
        ConfigValidationError: execution disabled, key missing or bad address
    """

    def __init__(
        self,
        network,
        settings: LiquidationSettings,
        executor_address: Optional[str],
        private_key: Optional[str],
        cooldown: CooldownStore,
        reader=None,
        data_dir: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        if not settings.exec_enabled:
            raise ConfigValidationError("exec blocked (set EXEC_ENABLED=1)")
        if not private_key:
            raise ConfigValidationError("PRIVATE_KEY missing")
        if not is_valid_address(executor_address):
            raise ConfigValidationError(f"invalid EXECUTOR_ADDR={executor_address}")

        if not private_key.startswith("0x"):
            private_key = "0x" + private_key

        self.network = network
        self.settings = settings
        self.executor_address = Web3.to_checksum_address(executor_address)
        self.account = Account.from_key(private_key)
        self.address = self.account.address
        self.cooldown = cooldown
        self.reader = reader
        self.data_dir = data_dir
        self.clock = clock

        self._abi = load_abi("LiquidationExecutor")
        self._forensic_tasks: List[asyncio.Task] = []
        self._running = False

    # ============================================
    # Encoding helpers
    # ============================================

    def encode_execute(self, order: Order) -> bytes:
        return encode_call(self._abi, "execute", [order.to_abi_tuple()])

    def _get_raw_tx(self, signed) -> bytes:
        """Extract raw transaction bytes (eth-account version compatible)."""
        raw = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction", None)
        if raw is None:
            raise RPCError("could not extract raw transaction from signed payload")
        return raw

    def _refresh(self, order: Order, now: float, attempt: int) -> Order:
        """Fresh deadline and nonce right before simulation."""
        return dataclasses.replace(
            order,
            deadline=int(now) + max(MIN_DEADLINE_SEC, int(self.settings.order_deadline_sec)),
            nonce=int(now * 1000) + attempt,
        )

    # ============================================
    # Stages
    # ============================================

    def _select(self, plan: Plan, report: ExecutionReport, now: float) -> List[PlanItem]:
        items = [
            item for item in plan.items
            if item.action is PlanAction.EXEC and item.passed and item.order is not None
        ]
        items.sort(key=lambda item: item.net_profit_usd, reverse=True)

        cooling = self.cooldown.snapshot(now)
        selected = []
        for item in items:
            if item.candidate_id in cooling:
                report.skipped_cooldown += 1
                report.outcomes.append(
                    CandidateOutcome(item.candidate_id, ExecutionState.SKIPPED, "healthy cooldown")
                )
                continue
            selected.append(item)
        return selected

    async def _simulate(self, calldata: bytes) -> int:
        """eth_call then eth_estimateGas of the exact payload; returns the gas limit."""
        await self.network.call_contract(self.executor_address, calldata, from_address=self.address)
        return await self.network.estimate_gas({
            "from": self.address,
            "to": self.executor_address,
            "data": calldata,
        })

    async def _sign(self, calldata: bytes, gas_limit: int) -> bytes:
        """Build and sign the EIP-1559 transaction; nothing reaches the node yet."""
        gas = await self.network.get_eip1559_params(
            priority_fee=self.settings.tx_priority_fee_wei,
            gas_limit=gas_limit,
        )
        tx = {
            "chainId": await self.network.get_chain_id(),
            "to": self.executor_address,
            "data": calldata,
            "value": 0,
            "nonce": await self.network.get_nonce(self.address, "pending"),
            **gas.to_tx_params(),
        }
        signed = self.account.sign_transaction(tx)
        return self._get_raw_tx(signed)

    def _write_result(self, item: PlanItem, tx_hash: str) -> Path:
        out = {
            "generatedAt": utc_now_iso(),
            "executor": self.executor_address,
            "selected": {
                "candidateId": item.candidate_id,
                "marketId": item.market_id,
                "borrower": item.borrower,
                "proximity": item.proximity,
                "netProfitUsd": item.net_profit_usd,
                "note": item.note,
            },
            "from": self.address,
            "txHash": tx_hash,
            "note": SENT_NOTE,
        }
        path = data_path(TX_EXEC_FILE, data_dir=self.data_dir)
        write_json(path, out)
        return path

    # ============================================
    # Forensics (diagnostic only)
    # ============================================

    async def _forensic_check(self, item: PlanItem, order: Order) -> None:
        try:
            snapshot = await self.reader.read_forensics(
                item.market_id, item.borrower, order.market.oracle, order.market.lltv
            )
            logger.error(
                f"FORENSIC {item.candidate_id}: upstream proximity={item.proximity} | "
                f"onchain borrowAssets={snapshot.borrow_assets} maxBorrow={snapshot.max_borrow} "
                f"oraclePrice={snapshot.oracle_price} collateral={snapshot.collateral} "
                f"healthy={snapshot.is_healthy}"
            )
        except Exception as e:
            logger.error(f"FORENSIC {item.candidate_id}: analysis failed: {e}")

    def _spawn_forensic(self, item: PlanItem, order: Order) -> None:
        if self.reader is None:
            return
        self._forensic_tasks.append(asyncio.create_task(self._forensic_check(item, order)))

    async def drain_forensics(self) -> None:
        """Wait for pending forensic tasks; their errors never propagate."""
        tasks, self._forensic_tasks = self._forensic_tasks, []
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ============================================
    # Cycle
    # ============================================

    async def run_cycle(self, plan: Plan) -> ExecutionReport:
        """
        Run one execution cycle over a plan.

        Returns:
            ExecutionReport (state DONE even when nothing was sent)
        """
        if self._running:
            raise RuntimeError("execution cycle already running")
        self._running = True
        try:
            return await self._run(plan)
        finally:
            self._running = False

    async def _run(self, plan: Plan) -> ExecutionReport:
        report = ExecutionReport()

        def enter(state: ExecutionState) -> None:
            report.state = state
            report.transitions.append(state)

        enter(ExecutionState.SELECTING)
        now = self.clock()
        try:
            plan_age = age_seconds(plan.generated_at, now)
        except ArtifactError:
            plan_age = float("inf")
        if plan_age > self.settings.exec_max_plan_age_sec:
            report.reason = f"plan stale ({plan_age:.1f}s > {self.settings.exec_max_plan_age_sec:g}s)"
            logger.error(f"🛑 {report.reason}: safety abort")
            enter(ExecutionState.ABORTED)
            return report

        queue = self._select(plan, report, now)
        if not queue:
            report.reason = "nothing to execute"
            logger.info("exec: no EXEC+pass items with order")
            enter(ExecutionState.DONE)
            return report

        for item in queue:
            report.tried += 1
            cid = item.candidate_id

            enter(ExecutionState.REVALIDATING)
            try:
                gas_price = await self.network.get_gas_price()
            except (RPCError, Web3Exception) as e:
                report.failed += 1
                report.outcomes.append(CandidateOutcome(cid, ExecutionState.FAILED, f"gas price: {e}"))
                logger.warning(f"exec: gas price unavailable for {cid}: {e}")
                continue

            if gas_price > self.settings.max_tx_gas_price_wei:
                report.gas_aborted += 1
                report.outcomes.append(CandidateOutcome(
                    cid, ExecutionState.SKIPPED,
                    f"gas price {gas_price} > cap {self.settings.max_tx_gas_price_wei}",
                ))
                logger.warning(
                    f"⛽ exec: gas price too high ({gas_price} > {self.settings.max_tx_gas_price_wei}), "
                    f"safety abort for {cid}"
                )
                continue

            order = self._refresh(item.order, self.clock(), report.tried)
            if not order.has_exactly_one_zero():
                report.failed += 1
                report.outcomes.append(
                    CandidateOutcome(cid, ExecutionState.FAILED, "exactly one of repaidShares/seizedAssets must be 0")
                )
                logger.warning(
                    f"exec: invalid liquidation params for {cid} "
                    f"(repaidShares={order.repaid_shares}, seizedAssets={order.seized_assets})"
                )
                continue

            enter(ExecutionState.SIMULATING)
            calldata = self.encode_execute(order)
            try:
                gas_limit = await self._simulate(calldata)
            except (Web3Exception, RPCError, ValueError) as e:
                if classify_revert(e) == REVERT_HEALTHY:
                    report.skipped_healthy += 1
                    report.outcomes.append(CandidateOutcome(cid, ExecutionState.SKIPPED, "position is healthy"))
                    self.cooldown.mark(cid, self.clock())
                    logger.warning(f"exec: skip (position healthy) {cid}, starting forensic check")
                    self._spawn_forensic(item, order)
                else:
                    report.failed += 1
                    report.outcomes.append(CandidateOutcome(cid, ExecutionState.FAILED, str(e)[:500]))
                    logger.warning(f"exec: simulate failed for {cid}, trying next: {str(e)[:500]}")
                continue

            enter(ExecutionState.BROADCASTING)
            try:
                raw_tx = await self._sign(calldata, gas_limit)
            except (Web3Exception, RPCError, ValueError) as e:
                report.failed += 1
                report.outcomes.append(CandidateOutcome(cid, ExecutionState.FAILED, f"sign: {e}"))
                logger.error(f"exec: could not build transaction for {cid}: {e}")
                continue

            try:
                tx_hash = await self.network.send_raw_transaction(raw_tx)
            except (Web3Exception, RPCError, ValueError) as e:
                # 交易可能已进入 mempool，本轮不再尝试其它候选
                report.failed += 1
                report.selected = cid
                report.reason = BROADCAST_UNKNOWN_NOTE
                report.outcomes.append(CandidateOutcome(cid, ExecutionState.FAILED, BROADCAST_UNKNOWN_NOTE))
                logger.error(f"🛑 exec: {BROADCAST_UNKNOWN_NOTE} for {cid}, ending cycle: {e}")
                enter(ExecutionState.DONE)
                return report

            report.tx_hash = tx_hash
            report.selected = cid
            report.output_path = self._write_result(item, tx_hash)
            report.outcomes.append(CandidateOutcome(cid, ExecutionState.DONE, SENT_NOTE))
            logger.info(f"🚀 exec: liquidation sent {tx_hash} ({cid}), wrote {report.output_path}")
            enter(ExecutionState.DONE)
            return report

        report.reason = "no executable order found this cycle"
        logger.info(
            f"exec: {report.reason} (tried={report.tried}, healthy={report.skipped_healthy}, "
            f"failed={report.failed}, gasAborted={report.gas_aborted})"
        )
        enter(ExecutionState.DONE)
        return report
