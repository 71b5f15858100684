"""
MorphoLiq-Core 报价优化器

对 Uniswap V3 QuoterV2 做有界搜索，寻找 collateral → loan 的最优路径：
- 阶段 1（一次 Multicall3 批量调用）：所有费率的直连报价 + 每个中间代币的第一跳报价
- 阶段 2（仅当某个第一跳输出 > 0）：以第一跳输出为输入的第二跳报价
- 最多两次往返，最多两跳

单个调用失败只计数，保留第一个失败；整批传输失败记为该批所有调用失败，不抛出异常。
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from web3 import Web3

from liqutils.abi_loader import decode_result, encode_call, load_abi

from .route import encode_v3_path, path_to_hex

logger = logging.getLogger(__name__)

# 始终尝试的基础费率
BASE_FEE_TIERS = (100, 500, 3000, 10000)


@dataclass(frozen=True)
class QuoteFailure:
    """第一个失败的报价调用"""

    fee: int
    leg: str  # "single" | "hop1" | "hop2"
    token_in: str
    token_out: str
    amount_in: int
    msg: str


@dataclass
class Quote:
    """最优报价结果"""

    amount_out: int
    tokens: List[str]
    fees: List[int]
    mode: str
    path: str  # 0x 开头的 V3 路径
    attempts: int = 0
    fails: int = 0
    first_failure: Optional[QuoteFailure] = None

    @property
    def route(self) -> str:
        if len(self.tokens) == 2:
            return "single"
        return "->".join(self.tokens)


@dataclass
class _Leg:
    leg: str
    token_in: str
    token_out: str
    amount_in: int
    fee: int
    mid: Optional[str] = None
    fee1: Optional[int] = None


@dataclass
class _SearchState:
    best: Optional[Quote] = None
    attempts: int = 0
    fails: int = 0
    first_failure: Optional[QuoteFailure] = None
    hop1_outputs: List[Tuple[str, int, int]] = field(default_factory=list)


def fee_tiers_to_try(extra_fees: Sequence[int]) -> List[int]:
    """基础费率 + 配置费率，去重并保持顺序，只保留正数"""
    seen = set()
    tiers = []
    for fee in list(BASE_FEE_TIERS) + list(extra_fees or []):
        fee = int(fee)
        if fee > 0 and fee not in seen:
            seen.add(fee)
            tiers.append(fee)
    return tiers


def mid_token_name(address: str, intermediates: Mapping[str, str]) -> str:
    """根据中间代币配置取名称，未知地址返回 "mid" """
    lower = address.lower()
    for name, addr in intermediates.items():
        if addr.lower() == lower:
            return name.lower()
    return "mid"


class QuoteOptimizer:
    """
    QuoterV2 最优路径搜索

    使用示例:
        >>> optimizer = QuoteOptimizer(multicall, quoter_address)
        >>> quote = await optimizer.best_route(weth, usdc, 10**18, [500, 3000], {"usdt": usdt})
        >>> if quote:
        ...     print(quote.mode, quote.amount_out)
    """

    def __init__(self, multicall, quoter_address: str):
        self.multicall = multicall
        self.quoter_address = Web3.to_checksum_address(quoter_address)
        self._abi = load_abi("QuoterV2")

    def _encode_leg(self, leg: _Leg) -> bytes:
        params = (
            Web3.to_checksum_address(leg.token_in),
            Web3.to_checksum_address(leg.token_out),
            int(leg.amount_in),
            int(leg.fee),
            0,
        )
        return encode_call(self._abi, "quoteExactInputSingle", [params])

    def _decode_amount_out(self, data: bytes) -> Optional[int]:
        try:
            return int(decode_result(self._abi, "quoteExactInputSingle", data)[0])
        except Exception:
            return None

    def _record_failure(self, state: _SearchState, leg: _Leg, msg: str) -> None:
        state.fails += 1
        if state.first_failure is None:
            state.first_failure = QuoteFailure(
                fee=leg.fee,
                leg=leg.leg,
                token_in=leg.token_in,
                token_out=leg.token_out,
                amount_in=leg.amount_in,
                msg=msg,
            )

    async def _run_batch(self, legs: List[_Leg], state: _SearchState) -> List[Optional[int]]:
        """执行一批报价，返回每条腿的输出（失败为 None）"""
        results = await self.multicall.aggregate(
            [(self.quoter_address, self._encode_leg(leg)) for leg in legs]
        )
        batch_error = getattr(self.multicall, "last_batch_error", None)

        outputs: List[Optional[int]] = []
        for leg, (success, data) in zip(legs, results):
            state.attempts += 1
            if not success:
                self._record_failure(state, leg, batch_error or "Reverted")
                outputs.append(None)
                continue
            amount_out = self._decode_amount_out(data)
            if amount_out is None:
                self._record_failure(state, leg, "Undecodable return data")
            outputs.append(amount_out)
        return outputs

    def _consider(
        self,
        state: _SearchState,
        amount_out: int,
        tokens: List[str],
        fees: List[int],
        mode: str,
    ) -> None:
        # 严格大于才替换，平局保留先找到的路径
        if amount_out <= 0:
            return
        if state.best is not None and amount_out <= state.best.amount_out:
            return
        state.best = Quote(
            amount_out=amount_out,
            tokens=list(tokens),
            fees=list(fees),
            mode=mode,
            path=path_to_hex(encode_v3_path(tokens, fees)),
        )

    async def best_route(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        fee_tiers: Sequence[int],
        intermediates: Mapping[str, str],
        max_fees_per_hop: int = 3,
    ) -> Optional[Quote]:
        """
        搜索最优报价

        参数:
            token_in: 输入代币（抵押品）
            token_out: 输出代币（借款代币）
            amount_in: 输入数量（最小单位）
            fee_tiers: 直连尝试的费率列表
            intermediates: 中间代币 {名称: 地址}
            max_fees_per_hop: 两跳路径每一跳尝试的费率个数

        返回:
            输出最大的正报价；没有任何正输出时返回 None
        """
        if amount_in <= 0 or not fee_tiers:
            return None

        hop_fees = list(fee_tiers)[: max(1, int(max_fees_per_hop))]
        in_lower = token_in.lower()
        out_lower = token_out.lower()
        mids: Dict[str, str] = {
            name: addr for name, addr in intermediates.items()
            if addr.lower() not in (in_lower, out_lower)
        }

        state = _SearchState()

        # 阶段 1：直连 + 第一跳
        stage1: List[_Leg] = [
            _Leg("single", token_in, token_out, amount_in, fee) for fee in fee_tiers
        ]
        for mid in mids.values():
            for fee in hop_fees:
                stage1.append(_Leg("hop1", token_in, mid, amount_in, fee, mid=mid))

        outputs1 = await self._run_batch(stage1, state)
        for leg, amount_out in zip(stage1, outputs1):
            if amount_out is None:
                continue
            if leg.leg == "single":
                self._consider(
                    state, amount_out, [token_in, token_out], [leg.fee],
                    f"quoterV2_fee_{leg.fee}",
                )
            elif amount_out > 0:
                state.hop1_outputs.append((leg.mid, amount_out, leg.fee))

        # 阶段 2：第二跳（仅当存在正的第一跳输出）
        if state.hop1_outputs:
            stage2: List[_Leg] = []
            for mid, hop1_out, fee1 in state.hop1_outputs:
                for fee2 in hop_fees:
                    stage2.append(
                        _Leg("hop2", mid, token_out, hop1_out, fee2, mid=mid, fee1=fee1)
                    )

            outputs2 = await self._run_batch(stage2, state)
            for leg, amount_out in zip(stage2, outputs2):
                if amount_out is None:
                    continue
                mid_name = mid_token_name(leg.mid, intermediates)
                self._consider(
                    state, amount_out, [token_in, leg.mid, token_out], [leg.fee1, leg.fee],
                    f"quoterV2_2hop_{mid_name}_{leg.fee1}_{leg.fee}",
                )

        if state.best is None:
            logger.debug(
                f"无可用报价 {token_in} -> {token_out}: "
                f"尝试 {state.attempts} 次，失败 {state.fails} 次"
            )
            return None

        state.best.attempts = state.attempts
        state.best.fails = state.fails
        state.best.first_failure = state.first_failure
        return state.best
