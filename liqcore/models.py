"""
MorphoLiq-Core 数据模型

候选仓位、机会行、清算订单与执行计划。
所有 JSON / CSV 产物的字段映射集中在这里，其余模块只处理 Python 对象。
大整数（wei、份额、代币最小单位）序列化为十进制字符串。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from web3 import Web3

CANDIDATE_SCHEMA_VERSION = 1

# 候选状态
STATUS_BELOW_WATCH = "below_watch"
STATUS_WATCH = "watch"
STATUS_EXEC_READY = "exec_ready"

# 候选原因
REASON_OK = "ok"
REASON_MISSING_FIELDS = "missing_fields"
REASON_LLTV_OUT_OF_RANGE = "lltv_out_of_range"
REASON_LTV_OUT_OF_RANGE = "ltv_out_of_range"


# =====================================================
# 解析辅助函数
# =====================================================

def _opt_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(str(value), 0) if isinstance(value, str) and value.startswith("0x") else int(value)
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes")


def _fmt(value: Any) -> str:
    """CSV 单元格格式：None 为空，布尔为 1/0"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def make_candidate_id(
    chain_id: int,
    market_id: str,
    borrower: str,
    collateral_token: str,
    loan_token: str,
) -> str:
    """候选 ID: "chainId|market|borrower|collateral|loan"（小写）"""
    return "|".join([
        str(chain_id),
        market_id.lower(),
        borrower.lower(),
        collateral_token.lower(),
        loan_token.lower(),
    ])


# =====================================================
# 候选仓位
# =====================================================

@dataclass(frozen=True)
class Candidate:
    """发现阶段产出的一个借款仓位（只读）"""

    candidate_id: str
    market_id: str
    borrower: str
    collateral_token: str
    loan_token: str
    oracle: Optional[str] = None
    irm: Optional[str] = None
    lltv_wad: Optional[int] = None
    lltv: Optional[float] = None
    collateral_symbol: str = ""
    loan_symbol: str = ""
    collateral_decimals: int = 18
    loan_decimals: int = 18
    collateral_price_usd: Optional[float] = None
    loan_price_usd: Optional[float] = None
    borrow_usd: Optional[float] = None
    collateral_usd: Optional[float] = None
    proximity: Optional[float] = None
    status: str = STATUS_BELOW_WATCH
    reason: str = REASON_OK
    ts: str = ""

    @property
    def is_evaluable(self) -> bool:
        """只有字段完整且不低于观察阈值的候选才进入利润评估"""
        return self.reason == REASON_OK and self.status != STATUS_BELOW_WATCH

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemaVersion": CANDIDATE_SCHEMA_VERSION,
            "candidateId": self.candidate_id,
            "marketId": self.market_id,
            "borrower": self.borrower,
            "collateralToken": self.collateral_token,
            "loanToken": self.loan_token,
            "oracle": self.oracle,
            "irm": self.irm,
            "lltvWad": str(self.lltv_wad) if self.lltv_wad is not None else None,
            "lltv": self.lltv,
            "collateralSymbol": self.collateral_symbol,
            "loanSymbol": self.loan_symbol,
            "collateralDecimals": self.collateral_decimals,
            "loanDecimals": self.loan_decimals,
            "collateralPriceUsd": self.collateral_price_usd,
            "loanPriceUsd": self.loan_price_usd,
            "borrowUsd": self.borrow_usd,
            "collateralUsd": self.collateral_usd,
            "proximity": self.proximity,
            "status": self.status,
            "reason": self.reason,
            "ts": self.ts,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Candidate":
        return cls(
            candidate_id=str(data.get("candidateId", "")),
            market_id=str(data.get("marketId", "")),
            borrower=str(data.get("borrower", "")),
            collateral_token=str(data.get("collateralToken", "")),
            loan_token=str(data.get("loanToken", "")),
            oracle=data.get("oracle") or None,
            irm=data.get("irm") or None,
            lltv_wad=_opt_int(data.get("lltvWad")),
            lltv=_opt_float(data.get("lltv")),
            collateral_symbol=str(data.get("collateralSymbol") or ""),
            loan_symbol=str(data.get("loanSymbol") or ""),
            collateral_decimals=_opt_int(data.get("collateralDecimals")) or 0,
            loan_decimals=_opt_int(data.get("loanDecimals")) or 0,
            collateral_price_usd=_opt_float(data.get("collateralPriceUsd")),
            loan_price_usd=_opt_float(data.get("loanPriceUsd")),
            borrow_usd=_opt_float(data.get("borrowUsd")),
            collateral_usd=_opt_float(data.get("collateralUsd", data.get("collateralUsdEst"))),
            proximity=_opt_float(data.get("proximity")),
            status=str(data.get("status") or STATUS_BELOW_WATCH),
            reason=str(data.get("reason") or REASON_OK),
            ts=str(data.get("ts") or ""),
        )


# =====================================================
# 机会行（opportunities.csv）
# =====================================================

OPPORTUNITY_COLUMNS = [
    "ts", "candidate_id", "market_id", "borrower",
    "collateral_token", "loan_token", "oracle", "irm", "lltv_wad",
    "collateral", "loan", "status", "reason", "lltv", "proximity",
    "repay_usd", "bonus_factor", "gross_profit_usd", "estimated_gas_usd",
    "l1_fee_usd", "flash_fee_usd", "slippage_usd", "net_profit_usd",
    "required_net_usd", "quote_mode", "uni_path",
    "is_quoted", "pass_quoted", "pass_exec", "pass_model",
    "amount_in_collat", "amount_out_loan", "amount_out_usd_adj",
    "pass", "note",
]


@dataclass
class Opportunity:
    """一个候选的利润评估结果"""

    ts: str
    candidate_id: str
    market_id: str
    borrower: str
    collateral_token: str
    loan_token: str
    oracle: str
    irm: str
    lltv_wad: Optional[int]
    collateral: str
    loan: str
    status: str
    reason: str
    lltv: Optional[float]
    proximity: Optional[float]
    repay_usd: float
    bonus_factor: float
    gross_profit_usd: float
    estimated_gas_usd: float
    l1_fee_usd: float
    flash_fee_usd: float
    slippage_usd: float
    net_profit_usd: float
    required_net_usd: float
    quote_mode: str
    uni_path: str
    is_quoted: bool
    pass_quoted: bool
    pass_exec: bool
    pass_model: bool
    amount_in_collat: Optional[int]
    amount_out_loan: Optional[int]
    amount_out_usd_adj: Optional[float]
    passed: bool
    note: str

    def to_row(self) -> Dict[str, str]:
        values = {name: getattr(self, name) for name in OPPORTUNITY_COLUMNS if name != "pass"}
        values["pass"] = self.passed
        return {name: _fmt(values[name]) for name in OPPORTUNITY_COLUMNS}

    @classmethod
    def from_row(cls, row: Mapping[str, str]) -> "Opportunity":
        def f(name: str) -> float:
            value = _opt_float(row.get(name))
            return 0.0 if value is None else value

        return cls(
            ts=row.get("ts", ""),
            candidate_id=row.get("candidate_id", ""),
            market_id=row.get("market_id", ""),
            borrower=row.get("borrower", ""),
            collateral_token=row.get("collateral_token", ""),
            loan_token=row.get("loan_token", ""),
            oracle=row.get("oracle", ""),
            irm=row.get("irm", ""),
            lltv_wad=_opt_int(row.get("lltv_wad")),
            collateral=row.get("collateral", ""),
            loan=row.get("loan", ""),
            status=row.get("status", ""),
            reason=row.get("reason", ""),
            lltv=_opt_float(row.get("lltv")),
            proximity=_opt_float(row.get("proximity")),
            repay_usd=f("repay_usd"),
            bonus_factor=f("bonus_factor"),
            gross_profit_usd=f("gross_profit_usd"),
            estimated_gas_usd=f("estimated_gas_usd"),
            l1_fee_usd=f("l1_fee_usd"),
            flash_fee_usd=f("flash_fee_usd"),
            slippage_usd=f("slippage_usd"),
            net_profit_usd=f("net_profit_usd"),
            required_net_usd=f("required_net_usd"),
            quote_mode=row.get("quote_mode", ""),
            uni_path=row.get("uni_path", ""),
            is_quoted=_as_bool(row.get("is_quoted", "0")),
            pass_quoted=_as_bool(row.get("pass_quoted", "0")),
            pass_exec=_as_bool(row.get("pass_exec", "0")),
            pass_model=_as_bool(row.get("pass_model", "0")),
            amount_in_collat=_opt_int(row.get("amount_in_collat")),
            amount_out_loan=_opt_int(row.get("amount_out_loan")),
            amount_out_usd_adj=_opt_float(row.get("amount_out_usd_adj")),
            passed=_as_bool(row.get("pass", "0")),
            note=row.get("note", ""),
        )


# =====================================================
# 清算订单
# =====================================================

@dataclass(frozen=True)
class MarketParams:
    """Morpho Blue 市场参数"""

    loan_token: str
    collateral_token: str
    oracle: str
    irm: str
    lltv: int

    def to_abi_tuple(self) -> Tuple[str, str, str, str, int]:
        return (
            Web3.to_checksum_address(self.loan_token),
            Web3.to_checksum_address(self.collateral_token),
            Web3.to_checksum_address(self.oracle),
            Web3.to_checksum_address(self.irm),
            int(self.lltv),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "loanToken": self.loan_token,
            "collateralToken": self.collateral_token,
            "oracle": self.oracle,
            "irm": self.irm,
            "lltv": str(self.lltv),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MarketParams":
        return cls(
            loan_token=str(data["loanToken"]),
            collateral_token=str(data["collateralToken"]),
            oracle=str(data["oracle"]),
            irm=str(data["irm"]),
            lltv=int(data["lltv"]),
        )


@dataclass(frozen=True)
class Order:
    """
    执行合约 execute(Order) 的参数

    repaid_shares 与 seized_assets 必须恰好一个为零。
    deadline 和 nonce 在广播前刷新（dataclasses.replace）。
    """

    market: MarketParams
    borrower: str
    repay_assets: int
    repaid_shares: int
    seized_assets: int
    uni_path: bytes
    amount_out_min: int
    min_profit: int
    deadline: int
    max_tx_gas_price: int
    referral_code: int
    nonce: int

    def has_exactly_one_zero(self) -> bool:
        return (self.repaid_shares == 0) != (self.seized_assets == 0)

    def to_abi_tuple(self) -> Tuple[Any, ...]:
        return (
            self.market.to_abi_tuple(),
            Web3.to_checksum_address(self.borrower),
            int(self.repay_assets),
            int(self.repaid_shares),
            int(self.seized_assets),
            bytes(self.uni_path),
            int(self.amount_out_min),
            int(self.min_profit),
            int(self.deadline),
            int(self.max_tx_gas_price),
            int(self.referral_code),
            int(self.nonce),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market": self.market.to_dict(),
            "borrower": self.borrower,
            "repayAssets": str(self.repay_assets),
            "repaidShares": str(self.repaid_shares),
            "seizedAssets": str(self.seized_assets),
            "uniPath": "0x" + bytes(self.uni_path).hex(),
            "amountOutMin": str(self.amount_out_min),
            "minProfit": str(self.min_profit),
            "deadline": str(self.deadline),
            "maxTxGasPrice": str(self.max_tx_gas_price),
            "referralCode": self.referral_code,
            "nonce": str(self.nonce),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Order":
        raw_path = str(data.get("uniPath") or "0x")
        raw_path = raw_path[2:] if raw_path.startswith("0x") else raw_path
        return cls(
            market=MarketParams.from_dict(data["market"]),
            borrower=str(data["borrower"]),
            repay_assets=int(data["repayAssets"]),
            repaid_shares=int(data["repaidShares"]),
            seized_assets=int(data["seizedAssets"]),
            uni_path=bytes.fromhex(raw_path),
            amount_out_min=int(data["amountOutMin"]),
            min_profit=int(data["minProfit"]),
            deadline=int(data["deadline"]),
            max_tx_gas_price=int(data["maxTxGasPrice"]),
            referral_code=int(data.get("referralCode", 0)),
            nonce=int(data["nonce"]),
        )


# =====================================================
# 执行计划（tx_plan.json）
# =====================================================

class PlanAction(Enum):
    """计划中每个候选的动作"""
    EXEC = "EXEC"    # 已构建订单，可执行
    WATCH = "WATCH"  # 观察，不执行
    SKIP = "SKIP"    # 低于观察阈值


@dataclass
class PlanItem:
    ts: str
    candidate_id: str
    market_id: str
    borrower: str
    net_profit_usd: float
    proximity: Optional[float]
    action: PlanAction
    passed: bool
    note: str
    order: Optional[Order] = None

    def to_dict(self) -> Dict[str, Any]:
        item: Dict[str, Any] = {
            "ts": self.ts,
            "candidateId": self.candidate_id,
            "marketId": self.market_id,
            "borrower": self.borrower,
            "netProfitUsd": self.net_profit_usd,
            "proximity": self.proximity,
            "action": self.action.value,
            "pass": self.passed,
            "note": self.note,
        }
        if self.order is not None:
            item["order"] = self.order.to_dict()
        return item

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PlanItem":
        order_data = data.get("order")
        return cls(
            ts=str(data.get("ts", "")),
            candidate_id=str(data.get("candidateId", "")),
            market_id=str(data.get("marketId", "")),
            borrower=str(data.get("borrower", "")),
            net_profit_usd=_opt_float(data.get("netProfitUsd")) or 0.0,
            proximity=_opt_float(data.get("proximity")),
            action=PlanAction(str(data.get("action", "WATCH"))),
            passed=_as_bool(data.get("pass", False)),
            note=str(data.get("note", "")),
            order=Order.from_dict(order_data) if order_data else None,
        )


@dataclass
class Plan:
    generated_at: str
    exec_built: int = 0
    exec_downgraded: int = 0
    items: List[PlanItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generatedAt": self.generated_at,
            "execBuilt": self.exec_built,
            "execDowngraded": self.exec_downgraded,
            "items": [item.to_dict() for item in self.items],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Plan":
        return cls(
            generated_at=str(data.get("generatedAt", "")),
            exec_built=int(data.get("execBuilt", 0)),
            exec_downgraded=int(data.get("execDowngraded", 0)),
            items=[PlanItem.from_dict(item) for item in data.get("items", [])],
        )

    @property
    def exec_items(self) -> List[PlanItem]:
        return [item for item in self.items if item.action is PlanAction.EXEC]
