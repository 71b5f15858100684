"""
MorphoLiq-Core 候选适配器

外部市场数据（Morpho GraphQL 仓位结构）只在这里被解析，
其余模块只接收类型化的 Candidate。

接受的结构:
    user.address
    market.uniqueKey / lltv / oracle{address} | oracleAddress / irm{address} | irmAddress
    market.loanAsset / collateralAsset {address, symbol, decimals, priceUsd}
    state.borrowAssetsUsd / collateral / collateralUsd | collateralAssetsUsd / ltv?
"""

import logging
import re
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .artifacts import read_jsonl, utc_now_iso, write_jsonl
from .models import (
    REASON_LLTV_OUT_OF_RANGE,
    REASON_LTV_OUT_OF_RANGE,
    REASON_MISSING_FIELDS,
    REASON_OK,
    STATUS_BELOW_WATCH,
    STATUS_EXEC_READY,
    STATUS_WATCH,
    Candidate,
    make_candidate_id,
)

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def _to_num(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def _pick_num(obj: Mapping[str, Any], keys: List[str]) -> Optional[float]:
    for key in keys:
        number = _to_num(obj.get(key))
        if number is not None:
            return number
    return None


def _is_addr(value: Any) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


def _pick_addr(*values: Any) -> Optional[str]:
    """按顺序取第一个有效地址，支持字符串或 {address}/{id} 对象"""
    for value in values:
        if _is_addr(value):
            return value
        if isinstance(value, Mapping):
            if _is_addr(value.get("address")):
                return value["address"]
            if _is_addr(value.get("id")):
                return value["id"]
    return None


def _units_to_float(raw: Any, decimals: int) -> Optional[float]:
    try:
        return float(Decimal(str(raw)) / (Decimal(10) ** decimals))
    except (InvalidOperation, ValueError):
        return None


DEFAULT_TOKEN_DECIMALS = 18


def _parse_decimals(value: Any) -> Optional[int]:
    """缺失时默认 18；0 原样保留；无法解析或越界返回 None"""
    if value is None:
        return DEFAULT_TOKEN_DECIMALS
    if isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    if not number.is_finite() or number != number.to_integral_value() or not 0 <= number <= 255:
        return None
    return int(number)


def classify_status(
    proximity: Optional[float],
    watch_threshold: float,
    exec_threshold: float,
) -> str:
    """接近度 ≥ 执行阈值为 exec_ready，≥ 观察阈值为 watch"""
    if proximity is None:
        return STATUS_BELOW_WATCH
    if proximity >= exec_threshold:
        return STATUS_EXEC_READY
    if proximity >= watch_threshold:
        return STATUS_WATCH
    return STATUS_BELOW_WATCH


def normalize_api_position(
    position: Mapping[str, Any],
    chain_id: int,
    watch_threshold: float,
    exec_threshold: float,
    ts: Optional[str] = None,
) -> Candidate:
    """
    将一条 Morpho API 仓位转换为 Candidate

    缺少 oracle / irm / lltv 等字段时 reason 为 missing_fields（保留但不可执行）。
    """
    user = position.get("user") or {}
    market = position.get("market") or {}
    state = position.get("state") or {}
    loan_asset = market.get("loanAsset") or {}
    collateral_asset = market.get("collateralAsset") or {}

    lltv_wad_raw = market.get("lltv")
    lltv_wad: Optional[int] = None
    lltv: Optional[float] = None
    if isinstance(lltv_wad_raw, (str, int)) and not isinstance(lltv_wad_raw, bool):
        try:
            lltv_wad = int(lltv_wad_raw)
            lltv = _units_to_float(lltv_wad, 18)
        except ValueError:
            lltv_wad = None

    borrow_usd = _to_num(state.get("borrowAssetsUsd"))

    collateral_token = str(collateral_asset.get("address") or "")
    loan_token = str(loan_asset.get("address") or "")
    collateral_price = _to_num(collateral_asset.get("priceUsd"))
    loan_price = _to_num(loan_asset.get("priceUsd"))
    collateral_dec = _parse_decimals(collateral_asset.get("decimals"))
    loan_dec = _parse_decimals(loan_asset.get("decimals"))

    oracle = _pick_addr(market.get("oracle"), market.get("oracleAddress"))
    irm = _pick_addr(market.get("irm"), market.get("irmAddress"))

    collateral_amount = (
        _units_to_float(state.get("collateral", 0) or 0, collateral_dec)
        if collateral_dec is not None
        else None
    )

    collateral_usd = _pick_num(
        state, ["collateralAssetsUsd", "collateralAssetsUSD", "collateralUsd", "collateralUSD"]
    )
    if collateral_usd is None or collateral_usd <= 0:
        collateral_usd = (
            collateral_amount * collateral_price
            if collateral_price is not None and collateral_amount is not None
            else None
        )

    ltv = _pick_num(state, ["ltv", "loanToValue", "loanToValueRatio"])
    if ltv is None or ltv <= 0:
        ltv = (
            borrow_usd / collateral_usd
            if borrow_usd is not None and collateral_usd is not None and collateral_usd > 0
            else None
        )

    raw_proximity = ltv / lltv if ltv is not None and lltv is not None and lltv > 0 else None

    if (
        not oracle or not irm or lltv is None or borrow_usd is None
        or collateral_dec is None or loan_dec is None
        or collateral_usd is None or ltv is None or raw_proximity is None
    ):
        reason = REASON_MISSING_FIELDS
    elif lltv > 2 or lltv <= 0:
        reason = REASON_LLTV_OUT_OF_RANGE
    elif ltv < 0 or ltv > 5:
        reason = REASON_LTV_OUT_OF_RANGE
    else:
        reason = REASON_OK

    proximity = raw_proximity if reason == REASON_OK else None
    market_id = str(market.get("uniqueKey") or "")
    borrower = str(user.get("address") or "")

    return Candidate(
        candidate_id=make_candidate_id(chain_id, market_id, borrower, collateral_token, loan_token),
        market_id=market_id,
        borrower=borrower,
        collateral_token=collateral_token,
        loan_token=loan_token,
        oracle=oracle,
        irm=irm,
        lltv_wad=lltv_wad,
        lltv=lltv,
        collateral_symbol=str(collateral_asset.get("symbol") or ""),
        loan_symbol=str(loan_asset.get("symbol") or ""),
        collateral_decimals=collateral_dec if collateral_dec is not None else 0,
        loan_decimals=loan_dec if loan_dec is not None else 0,
        collateral_price_usd=collateral_price,
        loan_price_usd=loan_price,
        borrow_usd=borrow_usd,
        collateral_usd=collateral_usd,
        proximity=proximity,
        status=classify_status(proximity, watch_threshold, exec_threshold),
        reason=reason,
        ts=ts or utc_now_iso(),
    )


def load_candidates(path: Path) -> List[Candidate]:
    """读取 candidates.jsonl"""
    candidates = [Candidate.from_dict(row) for row in read_jsonl(path)]
    logger.info(f"已加载 {len(candidates)} 个候选: {path}")
    return candidates


def save_candidates(path: Path, candidates: List[Candidate]) -> None:
    write_jsonl(path, [c.to_dict() for c in candidates])


def index_by_id(candidates: List[Candidate]) -> Dict[str, Candidate]:
    return {c.candidate_id: c for c in candidates}
