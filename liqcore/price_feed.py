"""
Price inputs for the profitability model.

- ETH/USD: env override (ETH_PRICE_USD) or Chainlink aggregator
  `latestRoundData`. A round older than the max age marks pricing DEGRADED;
  degraded pricing never raises, it only gates execution downstream.
- L1 calldata fee (Arbitrum): ArbGasInfo `getPricesInWei()[1]` per calldata
  unit, falling back to `getL1GasPriceEstimate()`, else 0 ("unavailable").

Total cost on Arbitrum = L2 execution gas + L1 calldata fee.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from liqutils.abi_loader import decode_result, encode_call, load_abi

logger = logging.getLogger(__name__)

# Worst case: every calldata byte non-zero, 16 gas units per byte
CALLDATA_UNITS_PER_BYTE = 16

DEFAULT_ARB_GAS_INFO = "0x000000000000000000000000000000000000006C"


class PriceFeedError(Exception):
    """Raised when the ETH/USD feed returns an unusable answer."""
    pass


@dataclass(frozen=True)
class EthPrice:
    """ETH/USD price plus freshness metadata."""

    usd: float
    source: str  # "chainlink" | "env"
    stale: bool
    age_sec: int
    updated_at: int
    max_age_sec: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "usd": self.usd,
            "source": self.source,
            "stale": self.stale,
            "ageSec": self.age_sec,
            "updatedAt": self.updated_at,
            "maxAgeSec": self.max_age_sec,
        }


@dataclass(frozen=True)
class L1FeeEstimate:
    mode: str  # "prices_per_unit" | "l1_gas_price_estimate" | "unavailable"
    calldata_units: int
    fee_wei: int
    fee_usd: float


async def fetch_eth_price(
    network,
    feed_address: Optional[str],
    max_age_sec: int = 180,
    override_usd: Optional[float] = None,
    now: Optional[float] = None,
) -> EthPrice:
    """
    Resolve the ETH/USD price.

    Args:
        network: object exposing `call_contract(address, data)`
        feed_address: Chainlink ETH/USD aggregator
        max_age_sec: rounds older than this are flagged stale
        override_usd: positive value short-circuits the oracle read
        now: unix seconds (defaults to wall clock)

    Raises:
        PriceFeedError: no override and no feed, non-positive answer or
            invalid updatedAt.
    """
    if override_usd is not None and override_usd > 0:
        return EthPrice(
            usd=float(override_usd),
            source="env",
            stale=False,
            age_sec=0,
            updated_at=0,
            max_age_sec=max_age_sec,
        )

    if not feed_address:
        raise PriceFeedError("ETH/USD feed address missing and ETH_PRICE_USD not set")

    abi = load_abi("ChainlinkAggregator")
    raw_decimals = await network.call_contract(feed_address, encode_call(abi, "decimals"))
    (decimals,) = decode_result(abi, "decimals", raw_decimals)
    raw_round = await network.call_contract(feed_address, encode_call(abi, "latestRoundData"))
    round_id, answer, _, updated_at, _ = decode_result(abi, "latestRoundData", raw_round)

    if answer <= 0:
        raise PriceFeedError(f"invalid Chainlink ETH/USD answer={answer} roundId={round_id}")
    if updated_at <= 0:
        raise PriceFeedError("invalid Chainlink updatedAt")

    now = time.time() if now is None else now
    age_sec = int(now) - int(updated_at)
    stale = age_sec > max_age_sec
    if stale:
        logger.warning(
            f"Chainlink ETH/USD is stale (age {age_sec}s > {max_age_sec}s); "
            f"pricing DEGRADED, execution stays gated"
        )

    usd = int(answer) / 10 ** int(decimals)
    return EthPrice(
        usd=usd,
        source="chainlink",
        stale=stale,
        age_sec=age_sec,
        updated_at=int(updated_at),
        max_age_sec=max_age_sec,
    )


class L1FeeCalculator:
    """
    Estimate the Arbitrum L1 calldata fee for a liquidation transaction.

    Formula: fee_wei = perL1CalldataUnit * 16 * calldata_bytes
    """

    def __init__(self, network, gas_info_address: Optional[str] = None):
        self.network = network
        self.gas_info_address = gas_info_address or DEFAULT_ARB_GAS_INFO
        self._abi = load_abi("ArbGasInfo")

    async def _call(self, name: str):
        raw = await self.network.call_contract(self.gas_info_address, encode_call(self._abi, name))
        return decode_result(self._abi, name, raw)

    async def estimate(self, calldata_bytes: int, eth_usd: float) -> L1FeeEstimate:
        units = max(0, int(calldata_bytes)) * CALLDATA_UNITS_PER_BYTE

        prices = await self._call("getPricesInWei")
        per_unit = int(prices[1])
        if per_unit > 0:
            mode = "prices_per_unit"
            fee_wei = per_unit * units
        else:
            (l1_gas_price,) = await self._call("getL1GasPriceEstimate")
            if l1_gas_price > 0:
                mode = "l1_gas_price_estimate"
                fee_wei = int(l1_gas_price) * units
            else:
                mode = "unavailable"
                fee_wei = 0

        return L1FeeEstimate(
            mode=mode,
            calldata_units=units,
            fee_wei=fee_wei,
            fee_usd=fee_wei / 1e18 * eth_usd,
        )
