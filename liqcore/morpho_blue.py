"""
Morpho Blue protocol math and on-chain reads.

Share/asset conversions follow Morpho Blue rounding: debt repaid in shares is
rounded UP so the liquidator never under-repays, debt reported in assets for
diagnostics is rounded UP (conservative), collateral-side conversions round DOWN.

Reads go through NetworkManager (single calls) or Multicall (forensic batch).
"""

import logging
from dataclasses import dataclass

from eth_abi import encode
from web3 import Web3

from liqutils.abi_loader import decode_result, encode_call, load_abi

from .multicall import decode_uint

logger = logging.getLogger(__name__)

WAD = 10 ** 18
ORACLE_PRICE_SCALE = 10 ** 36


class ProtocolMathError(ValueError):
    """Raised when protocol math receives inputs it cannot convert."""
    pass


@dataclass(frozen=True)
class MarketTotals:
    """Morpho Blue `market(id)` view."""

    total_supply_assets: int
    total_supply_shares: int
    total_borrow_assets: int
    total_borrow_shares: int
    last_update: int
    fee: int


@dataclass(frozen=True)
class PositionState:
    """Morpho Blue `position(id, user)` view."""

    supply_shares: int
    borrow_shares: int
    collateral: int


@dataclass(frozen=True)
class ForensicSnapshot:
    """Live health of a position, recomputed from chain state."""

    oracle_price: int
    collateral: int
    borrow_shares: int
    borrow_assets: int
    max_borrow: int

    @property
    def is_healthy(self) -> bool:
        return self.max_borrow >= self.borrow_assets


# =====================================================
# Share math
# =====================================================

def assets_to_shares_up(assets: int, total_assets: int, total_shares: int) -> int:
    """
    Convert an asset amount to shares, rounding up.

    Returns 0 for non-positive assets. Raises ProtocolMathError when either
    market total is zero, since no share price exists then.
    """
    if assets <= 0:
        return 0
    if total_assets <= 0 or total_shares <= 0:
        raise ProtocolMathError("assets_to_shares_up: zero totals")
    return (assets * total_shares + total_assets - 1) // total_assets


def shares_to_assets_down(shares: int, total_assets: int, total_shares: int) -> int:
    if shares <= 0 or total_shares <= 0:
        return 0
    return (shares * total_assets) // total_shares


def shares_to_assets_up(shares: int, total_assets: int, total_shares: int) -> int:
    if shares <= 0 or total_shares <= 0:
        return 0
    return (shares * total_assets + total_shares - 1) // total_shares


def max_borrow(collateral: int, oracle_price: int, lltv_wad: int) -> int:
    """Maximum debt (loan token units) the collateral supports at `lltv_wad`."""
    return (collateral * oracle_price * lltv_wad) // (ORACLE_PRICE_SCALE * WAD)


def market_id_bytes(market_id: str) -> bytes:
    """Parse a 0x-prefixed 32-byte market id."""
    raw = market_id[2:] if market_id.startswith(("0x", "0X")) else market_id
    try:
        data = bytes.fromhex(raw)
    except ValueError as e:
        raise ProtocolMathError(f"invalid market id: {market_id}") from e
    if len(data) != 32:
        raise ProtocolMathError(f"market id must be 32 bytes, got {len(data)}")
    return data


def compute_market_id(
    loan_token: str,
    collateral_token: str,
    oracle: str,
    irm: str,
    lltv_wad: int,
) -> str:
    """Market id = keccak256(abi.encode(MarketParams))."""
    encoded = encode(
        ["address", "address", "address", "address", "uint256"],
        [
            Web3.to_checksum_address(loan_token),
            Web3.to_checksum_address(collateral_token),
            Web3.to_checksum_address(oracle),
            Web3.to_checksum_address(irm),
            int(lltv_wad),
        ],
    )
    return Web3.to_hex(Web3.keccak(encoded))


# =====================================================
# On-chain reads
# =====================================================

class MorphoBlueReader:
    """
    Reads market totals, positions and oracle prices.

    Args:
        network: object exposing `call_contract(address, data)`
        morpho_address: Morpho Blue core contract
        multicall: optional Multicall used for the forensic batch
    """

    def __init__(self, network, morpho_address: str, multicall=None):
        self.network = network
        self.morpho_address = Web3.to_checksum_address(morpho_address)
        self.multicall = multicall
        self._morpho_abi = load_abi("MorphoBlue")
        self._oracle_abi = load_abi("MorphoOracle")

    def _market_call(self, market_id: str) -> bytes:
        return encode_call(self._morpho_abi, "market", [market_id_bytes(market_id)])

    def _position_call(self, market_id: str, borrower: str) -> bytes:
        return encode_call(
            self._morpho_abi,
            "position",
            [market_id_bytes(market_id), Web3.to_checksum_address(borrower)],
        )

    def _decode_market(self, data: bytes) -> MarketTotals:
        return MarketTotals(*(int(v) for v in decode_result(self._morpho_abi, "market", data)))

    def _decode_position(self, data: bytes) -> PositionState:
        return PositionState(*(int(v) for v in decode_result(self._morpho_abi, "position", data)))

    async def read_market_totals(self, market_id: str) -> MarketTotals:
        data = await self.network.call_contract(self.morpho_address, self._market_call(market_id))
        return self._decode_market(data)

    async def read_position(self, market_id: str, borrower: str) -> PositionState:
        data = await self.network.call_contract(
            self.morpho_address, self._position_call(market_id, borrower)
        )
        return self._decode_position(data)

    async def read_oracle_price(self, oracle: str) -> int:
        data = await self.network.call_contract(oracle, encode_call(self._oracle_abi, "price"))
        (price,) = decode_result(self._oracle_abi, "price", data)
        return int(price)

    async def read_forensics(
        self,
        market_id: str,
        borrower: str,
        oracle: str,
        lltv_wad: int,
    ) -> ForensicSnapshot:
        """
        Recompute position health from live chain state.

        Oracle price, position and market totals are fetched in one Multicall
        batch when a Multicall is configured, otherwise as three calls.
        """
        if self.multicall is not None:
            results = await self.multicall.aggregate([
                (oracle, encode_call(self._oracle_abi, "price")),
                (self.morpho_address, self._position_call(market_id, borrower)),
                (self.morpho_address, self._market_call(market_id)),
            ])
            failed = [i for i, (ok, _) in enumerate(results) if not ok]
            if failed:
                raise ProtocolMathError(
                    f"forensic batch incomplete (failed calls {failed}): {self.multicall.last_batch_error}"
                )
            price = decode_uint(results[0][1])
            if price is None:
                raise ProtocolMathError("forensic batch returned malformed oracle price")
            position = self._decode_position(results[1][1])
            totals = self._decode_market(results[2][1])
        else:
            price = await self.read_oracle_price(oracle)
            position = await self.read_position(market_id, borrower)
            totals = await self.read_market_totals(market_id)

        borrow_assets = shares_to_assets_up(
            position.borrow_shares, totals.total_borrow_assets, totals.total_borrow_shares
        )
        return ForensicSnapshot(
            oracle_price=price,
            collateral=position.collateral,
            borrow_shares=position.borrow_shares,
            borrow_assets=borrow_assets,
            max_borrow=max_borrow(position.collateral, price, int(lltv_wad)),
        )
