"""
Shared fakes for the liquidation pipeline tests.

No test talks to a live RPC: the network, Multicall and Morpho reader are
replaced by small in-memory doubles that speak the same coroutine API.
"""

from dataclasses import replace
from typing import Callable, List, Optional

import pytest
from eth_abi import decode, encode
from web3 import Web3
from web3.types import Wei

from liqcore.artifacts import utc_now_iso
from liqcore.config_loader import ChainConfig, ContractAddresses, GasConfig, LiquidationSettings
from liqcore.models import (
    REASON_OK,
    STATUS_EXEC_READY,
    Candidate,
    MarketParams,
    Opportunity,
    Order,
    Plan,
    PlanAction,
    PlanItem,
    make_candidate_id,
)
from liqcore.morpho_blue import ForensicSnapshot, MarketTotals, compute_market_id
from liqcore.network import GasParams

NOW = 1_750_000_000.0
CHAIN_ID = 42161

WETH = "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1"
USDC = "0xaf88d065e77c8cC2239327C5EDb3A432268e5831"
USDT = "0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9"
DAI = "0xDA10009cBd5D07dd0CeCc66161FC93D7c9000da1"
WSTETH = "0x5979D7b546E38E414F7E9822514be443A4800529"

ORACLE = "0x1111111111111111111111111111111111111111"
IRM = "0x2222222222222222222222222222222222222222"
BORROWER = "0x3333333333333333333333333333333333333333"
EXECUTOR = "0x4444444444444444444444444444444444444444"
QUOTER = "0x61fFE014bA17989E743c5F6cB21bF9697530B21e"
MULTICALL3 = "0xcA11bde05977b3631167028862bE2a173976CA11"
MORPHO = "0x6c247b1F6182318877311737BaC0844bAa518F5e"

TEST_PRIVATE_KEY = "0x" + "11" * 32
LLTV_WAD = 860_000_000_000_000_000
MARKET_ID = compute_market_id(USDC, WETH, ORACLE, IRM, LLTV_WAD)

_QUOTE_PARAMS = "(address,address,uint256,uint24,uint160)"
_QUOTE_OUTPUTS = ["uint256", "uint160", "uint32", "uint256"]


def make_settings(**overrides) -> LiquidationSettings:
    return replace(LiquidationSettings(), **overrides)


def make_chain_config(**overrides) -> ChainConfig:
    fields = dict(
        name="ARBITRUM",
        chain_id=CHAIN_ID,
        rpc_urls=["https://rpc-a.example.org", "https://rpc-b.example.org"],
        gas_config=GasConfig(type="eip1559"),
        contracts=ContractAddresses(
            multicall3=MULTICALL3,
            morpho_blue=MORPHO,
            quoter_v2=QUOTER,
        ),
        rpc_timeout=1,
        max_retries=2,
    )
    fields.update(overrides)
    return ChainConfig(**fields)


def make_candidate(**overrides) -> Candidate:
    fields = dict(
        borrower=BORROWER,
        collateral_token=WETH,
        loan_token=USDC,
        oracle=ORACLE,
        irm=IRM,
        lltv_wad=LLTV_WAD,
        lltv=0.86,
        collateral_symbol="WETH",
        loan_symbol="USDC",
        collateral_decimals=18,
        loan_decimals=6,
        collateral_price_usd=2500.0,
        loan_price_usd=1.0,
        borrow_usd=12_000.0,
        collateral_usd=13_500.0,
        proximity=1.02,
        status=STATUS_EXEC_READY,
        reason=REASON_OK,
        ts=utc_now_iso(NOW - 5),
    )
    fields.update(overrides)
    if fields["oracle"] and fields["irm"] and fields["lltv_wad"]:
        fields.setdefault("market_id", compute_market_id(
            fields["loan_token"], fields["collateral_token"], fields["oracle"], fields["irm"], fields["lltv_wad"]
        ))
    fields.setdefault("market_id", MARKET_ID)
    fields.setdefault(
        "candidate_id",
        make_candidate_id(
            CHAIN_ID, fields["market_id"], fields["borrower"],
            fields["collateral_token"], fields["loan_token"],
        ),
    )
    return Candidate(**fields)


def make_opportunity(candidate: Optional[Candidate] = None, **overrides) -> Opportunity:
    candidate = candidate or make_candidate()
    fields = dict(
        ts=utc_now_iso(NOW - 5),
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
        repay_usd=10_000.0,
        bonus_factor=1.0488,
        gross_profit_usd=50.0,
        estimated_gas_usd=0.5,
        l1_fee_usd=0.1,
        flash_fee_usd=5.0,
        slippage_usd=50.75,
        net_profit_usd=44.5,
        required_net_usd=4.0,
        quote_mode="quoterV2_fee_500",
        uni_path="",
        is_quoted=True,
        pass_quoted=True,
        pass_exec=True,
        pass_model=False,
        amount_in_collat=4_195_200_000_000_000_000,
        amount_out_loan=10_100_000_000,
        amount_out_usd_adj=10_049.5,
        passed=True,
        note="QUOTED_PASS",
    )
    fields.update(overrides)
    return Opportunity(**fields)


def make_order(**overrides) -> Order:
    fields = dict(
        market=MarketParams(
            loan_token=USDC,
            collateral_token=WETH,
            oracle=ORACLE,
            irm=IRM,
            lltv=LLTV_WAD,
        ),
        borrower=BORROWER,
        repay_assets=10_000_000_000,
        repaid_shares=10_000_000_000_000_000,
        seized_assets=0,
        uni_path=bytes.fromhex(WETH[2:]) + (500).to_bytes(3, "big") + bytes.fromhex(USDC[2:]),
        amount_out_min=10_049_500_000,
        min_profit=4_000_000,
        deadline=int(NOW) + 180,
        max_tx_gas_price=10_000_000_000,
        referral_code=0,
        nonce=int(NOW * 1000),
    )
    fields.update(overrides)
    return Order(**fields)


def make_exec_item(candidate_id: str, net: float, order: Optional[Order] = None, **overrides) -> PlanItem:
    fields = dict(
        ts=utc_now_iso(NOW - 5),
        candidate_id=candidate_id,
        market_id=MARKET_ID,
        borrower=BORROWER,
        net_profit_usd=net,
        proximity=1.02,
        action=PlanAction.EXEC,
        passed=True,
        note="EXEC_READY_WITH_ORDER",
        order=order or make_order(),
    )
    fields.update(overrides)
    return PlanItem(**fields)


def make_plan(items: List[PlanItem], age_sec: float = 5.0) -> Plan:
    return Plan(generated_at=utc_now_iso(NOW - age_sec), exec_built=len(items), items=items)


# =====================================================
# Fakes
# =====================================================

class QuoterMulticall:
    """
    Multicall double that answers QuoterV2.quoteExactInputSingle calls.

    quote_fn(token_in, token_out, amount_in, fee) returns the amount out, or
    None to simulate a reverted call. Addresses are passed lower-cased.
    """

    def __init__(self, quote_fn: Callable[[str, str, int, int], Optional[int]]):
        self.quote_fn = quote_fn
        self.batches: List[int] = []
        self.failing_batches = set()
        self.last_batch_error: Optional[str] = None

    async def aggregate(self, calls, allow_failure=True):
        self.batches.append(len(calls))
        self.last_batch_error = None
        if len(self.batches) in self.failing_batches:
            self.last_batch_error = "ClientConnectorError: connection refused"
            return [(False, b"") for _ in calls]

        results = []
        for _target, data in calls:
            (params,) = decode([_QUOTE_PARAMS], data[4:])
            token_in, token_out, amount_in, fee, _limit = params
            amount_out = self.quote_fn(token_in.lower(), token_out.lower(), amount_in, fee)
            if amount_out is None:
                results.append((False, b""))
            else:
                results.append((True, encode(_QUOTE_OUTPUTS, [amount_out, 0, 0, 0])))
        return results


class FakeReader:
    """MorphoBlueReader double for market totals and forensics."""

    def __init__(self, totals: Optional[MarketTotals] = None, error: Optional[Exception] = None):
        self.totals = totals or MarketTotals(
            total_supply_assets=20_000_000_000_000,
            total_supply_shares=20_000_000_000_000_000_000,
            total_borrow_assets=10_000_000_000_000,
            total_borrow_shares=10_000_000_000_000_000_000,
            last_update=int(NOW),
            fee=0,
        )
        self.error = error
        self.totals_calls: List[str] = []
        self.forensic_calls: List[str] = []
        self.forensic_error: Optional[Exception] = None

    async def read_market_totals(self, market_id: str) -> MarketTotals:
        self.totals_calls.append(market_id)
        if self.error is not None:
            raise self.error
        return self.totals

    async def read_forensics(self, market_id, borrower, oracle, lltv_wad) -> ForensicSnapshot:
        self.forensic_calls.append(borrower)
        if self.forensic_error is not None:
            raise self.forensic_error
        return ForensicSnapshot(
            oracle_price=2500 * 10 ** 24,
            collateral=5 * 10 ** 18,
            borrow_shares=10 ** 16,
            borrow_assets=10 ** 10,
            max_borrow=10_750_000_000,
        )


class FakeChain:
    """
    NetworkManager double for the execution path.

    sim_errors is consumed one entry per eth_call; None means success.
    """

    def __init__(
        self,
        gas_price: int = 100_000_000,
        base_fee: int = 50_000_000,
        sim_errors: Optional[List[Optional[Exception]]] = None,
        chain_id: int = CHAIN_ID,
        code: bytes = b"\x60\x80",
    ):
        self.gas_price = gas_price
        self.base_fee = base_fee
        self.sim_errors = list(sim_errors or [])
        self.chain_id = chain_id
        self.code = code
        self.eth_calls: List[tuple] = []
        self.estimates: List[dict] = []
        self.sent: List[bytes] = []

    async def get_gas_price(self) -> int:
        return self.gas_price

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def get_code(self, address: str) -> bytes:
        return self.code

    async def call_contract(self, address, data, from_address=None, block_identifier="latest"):
        self.eth_calls.append((address, data, from_address))
        if self.sim_errors:
            error = self.sim_errors.pop(0)
            if error is not None:
                raise error
        return b""

    async def estimate_gas(self, tx_params) -> int:
        self.estimates.append(dict(tx_params))
        return 450_000

    async def get_eip1559_params(self, priority_fee, gas_limit=None) -> GasParams:
        return GasParams(
            gas_limit=gas_limit,
            max_fee_per_gas=Wei(2 * self.base_fee + int(priority_fee)),
            max_priority_fee_per_gas=Wei(int(priority_fee)),
        )

    async def get_nonce(self, address, block_identifier="pending") -> int:
        return 7

    async def send_raw_transaction(self, signed_tx: bytes) -> str:
        self.sent.append(bytes(signed_tx))
        return Web3.to_hex(Web3.keccak(signed_tx))


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def settings():
    return make_settings()
