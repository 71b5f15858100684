"""
Tests for chain configuration and strategy settings loading.
"""

import orjson
import pytest

from liqcore.config_loader import (
    ConfigLoader,
    ConfigValidationError,
    LiquidationSettings,
    is_valid_address,
)

from conftest import EXECUTOR, MORPHO, MULTICALL3, QUOTER, TEST_PRIVATE_KEY, USDC, USDT, WETH


ENV_NAMES = [
    "PRIVATE_KEY", "RPC_TIMEOUT", "MAX_RETRIES", "CHAIN_ID", "ARB_RPC_URL", "ARBITRUM_RPC_OVERRIDE",
    "MORPHO_ADDR", "UNISWAP_V3_QUOTER_V2", "ARB_GASINFO_ADDR", "EXECUTOR_ADDR",
    "LIQ_PROX_THRESHOLD", "WATCH_PROX_THRESHOLD", "EXEC_PROX_THRESHOLD", "QUOTE_PROX_CUTOFF",
    "MIN_PROFIT_NET_USD", "SAFETY_BUFFER_USD", "MAX_REPAY_USD", "GAS_LIMIT", "GAS_PRICE_MULTIPLIER",
    "SLIPPAGE_BPS", "FLASHLOAN_FEE_BPS", "ETH_PRICE_USD", "ETH_USD_MAX_AGE_SEC", "ETH_PRICE_MAX_AGE_SEC",
    "ALLOW_EXEC_WITH_DEGRADED_PRICING", "CALLDATA_BYTES", "L1_FEE_ENABLED", "BONUS_BETA", "BONUS_CAP",
    "PROFIT_WORKERS", "QUOTE_ENABLED", "QUOTE_FEES", "QUOTE_MAX_FEES_PER_HOP", "PLAN_MAX_OPP_AGE_SEC",
    "PLAN_MAX_EXEC_ORDERS", "HEALTHY_COOLDOWN_SEC", "ORDER_DEADLINE_SEC", "REFERRAL_CODE",
    "AAVE_REFERRAL_CODE", "EXEC_ENABLED", "EXEC_MAX_PLAN_AGE_SEC", "MAX_TX_GAS_PRICE_WEI",
    "TX_PRIORITY_FEE_WEI", "PREFLIGHT_MAX_ARTIFACT_AGE_SEC",
]


def chain_entry(**overrides):
    entry = {
        "chain_id": 42161,
        "rpc_urls": ["https://arb1.example.org", "https://arb2.example.org"],
        "gas_config": {"type": "eip1559"},
        "contracts": {
            "multicall3": MULTICALL3,
            "morpho_blue": MORPHO,
            "quoter_v2": QUOTER,
        },
        "quote_intermediates": {"USDT": USDT},
        "unsupported_tokens": ["0xDDb46999F8891663a8F2828d25298f70416d7610"],
    }
    entry.update(overrides)
    return entry


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def write_config(tmp_path):
    def write(payload):
        path = tmp_path / "chains.json"
        path.write_bytes(orjson.dumps(payload))
        return ConfigLoader(config_path=str(path), env_path=str(tmp_path / ".env"))

    return write


class TestChainConfig:

    def test_loads_chain(self, write_config):
        chain = write_config({"ARBITRUM": chain_entry()}).get_chain_config("arbitrum")

        assert chain.name == "ARBITRUM"
        assert chain.chain_id == 42161
        assert chain.rpc_urls == ["https://arb1.example.org", "https://arb2.example.org"]
        assert chain.gas_config.type == "eip1559"
        assert chain.contracts.quoter_v2 == QUOTER
        assert chain.quote_intermediates == {"USDT": USDT}
        assert chain.unsupported_tokens == ["0xddb46999f8891663a8f2828d25298f70416d7610"]
        assert chain.private_key is None

    def test_rpc_override(self, write_config, monkeypatch):
        monkeypatch.setenv("ARBITRUM_RPC_OVERRIDE", "https://a.example.org, https://b.example.org,")

        chain = write_config({"ARBITRUM": chain_entry()}).get_chain_config("ARBITRUM")

        assert chain.rpc_urls == ["https://a.example.org", "https://b.example.org"]

    def test_contract_env_overrides(self, write_config, monkeypatch):
        monkeypatch.setenv("EXECUTOR_ADDR", EXECUTOR)
        monkeypatch.setenv("UNISWAP_V3_QUOTER_V2", USDC)

        chain = write_config({"ARBITRUM": chain_entry()}).get_chain_config("ARBITRUM")

        assert chain.contracts.executor == EXECUTOR
        assert chain.contracts.quoter_v2 == USDC

    def test_unknown_chain(self, write_config):
        with pytest.raises(ConfigValidationError):
            write_config({"ARBITRUM": chain_entry()}).get_chain_config("BASE")

    def test_missing_field(self, write_config):
        entry = chain_entry()
        del entry["contracts"]

        with pytest.raises(ConfigValidationError):
            write_config({"ARBITRUM": entry}).get_chain_config("ARBITRUM")

    def test_invalid_gas_type(self, write_config):
        with pytest.raises(ConfigValidationError):
            write_config({"ARBITRUM": chain_entry(gas_config={"type": "magic"})}).get_chain_config("ARBITRUM")

    def test_invalid_contract_address(self, write_config):
        contracts = {"multicall3": MULTICALL3, "morpho_blue": "0x1234", "quoter_v2": QUOTER}

        with pytest.raises(ConfigValidationError):
            write_config({"ARBITRUM": chain_entry(contracts=contracts)}).get_chain_config("ARBITRUM")

    def test_empty_rpc_list(self, write_config):
        with pytest.raises(ConfigValidationError):
            write_config({"ARBITRUM": chain_entry(rpc_urls=[])}).get_chain_config("ARBITRUM")

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigValidationError):
            ConfigLoader(config_path=str(tmp_path / "missing.json"), env_path=str(tmp_path / ".env"))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "chains.json"
        path.write_text("{broken")

        with pytest.raises(ConfigValidationError):
            ConfigLoader(config_path=str(path), env_path=str(tmp_path / ".env"))


class TestPrivateKey:

    def test_real_key_loaded(self, write_config, monkeypatch):
        monkeypatch.setenv("PRIVATE_KEY", TEST_PRIVATE_KEY)

        loader = write_config({"ARBITRUM": chain_entry()})

        assert loader.has_private_key
        assert loader.get_chain_config("ARBITRUM").private_key == TEST_PRIVATE_KEY

    @pytest.mark.parametrize("value", ["0xREPLACE_ME", "0x", "short", "   "])
    def test_placeholder_key_ignored(self, write_config, monkeypatch, value):
        monkeypatch.setenv("PRIVATE_KEY", value)

        assert not write_config({"ARBITRUM": chain_entry()}).has_private_key


class TestSettings:

    def test_defaults(self, write_config):
        assert write_config({}).get_settings() == LiquidationSettings()

    def test_required_net(self):
        assert LiquidationSettings(min_profit_net_usd=3.0, safety_buffer_usd=1.5).required_net_usd == 4.5

    def test_env_values(self, write_config, monkeypatch):
        monkeypatch.setenv("LIQ_PROX_THRESHOLD", "0.9")
        monkeypatch.setenv("EXEC_ENABLED", "yes")
        monkeypatch.setenv("QUOTE_FEES", "500, 3000,,100")
        monkeypatch.setenv("MAX_TX_GAS_PRICE_WEI", "2e10")
        monkeypatch.setenv("PLAN_MAX_EXEC_ORDERS", "999")
        monkeypatch.setenv("ETH_PRICE_USD", "3100.5")

        settings = write_config({}).get_settings()

        assert settings.watch_proximity == 0.9
        assert settings.quote_proximity_cutoff == 0.9
        assert settings.exec_enabled
        assert settings.quote_fees == [500, 3000, 100]
        assert settings.max_tx_gas_price_wei == 20_000_000_000
        assert settings.plan_max_exec_orders == 200
        assert settings.eth_price_usd == 3100.5

    def test_explicit_quote_cutoff(self, write_config, monkeypatch):
        monkeypatch.setenv("LIQ_PROX_THRESHOLD", "0.9")
        monkeypatch.setenv("QUOTE_PROX_CUTOFF", "0.97")

        settings = write_config({}).get_settings()

        assert settings.quote_proximity_cutoff == 0.97

    @pytest.mark.parametrize("name,value", [
        ("EXEC_ENABLED", "maybe"),
        ("MIN_PROFIT_NET_USD", "abc"),
        ("SLIPPAGE_BPS", "10000"),
        ("GAS_PRICE_MULTIPLIER", "0"),
        ("PROFIT_WORKERS", "0"),
        ("QUOTE_FEES", "500,abc"),
        ("GAS_LIMIT", "lots"),
    ])
    def test_invalid_values_are_fatal(self, write_config, monkeypatch, name, value):
        monkeypatch.setenv(name, value)

        with pytest.raises(ConfigValidationError):
            write_config({}).get_settings()


@pytest.mark.parametrize("value,expected", [
    (WETH, True),
    (WETH.lower(), True),
    ("0x1234", False),
    (None, False),
    ("", False),
])
def test_is_valid_address(value, expected):
    assert is_valid_address(value) == expected
