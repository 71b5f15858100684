"""
MorphoLiq-Core 配置加载器

负责加载和验证链配置以及环境变量中的敏感信息与策略参数。
将静态 JSON 配置（config/chains.json）与环境变量结合，实现安全的凭证管理。

配置缺失或无效属于致命错误：在启动时抛出 ConfigValidationError，不做重试。
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson
from dotenv import load_dotenv
from web3 import Web3


@dataclass
class GasConfig:
    """交易费用模型: "eip1559" 或 "legacy"（legacy 链只用 gasPrice）"""

    type: str


@dataclass
class ContractAddresses:
    """链上协议合约地址"""

    multicall3: str
    morpho_blue: str
    quoter_v2: str
    eth_usd_feed: Optional[str] = None
    arb_gas_info: Optional[str] = None
    executor: Optional[str] = None


@dataclass
class ChainConfig:
    """单个区块链的完整配置"""

    name: str
    chain_id: int
    rpc_urls: List[str]
    gas_config: GasConfig
    contracts: ContractAddresses

    # 报价中间代币（符号 -> 地址）
    quote_intermediates: Dict[str, str] = field(default_factory=dict)
    # 不支持的代币（小写地址）
    unsupported_tokens: List[str] = field(default_factory=list)

    # 敏感信息（从环境变量加载）
    private_key: Optional[str] = None

    # 运行时设置
    rpc_timeout: int = 10
    max_retries: int = 3


@dataclass
class LiquidationSettings:
    """
    清算流水线的策略参数

    全部来自环境变量，默认值与 .env.example 一致。
    """

    # 接近度阈值
    watch_proximity: float = 0.94
    exec_proximity: float = 1.0
    quote_proximity_cutoff: float = 0.94

    # 利润模型
    min_profit_net_usd: float = 2.0
    safety_buffer_usd: float = 2.0
    max_repay_usd: float = 10_000.0
    gas_limit: int = 1_200_000
    gas_price_multiplier: float = 1.5
    slippage_bps: int = 50
    flashloan_fee_bps: int = 5
    eth_price_usd: Optional[float] = None
    eth_usd_max_age_sec: int = 180
    allow_exec_with_degraded_pricing: bool = False
    calldata_bytes: int = 64
    l1_fee_enabled: bool = True
    bonus_beta: float = 0.3
    bonus_cap: float = 1.15
    profit_workers: int = 5

    # 报价
    quote_enabled: bool = True
    quote_fees: List[int] = field(default_factory=lambda: [500, 3000, 10000])
    quote_max_fees_per_hop: int = 3

    # 计划
    plan_max_opp_age_sec: float = 60.0
    plan_max_exec_orders: int = 25
    healthy_cooldown_sec: float = 900.0
    order_deadline_sec: int = 180
    referral_code: int = 0

    # 执行
    exec_enabled: bool = False
    exec_max_plan_age_sec: float = 30.0
    max_tx_gas_price_wei: int = 10_000_000_000
    tx_priority_fee_wei: int = 3_000_000_000
    preflight_max_artifact_age_sec: float = 180.0

    @property
    def required_net_usd(self) -> float:
        """执行所需的最低净利润（最低利润 + 安全缓冲）"""
        return self.min_profit_net_usd + self.safety_buffer_usd


class ConfigValidationError(Exception):
    """配置验证失败时抛出的异常"""
    pass


# =====================================================
# 环境变量解析
# =====================================================

_TRUTHY = ("1", "true", "yes", "y", "on")
_FALSY = ("0", "false", "no", "n", "off")


def _env_raw(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


def _env_float(name: str, default: float) -> float:
    raw = _env_raw(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigValidationError(f"环境变量 {name} 无效: {raw}")


def _env_opt_float(name: str) -> Optional[float]:
    raw = _env_raw(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        raise ConfigValidationError(f"环境变量 {name} 无效: {raw}")


def _env_int(name: str, default: int) -> int:
    raw = _env_raw(name)
    if raw is None:
        return default
    try:
        return int(float(raw)) if "." in raw or "e" in raw.lower() else int(raw)
    except ValueError:
        raise ConfigValidationError(f"环境变量 {name} 无效: {raw}")


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_raw(name)
    if raw is None:
        return default
    value = raw.lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ConfigValidationError(f"环境变量 {name} 无效: {raw}")


def _env_int_list(name: str, default: List[int]) -> List[int]:
    raw = _env_raw(name)
    if raw is None:
        return list(default)
    values = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            values.append(int(float(part)))
        except ValueError:
            raise ConfigValidationError(f"环境变量 {name} 中的条目无效: {part}")
    return values or list(default)


def _private_key_from_env() -> Optional[str]:
    """读取私钥；占位符或明显无效的值视为未配置"""
    value = _env_raw("PRIVATE_KEY")
    if value is None:
        return None
    if "REPLACE_ME" in value.upper() or value == "0x" or len(value) < 10:
        return None
    return value


def is_valid_address(value: Optional[str]) -> bool:
    """检查是否为 0x 开头的 20 字节十六进制地址"""
    return isinstance(value, str) and Web3.is_address(value) and len(value) == 42


class ConfigLoader:
    """
    MorphoLiq-Core 配置管理器

    从 JSON 文件加载链配置，并与环境变量中的敏感信息和策略参数结合。

    使用示例:
        >>> loader = ConfigLoader()
        >>> chain = loader.get_chain_config("ARBITRUM")
        >>> settings = loader.get_settings()
        >>> print(chain.chain_id, settings.required_net_usd)
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        env_path: Optional[str] = None
    ) -> None:
        """
        初始化配置加载器

        参数:
            config_path: chains.json 文件路径，默认为 config/chains.json
            env_path: .env 文件路径，默认为项目根目录的 .env
        """
        self._project_root = self._find_project_root()

        env_file = Path(env_path) if env_path else self._project_root / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        config_file = Path(config_path) if config_path else self._project_root / "config" / "chains.json"
        self._raw_config = self._load_json_config(config_file)

        self._chain_cache: Dict[str, ChainConfig] = {}

        self._private_key = _private_key_from_env()
        self._rpc_timeout = _env_int("RPC_TIMEOUT", 10)
        self._max_retries = _env_int("MAX_RETRIES", 3)

    def _find_project_root(self) -> Path:
        """向上查找包含 config 文件夹或 .git 的项目根目录"""
        current = Path(__file__).resolve().parent
        for _ in range(5):
            if (current / "config").exists() or (current / ".git").exists():
                return current
            current = current.parent
        return Path(__file__).resolve().parent.parent

    def _load_json_config(self, path: Path) -> Dict[str, Any]:
        """
        加载并验证 JSON 配置文件

        异常:
            ConfigValidationError: 文件不存在或 JSON 格式无效
        """
        if not path.exists():
            raise ConfigValidationError(f"配置文件不存在: {path}")

        try:
            with open(path, "rb") as f:
                config = orjson.loads(f.read())
        except orjson.JSONDecodeError as e:
            raise ConfigValidationError(f"{path} 中的 JSON 格式无效: {e}")

        if not isinstance(config, dict):
            raise ConfigValidationError("配置必须是一个 JSON 对象")

        return config

    def _validate_chain_config(self, name: str, config: Dict[str, Any]) -> None:
        """
        验证单个链的配置

        异常:
            ConfigValidationError: 缺少必需字段或字段无效
        """
        required_fields = ["chain_id", "rpc_urls", "gas_config", "contracts"]

        for field_name in required_fields:
            if field_name not in config:
                raise ConfigValidationError(
                    f"链 {name} 的配置中缺少必需字段 '{field_name}'"
                )

        if not isinstance(config["rpc_urls"], list):
            raise ConfigValidationError(f"链 {name} 的 rpc_urls 必须是列表")

        gas_type = config["gas_config"].get("type")
        if gas_type not in ("eip1559", "legacy"):
            raise ConfigValidationError(
                f"链 {name} 的 gas_config type 无效: 必须是 'eip1559' 或 'legacy'"
            )

        for key in ("multicall3", "morpho_blue", "quoter_v2"):
            if key not in config["contracts"]:
                raise ConfigValidationError(f"链 {name} 缺少合约地址 '{key}'")

    def _get_rpc_override(self, chain_name: str) -> Optional[List[str]]:
        """
        从环境变量获取 RPC URL 覆盖配置

        优先 {CHAIN}_RPC_OVERRIDE（逗号分隔），其次 ARB_RPC_URL。
        """
        override = os.getenv(f"{chain_name}_RPC_OVERRIDE") or os.getenv("ARB_RPC_URL")
        if override:
            urls = [url.strip() for url in override.split(",") if url.strip()]
            return urls or None
        return None

    def _parse_gas_config(self, raw_config: Dict[str, Any]) -> GasConfig:
        return GasConfig(type=raw_config.get("type", "legacy"))

    def _parse_contracts(self, chain_name: str, raw: Dict[str, Any]) -> ContractAddresses:
        """解析合约地址，环境变量可覆盖 Morpho / Quoter / Executor"""
        contracts = ContractAddresses(
            multicall3=raw["multicall3"],
            morpho_blue=os.getenv("MORPHO_ADDR") or raw["morpho_blue"],
            quoter_v2=os.getenv("UNISWAP_V3_QUOTER_V2") or raw["quoter_v2"],
            eth_usd_feed=raw.get("eth_usd_feed"),
            arb_gas_info=os.getenv("ARB_GASINFO_ADDR") or raw.get("arb_gas_info"),
            executor=_env_raw("EXECUTOR_ADDR") or raw.get("executor"),
        )

        for key in ("multicall3", "morpho_blue", "quoter_v2"):
            value = getattr(contracts, key)
            if not is_valid_address(value):
                raise ConfigValidationError(f"链 {chain_name} 的 {key} 地址无效: {value}")

        return contracts

    def get_chain_config(self, chain_name: str) -> ChainConfig:
        """
        获取指定链的完整配置

        将静态 JSON 配置与环境变量中的敏感信息合并，结果会被缓存。

        异常:
            ConfigValidationError: 链不存在、没有可用 RPC 或配置无效
        """
        chain_name = chain_name.upper()

        if chain_name in self._chain_cache:
            return self._chain_cache[chain_name]

        if chain_name not in self._raw_config:
            available = ", ".join(self._raw_config.keys())
            raise ConfigValidationError(
                f"链 '{chain_name}' 不存在。可用的链: {available}"
            )

        raw = self._raw_config[chain_name]
        self._validate_chain_config(chain_name, raw)

        rpc_urls = self._get_rpc_override(chain_name) or raw["rpc_urls"]
        if not rpc_urls:
            raise ConfigValidationError(f"链 {chain_name} 必须至少配置一个 RPC URL")

        config = ChainConfig(
            name=chain_name,
            chain_id=_env_int("CHAIN_ID", raw["chain_id"]),
            rpc_urls=rpc_urls,
            gas_config=self._parse_gas_config(raw["gas_config"]),
            contracts=self._parse_contracts(chain_name, raw["contracts"]),
            quote_intermediates=dict(raw.get("quote_intermediates", {})),
            unsupported_tokens=[t.lower() for t in raw.get("unsupported_tokens", [])],
            private_key=self._private_key,
            rpc_timeout=self._rpc_timeout,
            max_retries=self._max_retries,
        )

        self._chain_cache[chain_name] = config
        return config

    def get_settings(self) -> LiquidationSettings:
        """
        从环境变量构建策略参数

        异常:
            ConfigValidationError: 任一数值无效
        """
        watch = _env_float("LIQ_PROX_THRESHOLD", _env_float("WATCH_PROX_THRESHOLD", 0.94))
        settings = LiquidationSettings(
            watch_proximity=watch,
            exec_proximity=_env_float("EXEC_PROX_THRESHOLD", 1.0),
            quote_proximity_cutoff=_env_float("QUOTE_PROX_CUTOFF", watch),
            min_profit_net_usd=_env_float("MIN_PROFIT_NET_USD", 2.0),
            safety_buffer_usd=_env_float("SAFETY_BUFFER_USD", 2.0),
            max_repay_usd=_env_float("MAX_REPAY_USD", 10_000.0),
            gas_limit=_env_int("GAS_LIMIT", 1_200_000),
            gas_price_multiplier=_env_float("GAS_PRICE_MULTIPLIER", 1.5),
            slippage_bps=_env_int("SLIPPAGE_BPS", 50),
            flashloan_fee_bps=_env_int("FLASHLOAN_FEE_BPS", 5),
            eth_price_usd=_env_opt_float("ETH_PRICE_USD"),
            eth_usd_max_age_sec=_env_int("ETH_USD_MAX_AGE_SEC", _env_int("ETH_PRICE_MAX_AGE_SEC", 180)),
            allow_exec_with_degraded_pricing=_env_bool("ALLOW_EXEC_WITH_DEGRADED_PRICING", False),
            calldata_bytes=_env_int("CALLDATA_BYTES", 64),
            l1_fee_enabled=_env_bool("L1_FEE_ENABLED", True),
            bonus_beta=_env_float("BONUS_BETA", 0.3),
            bonus_cap=_env_float("BONUS_CAP", 1.15),
            profit_workers=_env_int("PROFIT_WORKERS", 5),
            quote_enabled=_env_bool("QUOTE_ENABLED", True),
            quote_fees=_env_int_list("QUOTE_FEES", [500, 3000, 10000]),
            quote_max_fees_per_hop=_env_int("QUOTE_MAX_FEES_PER_HOP", 3),
            plan_max_opp_age_sec=_env_float("PLAN_MAX_OPP_AGE_SEC", 60.0),
            plan_max_exec_orders=max(1, min(200, _env_int("PLAN_MAX_EXEC_ORDERS", 25))),
            healthy_cooldown_sec=_env_float("HEALTHY_COOLDOWN_SEC", 900.0),
            order_deadline_sec=_env_int("ORDER_DEADLINE_SEC", 180),
            referral_code=_env_int("REFERRAL_CODE", _env_int("AAVE_REFERRAL_CODE", 0)),
            exec_enabled=_env_bool("EXEC_ENABLED", False),
            exec_max_plan_age_sec=_env_float("EXEC_MAX_PLAN_AGE_SEC", 30.0),
            max_tx_gas_price_wei=_env_int("MAX_TX_GAS_PRICE_WEI", 10_000_000_000),
            tx_priority_fee_wei=_env_int("TX_PRIORITY_FEE_WEI", 3_000_000_000),
            preflight_max_artifact_age_sec=_env_float("PREFLIGHT_MAX_ARTIFACT_AGE_SEC", 180.0),
        )

        if settings.gas_price_multiplier <= 0:
            raise ConfigValidationError(
                f"GAS_PRICE_MULTIPLIER 必须为正数: {settings.gas_price_multiplier}"
            )
        if not 0 <= settings.slippage_bps < 10_000:
            raise ConfigValidationError(f"SLIPPAGE_BPS 超出范围: {settings.slippage_bps}")
        if settings.profit_workers < 1:
            raise ConfigValidationError(f"PROFIT_WORKERS 必须 >= 1: {settings.profit_workers}")
        if settings.gas_limit <= 0:
            raise ConfigValidationError(f"GAS_LIMIT 必须为正数: {settings.gas_limit}")

        return settings

    @property
    def has_private_key(self) -> bool:
        """检查是否已配置私钥"""
        return self._private_key is not None
