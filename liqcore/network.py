"""
MorphoLiq-Core 网络层

所有链上读取与交易提交都走 NetworkManager._execute_with_retry：
- 连接错误 / 超时 / HTTP 5xx：记一次失败并轮换到下一个 RPC
- HTTP 429 或节点返回的限速错误：原地指数退避
- 其它 HTTP 4xx：不重试，转成 RPCError
- ContractLogicError（合约回滚）：原样抛给调用方分类

每次调用同时受 aiohttp ClientTimeout 与 asyncio.wait_for 约束。
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

import aiohttp
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, Web3Exception
from web3.providers import AsyncHTTPProvider
from web3.types import TxParams, Wei

from .config_loader import ChainConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 连续失败达到该次数的端点在轮换时被跳过
UNHEALTHY_AFTER_FAILURES = 3

_RATE_LIMIT_HINTS = ("429", "rate", "limit")

_BACKOFF = "backoff"
_FAILOVER = "failover"


class RPCError(Exception):
    """网络层错误基类"""
    pass


class AllRPCsFailedError(RPCError):
    """重试预算在所有端点上耗尽"""
    pass


class RateLimitError(RPCError):
    """最后一次失败仍是 HTTP 429"""
    pass


@dataclass
class GasParams:
    """
    交易费用参数

    max_fee_per_gas 有值时按 EIP-1559 提交，否则按 Legacy gasPrice。
    """

    gas_limit: Optional[int] = None
    max_fee_per_gas: Optional[Wei] = None
    max_priority_fee_per_gas: Optional[Wei] = None
    gas_price: Optional[Wei] = None

    @property
    def is_eip1559(self) -> bool:
        return self.max_fee_per_gas is not None

    def to_tx_params(self) -> Dict[str, Any]:
        if self.is_eip1559:
            fees: Dict[str, Any] = {
                "maxFeePerGas": self.max_fee_per_gas,
                "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
            }
        else:
            fees = {"gasPrice": self.gas_price}
        if self.gas_limit:
            fees["gas"] = self.gas_limit
        return fees


@dataclass
class RPCHealth:
    """单个端点的请求统计"""

    url: str
    consecutive_failures: int = 0
    total_requests: int = 0
    avg_latency_ms: float = 0.0
    last_error_at: float = 0.0

    @property
    def is_healthy(self) -> bool:
        return self.consecutive_failures < UNHEALTHY_AFTER_FAILURES

    def record_success(self, latency_ms: float) -> None:
        self.total_requests += 1
        self.consecutive_failures = 0
        # EMA, alpha = 0.2
        self.avg_latency_ms = latency_ms if not self.avg_latency_ms else (
            self.avg_latency_ms + 0.2 * (latency_ms - self.avg_latency_ms)
        )

    def record_failure(self) -> None:
        self.total_requests += 1
        self.consecutive_failures += 1
        self.last_error_at = time.time()

    def reset(self) -> None:
        self.consecutive_failures = 0


def _classify(error: Exception) -> str:
    """可重试错误的处理方式：退避或切换端点"""
    if isinstance(error, aiohttp.ClientResponseError):
        return _BACKOFF if error.status == 429 else _FAILOVER
    if isinstance(error, Web3Exception):
        text = str(error).lower()
        if any(hint in text for hint in _RATE_LIMIT_HINTS):
            return _BACKOFF
    return _FAILOVER


class NetworkManager:
    """
    多端点 AsyncWeb3 封装

    用法:
        async with NetworkManager(chain) as network:
            gas_price = await network.get_gas_price()

    参数:
        config: 链配置（rpc_urls、rpc_timeout、max_retries）
        session: 外部传入的 aiohttp 会话（不会被关闭）
    """

    def __init__(
        self,
        config: ChainConfig,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config
        self.chain_id = config.chain_id

        self._rpc_urls = list(config.rpc_urls)
        self._rpc_index = 0
        self._rpc_health: Dict[str, RPCHealth] = {url: RPCHealth(url=url) for url in self._rpc_urls}

        self._session = session
        self._owns_session = session is None
        self._web3: Optional[AsyncWeb3] = None

        # 每个端点最多 max_retries 次
        self._max_retries = max(1, config.max_retries)
        self._base_delay = 0.5
        self._max_delay = 30.0
        self._call_timeout = float(config.rpc_timeout)
        self._timeout = aiohttp.ClientTimeout(total=config.rpc_timeout)
        self._switch_lock = asyncio.Lock()

    @property
    def current_rpc_url(self) -> str:
        return self._rpc_urls[self._rpc_index]

    @property
    def w3(self) -> AsyncWeb3:
        if self._web3 is None:
            raise RPCError("NetworkManager 尚未连接（先调用 connect() 或使用 async with）")
        return self._web3

    async def __aenter__(self) -> "NetworkManager":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def connect(self) -> None:
        """
        创建会话和 web3 实例，并探测一次链 ID

        探测失败只记日志：后续调用照常重试和轮换端点。
        """
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                connector=aiohttp.TCPConnector(limit=50, limit_per_host=10, keepalive_timeout=30),
            )
        await self._create_web3_instance()

        try:
            rpc_chain_id = await self.get_chain_id()
        except RPCError as e:
            logger.warning(f"{self.config.name} 连接探测失败，按降级模式继续: {e}")
            return

        if rpc_chain_id != self.chain_id:
            logger.warning(f"链 ID 不一致: 配置 {self.chain_id}，节点返回 {rpc_chain_id}")
        logger.info(f"已连接 {self.config.name} ({self.current_rpc_url})")

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
        self._web3 = None
        logger.info(f"{self.config.name} 连接已关闭")

    async def _create_web3_instance(self) -> None:
        provider = AsyncHTTPProvider(
            endpoint_uri=self.current_rpc_url,
            request_kwargs={"timeout": self._timeout},
        )
        self._web3 = AsyncWeb3(provider)

    async def _switch_to_next_rpc(self) -> None:
        """轮换到下一个健康端点；全部不健康时清零计数后照常轮换"""
        async with self._switch_lock:
            count = len(self._rpc_urls)
            candidates = [(self._rpc_index + step) % count for step in range(1, count + 1)]
            healthy = [i for i in candidates if self._rpc_health[self._rpc_urls[i]].is_healthy]

            if not healthy:
                logger.warning("所有 RPC 端点连续失败，重置健康计数")
                for health in self._rpc_health.values():
                    health.reset()
                healthy = candidates

            self._rpc_index = healthy[0]
            logger.info(f"RPC 切换 -> {self.current_rpc_url}")
            await self._create_web3_instance()

    async def _backoff(self, attempt: int, operation_name: str) -> None:
        delay = min(self._base_delay * (2 ** attempt), self._max_delay)
        logger.warning(f"{operation_name} 被限速，{delay:.2f}s 后重试")
        await asyncio.sleep(delay)

    async def _execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
    ) -> T:
        """
        执行一次 RPC 操作，按错误类型退避或轮换端点

        参数:
            operation: 无参可调用对象，每次尝试返回一个新的 awaitable
            operation_name: 日志中的操作名

        异常:
            ContractLogicError: 合约回滚，不重试
            RPCError: HTTP 4xx（429 除外）
            RateLimitError: 重试耗尽且最后一次是 429
            AllRPCsFailedError: 重试耗尽
        """
        total_attempts = self._max_retries * len(self._rpc_urls)
        last_error: Optional[Exception] = None

        for attempt in range(total_attempts):
            health = self._rpc_health[self.current_rpc_url]
            started = time.perf_counter()
            try:
                result = await asyncio.wait_for(operation(), self._call_timeout)
            except ContractLogicError:
                raise
            except aiohttp.ClientResponseError as e:
                if e.status != 429 and e.status < 500:
                    raise RPCError(f"{operation_name}: HTTP {e.status} {e.message}") from e
                last_error = e
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError, Web3Exception) as e:
                last_error = e
            else:
                health.record_success((time.perf_counter() - started) * 1000)
                return result

            if _classify(last_error) == _BACKOFF:
                await self._backoff(attempt, operation_name)
                continue

            logger.warning(
                f"{operation_name} 失败 ({attempt + 1}/{total_attempts}) @ {health.url}: {last_error!r}"
            )
            health.record_failure()
            await self._switch_to_next_rpc()

        if isinstance(last_error, aiohttp.ClientResponseError) and last_error.status == 429:
            raise RateLimitError(f"{operation_name}: 持续 HTTP 429") from last_error
        raise AllRPCsFailedError(
            f"{operation_name}: {total_attempts} 次尝试全部失败，最后错误 {last_error!r}"
        )

    # =====================================================
    # 读取
    # =====================================================

    async def get_chain_id(self) -> int:
        return int(await self._execute_with_retry(lambda: self.w3.eth.chain_id, "get_chain_id"))

    async def get_gas_price(self) -> int:
        """eth_gasPrice（wei）"""
        return int(await self._execute_with_retry(lambda: self.w3.eth.gas_price, "get_gas_price"))

    async def get_base_fee(self) -> int:
        """最新区块 baseFeePerGas；链不支持时为 0"""
        block = await self._execute_with_retry(lambda: self.w3.eth.get_block("latest"), "get_base_fee")
        return int(block.get("baseFeePerGas") or 0)

    async def get_code(self, address: str) -> bytes:
        checksum = Web3.to_checksum_address(address)
        return bytes(await self._execute_with_retry(lambda: self.w3.eth.get_code(checksum), "get_code"))

    async def get_nonce(self, address: str, block_identifier: str = "pending") -> int:
        checksum = Web3.to_checksum_address(address)
        return int(await self._execute_with_retry(
            lambda: self.w3.eth.get_transaction_count(checksum, block_identifier),
            "get_nonce",
        ))

    async def call_contract(
        self,
        contract_address: str,
        data: bytes,
        from_address: Optional[str] = None,
        block_identifier: Union[int, str] = "latest",
    ) -> bytes:
        """
        eth_call

        from_address 用于以签名者身份模拟执行合约调用。

        异常:
            ContractLogicError: 调用回滚
        """
        tx: Dict[str, Any] = {"to": Web3.to_checksum_address(contract_address), "data": data}
        if from_address:
            tx["from"] = Web3.to_checksum_address(from_address)

        raw = await self._execute_with_retry(lambda: self.w3.eth.call(tx, block_identifier), "call_contract")
        return bytes(raw)

    async def estimate_gas(self, tx_params: TxParams) -> int:
        return int(await self._execute_with_retry(lambda: self.w3.eth.estimate_gas(tx_params), "estimate_gas"))

    # =====================================================
    # 费用与提交
    # =====================================================

    async def get_eip1559_params(
        self,
        priority_fee: int,
        gas_limit: Optional[int] = None,
    ) -> GasParams:
        """
        固定小费的 EIP-1559 参数: maxFeePerGas = 2 * baseFee + tip

        legacy 链或区块没有 baseFee 时退回 Legacy gasPrice。
        """
        if self.config.gas_config.type == "legacy":
            return GasParams(gas_limit=gas_limit, gas_price=Wei(await self.get_gas_price()))

        base_fee = await self.get_base_fee()
        if not base_fee:
            logger.warning(f"{self.config.name} 无 baseFee，使用 Legacy gasPrice")
            return GasParams(gas_limit=gas_limit, gas_price=Wei(await self.get_gas_price()))

        tip = int(priority_fee)
        return GasParams(
            gas_limit=gas_limit,
            max_fee_per_gas=Wei(2 * base_fee + tip),
            max_priority_fee_per_gas=Wei(tip),
        )

    async def send_raw_transaction(self, signed_tx: bytes) -> str:
        """广播已签名交易，返回 0x 交易哈希"""
        tx_hash = await self._execute_with_retry(
            lambda: self.w3.eth.send_raw_transaction(signed_tx),
            "send_raw_transaction",
        )
        return Web3.to_hex(tx_hash)
