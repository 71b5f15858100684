"""
Multicall 批量调用辅助模块

功能：
- 使用 Multicall3 aggregate3 在一次 eth_call 中批量执行多个只读调用
- allowFailure=true：单个调用回滚不影响整批
- 整批失败（传输错误、回滚、解码失败）时，所有调用都标记为失败，不抛出异常

Multicall3 地址（所有 EVM 链通用）：0xcA11bde05977b3631167028862bE2a173976CA11

使用示例：
    multicall = Multicall(network)
    results = await multicall.aggregate([
        (quoter_address, call_data_1),
        (quoter_address, call_data_2),
    ])
"""

import logging
from typing import List, Optional, Sequence, Tuple

from eth_abi import decode
from web3 import Web3

from liqutils.abi_loader import decode_result, encode_call

logger = logging.getLogger(__name__)


# Multicall3 合约地址（所有 EVM 链通用）
MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"

# Multicall3 ABI（只需要 aggregate3 函数）
MULTICALL3_ABI = [
    {
        "inputs": [
            {
                "components": [
                    {"name": "target", "type": "address"},
                    {"name": "allowFailure", "type": "bool"},
                    {"name": "callData", "type": "bytes"}
                ],
                "name": "calls",
                "type": "tuple[]"
            }
        ],
        "name": "aggregate3",
        "outputs": [
            {
                "components": [
                    {"name": "success", "type": "bool"},
                    {"name": "returnData", "type": "bytes"}
                ],
                "name": "returnData",
                "type": "tuple[]"
            }
        ],
        "stateMutability": "payable",
        "type": "function"
    },
]

# 单个调用：(目标合约地址, 调用数据)
Call = Tuple[str, bytes]
# 单个结果：(是否成功, 返回数据)
CallResult = Tuple[bool, bytes]


class Multicall:
    """
    Multicall 批量调用辅助类

    通过 NetworkManager.call_contract 发送 aggregate3，
    因此同样享有超时、重试和 RPC 故障转移。
    """

    def __init__(self, network, address: str = MULTICALL3_ADDRESS):
        """
        参数：
            network: 提供 call_contract(address, data) 的网络管理器
            address: Multicall3 合约地址
        """
        self.network = network
        self.address = Web3.to_checksum_address(address)
        self.last_batch_error: Optional[str] = None

    async def aggregate(
        self,
        calls: Sequence[Call],
        allow_failure: bool = True,
    ) -> List[CallResult]:
        """
        批量执行多个合约调用

        参数：
            calls: 调用列表，每个元素为 (目标合约地址, 调用数据)
            allow_failure: 是否允许单个调用失败

        返回：
            与 calls 等长的结果列表，每个元素为 (是否成功, 返回数据)
        """
        self.last_batch_error = None
        if not calls:
            return []

        formatted_calls = [
            (
                Web3.to_checksum_address(target),
                allow_failure,
                call_data if isinstance(call_data, bytes) else bytes.fromhex(call_data.replace("0x", "")),
            )
            for target, call_data in calls
        ]

        try:
            data = encode_call(MULTICALL3_ABI, "aggregate3", [formatted_calls])
            raw = await self.network.call_contract(self.address, data)
            (results,) = decode_result(MULTICALL3_ABI, "aggregate3", raw)
        except Exception as e:
            self.last_batch_error = f"{type(e).__name__}: {e}"
            logger.warning(f"Multicall 批量调用失败（{len(calls)} 个调用全部记为失败）: {self.last_batch_error}")
            return [(False, b"") for _ in calls]

        if len(results) != len(calls):
            self.last_batch_error = f"结果数量不匹配: {len(results)} != {len(calls)}"
            logger.warning(f"Multicall {self.last_batch_error}")
            return [(False, b"") for _ in calls]

        return [(bool(r[0]), bytes(r[1])) for r in results]


def decode_uint(return_data: bytes) -> Optional[int]:
    """
    解码单个 uint256 返回值

    返回：
        数值，数据不足或格式无效时返回 None
    """
    if len(return_data) < 32:
        return None
    try:
        (value,) = decode(["uint256"], return_data[:32])
        return int(value)
    except Exception:
        return None
