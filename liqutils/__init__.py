"""
MorphoLiq-Core: 工具模块
ABI 加载与调用编解码
"""

from .abi_loader import (
    ABILoadError,
    decode_result,
    encode_call,
    get_abi_path,
    load_abi,
)

__all__ = ["ABILoadError", "decode_result", "encode_call", "get_abi_path", "load_abi"]
