"""
MorphoLiq-Core ABI 加载器

从包内 abis/ 目录加载并缓存合约 ABI，并提供基于 ABI 的调用编解码。
编解码直接使用 eth_abi，不依赖 web3 合约对象，便于在批量调用
（Multicall3）和单次 eth_call 中复用同一份调用数据。

⚡ 使用 orjson 解析 ABI 文件
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import orjson
from eth_abi import decode, encode
from web3 import Web3


class ABILoadError(Exception):
    """ABI 加载或查找失败时抛出的异常"""
    pass


# 包内 ABI 目录
ABIS_DIR = Path(__file__).resolve().parent / "abis"

# 已加载 ABI 的缓存（模块级别）
_abi_cache: Dict[str, List[Dict[str, Any]]] = {}


def get_abi_path(file_name: str) -> Path:
    """
    获取 ABI 文件的完整路径

    参数:
        file_name: ABI 文件名（带或不带 .json 扩展名）

    返回:
        ABI 文件的完整路径
    """
    if not file_name.endswith(".json"):
        file_name = f"{file_name}.json"
    return ABIS_DIR / file_name


def load_abi(file_name: str, use_cache: bool = True) -> List[Dict[str, Any]]:
    """
    从 abis 目录加载合约 ABI

    参数:
        file_name: ABI 文件名（如 "QuoterV2"、"MorphoBlue.json"）
        use_cache: 是否使用缓存的 ABI

    返回:
        ABI 列表

    异常:
        ABILoadError: 文件不存在或内容无效
    """
    if not file_name.endswith(".json"):
        file_name = f"{file_name}.json"

    if use_cache and file_name in _abi_cache:
        return _abi_cache[file_name]

    abi_path = get_abi_path(file_name)
    if not abi_path.exists():
        raise ABILoadError(f"ABI 文件不存在: {abi_path}")

    try:
        with open(abi_path, "rb") as f:
            content = orjson.loads(f.read())
    except orjson.JSONDecodeError as e:
        raise ABILoadError(f"{abi_path} 中的 JSON 格式无效: {e}") from e

    # 兼容 {"abi": [...]} 包装格式（Hardhat artifacts）
    if isinstance(content, dict) and "abi" in content:
        content = content["abi"]

    if not isinstance(content, list):
        raise ABILoadError(
            f"{file_name} 中的 ABI 格式无效。期望列表，得到 {type(content).__name__}"
        )

    if use_cache:
        _abi_cache[file_name] = content
    return content


# =====================================================
# 基于 ABI 的调用编解码
# =====================================================

def get_function_by_name(
    abi: List[Dict[str, Any]],
    function_name: str,
) -> Optional[Dict[str, Any]]:
    """通过名称在 ABI 中查找函数定义"""
    for entry in abi:
        if entry.get("type") == "function" and entry.get("name") == function_name:
            return entry
    return None


def canonical_type(param: Dict[str, Any]) -> str:
    """
    将 ABI 参数展开为 eth_abi 可用的类型字符串

    tuple 会被递归展开为 "(address,uint256,...)"，保留数组后缀。
    """
    abi_type = param.get("type", "")
    if abi_type.startswith("tuple"):
        suffix = abi_type[len("tuple"):]
        inner = ",".join(canonical_type(c) for c in param.get("components", []))
        return f"({inner}){suffix}"
    return abi_type


def _function_entry(abi: List[Dict[str, Any]], function_name: str) -> Dict[str, Any]:
    entry = get_function_by_name(abi, function_name)
    if entry is None:
        raise ABILoadError(f"ABI 中不存在函数: {function_name}")
    return entry


def input_types(abi: List[Dict[str, Any]], function_name: str) -> List[str]:
    return [canonical_type(p) for p in _function_entry(abi, function_name).get("inputs", [])]


def output_types(abi: List[Dict[str, Any]], function_name: str) -> List[str]:
    return [canonical_type(p) for p in _function_entry(abi, function_name).get("outputs", [])]


def function_selector(abi: List[Dict[str, Any]], function_name: str) -> bytes:
    """
    计算 4 字节函数选择器

    签名中的 tuple 使用展开后的规范形式，与 Solidity 一致。
    """
    signature = f"{function_name}({','.join(input_types(abi, function_name))})"
    return bytes(Web3.keccak(text=signature)[:4])


def encode_call(
    abi: List[Dict[str, Any]],
    function_name: str,
    args: Sequence[Any] = (),
) -> bytes:
    """
    编码函数调用数据（选择器 + 参数）

    参数:
        abi: 合约 ABI
        function_name: 函数名
        args: 位置参数；tuple 参数必须以 tuple/list 传入

    返回:
        调用数据字节
    """
    types = input_types(abi, function_name)
    if len(types) != len(args):
        raise ABILoadError(
            f"{function_name} 参数数量不匹配: 期望 {len(types)}，得到 {len(args)}"
        )
    return function_selector(abi, function_name) + encode(types, list(args))


def decode_result(
    abi: List[Dict[str, Any]],
    function_name: str,
    data: bytes,
) -> Tuple[Any, ...]:
    """解码函数返回数据"""
    return tuple(decode(output_types(abi, function_name), data))
