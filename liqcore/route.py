"""
Uniswap V3 path codec.

A path is `token (20 bytes) | fee (3 bytes) | token (20 bytes) | ...`, the
format consumed by SwapRouter02.exactInput and QuoterV2.quoteExactInput.
"""

from typing import List, Sequence, Tuple

from web3 import Web3

MAX_FEE = 1_000_000
ADDR_SIZE = 20
FEE_SIZE = 3


class RouteEncodingError(ValueError):
    """Raised for malformed tokens, fees or path bytes."""
    pass


def _address_bytes(token: str) -> bytes:
    raw = token[2:] if token.startswith(("0x", "0X")) else token
    if len(raw) != ADDR_SIZE * 2:
        raise RouteEncodingError(f"bad token address length: {token}")
    try:
        return bytes.fromhex(raw)
    except ValueError as e:
        raise RouteEncodingError(f"bad token address: {token}") from e


def _fee_bytes(fee: int) -> bytes:
    fee = int(fee)
    if fee < 0 or fee > MAX_FEE:
        raise RouteEncodingError(f"invalid fee tier: {fee}")
    return fee.to_bytes(FEE_SIZE, "big")


def encode_v3_path(tokens: Sequence[str], fees: Sequence[int]) -> bytes:
    """
    Encode a token/fee route.

    Raises:
        RouteEncodingError: fewer than two tokens, fee count != hops,
            fee out of [0, 1_000_000], or a token that is not 20 bytes.
    """
    if len(tokens) < 2:
        raise RouteEncodingError("need at least 2 tokens")
    if len(fees) != len(tokens) - 1:
        raise RouteEncodingError(
            f"fees length mismatch: {len(fees)} fees for {len(tokens)} tokens"
        )

    out = bytearray(_address_bytes(tokens[0]))
    for fee, token in zip(fees, tokens[1:]):
        out += _fee_bytes(fee)
        out += _address_bytes(token)
    return bytes(out)


def decode_v3_path(path: bytes) -> Tuple[List[str], List[int]]:
    """Inverse of encode_v3_path; tokens come back checksummed."""
    if isinstance(path, str):
        path = path_from_hex(path)
    step = ADDR_SIZE + FEE_SIZE
    if len(path) < ADDR_SIZE + step or (len(path) - ADDR_SIZE) % step != 0:
        raise RouteEncodingError(f"bad path length: {len(path)}")

    tokens = [Web3.to_checksum_address(path[:ADDR_SIZE])]
    fees: List[int] = []
    offset = ADDR_SIZE
    while offset < len(path):
        fees.append(int.from_bytes(path[offset:offset + FEE_SIZE], "big"))
        offset += FEE_SIZE
        tokens.append(Web3.to_checksum_address(path[offset:offset + ADDR_SIZE]))
        offset += ADDR_SIZE
    return tokens, fees


def path_to_hex(path: bytes) -> str:
    return "0x" + path.hex()


def path_from_hex(value: str) -> bytes:
    raw = value[2:] if value.startswith(("0x", "0X")) else value
    try:
        return bytes.fromhex(raw)
    except ValueError as e:
        raise RouteEncodingError(f"bad path hex: {value}") from e
