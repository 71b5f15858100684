"""
MorphoLiq-Core 产物读写

每个阶段把结果写入数据目录（DATA_DIR，默认 data/）：
opportunities.csv、tx_sim.json、tx_plan.json、tx_exec.json、healthy_cooldown.json。

⚡ 使用 orjson 序列化 JSON；大整数一律以十进制字符串写出
"""

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import orjson

logger = logging.getLogger(__name__)

CANDIDATES_FILE = "candidates.jsonl"
OPPORTUNITIES_FILE = "opportunities.csv"
TX_SIM_FILE = "tx_sim.json"
TX_PLAN_FILE = "tx_plan.json"
TX_EXEC_FILE = "tx_exec.json"
COOLDOWN_FILE = "healthy_cooldown.json"


class ArtifactError(Exception):
    """产物缺失或格式无效时抛出的异常"""
    pass


def resolve_data_dir() -> Path:
    raw = (os.getenv("DATA_DIR") or "").strip()
    return Path(raw) if raw else Path("data")


def data_path(*parts: str, data_dir: Optional[Path] = None) -> Path:
    """返回数据目录下的路径，并确保目录存在"""
    base = Path(data_dir) if data_dir is not None else resolve_data_dir()
    base.mkdir(parents=True, exist_ok=True)
    return base.joinpath(*parts)


# =====================================================
# 时间戳
# =====================================================

def utc_now_iso(now: Optional[float] = None) -> str:
    """ISO-8601 UTC 时间戳（毫秒精度，Z 结尾）"""
    moment = datetime.fromtimestamp(now, tz=timezone.utc) if now is not None else datetime.now(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> float:
    """
    解析 ISO-8601 时间戳为 unix 秒

    异常:
        ArtifactError: 格式无效
    """
    if not isinstance(value, str) or not value:
        raise ArtifactError(f"时间戳无效: {value!r}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError as e:
        raise ArtifactError(f"时间戳无效: {value!r}") from e
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def age_seconds(generated_at: str, now: float) -> float:
    return now - parse_iso(generated_at)


# =====================================================
# JSON / JSONL
# =====================================================

def write_json(path: Path, payload: Any) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.write(orjson.dumps(payload, option=orjson.OPT_INDENT_2))


def read_json(path: Path) -> Any:
    """
    读取 JSON 文件

    异常:
        ArtifactError: 文件不存在或 JSON 无效
    """
    path = Path(path)
    if not path.exists():
        raise ArtifactError(f"文件不存在: {path}")
    try:
        with open(path, "rb") as f:
            return orjson.loads(f.read())
    except orjson.JSONDecodeError as e:
        raise ArtifactError(f"{path} 中的 JSON 格式无效: {e}") from e


def write_jsonl(path: Path, rows: Iterable[Dict[str, Any]]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        for row in rows:
            f.write(orjson.dumps(row))
            f.write(b"\n")


def read_jsonl(path: Path) -> List[Dict[str, Any]]:
    """读取 JSON Lines；空行跳过，损坏的行记录警告后跳过"""
    path = Path(path)
    if not path.exists():
        raise ArtifactError(f"文件不存在: {path}")

    rows: List[Dict[str, Any]] = []
    with open(path, "rb") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                rows.append(orjson.loads(line))
            except orjson.JSONDecodeError as e:
                logger.warning(f"{path}:{line_no} JSON 无效，已跳过: {e}")
    return rows
