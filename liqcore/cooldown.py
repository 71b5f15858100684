"""
健康冷却存储

模拟时报 "position is healthy" 的候选在冷却窗口内不再尝试执行。
记录格式: candidate_id → 最后一次被判定健康的 unix 秒。
读取时自动清理过期条目。
"""

import logging
import threading
import time
from pathlib import Path
from typing import Dict, Optional

import orjson

from .artifacts import COOLDOWN_FILE, ArtifactError, read_json, resolve_data_dir, write_json

logger = logging.getLogger(__name__)


class CooldownStore:
    """
    冷却存储基类

    子类实现 _load / _save；窗口 <= 0 时冷却被禁用。
    """

    def __init__(self, window_sec: float):
        self.window_sec = float(window_sec)
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.window_sec > 0

    def _load(self) -> Dict[str, float]:
        raise NotImplementedError

    def _save(self, entries: Dict[str, float]) -> None:
        raise NotImplementedError

    def snapshot(self, now: Optional[float] = None) -> Dict[str, float]:
        """返回仍在冷却中的条目，并清理过期条目"""
        if not self.enabled:
            return {}
        now = time.time() if now is None else now
        with self._lock:
            entries = self._load()
            active = {k: v for k, v in entries.items() if now - v <= self.window_sec}
            if len(active) != len(entries):
                self._save(active)
                logger.debug(f"清理过期冷却条目: {len(entries) - len(active)}")
        return active

    def mark(self, candidate_id: str, now: Optional[float] = None) -> None:
        """记录候选被判定为健康"""
        if not self.enabled:
            return
        now = time.time() if now is None else now
        with self._lock:
            entries = self._load()
            entries[candidate_id] = float(now)
            self._save(entries)
        logger.info(f"🧊 冷却 {self.window_sec:g}s: {candidate_id}")

    def is_cooling(self, candidate_id: str, now: Optional[float] = None) -> bool:
        return candidate_id in self.snapshot(now)

    def remaining(self, candidate_id: str, now: Optional[float] = None) -> float:
        """剩余冷却秒数（不在冷却中返回 0）"""
        now = time.time() if now is None else now
        seen = self.snapshot(now).get(candidate_id)
        if seen is None:
            return 0.0
        return max(0.0, self.window_sec - (now - seen))


class InMemoryCooldownStore(CooldownStore):
    """进程内冷却存储（测试与单次运行）"""

    def __init__(self, window_sec: float, entries: Optional[Dict[str, float]] = None):
        super().__init__(window_sec)
        self._entries: Dict[str, float] = dict(entries or {})

    def _load(self) -> Dict[str, float]:
        return dict(self._entries)

    def _save(self, entries: Dict[str, float]) -> None:
        self._entries = dict(entries)


class JsonFileCooldownStore(CooldownStore):
    """
    JSON 文件冷却存储（healthy_cooldown.json）

    文件损坏时记录警告并视为空。
    """

    def __init__(self, window_sec: float, path: Optional[Path] = None):
        super().__init__(window_sec)
        self.path = Path(path) if path is not None else resolve_data_dir() / COOLDOWN_FILE

    def _load(self) -> Dict[str, float]:
        if not self.path.exists():
            return {}
        try:
            raw = read_json(self.path)
        except ArtifactError as e:
            logger.warning(f"冷却文件无效，已忽略: {e}")
            return {}
        if not isinstance(raw, dict):
            return {}

        entries: Dict[str, float] = {}
        for key, value in raw.items():
            try:
                entries[str(key)] = float(value)
            except (TypeError, ValueError):
                continue
        return entries

    def _save(self, entries: Dict[str, float]) -> None:
        try:
            write_json(self.path, entries)
        except (OSError, orjson.JSONEncodeError) as e:
            logger.warning(f"写入冷却文件失败: {e}")
