#!/usr/bin/env python3
"""
机会表模块 (Opportunity Journal)

功能：
- 将每次模拟的全部机会行写入 opportunities.csv（固定列顺序）
- 供计划阶段读取
- 线程安全的文件写入

使用方法：
    journal = OpportunityJournal(data_dir)
    journal.write(result.opportunities)
    rows = journal.read()
"""

import csv
import logging
import threading
from pathlib import Path
from typing import List, Optional, Sequence

from .artifacts import OPPORTUNITIES_FILE, ArtifactError, resolve_data_dir
from .models import OPPORTUNITY_COLUMNS, Opportunity

logger = logging.getLogger(__name__)


class OpportunityJournal:
    """
    机会表管理器

    每次模拟整体覆盖写入（行已按净利润降序排序）。
    """

    def __init__(self, data_dir: Optional[Path] = None):
        """
        参数：
            data_dir: 数据目录（默认 DATA_DIR 或 data/）
        """
        self.data_dir = Path(data_dir) if data_dir is not None else resolve_data_dir()
        self.file_path = self.data_dir / OPPORTUNITIES_FILE
        self._lock = threading.Lock()

    def _ensure_directory(self) -> None:
        if not self.data_dir.exists():
            self.data_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"📁 创建数据目录: {self.data_dir}")

    def write(self, opportunities: Sequence[Opportunity]) -> Path:
        """
        写入机会表（覆盖）

        返回：
            CSV 文件路径
        """
        self._ensure_directory()
        with self._lock:
            with open(self.file_path, "w", newline="", encoding="utf-8") as f:
                writer = csv.DictWriter(f, fieldnames=OPPORTUNITY_COLUMNS)
                writer.writeheader()
                for row in opportunities:
                    writer.writerow(row.to_row())

        logger.info(f"📄 已写入 {len(opportunities)} 行机会: {self.file_path}")
        return self.file_path

    def read(self) -> List[Opportunity]:
        """
        读取机会表

        异常：
            ArtifactError: 文件不存在或缺少必需列
        """
        if not self.file_path.exists():
            raise ArtifactError(f"机会表不存在: {self.file_path}")

        with self._lock:
            with open(self.file_path, "r", newline="", encoding="utf-8") as f:
                reader = csv.DictReader(f)
                header = reader.fieldnames or []
                missing = [c for c in ("candidate_id", "net_profit_usd", "pass_exec") if c not in header]
                if missing:
                    raise ArtifactError(f"机会表缺少列: {', '.join(missing)}")
                rows = [Opportunity.from_row(row) for row in reader]

        return rows
