"""
MorphoLiq-Core: 核心模块
Morpho Blue 清算流水线（报价 → 利润 → 订单 → 执行）
"""

from .config_loader import ConfigLoader, ConfigValidationError, LiquidationSettings
from .network import NetworkManager

__all__ = ["ConfigLoader", "ConfigValidationError", "LiquidationSettings", "NetworkManager"]
