# =============================================================================
# utils.py - 通用工具函数
# =============================================================================
# 作业命名、时间戳、请求字典构建
# =============================================================================

import random
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def sagemaker_timestamp() -> str:
    """返回带毫秒的 UTC 时间戳，例如 2024-01-01-12-30-45-123"""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%d-%H-%M-%S-") + f"{now.microsecond // 1000:03d}"


def sagemaker_short_timestamp() -> str:
    """返回短时间戳，例如 240101-1230"""
    return datetime.now(timezone.utc).strftime("%y%m%d-%H%M")


def name_from_base(base: str, max_length: int = 63, short: bool = False) -> str:
    """
    在名称后追加时间戳，生成唯一的作业名称

    Args:
        base: 名称前缀
        max_length: 名称最大长度（SageMaker 限制为 63）
        short: 是否使用短时间戳

    Returns:
        base-timestamp 形式的名称（必要时截断 base）
    """
    timestamp = sagemaker_short_timestamp() if short else sagemaker_timestamp()
    trimmed_base = base[: max_length - len(timestamp) - 1]
    return f"{trimmed_base}-{timestamp}"


def unique_name_from_base(base: str, max_length: int = 63) -> str:
    """在名称后追加 epoch 秒和随机后缀"""
    unique = "%04x" % random.Random(uuid.uuid4().int).randrange(16**4)
    ts = str(int(time.time()))
    available_length = max_length - 2 - len(ts) - len(unique)
    trimmed = base[:available_length]
    return f"{trimmed}-{ts}-{unique}"


def base_name_from_image(image: str) -> str:
    """
    从镜像 URI 提取仓库名作为作业名前缀

    Example:
        base_name_from_image("123.dkr.ecr.us-west-2.amazonaws.com/sagemaker-xgboost:1.7-1")
        # -> "sagemaker-xgboost"
    """
    m = re.match(r"^(.+/)?([^:/]+)(:[^:]+)?$", image)
    return m.group(2) if m else image


def base_from_name(name: str) -> str:
    """去掉 name_from_base 追加的时间戳后缀"""
    m = re.match(r"^(.+)-(\d{4}-\d{2}-\d{2}-\d{2}-\d{2}-\d{2}-\d{3}|\d{6}-\d{4})", name)
    return m.group(1) if m else name


def build_dict(key: str, value: Any) -> Dict[str, Any]:
    """value 非空时返回 {key: value}，否则返回空字典"""
    if value:
        return {key: value}
    return {}


def get_config_value(key_path: str, config: Optional[dict]) -> Any:
    """按 a.b.c 路径读取嵌套字典的值，不存在时返回 None"""
    if config is None:
        return None

    current_section = config
    for key in key_path.split("."):
        if isinstance(current_section, dict) and key in current_section:
            current_section = current_section[key]
        else:
            return None
    return current_section


def to_string(obj: Any) -> str:
    return str(obj)
