"""
本文件用于读取项目根目录的 `config.yaml`，作为 `Settings` 的一个配置来源。
主要函数:
- `load_yaml_dict`: 从 YAML 文件读取为字典（不存在或为空则返回空字典）
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import yaml

from app.core.exceptions import ConfigurationError


def load_yaml_dict(file_path: Path) -> Dict[str, Any]:
    if not file_path.exists():
        return {}

    raw_text = file_path.read_text(encoding="utf-8").strip()
    if not raw_text:
        return {}

    try:
        data = yaml.safe_load(raw_text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"{file_path.name} 解析失败: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{file_path.name} 顶层必须为映射（key-value）结构")
    return data
