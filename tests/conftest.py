"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# 假 worker 脚本
FAKE_AGENT = Path(__file__).parent / "fixtures" / "fake_agent.py"


@pytest.fixture
def project_root() -> Path:
    """项目根目录。"""
    return PROJECT_ROOT


@pytest.fixture
def fake_agent_command() -> tuple[str, ...]:
    """以当前解释器运行假 worker 的命令前缀。"""
    return (sys.executable, str(FAKE_AGENT))


@pytest.fixture
def make_config(fake_agent_command):
    """构造使用假 worker 的配置，extra 为传给假 worker 的选项。"""
    from juggle_supervisor.config import Config

    def _make(*extra: str, **overrides) -> Config:
        overrides.setdefault("kill_timeout", 2.0)
        overrides.setdefault("listen_timeout", 0.05)
        return Config(agent_command=(*fake_agent_command, *extra), **overrides)

    return _make
