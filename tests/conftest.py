"""
drydock 测试配置

包含通用的 pytest fixtures 和配置。
"""

import pytest

from drydock.config import settings
from drydock.drivers.core.base import ContainerConfig
from drydock.drivers.mock.driver import MockDriver


# ============================================================================
# pytest 标记注册
# ============================================================================

def pytest_configure(config):
    """注册自定义标记"""
    config.addinivalue_line(
        "markers", "integration: 集成测试，需要 Docker 环境"
    )
    config.addinivalue_line(
        "markers", "unit: 单元测试，不需要外部依赖"
    )


# ============================================================================
# 通用 fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """每个测试使用默认的运行时设置"""
    monkeypatch.setattr(settings, "min_runtime_version", None)
    monkeypatch.setattr(settings, "default_registry", "docker.io")
    monkeypatch.setattr(settings, "stop_timeout", 10)
    monkeypatch.setattr(settings, "stream_chunk_size", 4)


@pytest.fixture
def mock_driver() -> MockDriver:
    """带有基础镜像 base:1.0 的内存驱动"""
    driver = MockDriver()
    driver.add_image("base:1.0", b"base image layer")
    return driver


@pytest.fixture
def base_config() -> ContainerConfig:
    """最小的构建容器配置"""
    return ContainerConfig(image="base:1.0")


class FailingWriter:
    """在写入指定字节数后抛出 OSError 的目标流"""

    def __init__(self, fail_after: int = 0):
        self.buffer = bytearray()
        self.fail_after = fail_after
        self.flushed = False

    def write(self, data):
        if len(self.buffer) + len(data) > self.fail_after:
            raise OSError(28, "No space left on device")
        self.buffer.extend(data)
        return len(data)

    def flush(self):
        self.flushed = True


@pytest.fixture
def failing_writer():
    """写入第一个数据块后就失败的目标流"""
    return FailingWriter(fail_after=4)
