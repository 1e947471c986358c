"""
单元测试：工具函数测试

测试镜像引用解析、版本解析和流写入相关的工具函数，不需要容器运行时。
"""

import io

import pytest
from packaging.version import Version


class TestReferenceUtils:
    """镜像引用工具函数单元测试"""

    def test_registry_of(self):
        """测试 registry_of 函数"""
        from drydock.drivers.core.utils import registry_of

        # 默认仓库
        assert registry_of("nginx") == "docker.io"
        assert registry_of("nginx:1.25") == "docker.io"
        assert registry_of("myuser/app:v1") == "docker.io"

        # 显式仓库主机
        assert registry_of("registry.example.com/team/app:v1") == "registry.example.com"
        assert registry_of("localhost:5000/app") == "localhost:5000"
        assert registry_of("localhost/app") == "localhost"

    def test_registry_of_uses_configured_default(self, monkeypatch):
        """测试默认仓库可配置"""
        from drydock.config import settings
        from drydock.drivers.core.utils import registry_of

        monkeypatch.setattr(settings, "default_registry", "mirror.internal")
        assert registry_of("nginx") == "mirror.internal"

    def test_split_reference(self):
        """测试 split_reference 函数"""
        from drydock.drivers.core.utils import split_reference

        assert split_reference("myrepo:1.0") == ("myrepo", "1.0")
        assert split_reference("myrepo") == ("myrepo", None)
        # 端口不是标签
        assert split_reference("localhost:5000/app") == ("localhost:5000/app", None)
        assert split_reference("localhost:5000/app:2") == ("localhost:5000/app", "2")
        # digest 引用保持原样
        assert split_reference("app@sha256:abcd") == ("app@sha256:abcd", None)

    def test_qualify_reference(self):
        """测试 qualify_reference 函数"""
        from drydock.drivers.core.utils import qualify_reference

        assert qualify_reference("app:1.0") == "docker.io/app:1.0"
        assert qualify_reference("quay.io/org/app") == "quay.io/org/app"


class TestVersionUtils:
    """版本解析单元测试"""

    def test_parse_runtime_version(self):
        """测试带发行版后缀的版本解析"""
        from drydock.drivers.core.utils import parse_runtime_version

        assert parse_runtime_version("24.0.7") == Version("24.0.7")
        assert parse_runtime_version("20.10.21+dfsg1") == Version("20.10.21")
        assert parse_runtime_version("18.09.1-ce") == Version("18.9.1")
        assert parse_runtime_version("v4.9.3") == Version("4.9.3")

    def test_parsed_versions_are_ordered(self):
        """测试版本可以比较"""
        from drydock.drivers.core.utils import parse_runtime_version

        assert parse_runtime_version("20.10.21") < parse_runtime_version("24.0.0")
        assert parse_runtime_version("4.10.0") > parse_runtime_version("4.9.3")

    def test_parse_runtime_version_invalid(self):
        """测试无法解析的版本"""
        from drydock.drivers.core.errors import DriverError
        from drydock.drivers.core.utils import parse_runtime_version

        with pytest.raises(DriverError):
            parse_runtime_version("dev")

        with pytest.raises(DriverError):
            parse_runtime_version("")


class TestMountUtils:
    """设备和 tmpfs 解析单元测试"""

    def test_parse_device(self):
        """测试 parse_device 函数"""
        from drydock.drivers.core.utils import parse_device

        assert parse_device("/dev/fuse") == {
            "PathOnHost": "/dev/fuse",
            "PathInContainer": "/dev/fuse",
            "CgroupPermissions": "rwm",
        }
        assert parse_device("/dev/sda:/dev/xvda:r") == {
            "PathOnHost": "/dev/sda",
            "PathInContainer": "/dev/xvda",
            "CgroupPermissions": "r",
        }

        with pytest.raises(ValueError):
            parse_device(":/dev/xvda")

    def test_parse_tmpfs(self):
        """测试 parse_tmpfs 函数"""
        from drydock.drivers.core.utils import parse_tmpfs

        assert parse_tmpfs(["/run", "/tmp:rw,size=64m"]) == {
            "/run": "",
            "/tmp": "rw,size=64m",
        }

        with pytest.raises(ValueError):
            parse_tmpfs([":rw"])


class TestWriteChunks:
    """write_chunks 单元测试"""

    def test_write_chunks_writes_everything(self):
        """测试所有数据块都被写入"""
        from drydock.drivers.core.utils import write_chunks

        dst = io.BytesIO()
        assert write_chunks([b"ab", b"", b"cd"], dst) == 4
        assert dst.getvalue() == b"abcd"

    def test_write_chunks_propagates_destination_error(self, failing_writer):
        """测试目标流的错误原样抛出"""
        from drydock.drivers.core.utils import write_chunks

        with pytest.raises(OSError, match="No space left"):
            write_chunks([b"abcd", b"efgh"], failing_writer)

        assert bytes(failing_writer.buffer) == b"abcd"
        assert failing_writer.flushed is False
