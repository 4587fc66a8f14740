"""
Unit tests for snapshot adapters, the configuration introspector and
per-sandbox locks.
"""

import asyncio
import io
import os
import socket
import tarfile
from unittest import mock

import paramiko
import pytest

from sandbox_vault.adapters.introspector import (
    SandboxConfigIntrospector,
    parse_dpkg_status,
    parse_environment,
    parse_passwd,
    parse_service_status,
    parse_wsl_conf,
)
from sandbox_vault.adapters.ssh import ParamikoRemoteExecutor, _host_key_policy
from sandbox_vault.adapters.wsl import WslSnapshotAdapter, decode_wsl_output, parse_find_output
from sandbox_vault.backup.locks import SandboxLock, SandboxLockRegistry
from sandbox_vault.core.exceptions import CaptureError, NetworkError
from sandbox_vault.models.config import HostKeyPolicy, RemoteCredentials

from conftest import DPKG_STATUS, OLD_MTIME, PASSWD, make_sandbox

SERVICE_STATUS = " [ + ]  cron\n [ - ]  dbus\n [ + ]  ssh\n"


def fake_wsl(tmp_path, body: str) -> str:
    """Write a shell script standing in for wsl.exe and return its path."""
    script = tmp_path / "wsl"
    script.write_text(f"#!/bin/sh\n{body}\n")
    script.chmod(0o755)
    return str(script)


class TestParsers:
    """Test cases for the sandbox file parsers."""

    def test_parse_passwd_keeps_login_users(self):
        assert parse_passwd(PASSWD) == ["alice"]

    def test_parse_passwd_skips_malformed_lines(self):
        assert parse_passwd("# comment\nbroken:x\nbob:x:abc:1000::/home/bob:/bin/sh\n") == []

    def test_parse_dpkg_status(self):
        assert parse_dpkg_status(DPKG_STATUS) == ["bash", "coreutils"]

    def test_parse_environment(self):
        content = '# defaults\nPATH="/usr/bin:/bin"\nLANG=C.UTF-8\nnot an assignment\n'

        assert parse_environment(content) == {"PATH": "/usr/bin:/bin", "LANG": "C.UTF-8"}

    def test_parse_service_status(self):
        assert parse_service_status(SERVICE_STATUS) == ["cron", "ssh"]

    def test_parse_wsl_conf(self):
        conf = parse_wsl_conf("[user]\ndefault = bob\n\n[boot]\nsystemd = true\n")

        assert conf.get("user", "default") == "bob"
        assert conf.getboolean("boot", "systemd") is True

    def test_parse_wsl_conf_ignores_garbage(self):
        conf = parse_wsl_conf("default = bob\n")

        assert conf.sections() == []

    def test_decode_wsl_output(self):
        assert decode_wsl_output("Ubuntu\r\n".encode("utf-16-le")) == "Ubuntu\r\n"
        assert decode_wsl_output("\ufeffdev".encode("utf-16-le")) == "dev"
        assert decode_wsl_output(b"plain") == "plain"

    def test_parse_find_output(self):
        output = "/etc/hostname\t1700000000.5\t4\t644\n/usr/bin/tool\t1700000001.0\t10\t755\ngarbage\n"

        files = parse_find_output(output)

        assert [f.path for f in files] == ["/etc/hostname", "/usr/bin/tool"]
        assert files[0].mtime == 1700000000.5
        assert files[1].size == 10
        assert files[1].mode == 0o755


class TestDirectorySnapshotAdapter:
    """Test cases for DirectorySnapshotAdapter."""

    @pytest.mark.asyncio
    async def test_scan_files(self, adapter, sandbox):
        files = await adapter.scan_files(sandbox)

        paths = [f.path for f in files]
        assert paths == sorted(paths)
        assert "/home/alice/notes.txt" in paths
        assert all(f.mtime == OLD_MTIME for f in files)

    @pytest.mark.asyncio
    async def test_capture_and_materialize(self, adapter, sandbox, tmp_path):
        buffer = io.BytesIO()
        await adapter.capture(sandbox, buffer)
        archive = tmp_path / "dev.tar"
        archive.write_bytes(buffer.getvalue())

        with tarfile.open(archive) as tar:
            assert "home/alice/notes.txt" in tar.getnames()

        await adapter.materialize("copy", archive)

        assert (adapter.root / "copy" / "etc/hostname").read_bytes() == b"dev\n"

    @pytest.mark.asyncio
    async def test_capture_missing_sandbox(self, adapter):
        with pytest.raises(CaptureError) as exc_info:
            await adapter.capture("ghost", io.BytesIO())

        assert exc_info.value.sandbox_id == "ghost"

    @pytest.mark.asyncio
    async def test_materialize_refuses_existing_sandbox(self, adapter, sandbox, tmp_path):
        archive = tmp_path / "empty.tar"
        with tarfile.open(archive, "w"):
            pass

        with pytest.raises(CaptureError):
            await adapter.materialize(sandbox, archive)

    @pytest.mark.asyncio
    async def test_write_and_read_file(self, adapter, sandbox):
        await adapter.write_file(sandbox, "/etc/init.wsl", b"#! /bin/sh\n", mode=0o755, mtime=OLD_MTIME)

        path = adapter.root / sandbox / "etc/init.wsl"
        assert await adapter.read_file(sandbox, "/etc/init.wsl") == b"#! /bin/sh\n"
        assert os.stat(path).st_mode & 0o777 == 0o755
        assert os.stat(path).st_mtime == OLD_MTIME

    @pytest.mark.asyncio
    async def test_read_missing_file(self, adapter, sandbox):
        with pytest.raises(FileNotFoundError):
            await adapter.read_file(sandbox, "/etc/wsl.conf")

    @pytest.mark.asyncio
    async def test_paths_cannot_escape_sandbox(self, adapter, sandbox):
        with pytest.raises(CaptureError):
            await adapter.read_file(sandbox, "/../../outside")
        with pytest.raises(CaptureError):
            adapter.sandbox_path("../outside")

    @pytest.mark.asyncio
    async def test_run_command(self, adapter, sandbox):
        result = await adapter.run_command(sandbox, ["cat", "etc/hostname"])

        assert result.ok
        assert result.stdout == "dev\n"

    @pytest.mark.asyncio
    async def test_run_missing_command(self, adapter, sandbox):
        result = await adapter.run_command(sandbox, ["definitely-not-a-real-binary"])

        assert result.exit_code == 127
        assert not result.ok

    @pytest.mark.asyncio
    async def test_run_non_executable_command(self, adapter, sandbox):
        result = await adapter.run_command(sandbox, ["./etc/hostname"])

        assert result.exit_code == 126
        assert not result.ok

    @pytest.mark.asyncio
    async def test_remove(self, adapter, sandbox):
        await adapter.remove(sandbox)

        assert not await adapter.exists(sandbox)


class TestWslSnapshotAdapter:
    """Test cases for WslSnapshotAdapter against a scripted wsl executable."""

    @pytest.mark.asyncio
    async def test_host_without_distributions(self, tmp_path):
        wsl = fake_wsl(tmp_path, (
            'echo "Windows Subsystem for Linux has no installed distributions."\n'
            "exit 255"
        ))
        adapter = WslSnapshotAdapter(tmp_path / "distros", wsl_executable=wsl)

        assert await adapter.list_sandboxes() == []
        assert await adapter.exists("dev") is False

    @pytest.mark.asyncio
    async def test_list_failure_is_reported(self, tmp_path):
        wsl = fake_wsl(tmp_path, 'echo "The service cannot be started." >&2\nexit 1')
        adapter = WslSnapshotAdapter(tmp_path / "distros", wsl_executable=wsl)

        with pytest.raises(CaptureError) as exc_info:
            await adapter.exists("dev")

        assert "service cannot be started" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_list_sandboxes(self, tmp_path):
        wsl = fake_wsl(tmp_path, 'printf "Ubuntu\\r\\ndev\\r\\n"')
        adapter = WslSnapshotAdapter(tmp_path / "distros", wsl_executable=wsl)

        assert await adapter.list_sandboxes() == ["Ubuntu", "dev"]
        assert await adapter.exists("DEV") is True

    @pytest.mark.asyncio
    async def test_capture_with_noisy_stderr(self, tmp_path):
        wsl = fake_wsl(tmp_path, (
            'case "$1" in\n'
            "  --list) echo dev ;;\n"
            "  --export)\n"
            "    head -c 200000 /dev/zero | tr '\\0' e >&2\n"
            "    printf 'tar bytes'\n"
            "    ;;\n"
            "esac"
        ))
        adapter = WslSnapshotAdapter(tmp_path / "distros", wsl_executable=wsl)
        buffer = io.BytesIO()

        await asyncio.wait_for(adapter.capture("dev", buffer), timeout=10)

        assert buffer.getvalue() == b"tar bytes"

    @pytest.mark.asyncio
    async def test_capture_export_failure(self, tmp_path):
        wsl = fake_wsl(tmp_path, (
            'case "$1" in\n'
            "  --list) echo dev ;;\n"
            '  --export) echo "export failed" >&2; exit 1 ;;\n'
            "esac"
        ))
        adapter = WslSnapshotAdapter(tmp_path / "distros", wsl_executable=wsl)

        with pytest.raises(CaptureError) as exc_info:
            await adapter.capture("dev", io.BytesIO())

        assert exc_info.value.sandbox_id == "dev"
        assert exc_info.value.details["exit_code"] == 1
        assert "export failed" in exc_info.value.message


class TestParamikoRemoteExecutor:
    """Test cases for ParamikoRemoteExecutor with a mocked SSH client."""

    @pytest.fixture
    def creds(self) -> RemoteCredentials:
        return RemoteCredentials(username="deploy", password="secret")

    @pytest.fixture
    def client(self):
        with mock.patch("sandbox_vault.adapters.ssh.SSHClient") as client_class:
            yield client_class.return_value

    @pytest.mark.asyncio
    async def test_authentication_failure(self, client, creds, tmp_path):
        client.connect.side_effect = paramiko.AuthenticationException("bad password")

        with pytest.raises(NetworkError) as exc_info:
            await ParamikoRemoteExecutor().copy_file("host-a", creds, tmp_path / "pkg.tar.gz", "/tmp/pkg.tar.gz")

        assert exc_info.value.code == "AUTHENTICATION_FAILED"
        assert exc_info.value.target_host == "host-a"
        client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_connection_refused(self, client, creds):
        client.connect.side_effect = socket.error("connection refused")

        with pytest.raises(NetworkError) as exc_info:
            await ParamikoRemoteExecutor().run_command("host-b", creds, "true")

        assert exc_info.value.code == "NetworkError"
        assert exc_info.value.target_host == "host-b"

    def test_makedirs_creates_missing_parents(self):
        sftp = mock.Mock()

        def stat(path):
            if path != "/tmp":
                raise FileNotFoundError(path)

        sftp.stat.side_effect = stat

        ParamikoRemoteExecutor._makedirs(sftp, "/tmp/sandbox-vault/pkgs")

        assert [c.args[0] for c in sftp.mkdir.call_args_list] == ["/tmp/sandbox-vault", "/tmp/sandbox-vault/pkgs"]

    @pytest.mark.asyncio
    async def test_copy_creates_remote_dir_before_upload(self, client, creds, tmp_path):
        sftp = client.open_sftp.return_value

        def stat(path):
            if path != "/":
                raise FileNotFoundError(path)

        sftp.stat.side_effect = stat
        local = tmp_path / "pkg.tar.gz"

        await ParamikoRemoteExecutor().copy_file("host-a", creds, local, "/srv/pkgs/pkg.tar.gz")

        calls = [name for name, _args, _kwargs in sftp.mock_calls if name in ("mkdir", "put")]
        assert calls == ["mkdir", "mkdir", "put"]
        sftp.put.assert_called_once_with(str(local), "/srv/pkgs/pkg.tar.gz")
        client.close.assert_called_once()


class TestSandboxConfigIntrospector:
    """Test cases for SandboxConfigIntrospector over a directory sandbox."""

    @pytest.fixture
    def commands(self, monkeypatch):
        outputs = {
            ("service", "--status-all"): SERVICE_STATUS,
            ("hostname", "-I"): "172.20.0.2 \n",
            ("uname", "-r"): "5.15.90.1-microsoft-standard-WSL2\n",
        }

        async def fake_output(self, sandbox_id, argv):
            return outputs.get(tuple(argv))

        monkeypatch.setattr(SandboxConfigIntrospector, "_command_output", fake_output)
        return outputs

    @pytest.mark.asyncio
    async def test_read_configuration(self, adapter, commands):
        make_sandbox(adapter, "dev", {
            "etc/passwd": PASSWD.encode(),
            "etc/hostname": b"dev\n",
            "etc/environment": b'LANG="C.UTF-8"\n',
            "etc/wsl.conf": b"[user]\ndefault = root\n\n[boot]\nsystemd = true\n",
            "var/lib/dpkg/status": DPKG_STATUS.encode(),
        })

        config = await SandboxConfigIntrospector(adapter).read_configuration("dev")

        assert config.default_user == "root"
        assert config.users == ["alice"]
        assert config.packages == ["bash", "coreutils"]
        assert config.environment == {"LANG": "C.UTF-8"}
        assert config.services == ["cron", "ssh"]
        assert config.network == {"hostname": "dev", "addresses": ["172.20.0.2"]}
        assert config.systemd_enabled is True

    @pytest.mark.asyncio
    async def test_default_user_falls_back_to_first_login_user(self, adapter, commands):
        make_sandbox(adapter, "dev", {"etc/passwd": PASSWD.encode()})

        config = await SandboxConfigIntrospector(adapter).read_configuration("dev")

        assert config.default_user == "alice"
        assert config.packages == []
        assert config.systemd_enabled is False

    @pytest.mark.asyncio
    async def test_system_info(self, adapter, commands):
        make_sandbox(adapter, "dev", {
            "etc/os-release": b'NAME="Ubuntu"\nVERSION_ID="22.04"\n',
        })

        info = await SandboxConfigIntrospector(adapter).system_info("dev")

        assert info.kernel == "5.15.90.1-microsoft-standard-WSL2"
        assert info.os_name == "Ubuntu"
        assert info.os_version == "22.04"
        assert info.host_cpu_count >= 1
        assert info.host_memory_bytes > 0


class TestHostKeyPolicy:
    """Test cases for SSH host key policy mapping."""

    def test_policies(self):
        assert isinstance(_host_key_policy(HostKeyPolicy.AUTO_ADD), paramiko.AutoAddPolicy)
        assert isinstance(_host_key_policy(HostKeyPolicy.REJECT), paramiko.RejectPolicy)
        assert isinstance(_host_key_policy(HostKeyPolicy.WARN), paramiko.WarningPolicy)


class TestSandboxLock:
    """Test cases for per-sandbox locks."""

    @pytest.mark.asyncio
    async def test_reentrant_within_task(self):
        lock = SandboxLock("dev")

        async with lock:
            async with lock:
                assert lock.locked()
            assert lock.locked()

        assert not lock.locked()

    @pytest.mark.asyncio
    async def test_serializes_tasks(self):
        lock = SandboxLock("dev")
        events = []

        async def worker(name):
            async with lock:
                events.append(f"{name}-start")
                await asyncio.sleep(0.01)
                events.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))

        assert events == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_release_by_other_task_fails(self):
        lock = SandboxLock("dev")
        await lock.acquire()

        async def release_elsewhere():
            lock.release()

        with pytest.raises(RuntimeError):
            await asyncio.create_task(release_elsewhere())

        lock.release()
        assert not lock.locked()

    def test_registry_hands_out_one_lock_per_sandbox(self):
        registry = SandboxLockRegistry()

        assert registry.lock_for("dev") is registry.lock_for("dev")
        assert registry.lock_for("dev") is not registry.lock_for("prod")
        assert registry.is_locked("dev") is False
        assert registry.is_locked("unknown") is False
