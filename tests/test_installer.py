"""Tests for the payload installer — retry loop, dedupe, atomic commit."""

from __future__ import annotations

import asyncio
import errno
import os
import stat
import sys
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from shellkeep import installer as inst
from shellkeep.exceptions import NoTransportError, PayloadValidationError, TransportError
from shellkeep.installer import (
    CurlTransport,
    HttpxTransport,
    InstallOutcome,
    PayloadInstaller,
    WgetTransport,
    make_py_compile_check,
    select_transport,
    sha256_of,
)

URL = "https://example.org/worker.py"
GOOD = b"print('worker')\n"


class FakeTransport:
    """Serves a scripted sequence of bodies or exceptions."""

    name = "fake"

    def __init__(self, *responses):
        self._responses = list(responses)
        self.calls = 0

    async def fetch(self, url: str, target: Path) -> None:
        self.calls += 1
        item = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(item, BaseException):
            raise item
        target.write_bytes(item)


@pytest.fixture
def scratch(tmp_path) -> Path:
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def dest(tmp_path) -> Path:
    return tmp_path / "home" / "worker.py"


def _installer(transport, scratch, validator=None):
    return PayloadInstaller(transport, validator=validator, retry_delay=0, scratch_root=scratch)


# ── happy path ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_fresh_install(dest, scratch):
    transport = FakeTransport(GOOD)
    outcome = await _installer(transport, scratch).install(URL, dest)

    assert outcome is InstallOutcome.INSTALLED
    assert dest.read_bytes() == GOOD
    assert stat.S_IMODE(dest.stat().st_mode) == 0o700
    assert transport.calls == 1
    assert list(scratch.iterdir()) == []


@pytest.mark.asyncio
async def test_empty_content_retried(dest, scratch):
    transport = FakeTransport(b"", b"", GOOD)
    installer = _installer(transport, scratch)
    outcome = await installer.install(URL, dest)

    assert outcome is InstallOutcome.INSTALLED
    assert transport.calls == 3
    assert installer.attempts == 3
    assert list(scratch.iterdir()) == []


@pytest.mark.asyncio
async def test_transport_errors_retried(dest, scratch):
    transport = FakeTransport(TransportError("timeout"), TransportError("503"), GOOD)
    outcome = await _installer(transport, scratch).install(URL, dest)

    assert outcome is InstallOutcome.INSTALLED
    assert transport.calls == 3
    assert list(scratch.iterdir()) == []


@pytest.mark.asyncio
async def test_validation_failure_retried(dest, scratch):
    seen = []

    async def _validator(path: Path) -> None:
        seen.append(path.read_bytes())
        if path.read_bytes() != GOOD:
            raise PayloadValidationError("syntax")

    transport = FakeTransport(b"def broken(:\n", GOOD)
    outcome = await _installer(transport, scratch, validator=_validator).install(URL, dest)

    assert outcome is InstallOutcome.INSTALLED
    assert seen == [b"def broken(:\n", GOOD]
    assert dest.read_bytes() == GOOD


@pytest.mark.asyncio
async def test_retry_waits_fixed_delay(dest, scratch):
    transport = FakeTransport(b"", GOOD)
    installer = PayloadInstaller(transport, retry_delay=7.5, scratch_root=scratch)

    with patch("shellkeep.installer.asyncio.sleep") as sleep:
        await installer.install(URL, dest)

    sleep.assert_awaited_once_with(7.5)


# ── dedupe ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_unchanged_content_is_not_written(dest, scratch):
    dest.parent.mkdir(parents=True)
    dest.write_bytes(GOOD)
    os.chmod(dest, 0o644)
    before = dest.stat()

    with patch("shellkeep.installer.commit") as commit:
        outcome = await _installer(FakeTransport(GOOD), scratch).install(URL, dest)

    assert outcome is InstallOutcome.UNCHANGED
    commit.assert_not_called()
    after = dest.stat()
    assert (after.st_ino, after.st_mtime_ns) == (before.st_ino, before.st_mtime_ns)
    assert stat.S_IMODE(after.st_mode) == 0o644
    assert list(scratch.iterdir()) == []


@pytest.mark.asyncio
async def test_changed_content_replaces(dest, scratch):
    dest.parent.mkdir(parents=True)
    dest.write_bytes(b"print('old')\n")

    outcome = await _installer(FakeTransport(GOOD), scratch).install(URL, dest)

    assert outcome is InstallOutcome.INSTALLED
    assert dest.read_bytes() == GOOD


@pytest.mark.asyncio
async def test_checksums_hashed_off_the_loop(dest, scratch):
    dest.parent.mkdir(parents=True)
    dest.write_bytes(GOOD)

    with patch("shellkeep.installer.asyncio.to_thread", wraps=asyncio.to_thread) as to_thread:
        outcome = await _installer(FakeTransport(GOOD), scratch).install(URL, dest)

    assert outcome is InstallOutcome.UNCHANGED
    assert [c.args[0] for c in to_thread.call_args_list] == [sha256_of, sha256_of]


# ── commit ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_commit_failure_restarts_from_fetch(dest, scratch):
    real_commit = inst.commit
    calls = {"n": 0}

    def _flaky(src, dst):
        calls["n"] += 1
        if calls["n"] == 1:
            raise PermissionError("busy")
        real_commit(src, dst)

    transport = FakeTransport(GOOD)
    with patch("shellkeep.installer.commit", side_effect=_flaky):
        outcome = await _installer(transport, scratch).install(URL, dest)

    assert outcome is InstallOutcome.INSTALLED
    assert transport.calls == 2
    assert list(scratch.iterdir()) == []


def test_commit_cross_device_falls_back_to_copy(tmp_path):
    src = tmp_path / "src"
    src.write_bytes(GOOD)
    dst = tmp_path / "dst"

    with patch("shellkeep.installer.os.replace", side_effect=OSError(errno.EXDEV, "cross-device")):
        inst.commit(src, dst)

    assert dst.read_bytes() == GOOD
    assert not src.exists()
    assert stat.S_IMODE(dst.stat().st_mode) == 0o700


def test_commit_other_errors_propagate(tmp_path):
    src = tmp_path / "src"
    src.write_bytes(GOOD)
    with patch("shellkeep.installer.os.replace", side_effect=OSError(errno.EACCES, "denied")):
        with pytest.raises(OSError):
            inst.commit(src, tmp_path / "dst")


@pytest.mark.asyncio
async def test_scratch_removed_on_cancel(dest, scratch):
    transport = FakeTransport(asyncio.CancelledError())
    with pytest.raises(asyncio.CancelledError):
        await _installer(transport, scratch).install(URL, dest)
    assert list(scratch.iterdir()) == []
    assert not dest.exists()


# ── transports ──────────────────────────────────────────────────


def test_select_transport_auto(make_settings):
    assert isinstance(select_transport(make_settings()), HttpxTransport)


def test_select_transport_missing_tool(make_settings):
    with patch("shellkeep.installer.shutil.which", return_value=None):
        with pytest.raises(NoTransportError):
            select_transport(make_settings(transport="curl"))


def test_select_transport_tools(make_settings):
    with patch("shellkeep.installer.shutil.which", return_value="/usr/bin/tool"):
        assert isinstance(select_transport(make_settings(transport="curl")), CurlTransport)
        assert isinstance(select_transport(make_settings(transport="wget")), WgetTransport)


def test_curl_command():
    cmd = CurlTransport("/usr/bin/curl", connect_timeout=20, max_time=300).command(URL, Path("/t"))
    assert cmd[0] == "/usr/bin/curl"
    assert "--fail" in cmd
    assert cmd[cmd.index("--output") + 1] == "/t"
    assert cmd[-1] == URL


def test_wget_command():
    cmd = WgetTransport("/usr/bin/wget").command(URL, Path("/t"))
    assert "--output-document=/t" in cmd
    assert cmd[-1] == URL


def _mock_client(handler):
    real_client = httpx.AsyncClient

    def _factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    return patch("shellkeep.installer.httpx.AsyncClient", side_effect=_factory)


@pytest.mark.asyncio
async def test_httpx_transport_writes_body(tmp_path):
    target = tmp_path / "out"
    with _mock_client(lambda request: httpx.Response(200, content=GOOD)):
        await HttpxTransport().fetch(URL, target)
    assert target.read_bytes() == GOOD


@pytest.mark.asyncio
async def test_httpx_transport_non_2xx(tmp_path):
    with _mock_client(lambda request: httpx.Response(404)):
        with pytest.raises(TransportError):
            await HttpxTransport().fetch(URL, tmp_path / "out")


@pytest.mark.asyncio
async def test_httpx_transport_network_error(tmp_path):
    def _handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with _mock_client(_handler):
        with pytest.raises(TransportError):
            await HttpxTransport().fetch(URL, tmp_path / "out")


# ── helpers ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_py_compile_check(tmp_path):
    check = make_py_compile_check(sys.executable)
    assert check is not None

    good = tmp_path / "good.py"
    good.write_bytes(GOOD)
    await check(good)

    bad = tmp_path / "bad.py"
    bad.write_text("def broken(:\n")
    with pytest.raises(PayloadValidationError):
        await check(bad)

    assert sorted(p.name for p in tmp_path.iterdir()) == ["bad.py", "good.py"]


@pytest.mark.asyncio
async def test_real_syntax_check_leaves_scratch_empty(dest, scratch):
    transport = FakeTransport(b"def broken(:\n", GOOD)
    installer = _installer(transport, scratch, validator=make_py_compile_check(sys.executable))

    assert await installer.install(URL, dest) is InstallOutcome.INSTALLED
    assert installer.attempts == 2
    assert dest.read_bytes() == GOOD
    assert list(scratch.rglob("*")) == []


@pytest.mark.asyncio
async def test_syntax_check_runs_async_subprocess(tmp_path):
    check = make_py_compile_check(sys.executable)
    path = tmp_path / "good.py"
    path.write_bytes(GOOD)

    with patch("shellkeep.installer.asyncio.create_subprocess_exec", wraps=asyncio.create_subprocess_exec) as spawn:
        await check(path)

    args = spawn.call_args.args
    assert args[1:2] == ("-c",)
    assert args[-1] == str(path)


def test_py_compile_check_without_interpreter():
    assert make_py_compile_check("") is None
    assert make_py_compile_check("no-such-python-xyz") is None


def test_sha256_of(tmp_path):
    path = tmp_path / "f"
    path.write_bytes(b"abc")
    assert sha256_of(path) == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


def test_scratch_dir_fallback(tmp_path, monkeypatch):
    monkeypatch.setattr(inst, "SHM_DIR", tmp_path / "no-shm")
    assert inst.scratch_dir() == Path(inst.tempfile.gettempdir())


@pytest.mark.asyncio
async def test_install_from_url_uses_settings(make_settings, dest, scratch, monkeypatch):
    transport = FakeTransport(GOOD)
    monkeypatch.setattr(inst, "select_transport", lambda settings: transport)
    monkeypatch.setattr(inst, "scratch_dir", lambda: scratch)
    settings = make_settings(download_url=URL, payload_path=str(dest))

    assert await inst.install_from_url(settings) is InstallOutcome.INSTALLED
    assert dest.read_bytes() == GOOD


@pytest.mark.asyncio
async def test_install_from_url_uses_given_installer(make_settings, dest, scratch):
    transport = FakeTransport(GOOD)
    settings = make_settings(download_url=URL, payload_path=str(dest))
    installer = _installer(transport, scratch)

    assert await inst.install_from_url(settings, installer=installer) is InstallOutcome.INSTALLED
    assert installer.attempts == 1
