import io
import stat
import tarfile

import pytest

import usque_downloader
from usque_downloader import asset_name, detect_platform, find_usque


def _make_executable(path):
    path.write_text("#!/bin/sh\n")
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return path


@pytest.mark.parametrize("system,machine,expected", [
    ("Linux", "x86_64", ("linux", "amd64", "tar.gz")),
    ("Linux", "aarch64", ("linux", "arm64", "tar.gz")),
    ("Darwin", "arm64", ("darwin", "arm64", "tar.gz")),
    ("Windows", "AMD64", ("windows", "amd64", "zip")),
])
def test_detect_platform(monkeypatch, system, machine, expected):
    monkeypatch.setattr(usque_downloader.platform, "system", lambda: system)
    monkeypatch.setattr(usque_downloader.platform, "machine", lambda: machine)
    assert detect_platform() == expected


def test_detect_platform_unsupported_arch(monkeypatch):
    monkeypatch.setattr(usque_downloader.platform, "machine", lambda: "mips")
    with pytest.raises(RuntimeError, match="Unsupported architecture"):
        detect_platform()


def test_asset_name():
    assert asset_name("1.4.2", "linux", "amd64", "tar.gz") == "usque_1.4.2_linux_amd64.tar.gz"


def test_find_prefers_explicit_path(tmp_path, monkeypatch):
    explicit = _make_executable(tmp_path / "my-usque")
    monkeypatch.setenv("USQUE_PATH", str(_make_executable(tmp_path / "env-usque")))
    assert find_usque(str(explicit)) == str(explicit)


def test_find_uses_env_when_preferred_missing(tmp_path, monkeypatch):
    env = _make_executable(tmp_path / "env-usque")
    monkeypatch.setenv("USQUE_PATH", str(env))
    assert find_usque(str(tmp_path / "absent")) == str(env)


def test_find_skips_non_executable(tmp_path, monkeypatch):
    plain = tmp_path / "usque"
    plain.write_text("not a binary")
    plain.chmod(0o644)
    monkeypatch.delenv("USQUE_PATH", raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(usque_downloader, "BIN_DIR", tmp_path / "bin")
    monkeypatch.setattr(usque_downloader.shutil, "which", lambda name: None)
    assert find_usque(str(plain)) is None


def test_ensure_without_download_raises(tmp_path, monkeypatch):
    monkeypatch.setattr(usque_downloader, "find_usque", lambda preferred=None: None)
    with pytest.raises(FileNotFoundError):
        usque_downloader.ensure_usque(str(tmp_path / "absent"), allow_download=False)


def test_extract_tarball(tmp_path):
    archive = tmp_path / "usque.tar.gz"
    payload = b"\x7fELF fake"
    with tarfile.open(archive, "w:gz") as tf:
        for name in ("LICENSE", "usque_1.4.2_linux_amd64/usque"):
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            tf.addfile(info, io.BytesIO(payload))

    target = tmp_path / "bin" / "usque"
    target.parent.mkdir()
    usque_downloader._extract(str(archive), "tar.gz", target)
    assert target.read_bytes() == payload


def test_extract_missing_binary(tmp_path):
    archive = tmp_path / "empty.tar.gz"
    with tarfile.open(archive, "w:gz"):
        pass
    with pytest.raises(RuntimeError, match="not found"):
        usque_downloader._extract(str(archive), "tar.gz", tmp_path / "usque")
