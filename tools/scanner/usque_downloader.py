"""Locate the usque binary, downloading a release build if needed.

Search order:
1. $USQUE_PATH
2. PyInstaller bundle (when running as standalone binary)
3. ./usque next to the working directory, then ./bin/usque beside the scanner
4. usque on $PATH
5. Download from GitHub releases (fallback, needs internet)
"""

import os
import platform
import shutil
import stat
import sys
import tarfile
import tempfile
import urllib.request
import zipfile
from pathlib import Path

import logutil

USQUE_VERSION = os.environ.get("USQUE_VERSION", "1.4.2")
GITHUB_RELEASE_URL = "https://github.com/Diniboy1123/usque/releases/download"

# When running as PyInstaller bundle, _MEIPASS points to the temp extract dir
if getattr(sys, "frozen", False) and hasattr(sys, "_MEIPASS"):
    SCANNER_DIR = Path(sys._MEIPASS)
else:
    SCANNER_DIR = Path(__file__).parent

BIN_DIR = SCANNER_DIR / "bin"


def _binary_name() -> str:
    return "usque.exe" if platform.system().lower() == "windows" else "usque"


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def detect_platform() -> tuple[str, str, str]:
    """Return (os, arch, archive extension) naming the release asset."""
    system = platform.system().lower()
    machine = platform.machine().lower()

    if machine in ("x86_64", "amd64"):
        arch = "amd64"
    elif machine in ("aarch64", "arm64"):
        arch = "arm64"
    else:
        raise RuntimeError(f"Unsupported architecture: {machine}")

    if system == "linux":
        return "linux", arch, "tar.gz"
    if system == "darwin":
        return "darwin", arch, "tar.gz"
    if system == "windows":
        return "windows", arch, "zip"
    raise RuntimeError(
        f"Unsupported platform: {system}. "
        "Please download usque manually and place it in tools/scanner/bin/"
    )


def asset_name(version: str, target_os: str, arch: str, ext: str) -> str:
    return f"usque_{version}_{target_os}_{arch}.{ext}"


def _extract(archive: str, ext: str, target_path: Path) -> None:
    name = target_path.name
    if ext == "zip":
        with zipfile.ZipFile(archive, "r") as zf:
            member = next(
                (n for n in zf.namelist() if Path(n).name.lower() == name), None,
            )
            if member is None:
                raise RuntimeError(
                    f"usque binary not found in downloaded archive. "
                    f"Contents: {zf.namelist()}"
                )
            with zf.open(member) as src, open(target_path, "wb") as dst:
                dst.write(src.read())
        return

    with tarfile.open(archive, "r:gz") as tf:
        member = next(
            (m for m in tf.getmembers() if m.isfile() and Path(m.name).name == name),
            None,
        )
        if member is None:
            raise RuntimeError(
                f"usque binary not found in downloaded archive. "
                f"Contents: {tf.getnames()}"
            )
        with tf.extractfile(member) as src, open(target_path, "wb") as dst:
            dst.write(src.read())


def download(target_dir: Path = BIN_DIR, version: str = USQUE_VERSION) -> str:
    """Download usque from GitHub releases into ``target_dir``."""
    target_os, arch, ext = detect_platform()
    url = f"{GITHUB_RELEASE_URL}/v{version}/{asset_name(version, target_os, arch, ext)}"

    target_dir.mkdir(parents=True, exist_ok=True)
    target_path = target_dir / _binary_name()

    with tempfile.NamedTemporaryFile(suffix=f".{ext}", delete=False) as tmp:
        tmp_path = tmp.name

    try:
        logutil.info("downloading usque", url=url)
        urllib.request.urlretrieve(url, tmp_path)
        _extract(tmp_path, ext, target_path)
        target_path.chmod(
            target_path.stat().st_mode | stat.S_IEXEC | stat.S_IXGRP | stat.S_IXOTH,
        )
        return str(target_path)
    finally:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass


def find_usque(preferred: str | None = None) -> str | None:
    """Return the first usable usque binary without downloading."""
    candidates = []
    if preferred:
        candidates.append(Path(preferred))
    env = os.environ.get("USQUE_PATH")
    if env:
        candidates.append(Path(env))
    if getattr(sys, "frozen", False) and hasattr(sys, "_MEIPASS"):
        candidates.append(Path(sys._MEIPASS) / _binary_name())
    candidates.append(Path.cwd() / _binary_name())
    candidates.append(BIN_DIR / _binary_name())

    for path in candidates:
        if _is_executable(path):
            return str(path)
    return shutil.which("usque")


def ensure_usque(preferred: str | None = None, allow_download: bool = True) -> str:
    """Find or download usque. Returns path to binary."""
    found = find_usque(preferred)
    if found:
        return found
    if not allow_download:
        raise FileNotFoundError("usque binary not found")
    return download()
