#!/usr/bin/env python3
"""
Installation, update and removal of the realm binary on Alpine hosts.
"""

import os
import re
import shutil
import subprocess
import tarfile
import tempfile
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import httpx

from .rule_store import DEFAULT_CONFIG, RuleStore
from .service import OpenRCService
from .settings import Settings

logger = logging.getLogger(__name__)

REQUIRED_COMMANDS = ["curl", "wget", "tar"]
APK_PACKAGES = ["curl", "wget", "tar", "ca-certificates"]
BINARY_NAME = "realm"
ARCHIVE_NAME = "realm.tar.gz"

_TAG_RE = re.compile(r'/zhboner/realm/releases/tag/v([0-9]+\.[0-9]+\.[0-9]+)')


class InstallError(Exception):
    """Raised when installing, downloading or removing realm fails."""
    pass


@dataclass
class InstallResult:
    version: str
    url: str
    used_fallback: bool = False


def need_root() -> None:
    if os.geteuid() != 0:
        raise InstallError("必须使用 root 运行")


def missing_dependencies() -> List[str]:
    return [cmd for cmd in REQUIRED_COMMANDS if shutil.which(cmd) is None]


def _run_quiet(args: List[str]) -> bool:
    try:
        result = subprocess.run(args, capture_output=True, text=True)
    except FileNotFoundError:
        logger.debug(f"{args[0]} not found")
        return False
    return result.returncode == 0


def install_dependencies() -> List[str]:
    """Install missing helper tools with apk.

    Returns:
        The commands that were missing before installation

    Raises:
        InstallError: If ``apk add`` fails
    """
    missing = missing_dependencies()
    if missing:
        logger.info(f"Missing dependencies: {' '.join(missing)}")
        _run_quiet(["apk", "update"])
        if not _run_quiet(["apk", "add", "--no-cache", *APK_PACKAGES]):
            raise InstallError("依赖安装失败（apk add）")
    _run_quiet(["update-ca-certificates"])
    return missing


class RealmInstaller:
    """Download realm releases and wire them into OpenRC."""

    def __init__(self, settings: Settings, service: Optional[OpenRCService] = None,
                 client: Optional[httpx.Client] = None):
        self.settings = settings
        self.service = service or OpenRCService(settings)
        self.client = client

    def _client(self) -> httpx.Client:
        if self.client is None:
            self.client = httpx.Client(
                follow_redirects=True,
                timeout=self.settings.http_timeout,
                headers={"User-Agent": "realmctl"},
            )
        return self.client

    def init_dirs(self) -> None:
        """Create the install directory, run directory and log file.

        Raises:
            InstallError: If a directory or the log file cannot be created
        """
        try:
            self.settings.realm_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InstallError(f"无法创建目录 {self.settings.realm_dir}: {e}")
        try:
            self.settings.run_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.debug(f"Could not create {self.settings.run_dir}: {e}")
        try:
            self.settings.log_file.parent.mkdir(parents=True, exist_ok=True)
            self.settings.log_file.touch(exist_ok=True)
        except OSError as e:
            raise InstallError(f"无法创建日志 {self.settings.log_file}: {e}")

    def latest_version(self) -> Optional[str]:
        """Scrape the newest release tag from the releases page.

        Returns:
            A version such as ``2.7.0``, or None if it could not be determined
        """
        try:
            response = self._client().get(self.settings.releases_url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.debug(f"Release lookup failed: {e}")
            return None

        match = _TAG_RE.search(response.text)
        return match.group(1) if match else None

    def _fetch(self, url: str, destination: Path) -> bool:
        """Stream one archive to disk.

        Returns:
            False if the server or network failed, so the next target is tried

        Raises:
            InstallError: If the archive cannot be written locally
        """
        try:
            with self._client().stream("GET", url) as response:
                response.raise_for_status()
                with open(destination, "wb") as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
        except httpx.HTTPError as e:
            logger.debug(f"Download failed from {url}: {e}")
            destination.unlink(missing_ok=True)
            return False
        except OSError as e:
            destination.unlink(missing_ok=True)
            raise InstallError(f"无法写入 {destination}: {e}")
        return True

    def _extract_binary(self, archive: Path) -> None:
        """Unpack the realm binary and rename it over the installed one.

        The installed file is never opened for writing; a running realm
        keeps its old inode.
        """
        temp_file = None
        try:
            with tarfile.open(archive, "r:gz") as tar:
                member = next(
                    (m for m in tar.getmembers()
                     if m.isfile() and Path(m.name).name == BINARY_NAME),
                    None,
                )
                if member is None:
                    raise InstallError("解压后未找到 realm 可执行文件")
                source = tar.extractfile(member)
                fd, temp_name = tempfile.mkstemp(
                    prefix=f".{BINARY_NAME}.", suffix=".tmp", dir=self.settings.realm_dir
                )
                temp_file = Path(temp_name)
                with source, os.fdopen(fd, "wb") as target:
                    shutil.copyfileobj(source, target)
            temp_file.chmod(0o755)
            os.replace(temp_file, self.settings.bin_path)
        except (tarfile.TarError, OSError) as e:
            raise InstallError(f"解压失败：{archive.name}: {e}")
        finally:
            if temp_file is not None and temp_file.exists():
                temp_file.unlink()

    def download(self, version: Optional[str] = None) -> InstallResult:
        """Download and unpack a realm release.

        Args:
            version: Release to install; the newest release when omitted

        Raises:
            InstallError: If no candidate archive can be downloaded or unpacked
        """
        used_fallback = False
        if version is None:
            version = self.latest_version()
            if version is None:
                version = self.settings.fallback_version
                used_fallback = True
                logger.warning(f"latest version fetch failed, fallback={version}")

        archive = self.settings.realm_dir / ARCHIVE_NAME
        tried = []
        for target in self.settings.targets:
            url = self.settings.download_url(version, target)
            tried.append(url)
            if self._fetch(url, archive):
                break
        else:
            raise InstallError(f"下载失败：请检查网络/GitHub 访问。尝试地址：{' 或 '.join(tried)}")

        logger.info(f"Downloaded realm from: {url}")
        try:
            self._extract_binary(archive)
        finally:
            if archive.exists():
                archive.unlink()

        logger.info(f"Realm installed/updated (version={version})")
        return InstallResult(version=version, url=url, used_fallback=used_fallback)

    def init_config_if_missing(self) -> bool:
        return RuleStore(self.settings.config_file).ensure_exists(DEFAULT_CONFIG)

    def install_or_update(self, version: Optional[str] = None) -> InstallResult:
        need_root()
        install_dependencies()
        self.init_dirs()
        result = self.download(version)
        self.init_config_if_missing()
        self.service.write_unit()
        return result

    def is_installed(self) -> bool:
        return self.settings.bin_path.exists() and Path(self.settings.service_file).exists()

    def uninstall(self) -> None:
        """Remove the service, install directory and pid file; keep the log."""
        self.service.remove()
        shutil.rmtree(self.settings.realm_dir, ignore_errors=True)
        try:
            self.settings.pid_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {self.settings.pid_file}: {e}")
        logger.info("Uninstalled")

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None
