# Copyright [2025] [ecki]
# SPDX-License-Identifier: Apache-2.0

"""
NChat FRP Module

Exposes the local UDP receiver through an frp server by generating an
``frpc.toml`` configuration and supervising the external ``frpc`` process.
"""

import io
import json
import logging
import os
import pathlib
import platform
import shutil
import stat
import subprocess
import tarfile
import zipfile
from dataclasses import dataclass, replace
from typing import Optional, Union

import requests

logger = logging.getLogger(__name__)

# Constants
FRP_VERSION = "0.52.3"
FRP_RELEASE_URL = "https://github.com/fatedier/frp/releases/download/v{version}/{archive}"
DEFAULT_CONFIG_DIR = "frp_config"
CONFIG_FILE_NAME = "frpc.toml"
LOG_FILE_NAME = "frpc.log"
DEFAULT_SERVER_ADDR = "frp.example.com"
DEFAULT_SERVER_PORT = 7000
DEFAULT_LOCAL_PORT = 7000
# The tunnel exposes the UDP receiver, so the proxy must be udp as well
DEFAULT_PROTOCOL = "udp"
DEFAULT_PROXY_NAME = "nchat"
STOP_TIMEOUT = 5.0
DOWNLOAD_TIMEOUT = 60

IS_WINDOWS = os.name == "nt"
FRPC_NAME = "frpc.exe" if IS_WINDOWS else "frpc"

PathLike = Union[str, pathlib.Path]


class FrpError(Exception):
    """Base exception for frp operations."""
    pass


class FrpAlreadyRunningError(FrpError):
    """Raised when frpc is started twice."""
    pass


class FrpExecutableNotFoundError(FrpError):
    """Raised when no frpc executable can be located."""
    pass


class FrpStartError(FrpError):
    """Raised when the frpc process cannot be launched."""
    pass


class FrpDownloadError(FrpError):
    """Raised when the frpc release cannot be downloaded or unpacked."""
    pass


@dataclass(frozen=True)
class FrpConfig:
    """Connection and proxy settings written to frpc.toml."""

    server_addr: str
    server_port: int
    token: Optional[str] = None
    local_port: int = DEFAULT_LOCAL_PORT
    remote_port: Optional[int] = None
    protocol: str = DEFAULT_PROTOCOL
    name: str = DEFAULT_PROXY_NAME

    def with_local_port(self, port: int) -> "FrpConfig":
        return replace(self, local_port=port)

    def to_toml(self) -> str:
        """Render the configuration in frpc's TOML format."""
        lines = [
            f"serverAddr = {json.dumps(self.server_addr)}",
            f"serverPort = {int(self.server_port)}",
        ]
        if self.token:
            lines.append(f"auth.token = {json.dumps(self.token)}")

        lines += [
            "",
            "[[proxies]]",
            f"name = {json.dumps(self.name)}",
            f"type = {json.dumps(self.protocol)}",
            f"localPort = {int(self.local_port)}",
        ]
        if self.remote_port is not None:
            lines.append(f"remotePort = {int(self.remote_port)}")

        return "\n".join(lines) + "\n"


@dataclass(frozen=True)
class FrpStatus:
    """Snapshot of the supervisor state."""

    is_running: bool
    config: FrpConfig
    config_path: pathlib.Path
    pid: Optional[int] = None


def default_frp_config() -> FrpConfig:
    return FrpConfig(
        server_addr=DEFAULT_SERVER_ADDR,
        server_port=DEFAULT_SERVER_PORT,
    )


class FrpManager:
    """
    Supervisor for one frpc client process.

    Thread-safe: no. The command line drives it from a single thread.
    """

    def __init__(
            self,
            config: FrpConfig,
            config_dir: PathLike = DEFAULT_CONFIG_DIR,
            frpc_path: Optional[PathLike] = None,
            log_file: Optional[PathLike] = None
    ):
        """
        Initialize the manager.

        Args:
            config: Server and proxy settings
            config_dir: Directory frpc.toml is written to (created if missing)
            frpc_path: Explicit frpc executable; looked up on start if None
            log_file: File receiving frpc's stdout/stderr, defaults to
                frpc.log in the working directory
        """
        self.config = config
        self.config_dir = pathlib.Path(config_dir)
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_path = self.config_dir / CONFIG_FILE_NAME
        self.frpc_path = pathlib.Path(frpc_path) if frpc_path else None
        self.log_file = pathlib.Path(log_file) if log_file else pathlib.Path.cwd() / LOG_FILE_NAME

        self._process: Optional[subprocess.Popen] = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit with cleanup."""
        self.close()
        return False

    def set_frp_path(self, path: PathLike) -> None:
        self.frpc_path = pathlib.Path(path)

    def generate_config(self) -> pathlib.Path:
        """
        Write frpc.toml for the current configuration.

        Returns:
            Path of the written file

        Raises:
            FrpError: If the file cannot be written
        """
        try:
            self.config_path.write_text(self.config.to_toml(), encoding="utf-8")
        except OSError as e:
            raise FrpError(f"Failed to write frp config {self.config_path}: {e}") from e

        logger.info("frp config written to %s", self.config_path)
        return self.config_path

    def start(self) -> int:
        """
        Generate the configuration and launch frpc.

        Returns:
            PID of the frpc process

        Raises:
            FrpAlreadyRunningError: If frpc is already running
            FrpExecutableNotFoundError: If no frpc executable is found
            FrpStartError: If the process cannot be spawned
        """
        if self.is_running():
            raise FrpAlreadyRunningError("frpc is already running")

        self.generate_config()
        executable = self._resolve_executable()

        logger.info("Starting frpc: %s -c %s", executable, self.config_path)

        try:
            with open(self.log_file, "w", encoding="utf-8") as log:
                self._process = subprocess.Popen(
                    [str(executable), "-c", str(self.config_path)],
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                )
        except OSError as e:
            raise FrpStartError(
                f"Failed to start frpc {executable} with config {self.config_path}: {e}"
            ) from e

        logger.info("frpc started (PID %d), local port %d exposed via %s:%d",
                    self._process.pid, self.config.local_port,
                    self.config.server_addr, self.config.server_port)
        return self._process.pid

    def stop(self, timeout: float = STOP_TIMEOUT) -> None:
        """
        Terminate frpc and wait for it to exit. Does nothing if not running.

        Args:
            timeout: Seconds to wait before killing the process
        """
        process = self._process
        if process is None:
            return
        self._process = None

        if process.poll() is not None:
            logger.info("frpc already exited with code %s", process.returncode)
            return

        process.terminate()
        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("frpc did not terminate within %.1fs, killing", timeout)
            process.kill()
            process.wait()

        logger.info("frpc stopped")

    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def get_status(self) -> FrpStatus:
        running = self.is_running()
        return FrpStatus(
            is_running=running,
            config=self.config,
            config_path=self.config_path,
            pid=self._process.pid if running else None,
        )

    def download_frp_if_needed(self, version: str = FRP_VERSION,
                               dest_dir: Optional[PathLike] = None) -> pathlib.Path:
        """
        Download the frpc release for this platform unless it is present.

        Args:
            version: frp release version
            dest_dir: Directory frpc is placed in, defaults to the working directory

        Returns:
            Path of the frpc executable

        Raises:
            FrpDownloadError: If the download or extraction fails
        """
        dest = pathlib.Path(dest_dir) if dest_dir else pathlib.Path.cwd()
        target = dest / FRPC_NAME

        if target.exists():
            logger.info("frpc already present: %s", target)
            self.frpc_path = target
            return target

        archive = release_archive_name(version)
        url = FRP_RELEASE_URL.format(version=version, archive=archive)
        logger.info("Downloading frpc from %s", url)

        try:
            response = requests.get(url, timeout=DOWNLOAD_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as e:
            raise FrpDownloadError(f"Failed to download {url}: {e}") from e

        dest.mkdir(parents=True, exist_ok=True)
        try:
            payload = _extract_frpc(response.content, archive)
            target.write_bytes(payload)
        except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
            raise FrpDownloadError(f"Failed to extract frpc from {archive}: {e}") from e

        if not IS_WINDOWS:
            target.chmod(target.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        logger.info("frpc downloaded to %s", target)
        self.frpc_path = target
        return target

    def close(self) -> None:
        self.stop()

    # Private methods

    def _resolve_executable(self) -> pathlib.Path:
        """Explicit path, then ./frpc, then PATH."""
        if self.frpc_path is not None:
            if not self.frpc_path.exists():
                raise FrpExecutableNotFoundError(f"frpc executable not found: {self.frpc_path}")
            return self.frpc_path

        local = pathlib.Path.cwd() / FRPC_NAME
        if local.exists():
            return local

        found = shutil.which(FRPC_NAME)
        if found:
            return pathlib.Path(found)

        raise FrpExecutableNotFoundError(
            f"frpc not found: {local}. Download frp from "
            f"https://github.com/fatedier/frp/releases and place {FRPC_NAME} "
            f"in the working directory, or set its path with set_frp_path"
        )


def release_archive_name(version: str = FRP_VERSION) -> str:
    """Release archive name for the running platform."""
    machine = platform.machine().lower()
    if machine in ("x86_64", "amd64"):
        arch = "amd64"
    elif machine in ("aarch64", "arm64"):
        arch = "arm64"
    elif machine.startswith("arm"):
        arch = "arm"
    else:
        arch = "386"

    if IS_WINDOWS:
        return f"frp_{version}_windows_{arch}.zip"
    system = "darwin" if platform.system() == "Darwin" else "linux"
    return f"frp_{version}_{system}_{arch}.tar.gz"


def _extract_frpc(content: bytes, archive: str) -> bytes:
    """Return the frpc binary contained in a release archive."""
    if archive.endswith(".zip"):
        with zipfile.ZipFile(io.BytesIO(content)) as zf:
            for name in zf.namelist():
                if name.endswith("/" + FRPC_NAME) or name == FRPC_NAME:
                    return zf.read(name)
    else:
        with tarfile.open(fileobj=io.BytesIO(content), mode="r:gz") as tf:
            for member in tf.getmembers():
                if member.isfile() and pathlib.PurePosixPath(member.name).name == FRPC_NAME:
                    extracted = tf.extractfile(member)
                    if extracted is not None:
                        return extracted.read()

    raise FrpDownloadError(f"{FRPC_NAME} not found in {archive}")
