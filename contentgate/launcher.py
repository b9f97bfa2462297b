from __future__ import annotations

import contextlib
import logging
import socket
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from urllib.error import URLError
from urllib.request import urlopen

from .config import GateConfig, expand_path

_LOGGER = logging.getLogger("contentgate.launcher")


@dataclass
class LaunchResult:
    command: list[str]
    started: bool
    message: str


class BrowserLauncher:
    """Owns the Chromium process hosting the content session."""

    def __init__(self, config: GateConfig | None = None) -> None:
        self.config = config or GateConfig.from_env()
        self.process: subprocess.Popen | None = None

    def cdp_ready(self, timeout: float = 0.4) -> bool:
        """Return True if the CDP HTTP endpoint responds."""
        endpoint = f"http://127.0.0.1:{self.config.cdp_port}/json/version"
        try:
            with urlopen(endpoint, timeout=timeout) as resp:
                return resp.status == 200
        except (OSError, TimeoutError, URLError):
            return False

    def stop(self, *, timeout: float = 2.0) -> bool:
        """Stop the launcher-owned browser process (terminate, then kill)."""
        proc = self.process
        if proc is None:
            return False
        if proc.poll() is not None:
            self.process = None
            return True

        with contextlib.suppress(OSError):
            proc.terminate()
        try:
            proc.wait(timeout=max(0.1, float(timeout)))
        except subprocess.TimeoutExpired:
            # Escalate to kill.
            with contextlib.suppress(OSError):
                proc.kill()
        self.process = None
        return True

    def _build_common_flags(self) -> list[str]:
        flags = [
            f"--remote-debugging-port={self.config.cdp_port}",
            f"--user-data-dir={expand_path(self.config.profile_path)}",
            "--remote-allow-origins=*",
            "--no-first-run",
            "--no-default-browser-check",
            # Inline media playback without a user gesture.
            "--autoplay-policy=no-user-gesture-required",
            # Content may open windows from script.
            "--disable-popup-blocking",
        ]
        if "vendor/chromium" in self.config.binary_path:
            flags.append("--no-sandbox")
        if self.config.headless:
            flags.append("--headless=new")
        return flags

    def build_launch_command(self, extra: list[str] | None = None) -> list[str]:
        flags = self._build_common_flags() + list(self.config.extra_flags)
        if extra:
            flags.extend(extra)
        return [self.config.binary_path, *flags, "about:blank"]

    def _port_available(self, timeout: float = 0.2) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            try:
                return sock.connect_ex(("127.0.0.1", self.config.cdp_port)) != 0
            except OSError:
                return False

    def ensure_running(self, timeout: float = 10.0) -> LaunchResult:
        if self.cdp_ready():
            return LaunchResult([], False, "Browser already listening on CDP port")
        if not self._port_available():
            return LaunchResult([], False, f"Port {self.config.cdp_port} already in use")

        with contextlib.suppress(OSError):
            Path(expand_path(self.config.profile_path)).mkdir(parents=True, exist_ok=True)

        cmd = self.build_launch_command()
        try:
            self.process = subprocess.Popen(
                cmd, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
            )
        except OSError as exc:
            _LOGGER.warning("browser_launch_failed binary=%s error=%s", self.config.binary_path, exc)
            return LaunchResult(cmd, False, str(exc))

        deadline = time.time() + timeout
        while time.time() < deadline:
            if self.cdp_ready():
                _LOGGER.info("browser_launched port=%s pid=%s", self.config.cdp_port, self.process.pid)
                return LaunchResult(cmd, True, "Browser launched")
            if self.process.poll() is not None:
                return LaunchResult(cmd, False, f"Browser exited with code {self.process.returncode}")
            time.sleep(0.1)
        return LaunchResult(cmd, False, "Browser launch timed out")


__all__ = ["BrowserLauncher", "LaunchResult"]
