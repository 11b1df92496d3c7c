#!/usr/bin/env python3
"""
OpenRC service management for the realm proxy.
"""

import subprocess
import logging
from pathlib import Path
from typing import List

from .settings import Settings

logger = logging.getLogger(__name__)

RUNLEVEL = "default"

UNIT_TEMPLATE = """#!/sbin/openrc-run
name="{name}"
description="Realm Proxy Service"

command="{bin_path}"
command_args="-c {config_file}"
command_background="yes"
pidfile="{pid_file}"
output_log="{log_file}"
error_log="{log_file}"

depend() {{
  need net
}}

start_pre() {{
  checkpath --directory --mode 0755 {run_dir}
}}

"""


class ServiceError(Exception):
    """Custom exception for init system failures."""
    pass


class OpenRCService:
    def __init__(self, settings: Settings):
        """Initialize the service wrapper.

        Args:
            settings: Resolved realmctl settings
        """
        self.settings = settings
        self.name = settings.service_name
        self.unit_file = Path(settings.service_file)

    def _run(self, args: List[str]) -> subprocess.CompletedProcess:
        """Run an init system command.

        Raises:
            ServiceError: If the executable is not available
        """
        logger.debug(f"Running: {' '.join(args)}")
        try:
            return subprocess.run(args, capture_output=True, text=True)
        except FileNotFoundError:
            raise ServiceError(f"{args[0]} is not installed or not available in PATH")

    def _check(self, args: List[str], failure: str) -> subprocess.CompletedProcess:
        result = self._run(args)
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            raise ServiceError(f"{failure}{': ' + detail if detail else ''}")
        return result

    def render_unit(self) -> str:
        return UNIT_TEMPLATE.format(
            name=self.name,
            bin_path=self.settings.bin_path,
            config_file=self.settings.config_file,
            pid_file=self.settings.pid_file,
            log_file=self.settings.log_file,
            run_dir=self.settings.run_dir,
        )

    def write_unit(self) -> Path:
        """Write the OpenRC script and enable it in the default runlevel.

        Raises:
            ServiceError: If the script cannot be written
        """
        try:
            self.unit_file.parent.mkdir(parents=True, exist_ok=True)
            self.unit_file.write_text(self.render_unit(), encoding="utf-8")
            self.unit_file.chmod(0o755)
        except OSError as e:
            raise ServiceError(f"无法写入 {self.unit_file}: {e}")
        self.enable()
        logger.info(f"OpenRC service created: {self.unit_file}")
        return self.unit_file

    def enable(self) -> bool:
        """Add the service to the default runlevel, best effort."""
        try:
            result = self._run(["rc-update", "add", self.name, RUNLEVEL])
        except ServiceError as e:
            logger.warning(str(e))
            return False
        return result.returncode == 0

    def disable(self) -> bool:
        try:
            result = self._run(["rc-update", "del", self.name, RUNLEVEL])
        except ServiceError as e:
            logger.warning(str(e))
            return False
        return result.returncode == 0

    def is_running(self) -> bool:
        try:
            result = self._run(["rc-service", self.name, "status"])
        except ServiceError:
            return False
        return result.returncode == 0

    def start(self) -> None:
        self._check(["rc-service", self.name, "start"],
                    f"启动失败（检查 {self.settings.log_file} 与 {self.settings.config_file}）")
        self.enable()
        logger.info("Service started")

    def stop(self) -> None:
        """Stop the service; failures are ignored."""
        try:
            self._run(["rc-service", self.name, "stop"])
        except ServiceError as e:
            logger.warning(str(e))
        logger.info("Service stopped")

    def restart(self) -> None:
        self._check(["rc-service", self.name, "restart"],
                    f"重启失败（检查 {self.settings.log_file} 与 {self.settings.config_file}）")
        logger.info("Service restarted")

    def reload(self) -> None:
        """Apply the current configuration; realm has no live reload."""
        self.restart()

    def remove(self) -> None:
        """Stop, disable and delete the OpenRC script."""
        self.stop()
        self.disable()
        try:
            self.unit_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise ServiceError(f"无法删除 {self.unit_file}: {e}")
        logger.info(f"OpenRC service removed: {self.unit_file}")
