#!/usr/bin/env python3
"""
Pytest configuration and fixtures for all tests.
"""

import logging
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

import realmctl.logging_config
from realmctl.settings import Settings

SAMPLE_CONFIG = """[network]
no_tcp = false
use_udp = true

[[endpoints]]
# 备注: test
listen = "[::]:8080"
remote = "1.2.3.4:443"
"""


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers installed by setup_logging so tests do not leak files or streams."""
    yield
    root_logger = logging.getLogger("realmctl")
    for handler in list(root_logger.handlers):
        handler.close()
    root_logger.handlers.clear()
    realmctl.logging_config._logging_config = None


@pytest.fixture
def settings(tmp_path):
    """Settings rooted entirely inside a temporary directory."""
    return Settings(
        realm_dir=tmp_path / "realm",
        log_file=tmp_path / "log" / "realm_manager.log",
        service_file=tmp_path / "init.d" / "realm",
        run_dir=tmp_path / "run",
    )


@pytest.fixture
def config_file(settings):
    """A configuration file holding one rule."""
    settings.realm_dir.mkdir(parents=True, exist_ok=True)
    settings.config_file.write_text(SAMPLE_CONFIG, encoding="utf-8")
    return settings.config_file
