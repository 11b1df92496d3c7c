"""
Utility functions for realmctl.
"""

import re
import unicodedata
from typing import Iterable

from colorama import Fore, Style

LISTEN_PATTERN = re.compile(r'^(\[[^\]"\\\s]*\]|[0-9a-fA-F.:]+):[0-9]+$')
PORT_PATTERN = re.compile(r'^[0-9]+$')

TABLE_RULE = "-" * 105
TABLE_WIDTHS = (5, 30, 40, 20)
TABLE_HEADERS = ("序号", "本地 listen", "目标 remote", "备注")


def is_valid_port(value: str) -> bool:
    """Check that a port string is all digits and within 1-65535.

    Args:
        value: Raw user input

    Returns:
        True if the value is a usable TCP/UDP port
    """
    value = str(value).strip()
    if not PORT_PATTERN.match(value):
        return False
    return 0 < int(value) <= 65535


def is_valid_listen(value: str) -> bool:
    """Check a listen address such as ``0.0.0.0:80`` or ``[::]:443``."""
    return bool(LISTEN_PATTERN.match(str(value).strip()))


def is_valid_host(value: str) -> bool:
    """A remote host must be non-empty and free of whitespace and quotes."""
    value = str(value).strip()
    return bool(value) and not any(ch.isspace() or ch in '"\'' for ch in value)


def listen_address(port: str, mode: str = "1") -> str:
    """Build the listen address for a menu listen mode.

    Mode ``1`` (and anything unrecognised) listens dual-stack on ``[::]``,
    mode ``2`` on IPv4 only.
    """
    if mode == "2":
        return f"0.0.0.0:{port}"
    return f"[::]:{port}"


def display_width(text: str) -> int:
    """Terminal column width, counting CJK characters as two columns."""
    return sum(2 if unicodedata.east_asian_width(ch) in ("W", "F") else 1 for ch in text)


def pad(text: str, width: int) -> str:
    """Left-justify text to a display width."""
    text = str(text)
    return text + " " * max(0, width - display_width(text))


def format_row(cells: Iterable[str]) -> str:
    cells = list(cells)
    first, rest = cells[0], cells[1:]
    parts = [" " + pad(first, TABLE_WIDTHS[0] - 1)]
    parts.extend(" " + pad(cell, width) for cell, width in zip(rest, TABLE_WIDTHS[1:]))
    return "|".join(parts).rstrip()


def format_rules_table(rules) -> str:
    """Render rules as the fixed-width listing table.

    Args:
        rules: Iterable of Rule objects

    Returns:
        Table text without a trailing newline
    """
    lines = [TABLE_RULE, format_row(TABLE_HEADERS), TABLE_RULE]
    for rule in rules:
        lines.append(format_row((str(rule.index), rule.listen, rule.remote, rule.remark)))
        lines.append(TABLE_RULE)
    return "\n".join(lines)


def success(message: str) -> str:
    return f"{Fore.GREEN}✔ {message}{Style.RESET_ALL}"


def warning(message: str) -> str:
    return f"{Fore.YELLOW}⚠ {message}{Style.RESET_ALL}"


def error(message: str) -> str:
    return f"{Fore.RED}✖ {message}{Style.RESET_ALL}"


def step(message: str) -> str:
    return f"{Fore.BLUE}▶ {message}{Style.RESET_ALL}"


def colored(text: str, color: str) -> str:
    return f"{color}{text}{Style.RESET_ALL}"
