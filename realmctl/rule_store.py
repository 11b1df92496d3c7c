#!/usr/bin/env python3
"""
Forwarding rule storage for the realm configuration file.

The configuration is a TOML document made of a global section followed by
repeated ``[[endpoints]]`` blocks. Each block is kept as its original lines so
that edits never reformat the parts of the file they do not touch.
"""

import fcntl
import logging
import os
import re
import tempfile
import tomllib
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Union

from .utils import is_valid_host, is_valid_listen, is_valid_port

logger = logging.getLogger(__name__)

ENDPOINT_MARKER = "[[endpoints]]"
REMARK_LABEL = "备注"

DEFAULT_CONFIG = """[network]
no_tcp = false
use_udp = true
# ipv6_only = false
"""

_MARKER_RE = re.compile(r'^\[\[endpoints\]\]\s*(#.*)?$')
_REMARK_RE = re.compile(r'^#\s*备注:[ \t]*(.*)$')
_FIELD_RE = re.compile(r'^(listen|remote)\s*=\s*(.*)$')

WILDCARD_HOSTS = {"[::]", "0.0.0.0", ""}


class RuleStoreError(Exception):
    """Base exception for configuration file errors."""
    pass


class ValidationError(RuleStoreError):
    """Raised when user input is rejected before any file is touched."""
    pass


class InvalidIndexError(ValidationError):
    """Raised when a rule index is not a number or is out of range."""
    pass


class DuplicateListenError(ValidationError):
    """Raised when a new rule would listen on an address already in use."""
    pass


class ConfigNotFoundError(ValidationError):
    """Raised when the configuration file does not exist."""
    pass


@dataclass
class Rule:
    """A single forwarding rule as shown to the user."""
    listen: str
    remote: str
    remark: str = ""
    index: int = 0


@dataclass
class MutationResult:
    """Outcome of an edit: persisting and reloading are reported separately.

    ``reload_error`` is None both when the reload succeeded and when no
    reloader was configured; ``reloaded`` tells the two apart.
    """
    persisted: bool
    reloaded: bool
    rule: Rule
    index: int
    reload_error: Optional[str] = None


def _unquote(raw: str) -> str:
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value.strip("\"'")


@dataclass
class EndpointBlock:
    """One ``[[endpoints]]`` block, header line included."""
    lines: List[str]
    start_line: int = 0

    @property
    def end_line(self) -> int:
        return self.start_line + len(self.lines) - 1

    def to_rule(self, index: int) -> Rule:
        remark = ""
        listen = ""
        remote = ""
        seen_remote = False

        for line in self.lines[1:]:
            stripped = line.strip()
            if not seen_remote:
                remark_match = _REMARK_RE.match(stripped)
                if remark_match:
                    remark = remark_match.group(1).rstrip()
                    continue
            field_match = _FIELD_RE.match(stripped)
            if field_match:
                if field_match.group(1) == "listen":
                    listen = _unquote(field_match.group(2))
                else:
                    remote = _unquote(field_match.group(2))
                    seen_remote = True

        # Prefer real TOML decoding so escapes and trailing comments are honoured
        try:
            data = tomllib.loads("\n".join(self.lines[1:]))
        except tomllib.TOMLDecodeError as e:
            logger.warning(f"Endpoint block at line {self.start_line} is not valid TOML, "
                           f"using raw values: {e}")
        else:
            if "listen" in data:
                listen = str(data["listen"])
            if "remote" in data:
                remote = str(data["remote"])

        return Rule(listen=listen, remote=remote, remark=remark, index=index)


@dataclass
class ConfigDocument:
    """The configuration split into its global section and endpoint blocks."""
    preamble: List[str] = field(default_factory=list)
    blocks: List[EndpointBlock] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> "ConfigDocument":
        doc = cls()
        current: Optional[EndpointBlock] = None
        lines = text.split("\n")
        if lines and lines[-1] == "":
            lines.pop()
        for number, line in enumerate(lines, start=1):
            if _MARKER_RE.match(line):
                current = EndpointBlock(lines=[line], start_line=number)
                doc.blocks.append(current)
            elif current is None:
                doc.preamble.append(line)
            else:
                current.lines.append(line)
        return doc

    def rules(self) -> Iterator[Rule]:
        for index, block in enumerate(self.blocks, start=1):
            yield block.to_rule(index)

    def remove(self, index: int) -> EndpointBlock:
        """Remove and return the block at a 1-based position."""
        return self.blocks.pop(index - 1)

    def render(self) -> str:
        """Serialize with runs of blank lines collapsed to one."""
        lines = list(self.preamble)
        for block in self.blocks:
            lines.extend(block.lines)

        normalized: List[str] = []
        for line in lines:
            if not line.strip():
                if normalized and not normalized[-1]:
                    continue
                normalized.append("")
            else:
                normalized.append(line)

        while normalized and not normalized[-1]:
            normalized.pop()
        if not normalized:
            return ""
        return "\n".join(normalized) + "\n"


def render_block(listen: str, remote: str, remark: str = "") -> str:
    """Canonical text of a new endpoint block, newline terminated."""
    return (
        f"{ENDPOINT_MARKER}\n"
        f"# {REMARK_LABEL}: {remark}\n"
        f"listen = \"{listen}\"\n"
        f"remote = \"{remote}\"\n"
    )


def parse_index(value: Union[int, str]) -> int:
    """Turn user input into a positive integer index.

    Raises:
        InvalidIndexError: If the input is empty, signed or not a number
    """
    if isinstance(value, bool):
        raise InvalidIndexError("无效输入。")
    if isinstance(value, int):
        index = value
    else:
        text = str(value).strip()
        if not text.isdigit() or not text.isascii():
            raise InvalidIndexError("无效输入。")
        index = int(text)
    if index < 1:
        raise InvalidIndexError("选择超出范围。")
    return index


def _split_listen(listen: str):
    host, _, port = listen.strip().rpartition(":")
    return host, port


def listen_conflicts(a: str, b: str) -> bool:
    """Whether two listen addresses would bind the same port."""
    host_a, port_a = _split_listen(a)
    host_b, port_b = _split_listen(b)
    if port_a != port_b:
        return False
    return host_a == host_b or host_a in WILDCARD_HOSTS or host_b in WILDCARD_HOSTS


class RuleStore:
    """List, append and delete forwarding rules in one configuration file.

    Every call re-reads the file. Writers take an exclusive ``flock`` on a
    ``<config>.lock`` sidecar, readers a shared one, so concurrent realmctl
    processes on the host do not interleave their edits.
    """

    def __init__(self, config_file: Union[str, Path],
                 reloader: Optional[Callable[[], None]] = None):
        """Initialize the store.

        Args:
            config_file: Path to the realm TOML configuration
            reloader: Called after a successful edit to apply it; raising
                marks the edit as persisted but not reloaded
        """
        self.config_file = Path(config_file)
        self.lock_file = self.config_file.with_name(self.config_file.name + ".lock")
        self.reloader = reloader

    def exists(self) -> bool:
        return self.config_file.exists()

    @contextmanager
    def _locked(self, exclusive: bool):
        """Hold the sidecar lock; readers go unlocked if it cannot be opened."""
        handle = None
        try:
            self.lock_file.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self.lock_file, "a")
        except OSError as e:
            if exclusive:
                raise RuleStoreError(f"无法打开锁文件 {self.lock_file}: {e}")
            logger.warning(f"Reading {self.config_file} without lock: {e}")

        if handle is None:
            yield
            return
        try:
            fcntl.flock(handle, fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)
            handle.close()

    def _read_text(self) -> str:
        try:
            return self.config_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ConfigNotFoundError(f"未发现配置文件：{self.config_file}")
        except OSError as e:
            raise RuleStoreError(f"读取配置失败：{self.config_file}: {e}")

    def _write_text(self, text: str) -> None:
        """Write the whole file through a temporary file and an atomic rename."""
        directory = self.config_file.parent
        try:
            fd, temp_name = tempfile.mkstemp(
                prefix=f".{self.config_file.name}.", suffix=".tmp", dir=directory
            )
        except OSError as e:
            raise RuleStoreError(f"写临时文件失败：{e}")

        temp_file = Path(temp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            if self.config_file.exists():
                os.chmod(temp_file, self.config_file.stat().st_mode & 0o7777)
            temp_file.replace(self.config_file)
        except OSError as e:
            if temp_file.exists():
                temp_file.unlink()
            raise RuleStoreError(f"覆盖配置失败：{self.config_file}: {e}")

    def ensure_exists(self, default_text: str = DEFAULT_CONFIG) -> bool:
        """Create the configuration with default settings if it is missing.

        Returns:
            True if the file was created
        """
        with self._locked(exclusive=True):
            if self.config_file.exists():
                return False
            self._write_text(default_text)
        logger.info(f"Config initialized: {self.config_file}")
        return True

    def load(self) -> ConfigDocument:
        with self._locked(exclusive=False):
            return ConfigDocument.parse(self._read_text())

    def iter_rules(self) -> Iterator[Rule]:
        """Yield rules in file order; yields nothing when the file is absent."""
        if not self.exists():
            return
        try:
            doc = self.load()
        except ConfigNotFoundError:
            return
        yield from doc.rules()

    def list_rules(self) -> List[Rule]:
        return list(self.iter_rules())

    def append(self, listen: str, remote_host: str, remote_port: Union[int, str],
               remark: str = "", allow_duplicate: bool = False) -> MutationResult:
        """Append a rule block to the end of the file.

        Args:
            listen: Local listen address, e.g. ``[::]:8080``
            remote_host: Destination IP or domain
            remote_port: Destination port
            remark: Free-text note, may be empty
            allow_duplicate: Skip the listen address conflict check

        Returns:
            MutationResult for the new rule

        Raises:
            ValidationError: If an input is malformed or the listen address is taken
            RuleStoreError: If the file cannot be written
        """
        listen = str(listen).strip()
        remote_host = str(remote_host).strip()
        remote_port = str(remote_port).strip()
        remark = " ".join(str(remark or "").splitlines()).strip()

        if not is_valid_listen(listen):
            raise ValidationError("格式错误：监听地址应如 0.0.0.0:80 或 [::]:443")
        if not is_valid_host(remote_host):
            raise ValidationError("目标不能为空")
        if not is_valid_port(remote_port):
            raise ValidationError("端口必须为数字")
        remote = f"{remote_host}:{remote_port}"

        if not self.exists():
            self.ensure_exists()

        with self._locked(exclusive=True):
            text = self._read_text()
            doc = ConfigDocument.parse(text)
            existing = list(doc.rules())
            if not allow_duplicate:
                for rule in existing:
                    if rule.listen and listen_conflicts(rule.listen, listen):
                        raise DuplicateListenError(
                            f"监听地址 {listen} 与规则 #{rule.index} ({rule.listen}) 冲突"
                        )

            prefix = text
            if prefix and not prefix.endswith("\n"):
                prefix += "\n"
            self._write_text(prefix + "\n" + render_block(listen, remote, remark))

        rule = Rule(listen=listen, remote=remote, remark=remark, index=len(existing) + 1)
        logger.info(f"Rule added: {listen} -> {remote} remark={remark}")
        return self._after_mutation(rule)

    def delete(self, index: Union[int, str]) -> MutationResult:
        """Delete the rule at a 1-based position.

        Raises:
            InvalidIndexError: If the index is malformed or out of range
            ConfigNotFoundError: If the configuration file does not exist
            RuleStoreError: If the new file cannot be written
        """
        position = parse_index(index)
        if not self.exists():
            raise ConfigNotFoundError(f"未发现配置文件：{self.config_file}")

        with self._locked(exclusive=True):
            doc = ConfigDocument.parse(self._read_text())
            if not doc.blocks:
                raise InvalidIndexError("没有发现任何转发规则。")
            if position > len(doc.blocks):
                raise InvalidIndexError("选择超出范围。")

            rule = doc.blocks[position - 1].to_rule(position)
            block = doc.remove(position)
            self._write_text(doc.render())

        logger.info(f"Rule deleted: index={position} lines={block.start_line}-{block.end_line}")
        return self._after_mutation(rule)

    def _after_mutation(self, rule: Rule) -> MutationResult:
        result = MutationResult(persisted=True, reloaded=False, rule=rule, index=rule.index)
        if self.reloader is None:
            return result
        try:
            self.reloader()
        except Exception as e:
            result.reload_error = str(e)
            logger.warning(f"Config saved but reload failed: {e}")
        else:
            result.reloaded = True
        return result
