#!/usr/bin/env python3
"""
Interactive text menu for managing realm on an Alpine host.
"""

import sys
import logging
from typing import Optional

import click
from colorama import Fore

from . import __version__
from .installer import InstallError, RealmInstaller
from .logging_config import tail_log
from .rule_store import MutationResult, RuleStore, RuleStoreError, ValidationError
from .service import OpenRCService, ServiceError
from .settings import Settings
from .utils import (
    colored, error, format_rules_table, is_valid_host, is_valid_listen, is_valid_port,
    listen_address, step, success, warning,
)

logger = logging.getLogger(__name__)

SEPARATOR = colored("------------------", Fore.YELLOW)
BANNER = colored("▂﹍" * 16 + "▂", Fore.YELLOW)


def ask(text: str) -> str:
    """Prompt for one line; empty input is allowed."""
    return click.prompt(text, default="", show_default=False).strip()


def fatal(message: str) -> None:
    """Report an unrecoverable error and terminate."""
    click.echo(error(message))
    logger.error(message)
    sys.exit(1)


def report_mutation(result: MutationResult, settings: Settings, action: str) -> None:
    """Print the persist and reload outcomes of an edit separately."""
    if result.reloaded:
        click.echo(success("服务已重启，规则已生效"))
    elif result.reload_error is not None:
        click.echo(warning(
            f"{action}，但重启失败。请检查配置：{settings.config_file} 和日志：{settings.log_file}"
        ))


class RealmMenu:
    """The numbered main menu and its sub-flows."""

    def __init__(self, settings: Settings, service: Optional[OpenRCService] = None,
                 store: Optional[RuleStore] = None, installer: Optional[RealmInstaller] = None):
        self.settings = settings
        self.service = service or OpenRCService(settings)
        self.store = store or RuleStore(settings.config_file, reloader=self.service.reload)
        self.installer = installer or RealmInstaller(settings, service=self.service)

    def status_line(self) -> str:
        if self.service.is_running():
            return colored("● 运行中", Fore.GREEN)
        return colored("● 未运行", Fore.RED)

    def install_line(self) -> str:
        if self.installer.is_installed():
            return colored("已安装", Fore.GREEN)
        return colored("未安装", Fore.RED)

    def render_header(self) -> None:
        click.echo(BANNER)
        click.echo("")
        click.echo(f"        {colored(f'Realm Alpine 管理脚本 v{__version__}', Fore.BLUE)}")
        click.echo(f"        OpenRC + apk | 配置：{self.settings.config_file}")
        click.echo("")
        click.echo(f"服务状态：{self.status_line()}")
        click.echo(f"安装状态：{self.install_line()}")
        click.echo("")
        click.echo(SEPARATOR)
        click.echo("1. 安装/更新 Realm")
        click.echo("2. 添加转发规则")
        click.echo("3. 查看转发规则")
        click.echo("4. 删除转发规则")
        click.echo(SEPARATOR)
        click.echo("5. 启动服务")
        click.echo("6. 停止服务")
        click.echo("7. 重启服务")
        click.echo("8. 查看日志")
        click.echo(SEPARATOR)
        click.echo("9. 完全卸载")
        click.echo("0. 退出")
        click.echo(SEPARATOR)
        click.echo("")

    def run(self) -> None:
        """Main loop; returns on ``0`` or end of input."""
        logger.info(f"Script start v{__version__}")
        try:
            while True:
                click.clear()
                self.render_header()
                choice = ask("请输入选项")
                if choice == "0":
                    return
                self.dispatch(choice)
                click.echo("")
                ask("按回车继续...")
        except click.Abort:
            click.echo("")

    def dispatch(self, choice: str) -> None:
        actions = {
            "1": self.install_or_update,
            "2": self.add_rules,
            "3": self.list_rules,
            "4": self.delete_rule,
            "5": self.start,
            "6": self.stop,
            "7": self.restart,
            "8": self.view_logs,
            "9": self.uninstall,
        }
        action = actions.get(choice)
        if action is None:
            click.echo(colored("无效选项", Fore.RED))
            return
        action()

    def install_or_update(self) -> None:
        click.echo(step("检查依赖..."))
        try:
            result = self.installer.install_or_update()
        except (InstallError, ServiceError, RuleStoreError) as e:
            fatal(str(e))
        finally:
            self.installer.close()
        if result.used_fallback:
            click.echo(warning(f"无法获取最新版本，使用备用版本 v{result.version}"))
        click.echo(success(f"Realm v{result.version} 下载/更新完成"))
        click.echo(success("OpenRC 服务已创建并加入开机自启（default runlevel）"))
        click.echo(success("安装/更新完成"))

    def list_rules(self) -> None:
        click.echo(f"                   {colored('当前 Realm 转发规则', Fore.YELLOW)}")
        if not self.store.exists():
            click.echo(format_rules_table([]))
            click.echo(f"未发现配置文件：{self.settings.config_file}")
            return
        try:
            rules = self.store.list_rules()
        except RuleStoreError as e:
            fatal(str(e))
        click.echo(format_rules_table(rules))
        if not rules:
            click.echo("没有发现任何转发规则。")

    def _prompt_listen(self, local_port: str) -> str:
        click.echo("")
        click.echo(colored("请选择监听模式：", Fore.YELLOW))
        click.echo(f"1) 双栈监听 [::]:{local_port} (默认)")
        click.echo(f"2) 仅IPv4监听 0.0.0.0:{local_port}")
        click.echo("3) 自定义监听地址")
        mode = ask("请输入选项 [1-3] (默认1)") or "1"
        if mode != "3":
            return listen_address(local_port, mode)
        while True:
            custom = ask("请输入完整监听地址(如 0.0.0.0:80 或 [::]:443)")
            if is_valid_listen(custom):
                return custom
            click.echo(error("格式错误"))

    def add_rules(self) -> None:
        click.echo(step("添加新规则（输入 q 退出）"))
        while True:
            local_port = ask("本地监听端口")
            if local_port == "q":
                return
            if not is_valid_port(local_port):
                click.echo(error("端口必须为数字"))
                continue

            remote_host = ask("目标服务器IP/域名")
            if not is_valid_host(remote_host):
                click.echo(error("目标不能为空"))
                continue

            remote_port = ask("目标端口")
            if not is_valid_port(remote_port):
                click.echo(error("端口必须为数字"))
                continue

            remark = ask("规则备注")
            listen = self._prompt_listen(local_port)

            try:
                result = self.store.append(listen, remote_host, remote_port, remark)
            except ValidationError as e:
                click.echo(error(str(e)))
                continue
            except RuleStoreError as e:
                fatal(str(e))

            click.echo(success(f"添加成功：{result.rule.listen} → {result.rule.remote}"))
            report_mutation(result, self.settings, "规则已写入")

            if ask("继续添加？(y/n)") != "y":
                return

    def delete_rule(self) -> None:
        if not self.store.exists():
            click.echo(f"未发现配置文件：{self.settings.config_file}")
            return
        try:
            rules = self.store.list_rules()
        except RuleStoreError as e:
            fatal(str(e))
        if not rules:
            click.echo("没有发现任何转发规则。")
            return

        self.list_rules()
        click.echo("请输入要删除的转发规则序号，直接回车返回主菜单。")
        choice = ask("选择")
        if not choice:
            click.echo("返回主菜单。")
            return

        try:
            result = self.store.delete(choice)
        except ValidationError as e:
            click.echo(str(e))
            return
        except RuleStoreError as e:
            fatal(f"删除失败（{e}）")

        click.echo(success(f"已删除规则 #{result.index}"))
        report_mutation(result, self.settings, "删除完成")

    def start(self) -> None:
        try:
            self.service.start()
        except ServiceError as e:
            click.echo(error(str(e)))
            logger.error(str(e))
            return
        click.echo(success("已启动，并设置开机自启"))

    def stop(self) -> None:
        self.service.stop()
        click.echo(warning("已停止"))

    def restart(self) -> None:
        try:
            self.service.restart()
        except ServiceError as e:
            click.echo(error(str(e)))
            logger.error(str(e))
            return
        click.echo(success("已重启"))

    def view_logs(self, lines: int = 50) -> None:
        click.echo(colored("最近日志：", Fore.BLUE))
        content = tail_log(self.settings.log_file, lines)
        if content is None:
            click.echo(f"暂无日志：{self.settings.log_file}")
        else:
            click.echo(content)

    def uninstall(self) -> None:
        if ask("确认完全卸载？(y/n)") != "y":
            return
        click.echo(step("正在卸载..."))
        try:
            self.installer.uninstall()
        except ServiceError as e:
            fatal(str(e))
        click.echo(success(f"已卸载（保留日志：{self.settings.log_file}）"))
