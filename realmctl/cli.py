#!/usr/bin/env python3
"""
Main CLI module for realmctl.
"""

import sys
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .installer import InstallError, RealmInstaller, need_root
from .logging_config import get_logger, setup_logging, tail_log
from .menu import RealmMenu, fatal, report_mutation
from .rule_store import RuleStore, RuleStoreError, ValidationError
from .service import OpenRCService, ServiceError
from .settings import Settings, SettingsError, load_settings
from .utils import error, format_rules_table, listen_address, success, warning

LOG_LEVELS = ["DEBUG", "VERBOSE", "INFO", "WARNING", "ERROR"]


class AppContext:
    """Objects shared by every subcommand."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.service = OpenRCService(settings)

    def store(self, reload: bool = True) -> RuleStore:
        return RuleStore(self.settings.config_file,
                         reloader=self.service.reload if reload else None)

    def installer(self) -> RealmInstaller:
        return RealmInstaller(self.settings, service=self.service)


pass_app = click.make_pass_decorator(AppContext)


@click.group(invoke_without_command=True)
@click.option("--settings", "settings_file", type=click.Path(dir_okay=False),
              help="YAML settings file (default: $REALMCTL_SETTINGS)")
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False), default="INFO",
              help="Log level for the manager log. VERBOSE adds structured detail")
@click.option("--log-dir", type=click.Path(file_okay=False),
              help="Directory for the JSON debug log (default: next to the manager log)")
@click.version_option(__version__, prog_name="realmctl")
@click.pass_context
def cli(ctx, settings_file: Optional[str], log_level: str, log_dir: Optional[str]):
    """realmctl - install realm and manage its forwarding rules on Alpine Linux.

    Run without a command to open the interactive menu.
    """
    try:
        settings = load_settings(settings_file)
    except SettingsError as e:
        click.echo(error(str(e)))
        sys.exit(1)

    try:
        setup_logging(log_file=settings.log_file,
                      log_dir=Path(log_dir) if log_dir else None,
                      log_level=log_level)
    except OSError as e:
        click.echo(error(f"无法创建日志 {settings.log_file}: {e}"))
        sys.exit(1)

    ctx.obj = AppContext(settings)
    if ctx.invoked_subcommand is None:
        ctx.invoke(menu)


@cli.command()
@pass_app
def menu(app: AppContext):
    """Open the interactive management menu."""
    try:
        need_root()
        app.installer().init_dirs()
    except InstallError as e:
        fatal(str(e))
    RealmMenu(app.settings, service=app.service, store=app.store()).run()


@cli.command()
@click.option("--version", "release", help="Install this release instead of the newest one")
@pass_app
def install(app: AppContext, release: Optional[str]):
    """Install or update realm and its OpenRC service."""
    installer = app.installer()
    try:
        result = installer.install_or_update(release)
    except (InstallError, ServiceError, RuleStoreError) as e:
        fatal(str(e))
    finally:
        installer.close()

    if result.used_fallback:
        click.echo(warning(f"无法获取最新版本，使用备用版本 v{result.version}"))
    click.echo(success(f"Realm v{result.version} 安装/更新完成"))


@cli.command("list")
@pass_app
def list_rules(app: AppContext):
    """Show the configured forwarding rules."""
    store = app.store(reload=False)
    if not store.exists():
        click.echo(f"未发现配置文件：{app.settings.config_file}")
        return
    try:
        rules = store.list_rules()
    except RuleStoreError as e:
        fatal(str(e))
    click.echo(format_rules_table(rules))


@cli.command()
@click.option("--port", "local_port", help="Local port; listens on [::] unless --ipv4")
@click.option("--ipv4", is_flag=True, help="Listen on 0.0.0.0 instead of [::]")
@click.option("--listen", help="Full listen address, e.g. 0.0.0.0:80 or [::]:443")
@click.option("--remote-host", required=True, help="Destination IP or domain")
@click.option("--remote-port", required=True, help="Destination port")
@click.option("--remark", default="", help="Free-text note for the rule")
@click.option("--force", is_flag=True, help="Allow a listen address that is already in use")
@click.option("--no-reload", is_flag=True, help="Do not restart the service afterwards")
@pass_app
def add(app: AppContext, local_port: Optional[str], ipv4: bool, listen: Optional[str],
        remote_host: str, remote_port: str, remark: str, force: bool, no_reload: bool):
    """Append a forwarding rule."""
    if bool(listen) == bool(local_port):
        raise click.UsageError("Pass exactly one of --listen or --port")
    if listen is None:
        listen = listen_address(local_port, "2" if ipv4 else "1")

    try:
        result = app.store(reload=not no_reload).append(
            listen, remote_host, remote_port, remark, allow_duplicate=force
        )
    except ValidationError as e:
        click.echo(error(str(e)))
        sys.exit(2)
    except RuleStoreError as e:
        fatal(str(e))

    get_logger("cli").verbose("Rule appended", index=result.index, listen=result.rule.listen,
                              remote=result.rule.remote, reloaded=result.reloaded)
    click.echo(success(f"添加成功 #{result.index}：{result.rule.listen} → {result.rule.remote}"))
    report_mutation(result, app.settings, "规则已写入")


@cli.command()
@click.argument("index")
@click.option("--no-reload", is_flag=True, help="Do not restart the service afterwards")
@pass_app
def delete(app: AppContext, index: str, no_reload: bool):
    """Delete the rule at INDEX (as shown by `list`)."""
    try:
        result = app.store(reload=not no_reload).delete(index)
    except ValidationError as e:
        click.echo(error(str(e)))
        sys.exit(2)
    except RuleStoreError as e:
        fatal(f"删除失败（{e}）")

    get_logger("cli").verbose("Rule deleted", index=result.index, listen=result.rule.listen,
                              remote=result.rule.remote, reloaded=result.reloaded)
    click.echo(success(f"已删除规则 #{result.index}"))
    report_mutation(result, app.settings, "删除完成")


@cli.command()
@pass_app
def start(app: AppContext):
    """Start realm and enable it at boot."""
    try:
        app.service.start()
    except ServiceError as e:
        fatal(str(e))
    click.echo(success("已启动，并设置开机自启"))


@cli.command()
@pass_app
def stop(app: AppContext):
    """Stop realm."""
    app.service.stop()
    click.echo(warning("已停止"))


@cli.command()
@pass_app
def restart(app: AppContext):
    """Restart realm so it picks up the configuration."""
    try:
        app.service.restart()
    except ServiceError as e:
        fatal(str(e))
    click.echo(success("已重启"))


@cli.command()
@pass_app
def status(app: AppContext):
    """Show service and installation state."""
    running = app.service.is_running()
    installed = app.installer().is_installed()
    click.echo(f"服务状态：{'运行中' if running else '未运行'}")
    click.echo(f"安装状态：{'已安装' if installed else '未安装'}")
    if not running:
        sys.exit(3)


@cli.command()
@click.option("--lines", "-n", default=50, show_default=True, help="Number of lines to show")
@pass_app
def logs(app: AppContext, lines: int):
    """Show the end of the manager log."""
    content = tail_log(app.settings.log_file, lines)
    if content is None:
        click.echo(f"暂无日志：{app.settings.log_file}")
        return
    click.echo(f"Showing last {lines} lines of {app.settings.log_file}")
    click.echo(content)


@cli.command()
@click.option("--yes", is_flag=True, help="Skip confirmation")
@pass_app
def uninstall(app: AppContext, yes: bool):
    """Remove realm, its service and configuration (the log is kept)."""
    if not yes and not click.confirm("确认完全卸载？", default=False):
        click.echo("Cancelled.")
        return
    try:
        need_root()
        app.installer().uninstall()
    except (InstallError, ServiceError) as e:
        fatal(str(e))
    click.echo(success(f"已卸载（保留日志：{app.settings.log_file}）"))


@cli.group()
def config():
    """Inspect realmctl settings."""
    pass


@config.command("show")
@pass_app
def show_config(app: AppContext):
    """Show the resolved settings."""
    click.echo("\n🔧 Current Configuration:")
    for name, value in app.settings.as_dict().items():
        if isinstance(value, list):
            value = ", ".join(value)
        click.echo(f"  {name}: {value}")


def main():
    """Entry point for the CLI application."""
    cli()


if __name__ == "__main__":
    main()
