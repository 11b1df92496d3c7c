#!/usr/bin/env python3
"""
Tests for the interactive menu flows.
"""

import click
import pytest
from pathlib import Path
from unittest.mock import Mock, patch

from click.testing import CliRunner

from realmctl.installer import InstallError, InstallResult
from realmctl.menu import RealmMenu
from realmctl.rule_store import RuleStore, RuleStoreError
from realmctl.service import ServiceError


@pytest.fixture
def service():
    service = Mock()
    service.is_running.return_value = False
    return service


@pytest.fixture
def menu(settings, service):
    return RealmMenu(settings, service=service, installer=Mock())


def run_action(menu, action, input_text=""):
    """Run one menu method under CliRunner so prompts read the given input."""
    @click.command()
    def command():
        getattr(menu, action)()

    return CliRunner().invoke(command, input=input_text)


class TestAddFlow:
    """Test the add-rule prompts."""

    def test_add_default_dual_stack(self, menu, settings, config_file, service):
        """Test adding a rule with the default listen mode."""
        result = run_action(menu, "add_rules", "9000\n5.6.7.8\n9000\nweb\n\nn\n")

        assert result.exit_code == 0
        assert "添加成功：[::]:9000 → 5.6.7.8:9000" in result.output
        assert "服务已重启" in result.output
        service.reload.assert_called_once_with()
        rules = RuleStore(config_file).list_rules()
        assert rules[-1].listen == "[::]:9000"
        assert rules[-1].remark == "web"

    def test_add_ipv4_only(self, menu, config_file):
        result = run_action(menu, "add_rules", "9000\n5.6.7.8\n9000\n\n2\nn\n")

        assert result.exit_code == 0
        assert RuleStore(config_file).list_rules()[-1].listen == "0.0.0.0:9000"

    def test_add_custom_listen_reprompts(self, menu, config_file):
        """Test that a malformed custom address is asked again."""
        result = run_action(menu, "add_rules", "9000\nh\n80\n\n3\nbad\n10.0.0.1:9000\nn\n")

        assert "格式错误" in result.output
        assert RuleStore(config_file).list_rules()[-1].listen == "10.0.0.1:9000"

    def test_invalid_port_reprompts(self, menu, config_file):
        before = config_file.read_bytes()

        result = run_action(menu, "add_rules", "abc\nq\n")

        assert result.exit_code == 0
        assert "端口必须为数字" in result.output
        assert config_file.read_bytes() == before

    def test_empty_target_reprompts(self, menu, config_file):
        result = run_action(menu, "add_rules", "9000\n\nq\n")

        assert "目标不能为空" in result.output

    def test_duplicate_listen_reported(self, menu, config_file):
        """Test that a listen conflict is shown and the loop continues."""
        result = run_action(menu, "add_rules", "8080\nh\n80\n\n\nq\n")

        assert result.exit_code == 0
        assert "冲突" in result.output
        assert len(RuleStore(config_file).list_rules()) == 1

    def test_add_several(self, menu, config_file):
        result = run_action(menu, "add_rules", "9001\nh\n1\n\n\ny\n9002\nh\n2\n\n\nn\n")

        assert result.exit_code == 0
        assert [r.listen for r in RuleStore(config_file).list_rules()] == [
            "[::]:8080", "[::]:9001", "[::]:9002"
        ]

    def test_reload_failure_is_warning(self, menu, config_file, service):
        """Test that the rule stays when the restart fails."""
        service.reload.side_effect = ServiceError("重启失败")

        result = run_action(menu, "add_rules", "9000\nh\n80\n\n\nn\n")

        assert result.exit_code == 0
        assert "规则已写入，但重启失败" in result.output
        assert len(RuleStore(config_file).list_rules()) == 2


class TestListAndDelete:
    """Test listing and deleting from the menu."""

    def test_list_rules(self, menu, config_file):
        result = run_action(menu, "list_rules")

        assert "序号" in result.output
        assert "[::]:8080" in result.output
        assert "1.2.3.4:443" in result.output
        assert "test" in result.output

    def test_list_without_config(self, menu, settings):
        result = run_action(menu, "list_rules")

        assert f"未发现配置文件：{settings.config_file}" in result.output
        assert not settings.config_file.exists()

    def test_delete_rule(self, menu, config_file, service):
        result = run_action(menu, "delete_rule", "1\n")

        assert "已删除规则 #1" in result.output
        assert RuleStore(config_file).list_rules() == []
        service.reload.assert_called_once_with()

    def test_delete_blank_returns(self, menu, config_file):
        before = config_file.read_bytes()

        result = run_action(menu, "delete_rule", "\n")

        assert "返回主菜单。" in result.output
        assert config_file.read_bytes() == before

    @pytest.mark.parametrize("choice,message", [("abc", "无效输入。"), ("5", "选择超出范围。")])
    def test_delete_invalid_choice(self, menu, config_file, choice, message):
        before = config_file.read_bytes()

        result = run_action(menu, "delete_rule", f"{choice}\n")

        assert result.exit_code == 0
        assert message in result.output
        assert config_file.read_bytes() == before

    def test_delete_without_config(self, menu, settings):
        result = run_action(menu, "delete_rule")

        assert "未发现配置文件" in result.output

    def test_delete_write_failure_is_fatal(self, menu, config_file):
        """Test that an I/O failure during delete terminates."""
        with patch.object(Path, "replace", side_effect=OSError("read-only file system")):
            result = run_action(menu, "delete_rule", "1\n")

        assert result.exit_code == 1
        assert "删除失败" in result.output

    def test_delete_read_failure_is_fatal(self, menu, config_file):
        """Test that a read error before the prompt terminates with status 1."""
        with patch.object(RuleStore, "_read_text", side_effect=RuleStoreError("读取配置失败")):
            result = run_action(menu, "delete_rule")

        assert result.exit_code == 1
        assert "读取配置失败" in result.output


class TestServiceActions:
    """Test the service entries of the menu."""

    def test_start_failure_is_reported(self, menu, service):
        service.start.side_effect = ServiceError("启动失败")

        result = run_action(menu, "start")

        assert result.exit_code == 0
        assert "启动失败" in result.output

    def test_restart(self, menu, service):
        result = run_action(menu, "restart")

        assert "已重启" in result.output
        service.restart.assert_called_once_with()

    def test_view_logs_missing(self, menu, settings):
        result = run_action(menu, "view_logs")

        assert f"暂无日志：{settings.log_file}" in result.output

    def test_view_logs(self, menu, settings):
        settings.log_file.parent.mkdir(parents=True)
        settings.log_file.write_text("[2024-01-01 00:00:00] INFO: Service started\n")

        result = run_action(menu, "view_logs")

        assert "Service started" in result.output

    def test_uninstall_requires_confirmation(self, menu):
        run_action(menu, "uninstall", "n\n")

        menu.installer.uninstall.assert_not_called()

    def test_uninstall_confirmed(self, menu):
        result = run_action(menu, "uninstall", "y\n")

        menu.installer.uninstall.assert_called_once_with()
        assert "已卸载" in result.output


class TestMainLoop:
    """Test the main menu loop."""

    def test_list_then_exit(self, menu, config_file):
        result = run_action(menu, "run", "3\n\n0\n")

        assert result.exit_code == 0
        assert "Realm Alpine 管理脚本" in result.output
        assert "[::]:8080" in result.output

    def test_invalid_option(self, menu):
        result = run_action(menu, "run", "42\n\n0\n")

        assert "无效选项" in result.output

    def test_end_of_input_exits(self, menu):
        result = run_action(menu, "run", "")

        assert result.exit_code == 0

    def test_status_lines(self, menu, service):
        service.is_running.return_value = True
        menu.installer.is_installed.return_value = False

        result = run_action(menu, "render_header")

        assert "运行中" in result.output
        assert "未安装" in result.output


class TestInstallAction:
    """Test the install/update entry."""

    def test_install_closes_client(self, menu):
        menu.installer.install_or_update.return_value = InstallResult(
            version="2.7.0", url="https://example.invalid/realm.tar.gz"
        )

        result = run_action(menu, "install_or_update")

        assert result.exit_code == 0
        assert "Realm v2.7.0 下载/更新完成" in result.output
        menu.installer.close.assert_called_once_with()

    def test_install_failure_is_fatal(self, menu):
        """Test that installer errors exit 1 and still release the client."""
        menu.installer.install_or_update.side_effect = InstallError("无法写入 /root/realm/realm.tar.gz")

        result = run_action(menu, "install_or_update")

        assert result.exit_code == 1
        assert "无法写入" in result.output
        menu.installer.close.assert_called_once_with()
