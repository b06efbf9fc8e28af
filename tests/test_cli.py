"""End-to-end tests for the command line through typer's CliRunner."""

import json
import os
import signal

import pytest
import yaml
from typer.testing import CliRunner

from frp_fleet.cli import app
from frp_fleet.common.logging import setup_logging
from frp_fleet.process import find_config_processes
from frp_fleet.store import ConfigStore

runner = CliRunner()


@pytest.fixture
def cli_env(settings, monkeypatch):
    """Point the CLI at the test settings and clean up what it spawns."""
    monkeypatch.setenv("FRP_FLEET_HOME", str(settings.config_dir))
    monkeypatch.setenv("FRP_FLEET_FRP_DIR", str(settings.frp_dir))
    monkeypatch.setenv("FRP_FLEET_STARTUP_GRACE", "0.2")
    monkeypatch.setenv("FRP_FLEET_STOP_TIMEOUT", "3")
    monkeypatch.setenv("COLUMNS", "400")
    yield settings
    for proc in find_config_processes(settings.run_dir):
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            os.waitpid(proc.pid, 0)
        except (OSError, ChildProcessError):
            pass
    setup_logging(level="WARNING")


@pytest.fixture
def fleet_cli(cli_env, populated_store):
    return cli_env


def invoke(*args):
    return runner.invoke(app, list(args))


class TestRegistryCommands:
    """Test registry commands through the CLI"""

    def test_add_client(self, cli_env):
        """add should persist a client with its proxies and tags"""
        result = invoke(
            "add", "web-a", "--role", "client",
            "--server-addr", "203.0.113.10", "--server-port", "7000", "--token", "client-secret-token",
            "--proxy", "ssh:tcp:22:6022", "--proxy", "site:http:8080", "--domain", "a.example.com",
            "--tag", "prod", "--config-version", "0.61.0",
        )

        assert result.exit_code == 0, result.output
        assert "Tunnel added" in result.output
        tunnel = ConfigStore(cli_env).load().require("web-a")
        assert [p.name for p in tunnel.connection.proxies] == ["ssh", "site"]
        assert tunnel.connection.proxies[1].custom_domains == ["a.example.com"]
        assert tunnel.tags == ["prod"]

    def test_add_invalid_tunnel_exits_2(self, cli_env):
        """add should exit 2 and write nothing for an invalid tunnel"""
        result = invoke("add", "web-a", "--role", "client", "--server-port", "7000")

        assert result.exit_code == 2
        assert "server_addr" in result.output
        assert not cli_env.registry_path.exists()

    def test_add_bad_proxy_spec(self, cli_env):
        """add should reject a malformed --proxy value"""
        result = invoke("add", "web-a", "--role", "client", "--proxy", "ssh:tcp")
        assert result.exit_code == 2

    def test_search(self, fleet_cli):
        """search should AND every term"""
        result = invoke("search", "tag:prod", "7001")

        assert result.exit_code == 0
        assert "web-b" in result.output
        assert "web-a" not in result.output

    def test_tag(self, fleet_cli):
        """tag should add and remove labels"""
        assert invoke("tag", "edge", "blue").exit_code == 0
        assert invoke("tag", "edge", "infra", "--remove").exit_code == 0
        assert ConfigStore(fleet_cli).load().require("edge").tags == ["blue"]

    def test_remove_requires_confirmation(self, fleet_cli):
        """remove should need --yes when not interactive"""
        result = invoke("remove", "web-b")

        assert result.exit_code == 1
        assert "--yes" in result.output
        assert "web-b" in ConfigStore(fleet_cli).load()

        assert invoke("--yes", "remove", "web-b").exit_code == 0
        assert "web-b" not in ConfigStore(fleet_cli).load()


class TestLifecycleCommands:
    """Test process lifecycle commands and their exit codes"""

    def test_start_status_stop(self, fleet_cli):
        """start, status and stop should drive one tunnel end to end"""
        assert invoke("start", "web-a").exit_code == 0

        status = invoke("status")
        assert status.exit_code == 0
        assert "running" in status.output

        record = json.loads((fleet_cli.run_dir / "web-a.json").read_text())
        assert record["state"] == "running"

        assert invoke("--yes", "stop", "web-a").exit_code == 0
        assert not (fleet_cli.run_dir / "web-a.json").exists()

    def test_stop_unknown_tunnel_exits_4(self, fleet_cli):
        """stop should exit 4 for an unknown tunnel"""
        result = invoke("--yes", "stop", "unknown-tunnel")

        assert result.exit_code == 4
        assert "unknown-tunnel" in result.output

    def test_stop_without_yes_when_not_interactive(self, fleet_cli):
        """stop should refuse without --yes and leave the tunnel running"""
        assert invoke("start", "web-a").exit_code == 0

        result = invoke("stop", "web-a")

        assert result.exit_code == 1
        assert "Confirmation required" in result.output
        assert json.loads((fleet_cli.run_dir / "web-a.json").read_text())["state"] == "running"

    def test_start_invalid_tunnel_exits_2(self, fleet_cli, make_client):
        """start should exit 2 for a tunnel that fails validation"""
        store = ConfigStore(fleet_cli)
        registry = store.load()
        registry.tunnels["broken"] = make_client("broken", connection={"auth_token": None})
        store.save(registry)

        result = invoke("start", "broken")

        assert result.exit_code == 2
        assert "auth_token" in result.output

    def test_partial_bulk_exits_1(self, fleet_cli, make_client):
        """A partially failed bulk start should exit 1"""
        store = ConfigStore(fleet_cli)
        registry = store.load()
        registry.tunnels["broken"] = make_client("broken", tags=["prod"], connection={"auth_token": None})
        store.save(registry)

        result = invoke("bulk", "start", "tag:prod")

        assert result.exit_code == 1
        assert "2 succeeded, 1 failed (partial)" in result.output

    def test_unconfirmed_stop_exits_5(self, fleet_cli, install_frpc):
        """stop should exit 5 when exit is not confirmed before the deadline"""
        install_frpc("stubborn")
        assert invoke("start", "web-a").exit_code == 0

        result = invoke("--yes", "--timeout", "0.5", "stop", "web-a")

        assert result.exit_code == 5
        assert json.loads((fleet_cli.run_dir / "web-a.json").read_text())["state"] == "stopping"

    def test_crash_is_reported(self, fleet_cli, install_frpc):
        """start should report a crash and status should show it"""
        install_frpc("crash")

        result = invoke("start", "web-a")
        assert result.exit_code == 1
        assert "address already in use" in result.output

        status = invoke("status", "web-a")
        assert "crashed" in status.output


class TestGlobalOptions:
    """Test global CLI options"""

    @pytest.mark.parametrize("args", [["--timeout", "soon"], ["--timeout", "0"], ["--log-level", "LOUD"]])
    def test_bad_global_options_exit_2(self, cli_env, args):
        """Bad global option values should exit 2"""
        result = invoke(*args, "status")
        assert result.exit_code == 2

    def test_undecodable_registry_exits_1(self, fleet_cli):
        """A registry that is not UTF-8 should be a storage failure, not a validation one"""
        fleet_cli.registry_path.write_bytes(b"[\xff\xfe]")

        result = invoke("status")

        assert result.exit_code == 1
        assert "corrupt" in result.output

    def test_quiet_hides_regular_output(self, fleet_cli):
        """--quiet should hide regular output"""
        result = invoke("--quiet", "status")

        assert result.exit_code == 0
        assert "web-a" not in result.output

    def test_version(self, cli_env):
        """version should show the detected FRP versions"""
        result = invoke("version")

        assert result.exit_code == 0
        assert "client: v0.61.0" in result.output
        assert "server: v0.61.0" in result.output


class TestExportImport:
    """Test export, import and validate commands"""

    def test_export_import_round_trip(self, fleet_cli, tmp_path):
        """An exported blob should replace-import into another registry"""
        blob = tmp_path / "fleet.yaml"
        assert invoke("export", str(blob)).exit_code == 0
        assert [t["name"] for t in yaml.safe_load(blob.read_text())["tunnels"]] == ["web-a", "web-b", "edge"]

        other = tmp_path / "other"
        result = invoke("--config-dir", str(other), "--yes", "import", str(blob), "--mode", "replace")

        assert result.exit_code == 0, result.output
        assert "3 added" in result.output
        assert ConfigStore(fleet_cli.model_copy(update={"config_dir": other})).load().names() == [
            "web-a", "web-b", "edge",
        ]

    def test_export_to_stdout(self, fleet_cli):
        """export without a path should print the blob"""
        result = invoke("export", "--selector", "edge")

        assert result.exit_code == 0
        assert "name: edge" in result.output

    def test_replace_import_needs_confirmation(self, fleet_cli, tmp_path):
        """Replace import should need --yes unless it is a dry run"""
        blob = tmp_path / "fleet.yaml"
        invoke("export", str(blob))

        assert invoke("import", str(blob), "--mode", "replace").exit_code == 1
        assert invoke("import", str(blob), "--mode", "replace", "--dry-run").exit_code == 0

    def test_import_with_only_failures_exits_2(self, fleet_cli, tmp_path):
        """An import that commits nothing should exit 2"""
        blob = tmp_path / "bad.yaml"
        blob.write_text(yaml.safe_dump({"format_version": 1, "tunnels": [{"name": "bad", "role": "client"}]}))

        result = invoke("import", str(blob))

        assert result.exit_code == 2
        assert "0 added" in result.output

    def test_validate_file(self, fleet_cli, tmp_path):
        """validate should check export files and selectors"""
        blob = tmp_path / "bad.yaml"
        blob.write_text(yaml.safe_dump({"format_version": 1, "tunnels": [{"name": "bad", "role": "server"}]}))

        result = invoke("validate", str(blob))

        assert result.exit_code == 2
        assert "bad.connection.bind_port" in result.output
        assert invoke("validate", "all").exit_code == 0

    def test_missing_import_file(self, fleet_cli, tmp_path):
        """import should exit 1 for a missing file"""
        assert invoke("import", str(tmp_path / "missing.yaml")).exit_code == 1


class TestMaintenance:
    """Test optimize and backup commands"""

    def test_optimize_clean_fleet(self, fleet_cli):
        """optimize should report nothing for a clean fleet"""
        result = invoke("optimize")

        assert result.exit_code == 0
        assert "Nothing to clean up" in result.output

    def test_optimize_apply_needs_confirmation(self, fleet_cli):
        """optimize --apply should need --yes before cleaning up"""
        fleet_cli.run_dir.mkdir(parents=True, exist_ok=True)
        (fleet_cli.run_dir / "old.toml").write_text("")

        assert invoke("optimize").exit_code == 0
        assert invoke("optimize", "--apply").exit_code == 1
        assert (fleet_cli.run_dir / "old.toml").exists()

        result = invoke("--yes", "optimize", "--apply")
        assert result.exit_code == 0
        assert "Applied cleanup" in result.output
        assert not (fleet_cli.run_dir / "old.toml").exists()

    def test_backups_list_and_restore(self, fleet_cli):
        """backups should list backups and restore one"""
        assert invoke("--yes", "remove", "web-b").exit_code == 0

        listing = invoke("backups")
        assert listing.exit_code == 0
        newest = [line.strip() for line in listing.output.splitlines() if line.strip().endswith(".bak")][0]

        assert invoke("--yes", "backups", "--restore", newest).exit_code == 0
        assert "web-b" in ConfigStore(fleet_cli).load()


TEMPLATE = """\
# Template: Regional client
# Tags: templated
name: edge-${REGION}
role: client
connection:
  server_addr: ${SERVER}
  server_port: 7000
  auth_token: client-secret-token
  proxies:
    - name: ssh
      type: tcp
      local_port: 22
      remote_port: 6022
"""


class TestTemplateCommands:
    """Test the template sub-commands and their exit codes"""

    @pytest.fixture
    def template_cli(self, cli_env, tmp_path):
        source = tmp_path / "client.yaml"
        source.write_text(TEMPLATE)
        assert invoke("template", "create", "regional", str(source)).exit_code == 0
        return cli_env

    def test_create_list_show_delete(self, template_cli):
        """template create, list, show and delete should manage stored templates"""
        listing = invoke("template", "list")
        assert listing.exit_code == 0
        assert "regional" in listing.output
        assert "REGION, SERVER" in listing.output

        shown = invoke("template", "show", "regional")
        assert shown.exit_code == 0
        assert "edge-${REGION}" in shown.output

        assert invoke("template", "delete", "regional").exit_code == 1
        assert invoke("--yes", "template", "delete", "regional").exit_code == 0
        assert invoke("template", "show", "regional").exit_code == 4

    def test_create_invalid_template_exits_2(self, cli_env, tmp_path):
        """template create should exit 2 for content that is not a mapping"""
        source = tmp_path / "bad.yaml"
        source.write_text("- not\n- a tunnel\n")

        assert invoke("template", "create", "bad", str(source)).exit_code == 2

    def test_instantiate(self, template_cli):
        """template instantiate should add a validated tunnel"""
        result = invoke("template", "instantiate", "regional", "--var", "REGION=eu", "--var", "SERVER=203.0.113.10")

        assert result.exit_code == 0, result.output
        assert "Tunnel added: edge-eu" in result.output
        assert ConfigStore(template_cli).load().require("edge-eu").tags == ["templated"]

    def test_instantiate_missing_variable_exits_2(self, template_cli):
        """template instantiate should exit 2 and add nothing when a variable is missing"""
        result = invoke("template", "instantiate", "regional", "--var", "REGION=eu")

        assert result.exit_code == 2
        assert "${SERVER}" in result.output
        assert not template_cli.registry_path.exists()

    def test_bulk_exit_codes(self, template_cli, tmp_path):
        """template bulk should exit 0, 1 on partial failure and 2 when nothing is added"""
        good = tmp_path / "good.csv"
        good.write_text("REGION,SERVER\neu,203.0.113.10\n")
        partial = tmp_path / "partial.csv"
        partial.write_text("REGION,SERVER\nus,203.0.113.11\nap,\n")
        failing = tmp_path / "failing.csv"
        failing.write_text("REGION,SERVER\neu,203.0.113.12\n")

        assert invoke("template", "bulk", "regional", str(good)).exit_code == 0

        result = invoke("template", "bulk", "regional", str(partial))
        assert result.exit_code == 1
        assert "1 added, 1 failed" in result.output
        assert "row 2" in result.output

        assert invoke("template", "bulk", "regional", str(failing)).exit_code == 2
        assert ConfigStore(template_cli).load().names() == ["edge-eu", "edge-us"]
