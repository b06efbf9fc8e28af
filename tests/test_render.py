"""Tests for FRP TOML rendering."""

import stat
import tomllib

from frp_fleet.render import ConfigBuilder, render_config


class TestClientConfig:
    """Test frpc TOML rendering"""

    def test_client_settings(self, make_client):
        """Client TOML should carry the connection settings"""
        data = tomllib.loads(render_config(make_client()))

        assert data["serverAddr"] == "203.0.113.10"
        assert data["serverPort"] == 7000
        assert data["transport"]["protocol"] == "tcp"
        assert data["auth"] == {"method": "token", "token": "client-secret-token"}

    def test_proxies_render_as_array_of_tables(self, make_client):
        """Proxies should render as [[proxies]] tables"""
        proxies = [
            {"name": "ssh", "type": "tcp", "local_port": 22, "remote_port": 6022},
            {"name": "site", "type": "http", "local_port": 8080, "custom_domains": ["a.example.com"]},
        ]
        data = tomllib.loads(render_config(make_client(connection={"proxies": proxies})))

        assert data["proxies"][0] == {
            "name": "ssh",
            "type": "tcp",
            "localIP": "127.0.0.1",
            "localPort": 22,
            "remotePort": 6022,
        }
        assert data["proxies"][1]["customDomains"] == ["a.example.com"]
        assert "remotePort" not in data["proxies"][1]

    def test_extra_settings_pass_through(self, make_client):
        """Extra settings should pass through as TOML values"""
        extra = {"log.level": "debug", "loginFailExit": False, "metadatas": {"owner": 'ops "team"'}}
        data = tomllib.loads(render_config(make_client(connection={"extra": extra})))

        assert data["log"]["level"] == "debug"
        assert data["loginFailExit"] is False
        assert data["metadatas"] == {"owner": 'ops "team"'}


class TestServerConfig:
    """Test frps TOML rendering"""

    def test_server_settings(self, make_server):
        """Server TOML should carry the bind settings"""
        tunnel = make_server(connection={"vhost_http_port": 8080, "dashboard_port": 7500})
        data = tomllib.loads(render_config(tunnel))

        assert data["bindAddr"] == "0.0.0.0"
        assert data["bindPort"] == 7000
        assert data["vhostHTTPPort"] == 8080
        assert "vhostHTTPSPort" not in data
        assert data["webServer"] == {"addr": "0.0.0.0", "port": 7500}
        assert "proxies" not in data

    def test_kcp_reuses_bind_port(self, make_server):
        """kcp should reuse the bind port"""
        data = tomllib.loads(render_config(make_server(connection={"protocol": "kcp"})))
        assert data["kcpBindPort"] == 7000


def test_header_names_tunnel(make_server):
    """The rendered config should start with a header naming the tunnel"""
    assert render_config(make_server("edge")).startswith("# Managed by frp-fleet: tunnel edge (server)")


def test_write_is_owner_only(tmp_path, make_client):
    """write should create the config readable by the owner only"""
    path = ConfigBuilder(make_client()).write(tmp_path / "run" / "web-a.toml")

    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert "serverPort = 7000" in path.read_text()
