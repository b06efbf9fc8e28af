"""Rendering of tunnel definitions into FRP TOML configuration files."""

import json
from pathlib import Path
from typing import Any

from .common.atomic import atomic_write_text
from .common.logging import get_logger
from .models import Protocol, ProxySpec, Role, TunnelConfig

logger = get_logger(__name__)


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        inner = ", ".join(f"{key} = {_toml_value(item)}" for key, item in value.items())
        return "{ " + inner + " }" if inner else "{}"
    # JSON string escapes are a subset of TOML basic string escapes
    return json.dumps(str(value))


class ConfigBuilder:
    """Builds the FRP TOML (v0.52+ syntax) for one tunnel."""

    def __init__(self, tunnel: TunnelConfig):
        self.tunnel = tunnel
        self._lines: list[str] = []

    def _set(self, key: str, value: Any) -> None:
        if value is not None:
            self._lines.append(f"{key} = {_toml_value(value)}")

    def _add_server_settings(self) -> None:
        conn = self.tunnel.connection
        self._set("bindAddr", conn.bind_addr)
        self._set("bindPort", conn.bind_port)
        if conn.protocol == Protocol.KCP:
            self._set("kcpBindPort", conn.bind_port)
        elif conn.protocol == Protocol.QUIC:
            self._set("quicBindPort", conn.bind_port)
        self._set("vhostHTTPPort", conn.vhost_http_port)
        self._set("vhostHTTPSPort", conn.vhost_https_port)
        if conn.dashboard_port is not None:
            self._set("webServer.addr", conn.bind_addr)
            self._set("webServer.port", conn.dashboard_port)

    def _add_client_settings(self) -> None:
        conn = self.tunnel.connection
        self._set("serverAddr", conn.server_addr)
        self._set("serverPort", conn.server_port)
        self._set("transport.protocol", conn.protocol.value)

    def _proxy_block(self, proxy: ProxySpec) -> list[str]:
        lines = [
            "[[proxies]]",
            f"name = {_toml_value(proxy.name)}",
            f"type = {_toml_value(proxy.type.value)}",
            f"localIP = {_toml_value(proxy.local_ip)}",
            f"localPort = {proxy.local_port}",
        ]
        if proxy.remote_port is not None:
            lines.append(f"remotePort = {proxy.remote_port}")
        if proxy.custom_domains:
            lines.append(f"customDomains = {_toml_value(proxy.custom_domains)}")
        return lines

    def build(self) -> str:
        """Render the configuration text."""
        tunnel = self.tunnel
        conn = tunnel.connection
        self._lines = [f"# Managed by frp-fleet: tunnel {tunnel.name} ({tunnel.role.value})"]

        if tunnel.role == Role.SERVER:
            self._add_server_settings()
        else:
            self._add_client_settings()

        if conn.auth_token:
            self._set("auth.method", "token")
            self._set("auth.token", conn.auth_token)

        for key, value in conn.extra.items():
            self._set(key, value)

        if tunnel.role == Role.CLIENT:
            for proxy in conn.proxies:
                self._lines.append("")
                self._lines.extend(self._proxy_block(proxy))

        return "\n".join(self._lines) + "\n"

    def write(self, path: Path) -> Path:
        """Render and write the configuration atomically (owner-only permissions)."""
        atomic_write_text(path, self.build(), mode=0o600)
        logger.debug("Runtime config written", name=self.tunnel.name, path=str(path))
        return path


def render_config(tunnel: TunnelConfig) -> str:
    return ConfigBuilder(tunnel).build()
