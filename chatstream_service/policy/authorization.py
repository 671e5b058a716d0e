from typing import Any, Dict, Iterable, Optional

from chatstream_service.core.config import load_settings, section
from chatstream_service.core.interfaces import AuthorizationPolicy
from chatstream_service.core.logging import logger

DEFAULT_SENSITIVE_SERVERS = ("filesystem", "file-system", "fs")


class ConfigAuthorizationPolicy(AuthorizationPolicy):
    """
    Decide auto-authorization from configuration.
    Order: explicit per-server `auto_authorize`, then sensitive servers (never
    auto-run), then the global default.
    """

    def __init__(
        self,
        default_auto_authorize: Optional[bool] = None,
        servers: Optional[Dict[str, Dict[str, Any]]] = None,
        sensitive_servers: Optional[Iterable[str]] = None,
    ):
        if default_auto_authorize is None or servers is None or sensitive_servers is None:
            cfg = section(load_settings(), "authorization")
            if default_auto_authorize is None:
                default_auto_authorize = bool(cfg.get("default_auto_authorize", False))
            if servers is None:
                servers = cfg.get("servers", {}) or {}
            if sensitive_servers is None:
                sensitive_servers = cfg.get("sensitive_servers", DEFAULT_SENSITIVE_SERVERS)
        self.default_auto_authorize = default_auto_authorize
        self.servers = {str(k): v or {} for k, v in servers.items()}
        self.sensitive_servers = {s.lower().strip() for s in sensitive_servers}

    def should_auto_authorize(self, server_name: str) -> bool:
        server_cfg = self.servers.get(server_name) or {}
        if server_cfg.get("auto_authorize") is not None:
            return bool(server_cfg["auto_authorize"])

        name = (server_name or "").lower().strip()
        if name in self.sensitive_servers:
            logger.debug(f"Authorization: {server_name} is sensitive, user confirmation required")
            return False
        return self.default_auto_authorize

    def set_server_auto_authorize(self, server_name: str, auto_authorize: Optional[bool]) -> None:
        """Override (or with None, clear) the per-server decision at runtime."""
        if auto_authorize is None:
            self.servers.pop(server_name, None)
        else:
            self.servers.setdefault(server_name, {})["auto_authorize"] = auto_authorize


class StaticAuthorizationPolicy(AuthorizationPolicy):
    """Same answer for every server; handy for replays and tests."""

    def __init__(self, auto_authorize: bool = False):
        self.auto_authorize = auto_authorize

    def should_auto_authorize(self, server_name: str) -> bool:
        return self.auto_authorize
