from importlib import import_module
from typing import Any, Dict, Optional, cast
import inspect

from chatstream_service.core.config import load_settings, section
from chatstream_service.core.errors import ConfigError
from chatstream_service.core.interfaces import AuthorizationPolicy, MessageStore
from chatstream_service.core.logging import logger


def load(dotted: str, **kwargs: Any) -> Any:
    """Resolve a dotted `module.Name` from config. Classes are instantiated with the
    kwargs their constructor accepts; anything else is returned as is."""
    module_name, _, attr = (dotted or "").rpartition(".")
    if not module_name or not attr:
        raise ConfigError(f"impl must be a dotted path like package.module.Name, got {dotted!r}")
    try:
        obj = getattr(import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"cannot load {dotted!r}: {e}") from e

    if not isinstance(obj, type):
        return obj

    params = inspect.signature(obj.__init__).parameters.values()
    if any(p.kind == p.VAR_KEYWORD for p in params):
        return obj(**kwargs)
    accepted = {p.name for p in params if p.kind in (p.POSITIONAL_OR_KEYWORD, p.KEYWORD_ONLY)} - {"self"}
    ignored = sorted(set(kwargs) - accepted)
    if ignored:
        logger.debug(f"Factory: {dotted} does not accept {ignored}, ignoring them")
    return obj(**{k: v for k, v in kwargs.items() if k in accepted})


class ServiceFactory:
    """Builds the shared collaborators from config and a fresh ReplyStream per reply."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config if config is not None else load_settings()
        self._store: MessageStore | None = None
        self._policy: AuthorizationPolicy | None = None

    def _provider_cfg(self, name: str) -> Dict[str, Any]:
        return section(self.config, "providers").get(name, {}) or {}

    def get_store(self) -> MessageStore:
        if not self._store:
            store_cfg = self._provider_cfg("message_store")
            impl = store_cfg.get("impl", "chatstream_service.context.memory_store.MemoryMessageStore")
            args = store_cfg.get("args", {}) or {}
            self._store = cast(MessageStore, load(impl, **args))
        return self._store

    def get_policy(self) -> AuthorizationPolicy:
        if not self._policy:
            policy_cfg = self._provider_cfg("authorization_policy")
            impl = policy_cfg.get("impl", "chatstream_service.policy.authorization.ConfigAuthorizationPolicy")
            auth = section(self.config, "authorization")
            args = {
                "default_auto_authorize": bool(auth.get("default_auto_authorize", False)),
                "servers": auth.get("servers", {}) or {},
                "sensitive_servers": auth.get("sensitive_servers", []) or [],
                **(policy_cfg.get("args", {}) or {}),
            }
            self._policy = cast(AuthorizationPolicy, load(impl, **args))
        return self._policy

    def new_reply(self, message_id: str, on_auto_execute=None, on_request_authorization=None):
        """One tokenizer/valve/appender/lifecycle set, owned by the caller for this reply only."""
        from chatstream_service.protocol.orchestration.appender import ContentAppender
        from chatstream_service.protocol.orchestration.orchestrator import ReplyStream
        from chatstream_service.protocol.orchestration.valve import SuppressionValve
        from chatstream_service.protocol.parsers.tokenizer import StructuredStreamTokenizer

        parser_cfg = section(self.config, "parser")
        valve_cfg = section(self.config, "valve")
        appender_cfg = section(self.config, "appender")
        store = self.get_store()

        return ReplyStream(
            message_id=message_id,
            store=store,
            policy=self.get_policy(),
            parser=StructuredStreamTokenizer(
                safe_tail=parser_cfg.get("safe_tail", 16),
                max_tool_chars=parser_cfg.get("max_tool_chars", 32768),
                max_object_hold=parser_cfg.get("max_object_hold", 2048),
            ),
            valve=SuppressionValve(
                guard_window=valve_cfg.get("guard_window", 64),
                max_held_chars=valve_cfg.get("max_held_chars", 32768),
            ),
            appender=ContentAppender(
                message_id,
                store,
                persist_every_chars=appender_cfg.get("persist_every_chars", 200),
            ),
            on_auto_execute=on_auto_execute,
            on_request_authorization=on_request_authorization,
        )
