"""
Relay package.

Keep imports lightweight so modules like `src.relay.sessions` can be used without
requiring the full runtime dependency set (e.g., websockets, fastapi) at import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.relay.config import Config
    from src.relay.relay import CallRelay
    from src.relay.sessions import SessionStore

__all__ = ["Config", "get_config", "CallRelay", "SessionStore"]


def __getattr__(name: str) -> Any:
    if name in ("Config", "get_config"):
        from src.relay.config import Config, get_config

        return {"Config": Config, "get_config": get_config}[name]
    if name == "CallRelay":
        from src.relay.relay import CallRelay

        return CallRelay
    if name == "SessionStore":
        from src.relay.sessions import SessionStore

        return SessionStore
    raise AttributeError(name)
