"""Realtime relay: sessions, live backend adapter, tools, turn control, gateway."""

# Lazy imports keep google-genai and fastapi out of module scan time.
# Use: from kiosk_relay.relay.gateway import create_relay_app

__all__ = ["SessionStore", "TurnController", "ToolDispatcher", "create_relay_app"]


def __getattr__(name: str):
    if name == "SessionStore":
        from kiosk_relay.relay.sessions import SessionStore
        return SessionStore
    if name == "TurnController":
        from kiosk_relay.relay.turns import TurnController
        return TurnController
    if name == "ToolDispatcher":
        from kiosk_relay.relay.tools import ToolDispatcher
        return ToolDispatcher
    if name == "create_relay_app":
        from kiosk_relay.relay.gateway import create_relay_app
        return create_relay_app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
