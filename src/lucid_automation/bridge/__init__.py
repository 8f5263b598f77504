"""UI-automation bridge: snapshots out, commands in."""

from .client import UiBridge, UiBridgeTransport
from .state import DEFAULT_SESSION_ID, LocalBridgeTransport, UiCommand, UiStateStore

__all__ = [
    "DEFAULT_SESSION_ID",
    "LocalBridgeTransport",
    "UiBridge",
    "UiBridgeTransport",
    "UiCommand",
    "UiStateStore",
]
