"""cai-bridge: OpenAI-compatible front for stateful character chat services."""

from .config import load_config
from .engine import BridgeEngine
from .types import (
    BridgeConfig,
    Classification,
    CompletionResult,
    SessionResolution,
    SyncMode,
    Turn,
)

__version__ = "0.1.0"

__all__ = [
    "BridgeEngine",
    "load_config",
    "BridgeConfig",
    "Classification",
    "CompletionResult",
    "SessionResolution",
    "SyncMode",
    "Turn",
]
