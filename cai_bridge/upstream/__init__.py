from __future__ import annotations

import importlib

from ..types import UpstreamConfig
from .base import CharacterClient
from .echo import EchoClient
from .relay import RelayClient


def build_client(config: UpstreamConfig) -> CharacterClient:
    """Build the configured character client.

    ``client`` is ``echo``, ``relay``, or ``package.module:attr`` naming a
    ``CharacterClient`` subclass or a zero-argument factory.
    """
    kind = config.client.strip()

    if kind == "echo":
        return EchoClient()

    if kind == "relay":
        if not config.relay_url:
            raise ValueError("upstream.relay_url is required for the relay client")
        return RelayClient(config.relay_url, timeout=config.request_timeout)

    if ":" in kind:
        module_path, attr = kind.rsplit(":", 1)
        mod = importlib.import_module(module_path)
        factory = getattr(mod, attr)
        client = factory()
        if not isinstance(client, CharacterClient):
            raise TypeError(f"{kind} did not produce a CharacterClient")
        return client

    raise ValueError(f"Unknown upstream client: {kind}")


__all__ = ["CharacterClient", "EchoClient", "RelayClient", "build_client"]
