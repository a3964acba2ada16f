from .server import create_app
from .formats import build_chat_completion, emit_single_chunk_sse
from .metrics import ProxyMetrics

__all__ = [
    "create_app",
    "ProxyMetrics",
    "build_chat_completion",
    "emit_single_chunk_sse",
]
