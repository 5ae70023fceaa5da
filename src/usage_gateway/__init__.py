"""usage_gateway - Messages API gateway with per-session usage tracking.

Architecture:
- Router decides each response through a resolve/reject dispatch
- Outgoing payloads pass a hook that tees SSE streams and records usage
- Usage lands in a bounded per-session cache
- A PID file keeps one gateway per host
"""

__version__ = "0.1.0"

from .cache import SessionUsageCache, session_usage_cache
from .config import GatewayConfig, load_config
from .dispatch import ReplyShim, handle_routed, make_dispatcher
from .errors import (
    ConfigError,
    DispatchAlreadySettled,
    DispatchRejection,
    GatewayError,
    ServiceAlreadyRunning,
)
from .interceptor import StreamingUsageInterceptor, normalize_payload
from .observability import configure as configure_observability
from .process_check import PidState, SingleInstanceGuard
from .reply import Reply
from .server import GatewayServer
from .streams import SSEFrameParser, tee_stream

__all__ = [
    # Server
    "GatewayServer",
    "GatewayConfig",
    "load_config",
    # Usage tracking
    "SessionUsageCache",
    "session_usage_cache",
    "StreamingUsageInterceptor",
    "normalize_payload",
    "SSEFrameParser",
    "tee_stream",
    # Dispatch
    "Reply",
    "ReplyShim",
    "make_dispatcher",
    "handle_routed",
    # Single instance
    "SingleInstanceGuard",
    "PidState",
    # Errors
    "GatewayError",
    "DispatchRejection",
    "DispatchAlreadySettled",
    "ServiceAlreadyRunning",
    "ConfigError",
    # Observability
    "configure_observability",
]
