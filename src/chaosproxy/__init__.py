# src/chaosproxy/__init__.py
"""ChaosProxy: Fault-injecting HTTP reverse proxy for resilience testing.

ChaosProxy provides:
- A reverse proxy that forwards every request to one destination
- Exponentially distributed delays before forwarding and after the response
- Probabilistic request drops, distinguishable from real network errors
- Seeded, reproducible fault sequences
- An httpx transport usable without the proxy, for in-process tests

Usage:
    # CLI - Start proxy
    chaosproxy serve --destination=http://127.0.0.1:9000 --preset=gentle

    # In-process, as an httpx transport
    transport = FaultInjectingTransport(FaultConfig(destination="http://api", drop_probability=0.1))
    async with httpx.AsyncClient(transport=transport) as client:
        ...
"""

__version__ = "0.1.0"

from chaosproxy.config import (
    ChaosProxyConfig,
    FaultConfig,
    LoggingConfig,
    ServerConfig,
    UpstreamConfig,
    list_presets,
    load_config,
    load_preset,
    parse_destination,
)
from chaosproxy.delay import DelayGenerator, DelayStage, sample_delay, spawn_rngs
from chaosproxy.errors import ChaosProxyError, InvalidDestinationError, RequestDroppedError
from chaosproxy.injection import DropDecider
from chaosproxy.proxy import ChaosProxy, create_app
from chaosproxy.stats import ProxyStats
from chaosproxy.transport import FaultInjectingTransport

__all__ = [
    "ChaosProxy",
    "ChaosProxyConfig",
    "ChaosProxyError",
    "DelayGenerator",
    "DelayStage",
    "DropDecider",
    "FaultConfig",
    "FaultInjectingTransport",
    "InvalidDestinationError",
    "LoggingConfig",
    "ProxyStats",
    "RequestDroppedError",
    "ServerConfig",
    "UpstreamConfig",
    "__version__",
    "create_app",
    "list_presets",
    "load_config",
    "load_preset",
    "parse_destination",
    "sample_delay",
    "spawn_rngs",
]
