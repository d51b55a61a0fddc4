from __future__ import annotations

from .retry import RetryConfig
from .topology import (
    BootstrapSettings,
    CredentialsSettings,
    FrontendSettings,
    HealthCheckSettings,
    NodeSpec,
    TopologyConfig,
    TopologySettings,
)

__all__ = [
    "BootstrapSettings",
    "CredentialsSettings",
    "FrontendSettings",
    "HealthCheckSettings",
    "NodeSpec",
    "RetryConfig",
    "TopologyConfig",
    "TopologySettings",
]
