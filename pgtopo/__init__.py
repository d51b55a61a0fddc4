"""pgtopo: single-writer / multi-reader PostgreSQL topology control plane."""

from .config import TopologyConfig, TopologySettings
from .logger import configure_logging, get_logger
from .topology import RoutingState, TopologyController

__all__ = [
    "RoutingState",
    "TopologyConfig",
    "TopologyController",
    "TopologySettings",
    "configure_logging",
    "get_logger",
]

__version__ = "0.1.0"
