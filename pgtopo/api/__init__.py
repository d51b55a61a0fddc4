from .healthcheck import create_healthcheck_app, run_healthcheck
from .stats import create_stats_app

__all__ = ["create_healthcheck_app", "create_stats_app", "run_healthcheck"]
