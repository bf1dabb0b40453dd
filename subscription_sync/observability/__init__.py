from .metrics import MetricsManager, get_metrics, init_metrics

__all__ = ["MetricsManager", "get_metrics", "init_metrics"]
