from .prometheus_exporter import REGISTRY, start_metrics_server

__all__ = ["REGISTRY", "start_metrics_server"]
