from .monitor import REINDEX_NOT_OPERATIONAL, HealthMonitor, HealthStatus

__all__ = ["HealthMonitor", "HealthStatus", "REINDEX_NOT_OPERATIONAL"]
