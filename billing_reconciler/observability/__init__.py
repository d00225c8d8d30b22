from .metrics import ReconcilerMetrics

__all__ = ["ReconcilerMetrics"]
