from .engine import GeofenceEngine, GeofenceResult, GeofenceService, StopTransition

__all__ = ["GeofenceEngine", "GeofenceResult", "GeofenceService", "StopTransition"]
