"""
app/services package marker.
"""

from app.services.monitoring_service import MonitorService, get_monitor_service

__all__ = [
    "MonitorService",
    "get_monitor_service",
]
