"""API services module."""

from app.api.services.car_service import CarService
from app.api.services.facet_service import FacetService
from app.api.services.monitoring_service import MonitoringService

__all__ = [
    "CarService",
    "FacetService",
    "MonitoringService",
]
