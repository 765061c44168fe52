# siteflow/routing/__init__.py

from .rules import Destination, DestinationSet, RoutingEngine, route
from .vendors import VendorOverrideTable

__all__ = ["Destination", "DestinationSet", "RoutingEngine", "VendorOverrideTable", "route"]
