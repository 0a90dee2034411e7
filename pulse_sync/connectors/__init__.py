"""Analytics provider connectors"""

from pulse_sync.connectors.base_connector import BaseConnector
from pulse_sync.connectors.ga4_connector import GA4Connector

__all__ = [
    "BaseConnector",
    "GA4Connector",
]
