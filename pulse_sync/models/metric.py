"""
Client metric storage models

One row per (client, owner, metric, period key, source type). Daily rows
use a YYYY-MM-DD period key, monthly rows YYYY-MM; both carry period_month
so a month's daily rows can be found and compacted together.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint, Index
from datetime import datetime

from pulse_sync.models.base import Base


class ClientMetric(Base):
    """A stored metric value (scalar or distribution)"""
    __tablename__ = "client_metrics"

    id = Column(Integer, primary_key=True, index=True)

    # Ownership
    client_id = Column(String, index=True, nullable=False)
    owner_id = Column(String, nullable=False)
    # Entity the value describes (client, competitor or benchmark id)
    source_type = Column(String, nullable=False)
    # Client, Competitor, CD_Avg, Industry_Avg

    # Metric
    metric_name = Column(String, index=True, nullable=False)
    value = Column(JSON, nullable=False)
    # Float, or [{"category": ..., "sessions": ..., "percentage": ...}]

    # Period
    time_period = Column(String, nullable=False)
    # YYYY-MM (monthly) or YYYY-MM-DD (daily)
    period_month = Column(String, index=True, nullable=False)
    resolution = Column(String, nullable=False)
    # daily, monthly

    # Metadata
    observed_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            'client_id', 'owner_id', 'metric_name', 'time_period', 'source_type',
            name='uq_client_metric_owner_name_period_source'
        ),
        Index('ix_client_metrics_client_month_resolution', 'client_id', 'period_month', 'resolution'),
    )

    def __repr__(self):
        return f"<ClientMetric {self.client_id} {self.metric_name} {self.time_period} ({self.resolution})>"


class ClientGA4Property(Base):
    """GA4 property a client's data is read from"""
    __tablename__ = "client_ga4_properties"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(String, unique=True, index=True, nullable=False)
    property_id = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<ClientGA4Property {self.client_id} -> {self.property_id}>"
