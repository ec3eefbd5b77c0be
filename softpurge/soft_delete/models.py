"""
Data models for soft delete reporting.

These models describe the state of soft-deleted data across entity types
for operators and compliance reports.
"""

from datetime import datetime
from typing import Dict

from pydantic import BaseModel, Field


class EntityTypeStats(BaseModel):
    """Lifecycle counts for one entity type."""

    active: int = Field(0, description="Records visible to ordinary reads", ge=0)
    deleted: int = Field(0, description="Soft-deleted records still restorable", ge=0)
    overdue: int = Field(
        0, description="Soft-deleted records past the retention window", ge=0
    )


class DeletionReport(BaseModel):
    """Snapshot of soft-deleted data, per entity type."""

    generated_at: datetime = Field(..., description="When the report was taken")
    retention_days: int = Field(..., description="Retention window in days", gt=0)
    by_type: Dict[str, EntityTypeStats] = Field(
        default_factory=dict, description="Counts per entity type"
    )

    @property
    def total_deleted(self) -> int:
        return sum(stats.deleted for stats in self.by_type.values())

    @property
    def total_overdue(self) -> int:
        return sum(stats.overdue for stats in self.by_type.values())
