"""Schedule schemas for API requests and responses."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from schoolsync.scheduler import build_cron_trigger


def _validate_cron(v: str) -> str:
    """Validate cron expression syntax (5 fields, or 6 with seconds first)."""
    try:
        build_cron_trigger(v)
    except ValueError as e:
        raise ValueError(f"Invalid cron expression: {e}")
    return v.strip()


class ScheduleBase(BaseModel):
    """Base schedule schema."""

    node_id: str = Field(..., min_length=1, max_length=50, description="Node whose schools are synced")
    academic_year: str = Field(..., min_length=4, max_length=20, description="Academic year, e.g. '2024'")
    cron_expression: str = Field(..., min_length=9, max_length=100, description="Cron expression")
    endpoints_mb: Optional[List[str]] = Field(None, description="ManageBac endpoints; null for all")
    endpoints_nex: Optional[List[str]] = Field(None, description="Nexquare endpoints; null for all")
    include_descendants: bool = Field(default=False, description="Also sync schools under child nodes")
    is_active: bool = Field(default=True, description="Enable/disable schedule")

    @field_validator('cron_expression')
    @classmethod
    def validate_cron(cls, v: str) -> str:
        return _validate_cron(v)


class ScheduleCreate(ScheduleBase):
    created_by: Optional[str] = None


class ScheduleUpdate(BaseModel):
    """Schedule update schema - all fields optional."""

    node_id: Optional[str] = Field(None, min_length=1, max_length=50)
    academic_year: Optional[str] = Field(None, min_length=4, max_length=20)
    cron_expression: Optional[str] = Field(None, min_length=9, max_length=100)
    endpoints_mb: Optional[List[str]] = None
    endpoints_nex: Optional[List[str]] = None
    include_descendants: Optional[bool] = None
    is_active: Optional[bool] = None
    updated_by: Optional[str] = None

    @field_validator('cron_expression')
    @classmethod
    def validate_cron(cls, v: Optional[str]) -> Optional[str]:
        """Validate cron expression syntax if provided."""
        if v is None:
            return v
        return _validate_cron(v)


class ScheduleResponse(ScheduleBase):
    """Schedule response with computed fields."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    created_by: Optional[str] = None
    next_runs: List[str] = Field(default_factory=list, description="Next 3 run times (ISO format)")
    updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
