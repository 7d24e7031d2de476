from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from schoolsync.services.scope_resolver import ScopeRequest


class SyncTriggerRequest(BaseModel):
    """Body of POST /sync/trigger. Exactly one scope mode must be set."""
    node_ids: List[str] = Field(default_factory=list)
    all: bool = False
    config_ids_mb: List[int] = Field(default_factory=list)
    config_ids_nex: List[int] = Field(default_factory=list)
    include_descendants: bool = False
    academic_year: Optional[str] = None  # defaults to the current year
    endpoints_mb: Optional[List[str]] = None  # None = all ManageBac endpoints
    endpoints_nex: Optional[List[str]] = None  # None = all Nexquare endpoints
    triggered_by: str = "manual"

    def to_scope(self) -> ScopeRequest:
        return ScopeRequest(
            node_ids=self.node_ids,
            all=self.all,
            config_ids_mb=self.config_ids_mb,
            config_ids_nex=self.config_ids_nex,
            include_descendants=self.include_descendants,
        )


class SyncTriggerResponse(BaseModel):
    run_id: int
    status: str


class SyncCancelResponse(BaseModel):
    run_id: int
    status: str  # 'cancelling' when signalled in-process, 'cancelled' when force-marked


class SyncRunSchoolResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sync_run_id: int
    school_id: str
    school_source: str
    config_id: int
    school_name: str
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    current_endpoint: Optional[str] = None
    endpoint_log: Optional[List[Dict[str, Any]]] = None


class SyncRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    schedule_id: Optional[int] = None
    node_id: str
    academic_year: str
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    triggered_by: str
    total_schools: int = 0
    schools_succeeded: int = 0
    schools_failed: int = 0
    error_summary: Optional[str] = None
    created_at: Optional[datetime] = None


class SyncRunDetailResponse(SyncRunResponse):
    schools: List[SyncRunSchoolResponse] = Field(default_factory=list)


class PaginatedRunSchools(BaseModel):
    data: List[SyncRunSchoolResponse]
    total: int
    offset: int
    limit: int


class SyncInfoResponse(BaseModel):
    scheduler_enabled: bool
    timezone: str
    registered_schedules: List[int] = Field(default_factory=list)
    endpoints_mb: List[str]
    endpoints_nex: List[str]
