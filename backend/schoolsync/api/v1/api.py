from fastapi import APIRouter

from schoolsync.api.v1.endpoints import sync, schedule

api_router = APIRouter()
api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
api_router.include_router(schedule.router, prefix="/sync/schedules", tags=["schedules"])
