from fastapi import APIRouter
from app.api.v2 import segment_criteria

api_router = APIRouter()

# Include all v2 routers
api_router.include_router(segment_criteria.router, prefix="/segment-criteria", tags=["segment-criteria"])
