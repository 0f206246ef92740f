"""API v1 router aggregating all endpoint routers.

Knowledge Search:
  /api/v1/knowledge/search, /strategy
"""

from fastapi import APIRouter

from knowledge_search.api.v1.endpoints import search

api_router = APIRouter()

# -------------------------------------------------------------------------
# Knowledge Search
# -------------------------------------------------------------------------
api_router.include_router(search.router, prefix="/knowledge/search", tags=["search"])
