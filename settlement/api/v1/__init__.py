"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import collections, settlement

api_router = APIRouter()

api_router.include_router(
    settlement.router,
    prefix="/settlement",
    tags=["settlement"]
)

api_router.include_router(
    collections.router,
    prefix="/collections",
    tags=["collections"]
)
