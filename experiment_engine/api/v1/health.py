from typing import Optional

from fastapi import APIRouter, Depends
from redis import asyncio as aioredis

from experiment_engine.api.deps import get_experiment_service
from experiment_engine.core.cache import get_redis
from experiment_engine.services.experiments.service import ExperimentService

router = APIRouter()


@router.get("/health")
async def health_check(service: ExperimentService = Depends(get_experiment_service)):
    """Basic health check"""
    return {
        "status": "healthy",
        "service": "experiment-engine",
        "running_experiments": len(service.registry.running_ids()),
    }


@router.get("/health/redis")
async def health_check_redis(redis: Optional[aioredis.Redis] = Depends(get_redis)):
    """Redis health check"""
    if redis is None:
        return {"status": "healthy", "redis": "disabled"}
    try:
        await redis.ping()
        return {"status": "healthy", "redis": "connected"}
    except Exception as e:
        return {"status": "unhealthy", "redis": "disconnected", "error": str(e)}
