from fastapi import APIRouter
from marketsync.core.config import get_settings
from marketsync.services.websockets.relay import relay

router = APIRouter(tags=["health"])

@router.get("/health")
async def health_check():
    """Basic health check"""
    return {
        "status": "healthy",
        "service": "MarketSync Relay",
        "environment": get_settings().ENVIRONMENT,
    }

@router.get("/health/relay")
async def relay_health():
    """Shared store relay statistics"""
    return {"status": "healthy", **relay.stats()}
