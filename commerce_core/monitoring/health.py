"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity (when the idempotency cache tier is configured)
- Payment gateway circuit breaker state
"""
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog

from ..database import Database, DatabaseUnavailable
from ..integrations.gateway import GatewayClient

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Redis connectivity check
    - Gateway circuit breaker check
    - Overall system health status
    """

    def __init__(
        self,
        db: Database,
        gateway: Optional[GatewayClient] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.redis_client = redis_client

    async def check_database(self) -> Dict[str, Any]:
        """
        Raises:
            HealthCheckError: If database check fails
        """
        try:
            await self.db.ping()
        except DatabaseUnavailable as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}")
        return {
            "status": "healthy",
            "service": "database",
            "dialect": self.db.dialect,
            "message": "Database connection successful",
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Raises:
            HealthCheckError: If Redis check fails
        """
        if self.redis_client is None:
            return {
                "status": "disabled",
                "service": "redis",
                "message": "Cache tier not configured",
            }
        try:
            await self.redis_client.ping()
        except aioredis.RedisError as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {e}")
        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    async def check_gateway(self) -> Dict[str, Any]:
        """
        Raises:
            HealthCheckError: If the gateway circuit is open
        """
        if self.gateway is None:
            return {"status": "disabled", "service": "gateway"}
        state = self.gateway.circuit_breaker.state
        if state == "open":
            raise HealthCheckError(f"Gateway {self.gateway.name} circuit is open")
        return {
            "status": "healthy",
            "service": "gateway",
            "gateway": self.gateway.name,
            "circuit_state": state,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("redis", self.check_redis),
            ("gateway", self.check_gateway),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Application is running; dependencies are not checked."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
