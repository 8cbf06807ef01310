import os
from datetime import datetime
from functools import wraps
from typing import Any, Dict, Optional

import structlog
from fastapi import HTTPException, Request
from prometheus_client import Counter, Gauge, Histogram, generate_latest

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

# Prometheus metrics
REQUEST_COUNT = Counter(
    "http_requests_total", "Total HTTP requests", ["method", "endpoint", "status"]
)
REQUEST_LATENCY = Histogram("http_request_duration_seconds", "HTTP request latency")
DOCKER_OPERATIONS = Counter(
    "docker_operations_total", "One-shot Docker operations", ["operation", "status"]
)
POLL_FIRES = Counter(
    "docker_poll_fires_total", "Polling fires per topic", ["topic", "outcome"]
)
ACTIVE_POLLERS = Gauge("docker_active_pollers", "Number of armed polling timers")
CONNECTED_CLIENTS = Gauge("push_connected_clients", "Number of subscribed UI clients")
ACTIVE_EXEC_SESSIONS = Gauge("docker_exec_sessions", "Number of running exec sessions")


def log_request(request: Request, response_time: float, status_code: int):
    """Log request details with structured logging"""
    logger.info(
        "HTTP request",
        method=request.method,
        url=str(request.url),
        status_code=status_code,
        response_time=response_time,
        client_ip=request.client.host if request.client else None,
    )


def log_docker_operation(
    operation: str, target: str, status: str, details: Dict[str, Any] = None
):
    """Log docker operations with structured logging"""
    logger.info(
        "Docker operation",
        operation=operation,
        target=target,
        status=status,
        details=details or {},
    )
    DOCKER_OPERATIONS.labels(operation=operation, status=status).inc()


def get_metrics():
    """Get Prometheus metrics"""
    return generate_latest()


def health_check(docker_version: Optional[str] = None, **counters: int) -> Dict[str, Any]:
    """Health check including docker reachability and engine counters"""
    try:
        disk_usage = os.statvfs("/")
        free_space_gb = (disk_usage.f_frsize * disk_usage.f_bavail) / (1024**3)

        return {
            "status": "healthy" if docker_version else "degraded",
            "timestamp": datetime.utcnow().isoformat(),
            "services": {
                "docker": docker_version or "not installed",
            },
            "engine": counters,
            "system": {
                "free_disk_gb": round(free_space_gb, 2),
            },
        }
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        return {
            "status": "unhealthy",
            "timestamp": datetime.utcnow().isoformat(),
            "error": str(e),
        }


# Error handling utilities
class DockerManagerException(Exception):
    """Base exception for the docker manager"""

    def __init__(self, message: str, error_code: str = None, status_code: int = 500):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(self.message)


class BackendUnavailable(DockerManagerException):
    """Docker is not installed or the daemon cannot be reached"""

    def __init__(self, message: str = "not installed"):
        super().__init__(message, "BACKEND_UNAVAILABLE", 503)


class InvalidConfig(DockerManagerException):
    """Rejected container configuration or request payload"""

    def __init__(self, message: str):
        super().__init__(message, "INVALID_CONFIG", 400)


class NotFound(DockerManagerException):
    def __init__(self, message: str):
        super().__init__(message, "NOT_FOUND", 404)


class PostconditionFailed(DockerManagerException):
    """The listing after an action does not show the expected state"""

    def __init__(self, message: str):
        super().__init__(message, "POSTCONDITION_FAILED", 409)


class StillActive(PostconditionFailed):
    pass


class ProcessSpawnFailure(DockerManagerException):
    def __init__(self, message: str):
        super().__init__(message, "SPAWN_FAILED", 500)


class DockerCommandError(DockerManagerException):
    """A docker invocation exited with a non-zero code"""

    def __init__(self, message: str, returncode: int = 1):
        self.returncode = returncode
        super().__init__(message, "DOCKER_ERROR", 500)


class UnknownCommand(DockerManagerException):
    def __init__(self, command: str):
        super().__init__(f"Unknown command: {command}", "UNKNOWN_COMMAND", 404)


def handle_exceptions(func):
    """Decorator to handle exceptions and log them properly"""

    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except DockerManagerException as e:
            logger.error(
                "Docker manager exception",
                error_code=e.error_code,
                message=e.message,
                status_code=e.status_code,
            )
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            logger.error("Unexpected error", error=str(e), exc_info=True)
            raise HTTPException(status_code=500, detail="Internal server error")

    return wrapper
