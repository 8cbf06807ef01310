import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import (
    Body,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import ValidationError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from config import load_settings
from docker_backend import create_backend
from models import SubscribeRequest, SubscribeResult
from orchestrator import Orchestrator
from utils import (
    REQUEST_COUNT,
    REQUEST_LATENCY,
    DockerManagerException,
    get_metrics,
    handle_exceptions,
    health_check,
    log_request,
    logger,
)

settings = load_settings()
orchestrator = Orchestrator(settings, create_backend(settings))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Docker Manager Server")
    await orchestrator.startup()
    yield
    logger.info("Shutting down Docker Manager Server")
    await orchestrator.shutdown()
    logger.info("Docker Manager Server shutdown complete")


# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address)

app = FastAPI(
    title="Docker Manager Server",
    description="Observe and control a Docker daemon through RPC calls and WebSocket pushes",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Add rate limiter to app state
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Security middleware
app.add_middleware(
    TrustedHostMiddleware, allowed_hosts=["*"]  # Configure properly for production
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure properly for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Authentication dependency
async def verify_api_token(authorization: Optional[str] = Header(None)):
    """Verify the bearer token of an RPC request"""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")

    if authorization != f"Bearer {settings.api_token}":
        raise HTTPException(status_code=403, detail="Invalid API token")

    return True


# Request/Response middleware for logging and metrics
@app.middleware("http")
async def log_requests(request: Request, call_next):
    # Skip WebSocket upgrade requests
    if request.headers.get("upgrade", "").lower() == "websocket":
        return await call_next(request)

    start_time = time.time()

    # Process request
    response = await call_next(request)

    # Calculate response time
    response_time = time.time() - start_time

    # Log request
    log_request(request, response_time, response.status_code)

    # Update metrics
    REQUEST_COUNT.labels(
        method=request.method, endpoint=request.url.path, status=response.status_code
    ).inc()
    REQUEST_LATENCY.observe(response_time)

    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error("Validation error", errors=exc.errors())
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Validation error",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(DockerManagerException)
async def docker_manager_exception_handler(request: Request, exc: DockerManagerException):
    logger.error(
        "Docker manager exception",
        error_code=exc.error_code,
        message=exc.message,
        status_code=exc.status_code,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error_code": exc.error_code},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error("Unexpected error", error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error_code": "INTERNAL_ERROR"},
    )


@app.post("/api/{command}")
@limiter.limit("60/minute")
@handle_exceptions
async def run_command(
    command: str,
    request: Request,
    payload: Optional[Dict[str, Any]] = Body(None),
    _: bool = Depends(verify_api_token),
):
    """Run one Docker command; failures are reported in stderr"""
    logger.info("Running command", command=command)
    result = await orchestrator.dispatch(command, payload)
    return result.to_wire()


@app.get("/health", status_code=200)
async def health_endpoint():
    """Health check including Docker reachability"""
    return health_check(orchestrator.backend.version, **orchestrator.status())


@app.get("/metrics")
async def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "name": "Docker Manager Server",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
        "websocket": "/ws",
    }


@app.websocket("/ws")
async def push_websocket(
    websocket: WebSocket,
    client_id: str = Query(...),
    token: Optional[str] = Query(None),
):
    """Subscription channel: subscribe requests in, typed pushes out"""
    if token != settings.api_token:
        logger.warning("Rejected websocket connection", client_id=client_id)
        await websocket.close(code=1008)
        return

    channel = orchestrator.channel
    await channel.connect(client_id, websocket)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                request = SubscribeRequest.model_validate_json(data)
            except ValidationError as e:
                logger.warning("Invalid subscribe request", client_id=client_id, errors=e.errors())
                result = SubscribeResult(accepted=False, error="Invalid subscribe request")
            else:
                result = await orchestrator.handle_subscribe(client_id, request)
            await websocket.send_json(result.to_wire())
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected", client_id=client_id)
    finally:
        if channel.active_connections.get(client_id) is websocket:
            await orchestrator.handle_disconnect(client_id)
