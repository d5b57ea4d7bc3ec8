from contextlib import asynccontextmanager
import logging
import os
import time
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import load_settings
from .errors import InvalidConfiguration
from .models import ErrorResponse, RateLimitError, HealthResponse, PingResponse, RateLimitStats
from .middleware.rate_limiter import RateLimitMiddleware

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Rate limiting active with rules: {list(app.state.rate_limiter.rules)}")

    yield

    stats = app.state.rate_limiter.get_stats()
    logger.info(f"Application shutdown, {stats['limiter']['total_keys']} client buckets dropped")

app = FastAPI(
    title="bucketgate",
    description="""
    ## Token bucket rate limiting gateway

    Every client gets a bucket of tokens per rule. Each request takes one
    token; tokens come back at a fixed rate and never exceed the burst size.
    Requests made with an empty bucket are answered with `429 Too Many Requests`.

    ### Configuration

    - `RATE_LIMIT_BURST`: tokens per client (default 20)
    - `RATE_LIMIT_MS_PER_TOKEN`: milliseconds to regenerate one token (default 1000)
    - `RATE_LIMIT_PATH_PREFIX`: limited path prefix (default `/api/`)
    - `RATE_LIMIT_EVICTION_INTERVAL`: seconds between idle bucket sweeps (default 300)

    ### Response headers

    - `X-RateLimit-Limit`: burst size of the applied rule
    - `X-RateLimit-Rule`: which rule was applied
    - `Retry-After`: seconds until the next token, on 429 responses only
    """,
    version="1.0.0",
    openapi_tags=[
        {
            "name": "api",
            "description": "Rate limited endpoints.",
        },
        {
            "name": "health",
            "description": "Service health and rate limiter statistics.",
        },
    ],
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

rate_limiter = RateLimitMiddleware.from_settings(load_settings())

app.state.rate_limiter = rate_limiter

app.middleware("http")(rate_limiter)

@app.get(
    "/health",
    tags=["health"],
    summary="Health Check",
    response_model=HealthResponse
)
async def health_check():
    """Liveness probe, not rate limited by the default rule"""
    return {"status": "healthy", "service": "bucketgate", "timestamp": int(time.time())}

@app.get(
    "/health/rate-limit-stats",
    tags=["health"],
    summary="Rate Limit Statistics",
    response_model=RateLimitStats
)
async def rate_limit_stats():
    """
    Configured rules and the number of client buckets currently tracked.

    Useful for:
    - Watching how many distinct clients are being limited
    - Checking that environment overrides were picked up
    """
    return rate_limiter.get_stats()

@app.get(
    "/api/v1/ping",
    tags=["api"],
    summary="Ping",
    response_model=PingResponse,
    responses={
        429: {
            "description": "Rate limit exceeded - too many requests",
            "model": RateLimitError,
        }
    }
)
async def ping():
    return {"message": "pong", "timestamp": rate_limiter.clock.millis()}

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    """Custom HTTP exception handler with consistent error format"""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=f"http_error_{exc.status_code}",
            message=str(exc.detail),
            detail=exc.detail if isinstance(exc.detail, (dict, list)) else None
        ).model_dump()
    )

@app.exception_handler(InvalidConfiguration)
async def configuration_error_handler(request, exc):
    logger.error(f"Rate limiter misconfigured: {exc}")
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="configuration_error",
            message=str(exc)
        ).model_dump()
    )

@app.exception_handler(ValueError)
async def value_error_handler(request, exc):
    """Handle validation errors, including invalid rate limit keys"""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error="validation_error",
            message=str(exc),
            detail=str(exc)
        ).model_dump()
    )

@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """Handle unexpected errors with consistent format"""
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="internal_server_error",
            message="An unexpected error occurred",
            detail=str(exc) if os.getenv("DEBUG") else None
        ).model_dump()
    )
