from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any

class ErrorResponse(BaseModel):
    """Standard error response format for all API errors"""
    error: str = Field(..., description="Error type/category for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    detail: Optional[Any] = Field(None, description="Additional error details (validation errors, stack traces, etc.)")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "validation_error",
                "message": "Empty key resource identifier not supported",
                "detail": None
            }
        }
    )

class RateLimitError(BaseModel):
    """Rate limiting error response with retry information"""
    error: str = Field("Rate limit exceeded", description="Error type")
    message: str = Field(..., description="Descriptive error message with limit details")
    rule: str = Field(..., description="Which rate limiting rule was violated")
    retry_after: Optional[int] = Field(None, description="Seconds until the next token is added")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Rate limit exceeded",
                "message": "Too many requests. Burst of 20, one more request every 1000ms.",
                "rule": "api",
                "retry_after": 1
            }
        }
    )

class HealthResponse(BaseModel):
    """Health check response indicating service status"""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name/identifier")
    timestamp: int = Field(..., description="Current server timestamp (Unix time)")

class PingResponse(BaseModel):
    message: str = Field("pong")
    timestamp: int = Field(..., description="Current server timestamp in milliseconds")

class RateLimitStats(BaseModel):
    """Rate limiter statistics model"""
    limiter: Dict[str, Any] = Field(..., description="Rate limiter internal statistics")
    rules: Dict[str, Dict[str, int]] = Field(..., description="Configured rate limiting rules")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "limiter": {
                    "total_keys": 42,
                    "eviction_interval": 300
                },
                "rules": {
                    "api": {"burst": 20, "milliseconds_per_token": 1000, "tracked_keys": 42}
                }
            }
        }
    )
