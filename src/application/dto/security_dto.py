from pydantic import BaseModel
from typing import Any, Dict, List, Optional

class ErrorResponse(BaseModel):
    statusCode: int
    timestamp: str
    path: str
    method: str
    message: Any
    code: str
    details: Optional[Any] = None
    requestId: Optional[str] = None

class RequestStats(BaseModel):
    total_requests: int
    error_count: int
    slow_requests: int
    response_time_avg: float
    requests_per_second: float
    error_rate: float

class HealthResponse(BaseModel):
    status: str
    timestamp: str
    requests: RequestStats

class SystemHealthResponse(BaseModel):
    status: str
    message: str
    issues: List[str] = []
    metrics: Optional[Dict[str, Any]] = None
    slowest_endpoints: List[Dict[str, Any]] = []
