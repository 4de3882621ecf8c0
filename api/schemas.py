"""
API Schemas: Request/Response Models

Pydantic models for the HTTP surface. Field aliases keep the public
camelCase contract of the trigger endpoint.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChatMessage(BaseModel):
    role: str = Field(..., pattern="^(user|assistant)$")
    content: str = Field(..., max_length=10000)


class ChatRequestBody(BaseModel):
    """Request model for one advisory chat turn."""

    partition_id: str = Field(..., min_length=1, max_length=128)
    message: str = Field(..., min_length=1)
    session_id: Optional[str] = Field(None, max_length=128)
    history: List[ChatMessage] = Field(default_factory=list, max_length=50)

    @field_validator("partition_id")
    @classmethod
    def validate_partition_id(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("partition_id cannot be blank")
        return v.strip()


class UsageResponse(BaseModel):
    input_tokens: int
    cache_write_tokens: int
    cache_read_tokens: int
    output_tokens: int


class CostResponse(BaseModel):
    input_cost: float
    cache_write_cost: float
    cache_read_cost: float
    output_cost: float
    total: float


class ChatResponse(BaseModel):
    """Generated answer with usage and cost reporting."""

    chat_id: str
    text: str
    model: str
    usage: UsageResponse
    cost: CostResponse
    cache_hit_rate: float
    cost_savings: float


class ApproveRequest(BaseModel):
    final_text: Optional[str] = Field(None, min_length=1)


class ApproveResponse(BaseModel):
    chat_id: str
    approved: bool
    edited: bool


class SessionRequest(BaseModel):
    partition_id: str = Field(..., min_length=1, max_length=128)


class SessionResponse(BaseModel):
    session_id: str
    active: bool
    changed: bool


class TargetPeriodBody(BaseModel):
    start: str
    end: str


class TriggerRequest(BaseModel):
    """Manual batch trigger; dates are validated by the trigger itself."""

    model_config = ConfigDict(populate_by_name=True)

    job_type: str = Field(..., alias="jobType")
    target_period: Optional[TargetPeriodBody] = Field(None, alias="targetPeriod")

    def to_request(self) -> Dict[str, Any]:
        request: Dict[str, Any] = {"jobType": self.job_type}
        if self.target_period is not None:
            request["targetPeriod"] = self.target_period.model_dump()
        return request


class TriggerResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    job_id: str = Field(..., alias="jobId")


class BatchJobResponse(BaseModel):
    """Pollable view of a batch job."""

    id: str
    type: str
    status: str
    progress: Dict[str, Any]
    target_period: Dict[str, Any]
    result: Optional[Dict[str, Any]] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class HealthCheckResponse(BaseModel):
    """System health status."""

    status: str
    timestamp: datetime
    version: str
    dependencies: dict


class ErrorResponse(BaseModel):
    """Standardized error response."""

    error: str
    detail: str
    timestamp: datetime
    request_id: Optional[str]
