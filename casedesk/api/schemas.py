"""
Request and response models for the case API.

Output and case bodies are deliberately loose (Any-typed) because the
pipeline normalizes them itself: malformed citations are dropped, unknown
kinds become drafts, unknown case types become general.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional
from datetime import datetime


class OutputSubmitRequest(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    kind: Any = None
    content: Any = None
    citations: Any = None
    flags: Any = None
    request_id: Any = Field(default=None, alias='requestId')


class OutputSubmitResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool
    case_id: str = Field(alias='caseId')
    output_index: int = Field(alias='outputIndex')
    output_ts: str = Field(alias='outputTs')


class CaseCreateRequest(BaseModel):
    model_config = ConfigDict(extra='ignore')

    title: Any = None
    type: Any = None
    input: Any = None
    tags: Any = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    message: str
    retryAfterSeconds: Optional[int] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    config_issues: List[str]
    timestamp: datetime


class ActivityListResponse(BaseModel):
    entries: List[Dict[str, Any]]
    total: int
    limit: int
    offset: int
