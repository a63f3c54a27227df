"""
Shared FastAPI dependencies: the submission pipeline and the bearer credential.
"""

import re
from typing import Optional

from fastapi import Header

from ..core.submission import SubmissionPipeline, build_pipeline

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)

_pipeline: Optional[SubmissionPipeline] = None


def get_pipeline() -> SubmissionPipeline:
    """Lazy initialization of the process-wide pipeline (and its rate-limit registry).

    Tests replace it through app.dependency_overrides.
    """
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


def extract_api_key(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    match = _BEARER_RE.match(authorization.strip())
    return match.group(1).strip() if match else None


def get_api_key(authorization: Optional[str] = Header(default=None)) -> Optional[str]:
    return extract_api_key(authorization)
