"""
Pydantic schemas for request/response models.
"""

from clipforge.schemas.requests import ClipJobSubmitRequest, EditParametersInput, NarrationRequest
from clipforge.schemas.responses import (
    ClipJobStatusResponse,
    ClipJobSubmitResponse,
    HealthResponse,
    ReadinessResponse,
    WatermarkResponse,
)

__all__ = [
    "ClipJobSubmitRequest",
    "EditParametersInput",
    "NarrationRequest",
    "ClipJobSubmitResponse",
    "ClipJobStatusResponse",
    "WatermarkResponse",
    "HealthResponse",
    "ReadinessResponse",
]
