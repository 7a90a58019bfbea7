# backend/digitaltwin/api/v1/schemas.py
"""
Request/response models for the asset endpoints.

Request models are deliberately permissive: field presence and format rules
are enforced by the intake layer so clients get the pipeline's own error
messages instead of generic validation output.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class AssetUpdateRequest(BaseModel):
    description: Optional[str] = Field(default=None, description="New description")
    source: Optional[str] = Field(default=None, description="New provenance URL")
    is_public: Optional[Union[bool, str]] = Field(default=None, description="New visibility")


class BatchUploadRequest(BaseModel):
    requests: Optional[List[Dict[str, Any]]] = Field(
        default=None,
        description="Items with description, source, filename and base64 file",
    )


class BatchDeleteRequest(BaseModel):
    ids: Optional[List[Union[int, str]]] = Field(default=None, description="Record ids to delete")


class BatchItemResponse(BaseModel):
    success: bool
    error: Optional[str] = None
    filename: Optional[str] = None
    id: Optional[Union[int, str]] = None


class BatchResponse(BaseModel):
    message: str
    results: List[BatchItemResponse]


class UploadStatusResponse(BaseModel):
    id: int
    status: str
    tileset_url: Optional[str] = None
    job_id: Optional[str] = None
    error: Optional[str] = None


class MessageResponse(BaseModel):
    message: str


class ErrorResponse(BaseModel):
    error: str
