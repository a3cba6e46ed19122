import secrets
from datetime import datetime, timezone
from typing import Any, Generic, Optional, TypeVar

from fastapi import Request
from pydantic import BaseModel

T = TypeVar("T")


class Meta(BaseModel):
    request_id: Optional[str] = None
    timestamp: datetime


class APIError(BaseModel):
    code: str
    message: str
    details: Optional[dict[str, Any]] = None


class Envelope(BaseModel, Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[APIError] = None
    meta: Meta


def make_meta(request: Optional[Request] = None) -> Meta:
    request_id = getattr(request.state, "request_id", None) if request is not None else None
    return Meta(
        request_id=request_id or secrets.token_hex(4),
        timestamp=datetime.now(timezone.utc),
    )


def ok(data: T, request: Optional[Request] = None) -> Envelope[T]:
    return Envelope(success=True, data=data, meta=make_meta(request))


def err(
    code: str,
    message: str,
    details: Optional[dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> Envelope:
    return Envelope(
        success=False,
        error=APIError(code=code, message=message, details=details),
        meta=make_meta(request),
    )
