"""Schemas for the manual email endpoint."""

from typing import Any, Dict, Optional

from pydantic import EmailStr, Field

from ._strict_base import StrictRequestModel
from .base import StandardizedModel


class EmailEnqueueRequest(StrictRequestModel):
    to_email: EmailStr
    to_name: Optional[str] = Field(None, max_length=200)
    payload: Dict[str, Any] = Field(default_factory=dict)


class EmailQueuedResponse(StandardizedModel):
    id: Optional[str] = None
    event_type: str
    queued: bool
