"""
API schemas for the send-once settings endpoints.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class SendOnceUpdate(BaseModel):
    """Body of PUT /campaigns/{id}/send-once."""
    send_once: bool = Field(..., description="Finalize and disable the campaign after one complete delivery pass")


class SendOnceStatus(BaseModel):
    campaign_id: int
    send_once: bool
    finalized: bool = Field(default=False, description="True once a finalization record exists; the flag is then read-only")
    finalized_at: Optional[datetime] = None
    sent_count_at_finalization: Optional[int] = None


class SendOnceBatchResponse(BaseModel):
    campaigns: dict[int, bool]
