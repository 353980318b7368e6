from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class WsEnvelope(BaseModel):
    """Envelope for WebSocket messages."""
    type: str = Field(..., description="Message type (e.g., 'stage.completed', 'pallet.moved').")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Message payload.")
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Timestamp (UTC).")
    channel: Optional[str] = Field(default=None, description="Topic the message was delivered on.")


class DomainEvent(BaseModel):
    """Routing domain event, published after the producing transaction commits."""
    event: str = Field(..., description="Event name (e.g., 'assignment.changed').")
    topics: List[str] = Field(default_factory=list, description="Logical topics the event is keyed by.")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Event details.")
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Event timestamp (UTC).")
