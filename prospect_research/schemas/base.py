"""
Base Pydantic schemas with common fields.

Store implementations return these typed records; callers never see raw rows.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class RecordRead(BaseModel):
    """
    Base schema for reading persisted records.

    Includes the auto-generated fields: id and timestamps.
    """

    id: UUID
    created_at: datetime
    updated_at: datetime

    # This tells Pydantic to work with SQLAlchemy models
    model_config = ConfigDict(from_attributes=True)
