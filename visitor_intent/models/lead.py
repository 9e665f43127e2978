import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from visitor_intent.core.clock import utcnow
from visitor_intent.models.tracking import DEFAULT_SOURCE_SITE


class Lead(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    uuid: str = Field(default_factory=lambda: str(uuid.uuid4()), index=True, unique=True)

    name: Optional[str] = None
    email: Optional[str] = Field(default=None, index=True)
    status: str = Field(default="new", index=True)
    source_site: str = Field(default=DEFAULT_SOURCE_SITE, index=True, max_length=50)
    current_step: int = Field(default=0)
    total_steps: int = Field(default=0)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, index=True)
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_type=DateTime,
        sa_column_kwargs={"onupdate": utcnow},
    )
