from typing import Optional

from sqlmodel import Field, SQLModel

from .jobs import current_timestamp


class MonitoredPost(SQLModel, table=True):
    """A post discovered on a watched gallery, waiting for an automatic comment."""

    __tablename__ = "monitored_posts"

    id: Optional[int] = Field(default=None, primary_key=True)
    gallery_url: str = Field(index=True)
    post_url: str = Field(unique=True)
    title: str
    answered: bool = Field(default=False, index=True)
    comment_job_id: Optional[int] = None
    created_at: int = Field(default_factory=current_timestamp)
