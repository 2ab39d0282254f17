from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from assetdesk.models.render import RenderBatchStatus


class PdfPageReady(BaseModel):
    status: Literal["ready"] = "ready"
    url: str
    page: int
    page_count: int


class PdfExtractionStarted(BaseModel):
    status: Literal["started"] = "started"
    batch_id: UUID
    total_jobs: int
    pending_jobs: int


class RenderBatchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    asset_id: UUID
    status: RenderBatchStatus
    total_jobs: int
    pending_jobs: int
    failed_jobs: int
    created_at: datetime | None = None
    finished_at: datetime | None = None
