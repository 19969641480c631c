"""Pydantic schemas shared by the pipeline, its collaborators and the API."""
from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Extractor contract
class ExtractedCompany(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    description: Optional[str] = None
    industry: List[str] = []
    context: Optional[str] = None
    confidence: Optional[float] = None
    sentiment: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        return (v or "").strip()

    @field_validator("industry", mode="before")
    @classmethod
    def _industry_as_list(cls, v: Union[None, str, List[str]]) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v] if v.strip() else []
        return [str(i) for i in v if i]


class ExtractionMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    processing_time_ms: float = 0
    token_count: int = 0
    model_version: Optional[str] = None
    error: Optional[str] = None


class ExtractionResult(BaseModel):
    companies: List[ExtractedCompany] = []
    metadata: ExtractionMetadata = Field(default_factory=ExtractionMetadata)


# Source connector contract
class SourceEmail(BaseModel):
    external_id: str
    sender: str = ""
    subject: str = ""
    newsletter_name: Optional[str] = None
    html: Optional[str] = None
    text: Optional[str] = None
    received_at: Optional[datetime] = None


# Pipeline entry points
class SyncOptions(BaseModel):
    force_refresh: bool = False
    days_back: int = Field(default=30, ge=1, le=365)


class BatchOptions(BaseModel):
    batch_size: int = Field(default=10, ge=1)
    max_processing_time_s: float = Field(default=50.0, gt=0)


class BatchResult(BaseModel):
    success: bool = True
    processed: int = 0
    remaining: int = 0
    companies_extracted: int = 0
    new_companies: int = 0
    failed: int = 0
    errors: Optional[List[str]] = None


SyncOutcome = Literal["complete", "partial_completion", "error", "skipped", "busy", "not_configured"]


class SyncResult(BaseModel):
    success: bool
    status: SyncOutcome
    message: str = ""
    skipped: bool = False
    rate_limited: bool = False
    emails_fetched: int = 0
    processed: int = 0
    remaining: int = 0
    companies_extracted: int = 0
    new_companies: int = 0
    failed: int = 0
    errors: Optional[List[str]] = None
    # Populated for busy outcomes
    lock_age_s: Optional[float] = None
    retry_after_s: Optional[float] = None
