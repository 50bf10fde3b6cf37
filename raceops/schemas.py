from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ParticipantCreate(BaseModel):
    full_name: str = Field(min_length=1)
    email: str = ""
    category: str
    has_jersey: bool = False


class ParticipantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    full_name: str
    email: str
    category: str
    bib_number: str | None
    registration_status: str
    created_at: datetime


class BibCheck(BaseModel):
    category: str
    value: str
    valid: bool


class BibPreview(BaseModel):
    category: str
    bib_number: str


class RepairedEntry(BaseModel):
    participant_id: str
    old_value: str
    new_value: str


class FailedEntry(BaseModel):
    participant_id: str
    reason: str


class RepairSummary(BaseModel):
    attempted: int
    succeeded: int
    failed: int


class RepairReportOut(BaseModel):
    dry_run: bool
    repaired: list[RepairedEntry]
    failed: list[FailedEntry]
    summary: RepairSummary


class RacePackCollect(BaseModel):
    qr_code: str = Field(min_length=1)


class CheckinRow(BaseModel):
    participant_id: str
    full_name: str
    category: str
    bib_number: str | None
    qr_code: str | None
    has_bib: bool
    has_jersey: bool
    collected: bool
    collected_at: datetime | None
