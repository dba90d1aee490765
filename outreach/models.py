from typing import List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import (
    BigInteger, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID

from outreach.db import Base

HOUSEHOLD_STATUSES = ("not_started", "in_progress", "complete")


# ─── Request bodies ───────────────────────────────────────────────────────────

class ImportListInput(BaseModel):
    name: str
    description: Optional[str] = None
    account_numbers: List[str] = Field(default_factory=list)


class EnhanceInput(BaseModel):
    concurrency: Optional[int] = None


class SearchInput(BaseModel):
    accountNumber: str


class ActivitySummaryInput(BaseModel):
    memberIds: List[int]
    outreachGoal: Optional[str] = None
    outreachContext: Optional[str] = None


class HouseholdNotesInput(BaseModel):
    memberIds: List[int]


class HouseholdStatusInput(BaseModel):
    status: str


# ─── Tables ───────────────────────────────────────────────────────────────────

class OutreachList(Base):
    __tablename__ = "outreach_lists"
    id          = Column(UUID(as_uuid=False), primary_key=True, server_default=func.gen_random_uuid())
    name        = Column(String, nullable=False)
    description = Column(Text)
    created_at  = Column(DateTime(timezone=True), server_default=func.now())
    archived_at = Column(DateTime(timezone=True), index=True)


class OutreachListImportRow(Base):
    __tablename__ = "outreach_list_import_rows"
    __table_args__ = (UniqueConstraint("outreach_list_id", "row_number"),)
    id               = Column(UUID(as_uuid=False), primary_key=True, server_default=func.gen_random_uuid())
    outreach_list_id = Column(UUID(as_uuid=False), ForeignKey("outreach_lists.id", ondelete="CASCADE"), nullable=False)
    row_number       = Column(Integer, nullable=False)
    account_number   = Column(String, nullable=False)


class AccountNumberMap(Base):
    __tablename__ = "account_number_map"
    account_number   = Column(String, primary_key=True)
    constituent_id   = Column(BigInteger)
    raw              = Column(JSONB)
    match_confidence = Column(String)


class OutreachListHousehold(Base):
    __tablename__ = "outreach_list_households"
    __table_args__ = (
        UniqueConstraint("outreach_list_id", "household_key", name="outreach_list_households_list_key_unique"),
        UniqueConstraint("outreach_list_id", "household_id", name="outreach_list_households_unique"),
    )
    id                  = Column(UUID(as_uuid=False), primary_key=True, server_default=func.gen_random_uuid())
    outreach_list_id    = Column(UUID(as_uuid=False), ForeignKey("outreach_lists.id", ondelete="CASCADE"), nullable=False)
    household_key       = Column(String, nullable=False)
    household_id        = Column(BigInteger)
    solo_constituent_id = Column(BigInteger)
    origin              = Column(String)
    household_snapshot  = Column(JSONB)
    giving_snapshot     = Column(JSONB)
    outreach_status     = Column(String, nullable=False, server_default="not_started")


class OutreachListMember(Base):
    __tablename__ = "outreach_list_members"
    __table_args__ = (UniqueConstraint("outreach_list_id", "constituent_id", name="outreach_list_members_unique"),)
    id                         = Column(UUID(as_uuid=False), primary_key=True, server_default=func.gen_random_uuid())
    outreach_list_id           = Column(UUID(as_uuid=False), ForeignKey("outreach_lists.id", ondelete="CASCADE"), nullable=False)
    outreach_list_household_id = Column(
        UUID(as_uuid=False), ForeignKey("outreach_list_households.id", ondelete="CASCADE"), nullable=False
    )
    household_id               = Column(BigInteger)
    constituent_id             = Column(BigInteger, nullable=False)
    origin                     = Column(String)
    member_snapshot            = Column(JSONB)
