"""
Input models for the CRM entity services.

Create models carry required fields; update models are fully optional and
only the fields actually sent are applied.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from database.models import DealStage, LeadStatus, Priority


class _Input(BaseModel):
    model_config = ConfigDict(use_enum_values=True, extra="forbid")


class LeadCreate(_Input):
    title: str = Field(..., min_length=1, max_length=255)
    contact_id: Optional[str] = None
    company_id: Optional[str] = None
    assigned_to_id: Optional[str] = None
    value: Optional[Decimal] = Field(default=None, ge=0)
    source: Optional[str] = Field(default=None, max_length=100)
    status: Optional[LeadStatus] = None
    priority: Optional[Priority] = None
    expected_close_date: Optional[datetime] = None
    description: Optional[str] = Field(default=None, max_length=1000)
    is_active: Optional[bool] = None


class LeadUpdate(_Input):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    contact_id: Optional[str] = None
    company_id: Optional[str] = None
    assigned_to_id: Optional[str] = None
    value: Optional[Decimal] = Field(default=None, ge=0)
    source: Optional[str] = Field(default=None, max_length=100)
    status: Optional[LeadStatus] = None
    priority: Optional[Priority] = None
    expected_close_date: Optional[datetime] = None
    description: Optional[str] = Field(default=None, max_length=1000)
    is_active: Optional[bool] = None


class DealCreate(_Input):
    title: str = Field(..., min_length=1, max_length=255)
    lead_id: Optional[str] = None
    contact_id: Optional[str] = None
    company_id: Optional[str] = None
    assigned_to_id: Optional[str] = None
    value: Decimal = Field(default=Decimal("0"), ge=0)
    stage: Optional[DealStage] = None
    probability: int = Field(default=0, ge=0, le=100)
    priority: Optional[Priority] = None
    expected_close_date: Optional[datetime] = None
    description: Optional[str] = Field(default=None, max_length=1000)


class DealUpdate(_Input):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    contact_id: Optional[str] = None
    company_id: Optional[str] = None
    assigned_to_id: Optional[str] = None
    value: Optional[Decimal] = Field(default=None, ge=0)
    stage: Optional[DealStage] = None
    probability: Optional[int] = Field(default=None, ge=0, le=100)
    priority: Optional[Priority] = None
    expected_close_date: Optional[datetime] = None
    description: Optional[str] = Field(default=None, max_length=1000)
