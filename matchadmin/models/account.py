"""
matchadmin/models/account.py

Account models: the billing-relevant projection of a user.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class ProvisionCandidate(BaseModel):
    """Identity and profile fields for a new account."""
    model_config = ConfigDict(frozen=True)

    email: str = Field(min_length=3, max_length=320)
    phone: str = Field(min_length=1, max_length=32)
    password: str = Field(min_length=1, repr=False)
    name: Optional[str] = None
    profile: Dict[str, Any] = Field(default_factory=dict)
    preferences: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value

    @field_validator("phone")
    @classmethod
    def _normalize_phone(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("phone must not be blank")
        return value


class Account(BaseModel):
    """
    Account state after provisioning.

    swipe_limit_snapshot is copied from the plan's features when the plan is
    assigned; later plan edits do not change it.
    """
    model_config = ConfigDict(frozen=True)

    account_id: str
    email: str
    phone: str
    name: Optional[str] = None
    plan_id: str
    swipe_limit_snapshot: int
    external_customer_id: Optional[str] = None
    preference_id: Optional[str] = None
    last_active_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class Preference(BaseModel):
    model_config = ConfigDict(frozen=True)

    preference_id: str
    account_id: str
    data: Dict[str, Any]
