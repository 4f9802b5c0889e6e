from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator

from crm.models import CUSTOMER_STATUSES


def _check_status(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    status = value.strip().lower()
    if status not in CUSTOMER_STATUSES:
        raise ValueError(f"status must be one of: {', '.join(CUSTOMER_STATUSES)}")
    return status


class CustomerFields(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    email: Optional[str] = None
    phone: Optional[str] = None
    assigned_to: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("assigned_to", "assignedTo")
    )
    notes: Optional[str] = None

    def resolved_name(self) -> Optional[str]:
        if self.name and self.name.strip():
            return self.name.strip()
        if self.first_name or self.last_name:
            return f"{self.first_name or ''} {self.last_name or ''}".strip() or None
        return None


class CustomerCreate(CustomerFields):
    status: str = "pending"

    @field_validator("status")
    @classmethod
    def check_status(cls, value: Optional[str]) -> Optional[str]:
        return _check_status(value)


class CustomerUpdate(CustomerFields):
    status: Optional[str] = None
    archived: Optional[bool] = None
    updated_at: Optional[datetime] = None

    @field_validator("status")
    @classmethod
    def check_status(cls, value: Optional[str]) -> Optional[str]:
        return _check_status(value)


class BulkCustomerItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    email: Optional[str] = None
    phone: Optional[str] = None
    status: Optional[str] = None
    assigned_to: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("assigned_to", "assignedTo")
    )
    notes: Optional[str] = None
    comments: Optional[str] = None


class BulkUploadRequest(BaseModel):
    customers: List[BulkCustomerItem] = Field(min_length=1)
    batch_size: Optional[int] = Field(default=None, alias="batchSize", ge=1)

    model_config = ConfigDict(populate_by_name=True)


class BulkDeleteRequest(BaseModel):
    customer_ids: List[Any] = Field(alias="customerIds", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class LoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(alias="currentPassword", min_length=1)
    new_password: str = Field(alias="newPassword", min_length=6)

    model_config = ConfigDict(populate_by_name=True)


class ContactRequest(BaseModel):
    fullname: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    email: EmailStr
    description: Optional[str] = None


class UserCreate(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=6)
    role: Literal["admin", "employee", "customer"] = "employee"


class UserUpdate(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = Field(default=None, min_length=6)
    role: Optional[Literal["admin", "employee", "customer"]] = None
    locked: Optional[bool] = None
