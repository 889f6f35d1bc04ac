from datetime import date, datetime
from typing import Optional, List, Dict, Any
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, EmailStr


# =========================
# Enums
# =========================
class UserRole(str, Enum):
    DEVELOPER = "developer"
    TEAM_LEAD = "team_lead"
    ADMIN = "admin"


class RequestStatusFilter(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"
    FAILED = "failed"


# =========================
# USER
# =========================
class UserBase(BaseModel):
    email: EmailStr


class CreateUser(UserBase):
    password: str = Field(min_length=8)
    team_lead_id: Optional[int] = None
    model_config = ConfigDict(from_attributes=True)


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class UserUpdate(BaseModel):
    role: Optional[UserRole] = None
    team_lead_id: Optional[int] = None


class UserResponse(UserBase):
    id: int
    role: UserRole
    team_lead_id: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# =========================
# DB INSTANCE
# =========================
class DBInstanceBase(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    database_name: str = Field(min_length=1, max_length=64)
    description: Optional[str] = None


class DBInstanceCreate(DBInstanceBase):
    connection_string: str = Field(min_length=1)
    is_active: bool = True


class DBInstanceUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    database_name: Optional[str] = Field(default=None, min_length=1, max_length=64)
    description: Optional[str] = None
    # Left out means keep the stored target
    connection_string: Optional[str] = Field(default=None, min_length=1)
    is_active: Optional[bool] = None


class DBInstanceResponse(DBInstanceBase):
    """Never carries the connection target."""

    id: int
    is_active: bool
    created_by_id: Optional[int] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ConnectionTest(BaseModel):
    connection_string: str = Field(min_length=1)
    database_name: str = Field(min_length=1)


class ConnectionTestResponse(BaseModel):
    success: bool
    collections: List[str] = []
    error: Optional[str] = None
    kind: Optional[str] = None


# =========================
# ACCESS REQUEST
# =========================
class AccessRequestCreate(BaseModel):
    db_instance_id: int
    query: str = Field(min_length=1, max_length=20000)
    reason: str = Field(min_length=1, max_length=2000)
    team_lead_id: Optional[int] = None


class ApproveRequest(BaseModel):
    comment: Optional[str] = Field(default=None, max_length=2000)


class RejectRequest(BaseModel):
    comment: str = Field(min_length=1, max_length=2000)


class AccessRequestResponse(BaseModel):
    id: int
    developer_id: int
    team_lead_id: Optional[int] = None
    db_instance_id: Optional[int] = None
    db_instance_name: str
    collection_name: str
    query_type: str
    query: str
    reason: str
    status: RequestStatusFilter
    review_comment: Optional[str] = None
    reviewed_by_id: Optional[int] = None
    execution_result: Optional[Any] = None
    execution_error: Optional[str] = None
    result_truncated: bool = False
    auto_executed: bool = False
    resubmitted_from_id: Optional[int] = None
    created_at: datetime
    decided_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AccessRequestPage(BaseModel):
    items: List[AccessRequestResponse]
    total: int
    page: int
    limit: int
    pages: int


class RequestListParams(BaseModel):
    status: Optional[RequestStatusFilter] = None
    db_instance_id: Optional[int] = None
    collection_name: Optional[str] = None
    developer_id: Optional[int] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)


class FilterOptionsResponse(BaseModel):
    db_instances: List[Dict[str, Any]]
    collections: List[str]
    developers: List[Dict[str, Any]]
