from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from app.models.models import (
    AccountStatus,
    BookStatus,
    FineStatus,
    ReservationStatus,
    ReturnCondition,
    Role,
    TransactionStatus,
    TransactionType,
)


class UserCreate(BaseModel):
    email: str
    password: str
    first_name: str
    last_name: str
    role: Role = Role.STUDENT
    student_id: Optional[str] = None
    borrowing_limit: int = Field(3, ge=1, le=10)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    first_name: str
    last_name: str
    role: Role
    status: AccountStatus
    student_id: Optional[str] = None
    borrowing_limit: int


class BookCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    author: str = Field(..., min_length=1, max_length=100)
    barcode: str = Field(..., min_length=1)
    isbn: Optional[str] = None
    quantity: int = Field(1, ge=1)


class BookOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    barcode: str
    isbn: Optional[str] = None
    title: str
    author: str
    status: BookStatus
    quantity: int
    available_quantity: int


class BorrowRequestIn(BaseModel):
    book_id: Optional[int] = None
    barcode: Optional[str] = None
    requested_days: int = Field(14, ge=1, le=90)
    notes: Optional[str] = None


class ApproveIn(BaseModel):
    action: Literal["approve"]
    notes: Optional[str] = None


class RejectIn(BaseModel):
    action: Literal["reject"]
    rejection_reason: str = Field(..., min_length=1)
    notes: Optional[str] = None


# discriminated on "action" by the process endpoint
ProcessIn = Union[ApproveIn, RejectIn]


class RenewIn(BaseModel):
    additional_days: Optional[int] = Field(None, ge=1, le=90)
    notes: Optional[str] = None


class ReturnIn(BaseModel):
    condition: ReturnCondition = ReturnCondition.GOOD
    notes: Optional[str] = None


class FineOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_id: int
    user_id: int
    amount: Decimal
    reason: str
    status: FineStatus
    issued_at: datetime
    paid_at: Optional[datetime] = None
    notes: Optional[str] = None


class WaiveIn(BaseModel):
    notes: Optional[str] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    book_id: int
    user_id: int
    type: TransactionType
    status: TransactionStatus
    requested_days: Optional[int] = None
    borrowed_at: datetime
    due_date: datetime
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    renewal_count: int
    rejection_reason: Optional[str] = None
    return_condition: Optional[ReturnCondition] = None
    notes: Optional[str] = None
    processed_by: Optional[int] = None
    is_overdue: bool = False
    fine: Optional[FineOut] = None


class TransactionPage(BaseModel):
    transactions: List[TransactionOut]
    page: int
    limit: int
    total: int
    total_pages: int


class RenewOut(BaseModel):
    transaction: TransactionOut
    renewals_remaining: int


class ReturnOut(BaseModel):
    transaction: TransactionOut
    fine: Optional[FineOut] = None
    days_overdue: int


class ReservationIn(BaseModel):
    book_id: int


class ReservationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    book_id: int
    user_id: int
    status: ReservationStatus
    reserved_at: datetime
    expires_at: datetime
    fulfilled_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class SettingIn(BaseModel):
    value: str = Field(..., min_length=1)
    description: Optional[str] = None


class SettingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    value: str
    description: Optional[str] = None
    updated_at: datetime


class FineSummary(BaseModel):
    fines: List[FineOut]
    outstanding_total: Decimal
