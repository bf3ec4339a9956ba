from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationInfo, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .models import (
    AccountType,
    AddressLabel,
    DocumentType,
    InstallmentStatus,
    LoanStatus,
    TenantPlan,
    TenantStatus,
    TransactionDirection,
    UserRole,
)

NON_DIGITS_RE = re.compile(r"\D")
POSTAL_CODE_LENGTH = 8
MIN_PASSWORD_LENGTH = 8


def digits_only(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    return NON_DIGITS_RE.sub("", value)


def normalize_postal_code(value: str) -> str:
    digits = digits_only(value or "") or ""
    if not digits:
        raise ValueError("postalCode must contain digits")
    if len(digits) > POSTAL_CODE_LENGTH:
        raise ValueError("postalCode must have at most 8 digits")
    return digits.zfill(POSTAL_CODE_LENGTH)


def _strip_required(value: str, field_name: str, min_length: int = 1) -> str:
    trimmed = (value or "").strip()
    if len(trimmed) < min_length:
        raise ValueError(f"{field_name} must have at least {min_length} characters")
    return trimmed


def _normalize_state(value: str) -> str:
    trimmed = (value or "").strip().upper()
    if len(trimmed) != 2 or not trimmed.isalpha():
        raise ValueError("state must be a two-letter code")
    return trimmed


def _normalize_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    digits = digits_only(value)
    if len(digits) < 10:
        raise ValueError("phone must have at least 10 digits")
    return digits


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python; both accepted on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class PaginationMeta(ApiModel):
    page: int
    page_size: int
    total: int
    total_pages: int


class MessageResponse(ApiModel):
    success: bool = True
    message: str


# --- addresses -----------------------------------------------------------


class AddressInput(ApiModel):
    label: AddressLabel = AddressLabel.PRIMARY
    postal_code: str
    street: str
    number: str
    district: str
    city: str
    state: str
    complement: Optional[str] = None

    @field_validator("postal_code")
    @classmethod
    def validate_postal_code(cls, value: str) -> str:
        return normalize_postal_code(value)

    @field_validator("street", "number", "district", "city")
    @classmethod
    def validate_required_text(cls, value: str, info: ValidationInfo) -> str:
        return _strip_required(value, info.field_name)

    @field_validator("state")
    @classmethod
    def validate_state(cls, value: str) -> str:
        return _normalize_state(value)

    @field_validator("complement")
    @classmethod
    def validate_complement(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return value.strip() or None


class ClientAddressInput(AddressInput):
    id: Optional[int] = None


class AddressUpdate(ApiModel):
    label: Optional[AddressLabel] = None
    postal_code: Optional[str] = None
    street: Optional[str] = None
    number: Optional[str] = None
    district: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    complement: Optional[str] = None

    @field_validator("postal_code")
    @classmethod
    def validate_postal_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return normalize_postal_code(value)

    @field_validator("street", "number", "district", "city")
    @classmethod
    def validate_required_text(cls, value: Optional[str], info: ValidationInfo) -> Optional[str]:
        if value is None:
            return value
        return _strip_required(value, info.field_name)

    @field_validator("state")
    @classmethod
    def validate_state(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return _normalize_state(value)


class AddressRead(ApiModel):
    id: int
    client_id: Optional[int] = None
    user_id: Optional[int] = None
    label: AddressLabel
    postal_code: str
    street: str
    number: str
    district: str
    city: str
    state: str
    complement: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AddressEnvelope(ApiModel):
    success: bool = True
    data: AddressRead


class AddressListResponse(ApiModel):
    success: bool = True
    data: List[AddressRead]


# --- auth ----------------------------------------------------------------


class LoginRequest(ApiModel):
    email: EmailStr
    password: str = Field(min_length=1)


class RefreshRequest(ApiModel):
    refresh_token: Optional[str] = None


class ForgotPasswordRequest(ApiModel):
    email: EmailStr


class ResetPasswordRequest(ApiModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=MIN_PASSWORD_LENGTH)


class ChangePasswordRequest(ApiModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=MIN_PASSWORD_LENGTH)


class UserRead(ApiModel):
    id: int
    tenant_id: Optional[int] = None
    email: str
    name: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    role: UserRole
    avatar: Optional[str] = None
    is_active: bool
    address: Optional[AddressRead] = None
    created_at: datetime
    updated_at: datetime


class AuthResponse(ApiModel):
    success: bool = True
    token: str
    refresh_token: str
    user: UserRead


class UserEnvelope(ApiModel):
    success: bool = True
    data: UserRead


class UserListResponse(ApiModel):
    success: bool = True
    data: List[UserRead]
    meta: PaginationMeta


# --- users ---------------------------------------------------------------


class UserCreate(ApiModel):
    first_name: str
    last_name: str
    email: EmailStr
    phone: str
    role: UserRole = UserRole.OPERATOR
    password: str = Field(min_length=MIN_PASSWORD_LENGTH)
    address: AddressInput
    avatar: Optional[str] = None

    @field_validator("first_name", "last_name")
    @classmethod
    def validate_names(cls, value: str, info: ValidationInfo) -> str:
        return _strip_required(value, info.field_name, min_length=2)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, value: str) -> str:
        return _normalize_phone(value)

    @field_validator("role")
    @classmethod
    def validate_role(cls, value: UserRole) -> UserRole:
        if value == UserRole.SUPER_ADMIN:
            raise ValueError("role cannot be super_admin")
        return value


class UserUpdate(ApiModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    role: Optional[UserRole] = None
    password: Optional[str] = Field(default=None, min_length=MIN_PASSWORD_LENGTH)
    address: Optional[AddressInput] = None
    avatar: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("first_name", "last_name")
    @classmethod
    def validate_names(cls, value: Optional[str], info: ValidationInfo) -> Optional[str]:
        if value is None:
            return value
        return _strip_required(value, info.field_name, min_length=2)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return value.strip().lower()

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_phone(value)

    @field_validator("role")
    @classmethod
    def validate_role(cls, value: Optional[UserRole]) -> Optional[UserRole]:
        if value == UserRole.SUPER_ADMIN:
            raise ValueError("role cannot be super_admin")
        return value


class ProfileUpdate(ApiModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    avatar: Optional[str] = None
    address: Optional[AddressInput] = None

    @field_validator("first_name", "last_name")
    @classmethod
    def validate_names(cls, value: Optional[str], info: ValidationInfo) -> Optional[str]:
        if value is None:
            return value
        return _strip_required(value, info.field_name, min_length=2)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_phone(value)


class RoleRead(ApiModel):
    key: str
    label: str
    description: str = ""


class RoleCatalog(ApiModel):
    success: bool = True
    data: List[RoleRead]


# --- accounts ------------------------------------------------------------


class AccountCreate(ApiModel):
    name: str
    bank_name: str
    branch: str
    account_number: str
    type: AccountType = AccountType.CHECKING
    opening_balance: Decimal = Field(default=Decimal("0.00"), ge=0, max_digits=14, decimal_places=2)

    @field_validator("name", "bank_name")
    @classmethod
    def validate_names(cls, value: str, info: ValidationInfo) -> str:
        return _strip_required(value, info.field_name, min_length=2)

    @field_validator("branch", "account_number")
    @classmethod
    def validate_codes(cls, value: str, info: ValidationInfo) -> str:
        return _strip_required(value, info.field_name)


class AccountUpdate(ApiModel):
    """Balances are deliberately absent: they only move through the ledger."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    name: Optional[str] = None
    bank_name: Optional[str] = None
    branch: Optional[str] = None
    account_number: Optional[str] = None
    type: Optional[AccountType] = None

    @field_validator("name", "bank_name")
    @classmethod
    def validate_names(cls, value: Optional[str], info: ValidationInfo) -> Optional[str]:
        if value is None:
            return value
        return _strip_required(value, info.field_name, min_length=2)

    @field_validator("branch", "account_number")
    @classmethod
    def validate_codes(cls, value: Optional[str], info: ValidationInfo) -> Optional[str]:
        if value is None:
            return value
        return _strip_required(value, info.field_name)


class AccountRead(ApiModel):
    id: int
    tenant_id: Optional[int] = None
    user_id: Optional[int] = None
    name: str
    bank_name: str
    branch: str
    account_number: str
    type: AccountType
    opening_balance: Decimal
    current_balance: Decimal
    created_at: datetime
    updated_at: datetime


class AccountEnvelope(ApiModel):
    success: bool = True
    data: AccountRead


class AccountListResponse(ApiModel):
    success: bool = True
    data: List[AccountRead]
    meta: PaginationMeta


class BalanceRead(ApiModel):
    balance: Decimal


class BalanceEnvelope(ApiModel):
    success: bool = True
    data: BalanceRead


class DepositRequest(ApiModel):
    amount: Decimal = Field(gt=0, max_digits=14, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=255)


class TransactionRead(ApiModel):
    id: int
    account_id: int
    loan_id: Optional[int] = None
    direction: TransactionDirection
    amount: Decimal
    description: str
    created_at: datetime


class TransactionListResponse(ApiModel):
    success: bool = True
    data: List[TransactionRead]
    meta: PaginationMeta


class DepositResponse(ApiModel):
    success: bool = True
    account: AccountRead
    transaction: TransactionRead


# --- clients -------------------------------------------------------------

DOCUMENT_LENGTHS = {DocumentType.CPF: 11, DocumentType.CNPJ: 14}


class ClientCreate(ApiModel):
    first_name: str
    last_name: str
    email: EmailStr
    phone: str
    birth_date: date
    document: str
    document_type: DocumentType
    addresses: List[AddressInput] = Field(min_length=1)

    @field_validator("first_name", "last_name")
    @classmethod
    def validate_names(cls, value: str, info: ValidationInfo) -> str:
        return _strip_required(value, info.field_name, min_length=2)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, value: str) -> str:
        return _normalize_phone(value)

    @field_validator("document")
    @classmethod
    def validate_document(cls, value: str) -> str:
        return digits_only(value)

    @model_validator(mode="after")
    def ensure_document_length(self) -> "ClientCreate":
        expected = DOCUMENT_LENGTHS[self.document_type]
        if len(self.document) != expected:
            raise ValueError(f"document must have {expected} digits for {self.document_type.value}")
        return self


class ClientUpdate(ApiModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    birth_date: Optional[date] = None
    document: Optional[str] = None
    document_type: Optional[DocumentType] = None
    addresses: Optional[List[ClientAddressInput]] = None

    @field_validator("first_name", "last_name")
    @classmethod
    def validate_names(cls, value: Optional[str], info: ValidationInfo) -> Optional[str]:
        if value is None:
            return value
        return _strip_required(value, info.field_name, min_length=2)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return value.strip().lower()

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_phone(value)

    @field_validator("document")
    @classmethod
    def validate_document(cls, value: Optional[str]) -> Optional[str]:
        return digits_only(value)

    @model_validator(mode="after")
    def ensure_document_length(self) -> "ClientUpdate":
        if self.document is not None and self.document_type is not None:
            expected = DOCUMENT_LENGTHS[self.document_type]
            if len(self.document) != expected:
                raise ValueError(f"document must have {expected} digits for {self.document_type.value}")
        if self.addresses is not None and not self.addresses:
            raise ValueError("At least one address is required")
        return self


class ClientRead(ApiModel):
    id: int
    tenant_id: Optional[int] = None
    name: str
    first_name: str
    last_name: str
    email: str
    phone: str
    birth_date: date
    document: str
    document_type: DocumentType
    addresses: List[AddressRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class ClientEnvelope(ApiModel):
    success: bool = True
    data: ClientRead


class ClientListResponse(ApiModel):
    success: bool = True
    data: List[ClientRead]
    meta: PaginationMeta


# --- loans ---------------------------------------------------------------


class LoanCreate(ApiModel):
    client_id: int = Field(gt=0)
    account_id: Optional[int] = Field(default=None, gt=0)
    principal_amount: Decimal = Field(gt=0, max_digits=14, decimal_places=2)
    interest_rate: Decimal = Field(ge=0, max_digits=9, decimal_places=4)
    due_date: date
    installments: Optional[int] = Field(default=None, gt=0, le=360)
    notes: Optional[str] = None

    @field_validator("due_date", mode="before")
    @classmethod
    def normalize_due_date(cls, value: Any):
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str):
            text = value.strip()
            if "T" in text:
                if text.endswith("Z"):
                    text = text[:-1] + "+00:00"
                try:
                    return datetime.fromisoformat(text).date()
                except ValueError as exc:
                    raise ValueError("dueDate must be an ISO 8601 date or datetime") from exc
            return text
        return value


class LoanStatusUpdate(ApiModel):
    status: LoanStatus


class LoanNotesUpdate(ApiModel):
    notes: Optional[str] = None


class PaymentRequest(ApiModel):
    amount: Decimal = Field(gt=0, max_digits=14, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=255)


class InstallmentRead(ApiModel):
    id: int
    sequence: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    total_due: Decimal
    paid_amount: Decimal
    status: InstallmentStatus


class LoanClientRead(ApiModel):
    id: int
    name: str
    document: str


class LoanRead(ApiModel):
    id: int
    tenant_id: Optional[int] = None
    client_id: int
    account_id: int
    created_by_user_id: Optional[int] = None
    principal_amount: Decimal
    interest_rate: Decimal
    due_date: date
    status: LoanStatus
    notes: Optional[str] = None
    client: Optional[LoanClientRead] = None
    installments: List[InstallmentRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class LoanEnvelope(ApiModel):
    success: bool = True
    data: LoanRead


class LoanListResponse(ApiModel):
    success: bool = True
    data: List[LoanRead]
    meta: PaginationMeta


class PaymentResponse(ApiModel):
    success: bool = True
    loan: LoanRead
    account: AccountRead
    transaction: TransactionRead


# --- tenants -------------------------------------------------------------


class TenantCreate(ApiModel):
    name: str
    email: EmailStr
    document: Optional[str] = None
    phone: Optional[str] = None
    plan: TenantPlan = TenantPlan.FREE
    admin_first_name: str
    admin_last_name: str
    admin_email: EmailStr
    admin_password: str = Field(min_length=MIN_PASSWORD_LENGTH)

    @field_validator("name", "admin_first_name", "admin_last_name")
    @classmethod
    def validate_names(cls, value: str, info: ValidationInfo) -> str:
        return _strip_required(value, info.field_name, min_length=2)

    @field_validator("email", "admin_email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("document", "phone")
    @classmethod
    def validate_digits(cls, value: Optional[str]) -> Optional[str]:
        return digits_only(value) or None


class TenantUpdate(ApiModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    document: Optional[str] = None
    phone: Optional[str] = None
    plan: Optional[TenantPlan] = None
    status: Optional[TenantStatus] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return _strip_required(value, "name", min_length=2)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return value.strip().lower()

    @field_validator("document", "phone")
    @classmethod
    def validate_digits(cls, value: Optional[str]) -> Optional[str]:
        return digits_only(value)


class TenantRead(ApiModel):
    id: int
    name: str
    email: str
    document: Optional[str] = None
    phone: Optional[str] = None
    status: TenantStatus
    plan: TenantPlan
    created_at: datetime
    updated_at: datetime


class TenantEnvelope(ApiModel):
    success: bool = True
    data: TenantRead


class TenantListResponse(ApiModel):
    success: bool = True
    data: List[TenantRead]
    meta: PaginationMeta


# --- postal codes --------------------------------------------------------


class PostalAddressRead(ApiModel):
    postal_code: str
    street: str
    district: str
    city: str
    state: str
    complement: Optional[str] = None


class PostalAddressEnvelope(ApiModel):
    success: bool = True
    data: PostalAddressRead


class HealthResponse(ApiModel):
    success: bool = True
    status: str = "ok"
