from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlmodel import Field, Relationship, SQLModel

from .timezone_utils import now_local, now_utc


class UserRole(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    OPERATOR = "operator"
    VIEWER = "viewer"


class TenantStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    CANCELED = "canceled"


class TenantPlan(str, Enum):
    FREE = "free"
    PRO = "pro"


class AccountType(str, Enum):
    CHECKING = "checking"
    SAVINGS = "savings"


class TransactionDirection(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class LoanStatus(str, Enum):
    ACTIVE = "active"
    DUE_SOON = "due_soon"
    OVERDUE = "overdue"
    PAID = "paid"
    RENEGOTIATED = "renegotiated"
    WRITTEN_OFF = "written_off"
    DEFAULTED = "defaulted"


class InstallmentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class AddressLabel(str, Enum):
    PRIMARY = "primary"
    BUSINESS = "business"
    BILLING = "billing"
    SHIPPING = "shipping"


class DocumentType(str, Enum):
    CPF = "cpf"
    CNPJ = "cnpj"


class Tenant(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(index=True, unique=True)
    document: Optional[str] = None
    phone: Optional[str] = None
    status: TenantStatus = Field(default=TenantStatus.ACTIVE, index=True)
    plan: TenantPlan = Field(default=TenantPlan.FREE)
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: Optional[int] = Field(default=None, foreign_key="tenant.id", index=True)
    email: str = Field(index=True, unique=True)
    name: str = Field(default="")
    first_name: str = Field(default="")
    last_name: str = Field(default="")
    phone: Optional[str] = None
    role: UserRole = Field(default=UserRole.OPERATOR)
    password_hash: str
    avatar: Optional[str] = None
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)


class Client(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: Optional[int] = Field(default=None, foreign_key="tenant.id", index=True)
    name: str = Field(index=True)
    first_name: str
    last_name: str
    email: str
    phone: str
    birth_date: date
    document: str = Field(index=True, unique=True)
    document_type: DocumentType
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)

    addresses: List["Address"] = Relationship(back_populates="client")


class Address(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: Optional[int] = Field(default=None, foreign_key="client.id", index=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", unique=True)
    label: AddressLabel = Field(default=AddressLabel.PRIMARY)
    postal_code: str
    street: str
    number: str
    district: str
    city: str
    state: str
    complement: Optional[str] = None
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)

    client: Optional[Client] = Relationship(back_populates="addresses")


class Account(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: Optional[int] = Field(default=None, foreign_key="tenant.id", index=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    name: str
    bank_name: str
    branch: str
    account_number: str
    type: AccountType = Field(default=AccountType.CHECKING)
    opening_balance: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)
    current_balance: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)


class Loan(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: Optional[int] = Field(default=None, foreign_key="tenant.id", index=True)
    client_id: int = Field(foreign_key="client.id", index=True)
    account_id: int = Field(foreign_key="account.id", index=True)
    created_by_user_id: Optional[int] = Field(default=None, foreign_key="user.id")
    principal_amount: Decimal = Field(max_digits=14, decimal_places=2)
    interest_rate: Decimal = Field(default=Decimal("0"), max_digits=9, decimal_places=4)
    due_date: date
    status: LoanStatus = Field(default=LoanStatus.ACTIVE, index=True)
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)

    client: Optional[Client] = Relationship()
    installments: List["LoanInstallment"] = Relationship(
        back_populates="loan",
        sa_relationship_kwargs={"order_by": "LoanInstallment.sequence"},
    )


class LoanInstallment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    loan_id: int = Field(foreign_key="loan.id", index=True)
    sequence: int
    due_date: date
    principal_due: Decimal = Field(max_digits=14, decimal_places=2)
    interest_due: Decimal = Field(max_digits=14, decimal_places=2)
    total_due: Decimal = Field(max_digits=14, decimal_places=2)
    paid_amount: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)
    status: InstallmentStatus = Field(default=InstallmentStatus.PENDING)

    loan: Optional[Loan] = Relationship(back_populates="installments")


class AccountTransaction(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: int = Field(foreign_key="account.id", index=True)
    loan_id: Optional[int] = Field(default=None, foreign_key="loan.id", index=True)
    direction: TransactionDirection = Field(index=True)
    amount: Decimal = Field(max_digits=14, decimal_places=2)
    description: str = Field(default="")
    created_at: datetime = Field(default_factory=now_local, index=True)


class RefreshToken(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    token_hash: str = Field(index=True, unique=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    expires_at: datetime = Field(index=True)
    created_at: datetime = Field(default_factory=now_utc)
    revoked: bool = Field(default=False)


class PasswordResetToken(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    token_hash: str = Field(index=True, unique=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    expires_at: datetime
    used: bool = Field(default=False)
    created_at: datetime = Field(default_factory=now_utc)
