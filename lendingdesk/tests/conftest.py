import os
import sys
from datetime import date
from decimal import Decimal
from pathlib import Path

# Settings are read at import time, so the test environment must be in place first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["APP_ENV"] = "test"
os.environ["BCRYPT_SALT_ROUNDS"] = "4"
os.environ["SMTP_HOST"] = ""
os.environ.pop("DEFAULT_ACCOUNT_ID", None)

# Ensure project root is on sys.path so `import lendingdesk` works when running the tests directly
ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from lendingdesk import auth, rate_limit
from lendingdesk.app import app, get_session
from lendingdesk.models import (
    Account,
    Address,
    Client,
    DocumentType,
    Tenant,
    TenantStatus,
    User,
    UserRole,
)
from lendingdesk.security import hash_password

DEFAULT_PASSWORD = "s3cret-pass"


@pytest.fixture(autouse=True)
def reset_throttle():
    rate_limit.throttle.reset()
    yield
    rate_limit.throttle.reset()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def client(engine):
    def override_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    yield TestClient(app)
    app.dependency_overrides.clear()


class Seed:
    """Creates rows directly through the ORM for test setup."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def _save(self, row):
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row

    def tenant(self, *, status: TenantStatus = TenantStatus.ACTIVE) -> Tenant:
        n = self._next()
        return self._save(Tenant(name=f"Tenant {n}", email=f"tenant{n}@example.com", status=status))

    def user(
        self,
        tenant: Tenant = None,
        *,
        role: UserRole = UserRole.ADMIN,
        email: str = None,
        password: str = DEFAULT_PASSWORD,
    ) -> User:
        n = self._next()
        return self._save(
            User(
                tenant_id=tenant.id if tenant else None,
                email=email or f"user{n}@example.com",
                name=f"User {n}",
                first_name="User",
                last_name=str(n),
                role=role,
                password_hash=hash_password(password),
            )
        )

    def account(self, tenant: Tenant, *, owner: User = None, opening: str = "0.00", name: str = None) -> Account:
        n = self._next()
        amount = Decimal(opening)
        return self._save(
            Account(
                tenant_id=tenant.id,
                user_id=owner.id if owner else None,
                name=name or f"Account {n}",
                bank_name="Banco Teste",
                branch="0001",
                account_number=f"{n:05d}-0",
                opening_balance=amount,
                current_balance=amount,
            )
        )

    def client(self, tenant: Tenant, *, document: str = None) -> Client:
        n = self._next()
        client = Client(
            tenant_id=tenant.id,
            name=f"Client {n}",
            first_name="Client",
            last_name=str(n),
            email=f"client{n}@example.com",
            phone="11987654321",
            birth_date=date(1990, 1, 1),
            document=document or f"{n:011d}",
            document_type=DocumentType.CPF,
        )
        self.session.add(client)
        self.session.flush()
        self.session.add(
            Address(
                client_id=client.id,
                postal_code="01310100",
                street="Avenida Paulista",
                number="1000",
                district="Bela Vista",
                city="Sao Paulo",
                state="SP",
            )
        )
        self.session.commit()
        self.session.refresh(client)
        return client

    @staticmethod
    def headers(user: User) -> dict:
        return {"Authorization": f"Bearer {auth.build_access_token(user)}"}


@pytest.fixture
def seed(session):
    return Seed(session)
