from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .config import settings
from .errors import Conflict, NotFound, ValidationError
from .ledger import get_account, get_loan
from .models import (
    Account,
    AccountTransaction,
    AccountType,
    Address,
    AddressLabel,
    Client,
    Loan,
    LoanStatus,
    PasswordResetToken,
    RefreshToken,
    Tenant,
    TenantStatus,
    User,
    UserRole,
)
from .pagination import Pagination
from .permissions import in_tenant_scope
from .schemas import (
    AccountCreate,
    AccountUpdate,
    AddressInput,
    AddressRead,
    AddressUpdate,
    ClientAddressInput,
    ClientCreate,
    ClientUpdate,
    ProfileUpdate,
    TenantCreate,
    TenantUpdate,
    UserCreate,
    UserRead,
    UserUpdate,
)
from .security import hash_password
from .timezone_utils import now_local

logger = logging.getLogger(__name__)

ADDRESS_FIELDS = ("label", "postal_code", "street", "number", "district", "city", "state", "complement")


def _scalar_from_result(result):
    try:
        return result[0]
    except (TypeError, KeyError, IndexError):
        return result


def _count(session: Session, statement) -> int:
    return int(_scalar_from_result(session.exec(statement).one()) or 0)


def _like(search: Optional[str]) -> Optional[str]:
    trimmed = (search or "").strip()
    if not trimmed:
        return None
    return f"%{trimmed}%"


def _commit_or_conflict(session: Session, message: str) -> None:
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.info("Integrity violation: %s", exc.orig)
        raise Conflict(message) from exc


def _paginate(session: Session, statement, count_statement, pagination: Pagination) -> Tuple[List[Any], int]:
    total = _count(session, count_statement)
    rows = session.exec(statement.offset(pagination.offset).limit(pagination.page_size)).all()
    return list(rows), total


def _display_name(first_name: str, last_name: str) -> str:
    return f"{first_name} {last_name}".strip()


def _address_values(payload: Any) -> Dict[str, Any]:
    return payload.model_dump(include=set(ADDRESS_FIELDS))


def _require_tenant(tenant_id: Optional[int]) -> int:
    if tenant_id is None:
        raise ValidationError("tenant_id is required for this operation")
    return tenant_id


# --- accounts ------------------------------------------------------------


def list_accounts(
    session: Session,
    pagination: Pagination,
    *,
    tenant_id: Optional[int] = None,
    owner_id: Optional[int] = None,
    search: Optional[str] = None,
    account_type: Optional[AccountType] = None,
) -> Tuple[List[Account], int]:
    stmt = select(Account)
    count_stmt = select(func.count(Account.id))

    def apply_filters(query):
        if tenant_id is not None:
            query = query.where(Account.tenant_id == tenant_id)
        if owner_id is not None:
            query = query.where(or_(Account.user_id == owner_id, Account.user_id.is_(None)))
        if account_type is not None:
            query = query.where(Account.type == account_type)
        pattern = _like(search)
        if pattern:
            query = query.where(
                or_(
                    Account.name.ilike(pattern),
                    Account.bank_name.ilike(pattern),
                    Account.account_number.ilike(pattern),
                )
            )
        return query

    stmt = apply_filters(stmt).order_by(Account.created_at.desc(), Account.id.desc())
    return _paginate(session, stmt, apply_filters(count_stmt), pagination)


def create_account(
    session: Session,
    payload: AccountCreate,
    *,
    tenant_id: Optional[int],
    owner_id: Optional[int],
) -> Account:
    account = Account(
        tenant_id=_require_tenant(tenant_id),
        user_id=owner_id,
        name=payload.name,
        bank_name=payload.bank_name,
        branch=payload.branch,
        account_number=payload.account_number,
        type=payload.type,
        opening_balance=payload.opening_balance,
        current_balance=payload.opening_balance,
    )
    session.add(account)
    session.commit()
    session.refresh(account)
    logger.info("Created account %s with opening balance %s", account.id, account.opening_balance)
    return account


def update_account(
    session: Session,
    account_id: int,
    payload: AccountUpdate,
    *,
    tenant_id: Optional[int] = None,
) -> Account:
    account = get_account(session, account_id, tenant_id=tenant_id)
    for key, value in payload.model_dump(exclude_none=True).items():
        setattr(account, key, value)
    account.updated_at = now_local()
    session.add(account)
    session.commit()
    session.refresh(account)
    return account


def delete_account(session: Session, account_id: int, *, tenant_id: Optional[int] = None) -> None:
    account = get_account(session, account_id, tenant_id=tenant_id)
    linked = _count(
        session,
        select(func.count(AccountTransaction.id)).where(AccountTransaction.account_id == account.id),
    )
    if linked:
        raise Conflict("Accounts with linked transactions cannot be removed")
    session.delete(account)
    session.commit()
    logger.info("Deleted account %s", account_id)


def resolve_loan_account(session: Session, account_id: Optional[int], *, tenant_id: Optional[int]) -> Account:
    """Pick the account a new loan is disbursed from.

    An explicit id wins, then ``DEFAULT_ACCOUNT_ID`` and finally the oldest
    shared account of the tenant.
    """
    if account_id is not None:
        return get_account(session, account_id, tenant_id=tenant_id)
    if settings.default_account_id is not None:
        return get_account(session, settings.default_account_id, tenant_id=tenant_id)
    stmt = select(Account).where(Account.user_id.is_(None))
    if tenant_id is not None:
        stmt = stmt.where(Account.tenant_id == tenant_id)
    account = session.exec(stmt.order_by(Account.created_at.asc(), Account.id.asc())).first()
    if not account:
        raise NotFound("No default account configured for loan disbursement")
    return account


# --- clients -------------------------------------------------------------


def get_client(session: Session, client_id: int, *, tenant_id: Optional[int] = None) -> Client:
    client = session.get(Client, client_id)
    if not client or not in_tenant_scope(client.tenant_id, tenant_id):
        raise NotFound("Client not found")
    return client


def _ensure_document_available(
    session: Session,
    document: str,
    *,
    exclude_id: Optional[int] = None,
) -> None:
    stmt = select(Client).where(Client.document == document)
    if exclude_id is not None:
        stmt = stmt.where(Client.id != exclude_id)
    if session.exec(stmt).first():
        raise Conflict("A client with this document already exists")


def list_clients(
    session: Session,
    pagination: Pagination,
    *,
    tenant_id: Optional[int] = None,
    search: Optional[str] = None,
    name: Optional[str] = None,
    city: Optional[str] = None,
    district: Optional[str] = None,
) -> Tuple[List[Client], int]:
    stmt = select(Client)
    count_stmt = select(func.count(Client.id))

    def apply_filters(query):
        if tenant_id is not None:
            query = query.where(Client.tenant_id == tenant_id)
        pattern = _like(search)
        if pattern:
            query = query.where(
                or_(
                    Client.name.ilike(pattern),
                    Client.first_name.ilike(pattern),
                    Client.last_name.ilike(pattern),
                    Client.email.ilike(pattern),
                    Client.phone.ilike(pattern),
                    Client.document.ilike(pattern),
                )
            )
        name_pattern = _like(name)
        if name_pattern:
            query = query.where(Client.name.ilike(name_pattern))
        address_filters = []
        city_pattern = _like(city)
        if city_pattern:
            address_filters.append(Address.city.ilike(city_pattern))
        district_pattern = _like(district)
        if district_pattern:
            address_filters.append(Address.district.ilike(district_pattern))
        if address_filters:
            query = query.where(Client.id.in_(select(Address.client_id).where(*address_filters)))
        return query

    stmt = apply_filters(stmt).order_by(Client.created_at.desc(), Client.id.desc())
    return _paginate(session, stmt, apply_filters(count_stmt), pagination)


def create_client(session: Session, payload: ClientCreate, *, tenant_id: Optional[int]) -> Client:
    _ensure_document_available(session, payload.document)
    client = Client(
        tenant_id=_require_tenant(tenant_id),
        name=_display_name(payload.first_name, payload.last_name),
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        phone=payload.phone,
        birth_date=payload.birth_date,
        document=payload.document,
        document_type=payload.document_type,
    )
    session.add(client)
    session.flush()
    for item in payload.addresses:
        session.add(Address(client_id=client.id, **_address_values(item)))
    _commit_or_conflict(session, "A client with this document already exists")
    session.refresh(client)
    logger.info("Created client %s", client.id)
    return client


def _replace_client_addresses(session: Session, client: Client, items: Iterable[ClientAddressInput]) -> None:
    existing = {address.id: address for address in client.addresses}
    keep: set[int] = set()
    for item in items:
        values = _address_values(item)
        if item.id is not None:
            address = existing.get(item.id)
            if address is None:
                raise NotFound(f"Address {item.id} does not belong to this client")
            for key, value in values.items():
                setattr(address, key, value)
            address.updated_at = now_local()
            session.add(address)
            keep.add(address.id)
        else:
            session.add(Address(client_id=client.id, **values))
    for address_id, address in existing.items():
        if address_id not in keep:
            session.delete(address)


def update_client(
    session: Session,
    client_id: int,
    payload: ClientUpdate,
    *,
    tenant_id: Optional[int] = None,
) -> Client:
    client = get_client(session, client_id, tenant_id=tenant_id)
    changes = payload.model_dump(exclude_none=True, exclude={"addresses"})
    if "document" in changes and changes["document"] != client.document:
        _ensure_document_available(session, changes["document"], exclude_id=client.id)
    for key, value in changes.items():
        setattr(client, key, value)
    if "first_name" in changes or "last_name" in changes:
        client.name = _display_name(client.first_name, client.last_name)
    if payload.addresses is not None:
        _replace_client_addresses(session, client, payload.addresses)
    client.updated_at = now_local()
    session.add(client)
    _commit_or_conflict(session, "A client with this document already exists")
    session.refresh(client)
    return client


def delete_client(session: Session, client_id: int, *, tenant_id: Optional[int] = None) -> None:
    client = get_client(session, client_id, tenant_id=tenant_id)
    linked = _count(session, select(func.count(Loan.id)).where(Loan.client_id == client.id))
    if linked:
        raise Conflict("Clients with linked loans cannot be removed")
    for address in list(client.addresses):
        session.delete(address)
    session.delete(client)
    session.commit()
    logger.info("Deleted client %s", client_id)


def list_client_addresses(session: Session, client_id: int, *, tenant_id: Optional[int] = None) -> List[Address]:
    client = get_client(session, client_id, tenant_id=tenant_id)
    return list(client.addresses)


def add_client_address(
    session: Session,
    client_id: int,
    payload: AddressInput,
    *,
    tenant_id: Optional[int] = None,
) -> Address:
    client = get_client(session, client_id, tenant_id=tenant_id)
    address = Address(client_id=client.id, **_address_values(payload))
    session.add(address)
    session.commit()
    session.refresh(address)
    return address


def _get_client_address(session: Session, address_id: int, *, tenant_id: Optional[int]) -> Address:
    address = session.get(Address, address_id)
    if not address or address.client_id is None:
        raise NotFound("Address not found")
    client = session.get(Client, address.client_id)
    if not client or not in_tenant_scope(client.tenant_id, tenant_id):
        raise NotFound("Address not found")
    return address


def update_client_address(
    session: Session,
    address_id: int,
    payload: AddressUpdate,
    *,
    tenant_id: Optional[int] = None,
) -> Address:
    address = _get_client_address(session, address_id, tenant_id=tenant_id)
    for key, value in payload.model_dump(exclude_none=True).items():
        setattr(address, key, value)
    address.updated_at = now_local()
    session.add(address)
    session.commit()
    session.refresh(address)
    return address


def delete_client_address(session: Session, address_id: int, *, tenant_id: Optional[int] = None) -> None:
    address = _get_client_address(session, address_id, tenant_id=tenant_id)
    session.delete(address)
    session.commit()


# --- users ---------------------------------------------------------------


def get_user_address(session: Session, user_id: int) -> Optional[Address]:
    return session.exec(select(Address).where(Address.user_id == user_id)).first()


def to_user_read(session: Session, user: User) -> UserRead:
    payload = UserRead.model_validate(user)
    address = get_user_address(session, user.id)
    if address is not None:
        payload.address = AddressRead.model_validate(address)
    return payload


def get_user(session: Session, user_id: int, *, tenant_id: Optional[int] = None) -> User:
    user = session.get(User, user_id)
    if not user or not in_tenant_scope(user.tenant_id, tenant_id):
        raise NotFound("User not found")
    return user


def _ensure_email_available(session: Session, email: str, *, exclude_id: Optional[int] = None) -> None:
    stmt = select(User).where(User.email == email)
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    if session.exec(stmt).first():
        raise Conflict("A user with this email already exists")


def _upsert_user_address(session: Session, user_id: int, payload: AddressInput) -> Address:
    values = _address_values(payload)
    values["label"] = AddressLabel.PRIMARY
    address = get_user_address(session, user_id)
    if address is None:
        address = Address(user_id=user_id, **values)
    else:
        for key, value in values.items():
            setattr(address, key, value)
        address.updated_at = now_local()
    session.add(address)
    return address


def list_users(
    session: Session,
    pagination: Pagination,
    *,
    tenant_id: Optional[int] = None,
    search: Optional[str] = None,
) -> Tuple[List[User], int]:
    stmt = select(User)
    count_stmt = select(func.count(User.id))

    def apply_filters(query):
        if tenant_id is not None:
            query = query.where(User.tenant_id == tenant_id)
        pattern = _like(search)
        if pattern:
            query = query.where(
                or_(
                    User.name.ilike(pattern),
                    User.email.ilike(pattern),
                    User.phone.ilike(pattern),
                )
            )
        return query

    stmt = apply_filters(stmt).order_by(User.created_at.desc(), User.id.desc())
    return _paginate(session, stmt, apply_filters(count_stmt), pagination)


def create_user(session: Session, payload: UserCreate, *, tenant_id: Optional[int]) -> User:
    _ensure_email_available(session, payload.email)
    user = User(
        tenant_id=_require_tenant(tenant_id),
        email=payload.email,
        name=_display_name(payload.first_name, payload.last_name),
        first_name=payload.first_name,
        last_name=payload.last_name,
        phone=payload.phone,
        role=payload.role,
        avatar=payload.avatar,
        password_hash=hash_password(payload.password),
    )
    session.add(user)
    session.flush()
    _upsert_user_address(session, user.id, payload.address)
    _commit_or_conflict(session, "A user with this email already exists")
    session.refresh(user)
    logger.info("Created user %s with role %s", user.id, user.role.value)
    return user


def _apply_user_changes(session: Session, user: User, changes: Dict[str, Any]) -> None:
    password = changes.pop("password", None)
    if password:
        user.password_hash = hash_password(password)
    if "email" in changes and changes["email"] != user.email:
        _ensure_email_available(session, changes["email"], exclude_id=user.id)
    for key, value in changes.items():
        setattr(user, key, value)
    if "first_name" in changes or "last_name" in changes:
        user.name = _display_name(user.first_name, user.last_name)
    user.updated_at = now_local()
    session.add(user)


def update_user(
    session: Session,
    user_id: int,
    payload: UserUpdate,
    *,
    tenant_id: Optional[int] = None,
) -> User:
    user = get_user(session, user_id, tenant_id=tenant_id)
    if user.role == UserRole.SUPER_ADMIN:
        raise ValidationError("The super admin cannot be edited here")
    _apply_user_changes(session, user, payload.model_dump(exclude_none=True, exclude={"address"}))
    if payload.address is not None:
        _upsert_user_address(session, user.id, payload.address)
    _commit_or_conflict(session, "A user with this email already exists")
    session.refresh(user)
    return user


def update_profile(session: Session, user_id: int, payload: ProfileUpdate) -> User:
    user = get_user(session, user_id)
    _apply_user_changes(session, user, payload.model_dump(exclude_none=True, exclude={"address"}))
    if payload.address is not None:
        _upsert_user_address(session, user.id, payload.address)
    session.commit()
    session.refresh(user)
    return user


def delete_user(
    session: Session,
    user_id: int,
    *,
    acting_user_id: int,
    tenant_id: Optional[int] = None,
) -> None:
    if user_id == acting_user_id:
        raise Conflict("You cannot remove your own user")
    user = get_user(session, user_id, tenant_id=tenant_id)
    if user.role == UserRole.SUPER_ADMIN:
        raise Conflict("The super admin cannot be removed")

    owned = session.exec(select(Account).where(Account.user_id == user.id)).all()
    for account in owned:
        linked = _count(
            session,
            select(func.count(AccountTransaction.id)).where(AccountTransaction.account_id == account.id),
        )
        if linked:
            # accounts with history stay, as shared accounts
            account.user_id = None
            session.add(account)
        else:
            session.delete(account)
    session.exec(update(Loan).where(Loan.created_by_user_id == user.id).values(created_by_user_id=None))
    session.exec(delete(Address).where(Address.user_id == user.id))
    session.exec(delete(RefreshToken).where(RefreshToken.user_id == user.id))
    session.exec(delete(PasswordResetToken).where(PasswordResetToken.user_id == user.id))
    session.flush()
    session.delete(user)
    session.commit()
    logger.info("Deleted user %s", user_id)


def read_user_address(session: Session, user_id: int, *, tenant_id: Optional[int] = None) -> Address:
    user = get_user(session, user_id, tenant_id=tenant_id)
    address = get_user_address(session, user.id)
    if address is None:
        raise NotFound("Address not found")
    return address


def save_user_address(
    session: Session,
    user_id: int,
    payload: AddressInput,
    *,
    tenant_id: Optional[int] = None,
) -> Address:
    user = get_user(session, user_id, tenant_id=tenant_id)
    address = _upsert_user_address(session, user.id, payload)
    session.commit()
    session.refresh(address)
    return address


# --- loans ---------------------------------------------------------------


def list_loans(
    session: Session,
    pagination: Pagination,
    *,
    tenant_id: Optional[int] = None,
    status: Optional[LoanStatus] = None,
    client_id: Optional[int] = None,
    search: Optional[str] = None,
) -> Tuple[List[Loan], int]:
    stmt = select(Loan)
    count_stmt = select(func.count(Loan.id))

    def apply_filters(query):
        if tenant_id is not None:
            query = query.where(Loan.tenant_id == tenant_id)
        if status is not None:
            query = query.where(Loan.status == status)
        if client_id is not None:
            query = query.where(Loan.client_id == client_id)
        pattern = _like(search)
        if pattern:
            matching_clients = select(Client.id).where(
                or_(Client.name.ilike(pattern), Client.document.ilike(pattern))
            )
            query = query.where(or_(Loan.notes.ilike(pattern), Loan.client_id.in_(matching_clients)))
        return query

    stmt = apply_filters(stmt).order_by(Loan.created_at.desc(), Loan.id.desc())
    return _paginate(session, stmt, apply_filters(count_stmt), pagination)


def update_loan_status(
    session: Session,
    loan_id: int,
    status: LoanStatus,
    *,
    tenant_id: Optional[int] = None,
) -> Loan:
    loan = get_loan(session, loan_id, tenant_id=tenant_id)
    previous = loan.status
    loan.status = status
    loan.updated_at = now_local()
    session.add(loan)
    session.commit()
    session.refresh(loan)
    logger.info("Loan %s status %s -> %s", loan.id, previous.value, status.value)
    return loan


def update_loan_notes(
    session: Session,
    loan_id: int,
    notes: Optional[str],
    *,
    tenant_id: Optional[int] = None,
) -> Loan:
    loan = get_loan(session, loan_id, tenant_id=tenant_id)
    loan.notes = notes
    loan.updated_at = now_local()
    session.add(loan)
    session.commit()
    session.refresh(loan)
    return loan


# --- tenants -------------------------------------------------------------


def get_tenant(session: Session, tenant_id: int) -> Tenant:
    tenant = session.get(Tenant, tenant_id)
    if not tenant:
        raise NotFound("Tenant not found")
    return tenant


def list_tenants(
    session: Session,
    pagination: Pagination,
    *,
    status: Optional[TenantStatus] = None,
    search: Optional[str] = None,
) -> Tuple[List[Tenant], int]:
    stmt = select(Tenant)
    count_stmt = select(func.count(Tenant.id))

    def apply_filters(query):
        if status is not None:
            query = query.where(Tenant.status == status)
        pattern = _like(search)
        if pattern:
            query = query.where(
                or_(Tenant.name.ilike(pattern), Tenant.email.ilike(pattern), Tenant.document.ilike(pattern))
            )
        return query

    stmt = apply_filters(stmt).order_by(Tenant.created_at.desc(), Tenant.id.desc())
    return _paginate(session, stmt, apply_filters(count_stmt), pagination)


def create_tenant(session: Session, payload: TenantCreate) -> Tenant:
    if session.exec(select(Tenant).where(Tenant.email == payload.email)).first():
        raise Conflict("A tenant with this email already exists")
    _ensure_email_available(session, payload.admin_email)
    tenant = Tenant(
        name=payload.name,
        email=payload.email,
        document=payload.document,
        phone=payload.phone,
        plan=payload.plan,
        status=TenantStatus.ACTIVE,
    )
    session.add(tenant)
    session.flush()
    session.add(
        User(
            tenant_id=tenant.id,
            email=payload.admin_email,
            name=_display_name(payload.admin_first_name, payload.admin_last_name),
            first_name=payload.admin_first_name,
            last_name=payload.admin_last_name,
            role=UserRole.ADMIN,
            password_hash=hash_password(payload.admin_password),
        )
    )
    _commit_or_conflict(session, "Tenant or administrator email already registered")
    session.refresh(tenant)
    logger.info("Created tenant %s (%s)", tenant.id, tenant.plan.value)
    return tenant


def update_tenant(session: Session, tenant_id: int, payload: TenantUpdate) -> Tenant:
    tenant = get_tenant(session, tenant_id)
    changes = payload.model_dump(exclude_none=True)
    if "email" in changes and changes["email"] != tenant.email:
        duplicate = session.exec(
            select(Tenant).where(Tenant.email == changes["email"], Tenant.id != tenant.id)
        ).first()
        if duplicate:
            raise Conflict("A tenant with this email already exists")
    for key, value in changes.items():
        if key in ("document", "phone") and not value:
            value = None
        setattr(tenant, key, value)
    tenant.updated_at = now_local()
    session.add(tenant)
    _commit_or_conflict(session, "A tenant with this email already exists")
    session.refresh(tenant)
    if "status" in changes:
        logger.info("Tenant %s status is now %s", tenant.id, tenant.status.value)
    return tenant


def cancel_tenant(session: Session, tenant_id: int) -> Tenant:
    """Soft delete: the tenant and its rows stay, only the status changes."""
    tenant = get_tenant(session, tenant_id)
    tenant.status = TenantStatus.CANCELED
    tenant.updated_at = now_local()
    session.add(tenant)
    session.commit()
    session.refresh(tenant)
    logger.info("Tenant %s canceled", tenant.id)
    return tenant
