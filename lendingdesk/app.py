from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import httpx
from fastapi import Cookie, Depends, FastAPI, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import auth, crud, ledger, postal_codes, rate_limit
from .config import INSECURE_SECRET_KEY, settings
from .database import engine, get_session, init_db
from .errors import ConfigurationError, LendingDeskError, NotFound, Unauthorized
from .logging_config import setup_logging
from .models import AccountType, Loan, LoanStatus, TenantStatus, User
from .pagination import build_pagination_meta, parse_pagination
from .permissions import (
    ADMIN_ROLES,
    READ_ROLES,
    ROLES,
    SUPER_ADMIN_ROLES,
    WRITE_ROLES,
    RequestContext,
    ensure_roles,
    resolve_request_context,
)
from .schemas import (
    AccountCreate,
    AccountEnvelope,
    AccountListResponse,
    AccountRead,
    AccountUpdate,
    AddressEnvelope,
    AddressInput,
    AddressListResponse,
    AddressRead,
    AddressUpdate,
    AuthResponse,
    BalanceEnvelope,
    BalanceRead,
    ChangePasswordRequest,
    ClientCreate,
    ClientEnvelope,
    ClientListResponse,
    ClientRead,
    ClientUpdate,
    DepositRequest,
    DepositResponse,
    ForgotPasswordRequest,
    HealthResponse,
    LoanCreate,
    LoanEnvelope,
    LoanListResponse,
    LoanNotesUpdate,
    LoanRead,
    LoanStatusUpdate,
    LoginRequest,
    MessageResponse,
    PaginationMeta,
    PaymentRequest,
    PaymentResponse,
    PostalAddressEnvelope,
    PostalAddressRead,
    ProfileUpdate,
    RefreshRequest,
    ResetPasswordRequest,
    RoleCatalog,
    RoleRead,
    TenantCreate,
    TenantEnvelope,
    TenantListResponse,
    TenantRead,
    TenantUpdate,
    TransactionListResponse,
    TransactionRead,
    UserCreate,
    UserEnvelope,
    UserListResponse,
    UserUpdate,
)

logger = logging.getLogger(__name__)

REFRESH_COOKIE_NAME = "refreshToken"
REFRESH_COOKIE_PATH = "/api/auth"
REFRESH_COOKIE_MAX_AGE = settings.refresh_token_days * 24 * 60 * 60

bearer_scheme = HTTPBearer(auto_error=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level, settings.log_format)
    if settings.is_production and settings.secret_key == INSECURE_SECRET_KEY:
        raise ConfigurationError("SECRET_KEY must be configured in production")
    init_db()
    with Session(engine) as session:
        auth.ensure_default_super_admin(session)
    logger.info("lendingdesk started (%s)", settings.app_env)
    yield


app = FastAPI(title="Lending Desk API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def throttle_requests(request: Request, call_next):
    if request.url.path.startswith("/api"):
        client_key = rate_limit.client_address(request)
        limiter = rate_limit.throttle
        if not limiter.hit_api(client_key):
            logger.warning("API budget exhausted for %s", client_key)
            response = error_response(status.HTTP_429_TOO_MANY_REQUESTS, rate_limit.TOO_MANY_REQUESTS)
            response.headers["Retry-After"] = str(limiter.retry_after(limiter.api_limit, "api", client_key))
            return response
    return await call_next(request)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


# --- error envelopes -----------------------------------------------------


def error_response(status_code: int, message: str, details: Any = None) -> JSONResponse:
    body: dict[str, Any] = {"success": False, "message": message}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


@app.exception_handler(LendingDeskError)
async def handle_domain_error(request: Request, exc: LendingDeskError) -> JSONResponse:
    return error_response(exc.status_code, exc.message, exc.details)


@app.exception_handler(StarletteHTTPException)
async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]
    return error_response(status.HTTP_400_BAD_REQUEST, "Invalid request data", details)


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    details = None if settings.is_production else {"error": repr(exc)}
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", details)


# --- dependencies --------------------------------------------------------


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session: Session = Depends(get_session),
) -> User:
    token = credentials.credentials if credentials else None
    return auth.get_user_from_access_token(session, token)


def require_context(
    request: Request,
    tenant_id: Optional[int] = Query(default=None),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> RequestContext:
    return resolve_request_context(session, user, path=request.url.path, tenant_override=tenant_id)


def require_roles(*roles):
    def dependency(ctx: RequestContext = Depends(require_context)) -> RequestContext:
        ensure_roles(ctx, roles)
        return ctx

    return dependency


require_reader = require_roles(*READ_ROLES)
require_writer = require_roles(*WRITE_ROLES)
require_admin = require_roles(*ADMIN_ROLES)
require_super_admin = require_roles(*SUPER_ADMIN_ROLES)


async def get_postal_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(timeout=settings.postal_code_timeout) as client:
        yield client


def _owner_filter(ctx: RequestContext) -> Optional[int]:
    return None if ctx.is_super_admin else ctx.user_id


def _meta(total: int, page: Optional[int], page_size: Optional[int]) -> PaginationMeta:
    return PaginationMeta(**build_pagination_meta(total, parse_pagination(page, page_size)))


def set_refresh_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        token,
        max_age=REFRESH_COOKIE_MAX_AGE,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite="lax",
        path=REFRESH_COOKIE_PATH,
    )


def clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(REFRESH_COOKIE_NAME, path=REFRESH_COOKIE_PATH)


def _auth_response(session: Session, issued: auth.IssuedSession) -> AuthResponse:
    return AuthResponse(
        token=issued.access_token,
        refresh_token=issued.refresh_token,
        user=crud.to_user_read(session, issued.user),
    )


def _loan_read(loan: Loan) -> LoanRead:
    return LoanRead.model_validate(loan)


# --- health --------------------------------------------------------------


@app.get("/api/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="ok")


# --- auth ----------------------------------------------------------------


@app.post("/api/auth/login", response_model=AuthResponse)
def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    session: Session = Depends(get_session),
):
    client_key = rate_limit.client_address(request)
    rate_limit.throttle.ensure_login_allowed(client_key)
    try:
        issued = auth.login(session, email=payload.email, password=payload.password)
    except Unauthorized:
        rate_limit.throttle.record_failed_login(client_key)
        raise
    set_refresh_cookie(response, issued.refresh_token)
    return _auth_response(session, issued)


@app.post("/api/auth/refresh", response_model=AuthResponse)
def refresh(
    response: Response,
    payload: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(default=None, alias=REFRESH_COOKIE_NAME),
    session: Session = Depends(get_session),
):
    raw_token = (payload.refresh_token if payload else None) or refresh_cookie
    issued = auth.refresh_session(session, raw_token or "")
    set_refresh_cookie(response, issued.refresh_token)
    return _auth_response(session, issued)


@app.post("/api/auth/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    payload: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(default=None, alias=REFRESH_COOKIE_NAME),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    raw_token = (payload.refresh_token if payload else None) or refresh_cookie
    auth.logout(session, user.id, raw_token)
    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    clear_refresh_cookie(response)
    return response


@app.get("/api/auth/me", response_model=UserEnvelope)
def me(ctx: RequestContext = Depends(require_context), session: Session = Depends(get_session)):
    user = auth.get_user(session, ctx.user_id)
    return UserEnvelope(data=crud.to_user_read(session, user))


@app.put("/api/auth/password", status_code=status.HTTP_204_NO_CONTENT)
def change_password(
    payload: ChangePasswordRequest,
    ctx: RequestContext = Depends(require_context),
    session: Session = Depends(get_session),
):
    auth.change_password(session, ctx.user_id, payload.current_password, payload.new_password)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/api/auth/forgot-password", response_model=MessageResponse, status_code=status.HTTP_202_ACCEPTED)
def forgot_password(payload: ForgotPasswordRequest, session: Session = Depends(get_session)):
    auth.request_password_reset(session, payload.email)
    return MessageResponse(message="If the email is registered, a reset link has been sent")


@app.post("/api/auth/reset-password", status_code=status.HTTP_204_NO_CONTENT)
def reset_password(payload: ResetPasswordRequest, session: Session = Depends(get_session)):
    auth.reset_password(session, payload.token, payload.password)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- tenant & roles ------------------------------------------------------


@app.get("/api/tenant/subscription", response_model=TenantEnvelope)
def tenant_subscription(ctx: RequestContext = Depends(require_context), session: Session = Depends(get_session)):
    if ctx.tenant_id is None:
        raise NotFound("No tenant in scope")
    return TenantEnvelope(data=TenantRead.model_validate(crud.get_tenant(session, ctx.tenant_id)))


@app.get("/api/v1/roles", response_model=RoleCatalog)
def list_roles(ctx: RequestContext = Depends(require_context)):
    return RoleCatalog(data=[RoleRead(key=role.key, label=role.label, description=role.description) for role in ROLES])


# --- accounts ------------------------------------------------------------


@app.get("/api/v1/accounts", response_model=AccountListResponse)
def list_accounts(
    search: Optional[str] = None,
    account_type: Optional[AccountType] = Query(default=None, alias="type"),
    page: Optional[int] = None,
    page_size: Optional[int] = Query(default=None, alias="pageSize"),
    ctx: RequestContext = Depends(require_reader),
    session: Session = Depends(get_session),
):
    rows, total = crud.list_accounts(
        session,
        parse_pagination(page, page_size),
        tenant_id=ctx.tenant_id,
        owner_id=_owner_filter(ctx),
        search=search,
        account_type=account_type,
    )
    return AccountListResponse(
        data=[AccountRead.model_validate(row) for row in rows],
        meta=_meta(total, page, page_size),
    )


@app.get("/api/v1/accounts/total-balance", response_model=BalanceEnvelope)
def total_balance(ctx: RequestContext = Depends(require_reader), session: Session = Depends(get_session)):
    balance = ledger.total_balance(session, owner_id=_owner_filter(ctx), tenant_id=ctx.tenant_id)
    return BalanceEnvelope(data=BalanceRead(balance=balance))


@app.post("/api/v1/accounts", response_model=AccountEnvelope, status_code=status.HTTP_201_CREATED)
def create_account(
    payload: AccountCreate,
    ctx: RequestContext = Depends(require_writer),
    session: Session = Depends(get_session),
):
    owner_id = None if ctx.is_super_admin else ctx.user_id
    account = crud.create_account(session, payload, tenant_id=ctx.tenant_id, owner_id=owner_id)
    return AccountEnvelope(data=AccountRead.model_validate(account))


@app.get("/api/v1/accounts/{account_id}", response_model=AccountEnvelope)
def get_account(account_id: int, ctx: RequestContext = Depends(require_reader), session: Session = Depends(get_session)):
    account = ledger.get_account(session, account_id, tenant_id=ctx.tenant_id)
    return AccountEnvelope(data=AccountRead.model_validate(account))


@app.put("/api/v1/accounts/{account_id}", response_model=AccountEnvelope)
def update_account(
    account_id: int,
    payload: AccountUpdate,
    ctx: RequestContext = Depends(require_writer),
    session: Session = Depends(get_session),
):
    account = crud.update_account(session, account_id, payload, tenant_id=ctx.tenant_id)
    return AccountEnvelope(data=AccountRead.model_validate(account))


@app.delete("/api/v1/accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_account(account_id: int, ctx: RequestContext = Depends(require_admin), session: Session = Depends(get_session)):
    crud.delete_account(session, account_id, tenant_id=ctx.tenant_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/api/v1/accounts/{account_id}/transactions", response_model=TransactionListResponse)
def list_account_transactions(
    account_id: int,
    page: Optional[int] = None,
    page_size: Optional[int] = Query(default=None, alias="pageSize"),
    ctx: RequestContext = Depends(require_reader),
    session: Session = Depends(get_session),
):
    rows, total = ledger.list_transactions(
        session, account_id, parse_pagination(page, page_size), tenant_id=ctx.tenant_id
    )
    return TransactionListResponse(
        data=[TransactionRead.model_validate(row) for row in rows],
        meta=_meta(total, page, page_size),
    )


@app.post("/api/accounts/{account_id}/deposit", response_model=DepositResponse, status_code=status.HTTP_201_CREATED)
def deposit(
    account_id: int,
    payload: DepositRequest,
    ctx: RequestContext = Depends(require_writer),
    session: Session = Depends(get_session),
):
    result = ledger.deposit(session, account_id, payload.amount, payload.description, tenant_id=ctx.tenant_id)
    return DepositResponse(
        account=AccountRead.model_validate(result.account),
        transaction=TransactionRead.model_validate(result.transaction),
    )


# --- loans ---------------------------------------------------------------


@app.get("/api/loans", response_model=LoanListResponse)
def list_loans(
    status_filter: Optional[LoanStatus] = Query(default=None, alias="status"),
    client_id: Optional[int] = Query(default=None, alias="clientId"),
    search: Optional[str] = None,
    page: Optional[int] = None,
    page_size: Optional[int] = Query(default=None, alias="pageSize"),
    ctx: RequestContext = Depends(require_reader),
    session: Session = Depends(get_session),
):
    rows, total = crud.list_loans(
        session,
        parse_pagination(page, page_size),
        tenant_id=ctx.tenant_id,
        status=status_filter,
        client_id=client_id,
        search=search,
    )
    return LoanListResponse(data=[_loan_read(row) for row in rows], meta=_meta(total, page, page_size))


@app.get("/api/loans/{loan_id}", response_model=LoanEnvelope)
def get_loan(loan_id: int, ctx: RequestContext = Depends(require_reader), session: Session = Depends(get_session)):
    return LoanEnvelope(data=_loan_read(ledger.get_loan(session, loan_id, tenant_id=ctx.tenant_id)))


@app.post("/api/loans", response_model=LoanEnvelope, status_code=status.HTTP_201_CREATED)
def create_loan(
    payload: LoanCreate,
    ctx: RequestContext = Depends(require_writer),
    session: Session = Depends(get_session),
):
    account = crud.resolve_loan_account(session, payload.account_id, tenant_id=ctx.tenant_id)
    loan = ledger.disburse_loan(
        session,
        client_id=payload.client_id,
        account_id=account.id,
        principal_amount=payload.principal_amount,
        interest_rate=payload.interest_rate,
        due_date=payload.due_date,
        notes=payload.notes,
        installments=payload.installments,
        tenant_id=ctx.tenant_id,
        created_by_user_id=ctx.user_id,
    )
    return LoanEnvelope(data=_loan_read(loan))


@app.patch("/api/loans/{loan_id}/status", response_model=LoanEnvelope)
def update_loan_status(
    loan_id: int,
    payload: LoanStatusUpdate,
    ctx: RequestContext = Depends(require_writer),
    session: Session = Depends(get_session),
):
    loan = crud.update_loan_status(session, loan_id, payload.status, tenant_id=ctx.tenant_id)
    return LoanEnvelope(data=_loan_read(loan))


@app.put("/api/loans/{loan_id}", response_model=LoanEnvelope)
def update_loan_notes(
    loan_id: int,
    payload: LoanNotesUpdate,
    ctx: RequestContext = Depends(require_writer),
    session: Session = Depends(get_session),
):
    loan = crud.update_loan_notes(session, loan_id, payload.notes, tenant_id=ctx.tenant_id)
    return LoanEnvelope(data=_loan_read(loan))


@app.post("/api/loans/{loan_id}/payments", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
def record_payment(
    loan_id: int,
    payload: PaymentRequest,
    ctx: RequestContext = Depends(require_writer),
    session: Session = Depends(get_session),
):
    result = ledger.record_payment(session, loan_id, payload.amount, payload.description, tenant_id=ctx.tenant_id)
    return PaymentResponse(
        loan=_loan_read(result.loan),
        account=AccountRead.model_validate(result.account),
        transaction=TransactionRead.model_validate(result.transaction),
    )


# --- clients & addresses -------------------------------------------------


@app.get("/api/v1/clients", response_model=ClientListResponse)
def list_clients(
    search: Optional[str] = None,
    name: Optional[str] = None,
    city: Optional[str] = None,
    district: Optional[str] = None,
    page: Optional[int] = None,
    page_size: Optional[int] = Query(default=None, alias="pageSize"),
    ctx: RequestContext = Depends(require_reader),
    session: Session = Depends(get_session),
):
    rows, total = crud.list_clients(
        session,
        parse_pagination(page, page_size),
        tenant_id=ctx.tenant_id,
        search=search,
        name=name,
        city=city,
        district=district,
    )
    return ClientListResponse(
        data=[ClientRead.model_validate(row) for row in rows],
        meta=_meta(total, page, page_size),
    )


@app.post("/api/v1/clients", response_model=ClientEnvelope, status_code=status.HTTP_201_CREATED)
def create_client(
    payload: ClientCreate,
    ctx: RequestContext = Depends(require_writer),
    session: Session = Depends(get_session),
):
    client = crud.create_client(session, payload, tenant_id=ctx.tenant_id)
    return ClientEnvelope(data=ClientRead.model_validate(client))


@app.get("/api/v1/clients/{client_id}", response_model=ClientEnvelope)
def get_client(client_id: int, ctx: RequestContext = Depends(require_reader), session: Session = Depends(get_session)):
    client = crud.get_client(session, client_id, tenant_id=ctx.tenant_id)
    return ClientEnvelope(data=ClientRead.model_validate(client))


@app.put("/api/v1/clients/{client_id}", response_model=ClientEnvelope)
def update_client(
    client_id: int,
    payload: ClientUpdate,
    ctx: RequestContext = Depends(require_writer),
    session: Session = Depends(get_session),
):
    client = crud.update_client(session, client_id, payload, tenant_id=ctx.tenant_id)
    return ClientEnvelope(data=ClientRead.model_validate(client))


@app.delete("/api/v1/clients/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_client(client_id: int, ctx: RequestContext = Depends(require_admin), session: Session = Depends(get_session)):
    crud.delete_client(session, client_id, tenant_id=ctx.tenant_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/api/v1/clients/{client_id}/addresses", response_model=AddressListResponse)
def list_client_addresses(
    client_id: int,
    ctx: RequestContext = Depends(require_reader),
    session: Session = Depends(get_session),
):
    rows = crud.list_client_addresses(session, client_id, tenant_id=ctx.tenant_id)
    return AddressListResponse(data=[AddressRead.model_validate(row) for row in rows])


@app.post("/api/v1/clients/{client_id}/addresses", response_model=AddressEnvelope, status_code=status.HTTP_201_CREATED)
def add_client_address(
    client_id: int,
    payload: AddressInput,
    ctx: RequestContext = Depends(require_writer),
    session: Session = Depends(get_session),
):
    address = crud.add_client_address(session, client_id, payload, tenant_id=ctx.tenant_id)
    return AddressEnvelope(data=AddressRead.model_validate(address))


@app.put("/api/v1/addresses/{address_id}", response_model=AddressEnvelope)
def update_address(
    address_id: int,
    payload: AddressUpdate,
    ctx: RequestContext = Depends(require_writer),
    session: Session = Depends(get_session),
):
    address = crud.update_client_address(session, address_id, payload, tenant_id=ctx.tenant_id)
    return AddressEnvelope(data=AddressRead.model_validate(address))


@app.delete("/api/v1/addresses/{address_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_address(address_id: int, ctx: RequestContext = Depends(require_writer), session: Session = Depends(get_session)):
    crud.delete_client_address(session, address_id, tenant_id=ctx.tenant_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- users ---------------------------------------------------------------


@app.put("/api/v1/users/profile", response_model=UserEnvelope)
def update_profile(
    payload: ProfileUpdate,
    ctx: RequestContext = Depends(require_context),
    session: Session = Depends(get_session),
):
    user = crud.update_profile(session, ctx.user_id, payload)
    return UserEnvelope(data=crud.to_user_read(session, user))


@app.get("/api/v1/users/{user_id}/address", response_model=AddressEnvelope)
def get_user_address(user_id: int, ctx: RequestContext = Depends(require_reader), session: Session = Depends(get_session)):
    address = crud.read_user_address(session, user_id, tenant_id=ctx.tenant_id)
    return AddressEnvelope(data=AddressRead.model_validate(address))


@app.put("/api/v1/users/{user_id}/address", response_model=AddressEnvelope)
def save_user_address(
    user_id: int,
    payload: AddressInput,
    ctx: RequestContext = Depends(require_writer),
    session: Session = Depends(get_session),
):
    address = crud.save_user_address(session, user_id, payload, tenant_id=ctx.tenant_id)
    return AddressEnvelope(data=AddressRead.model_validate(address))


@app.get("/api/v1/users", response_model=UserListResponse)
def list_users(
    search: Optional[str] = None,
    page: Optional[int] = None,
    page_size: Optional[int] = Query(default=None, alias="pageSize"),
    ctx: RequestContext = Depends(require_admin),
    session: Session = Depends(get_session),
):
    rows, total = crud.list_users(session, parse_pagination(page, page_size), tenant_id=ctx.tenant_id, search=search)
    return UserListResponse(
        data=[crud.to_user_read(session, row) for row in rows],
        meta=_meta(total, page, page_size),
    )


@app.post("/api/v1/users", response_model=UserEnvelope, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreate, ctx: RequestContext = Depends(require_admin), session: Session = Depends(get_session)):
    user = crud.create_user(session, payload, tenant_id=ctx.tenant_id)
    return UserEnvelope(data=crud.to_user_read(session, user))


@app.get("/api/v1/users/{user_id}", response_model=UserEnvelope)
def get_user(user_id: int, ctx: RequestContext = Depends(require_admin), session: Session = Depends(get_session)):
    user = crud.get_user(session, user_id, tenant_id=ctx.tenant_id)
    return UserEnvelope(data=crud.to_user_read(session, user))


@app.put("/api/v1/users/{user_id}", response_model=UserEnvelope)
def update_user(
    user_id: int,
    payload: UserUpdate,
    ctx: RequestContext = Depends(require_admin),
    session: Session = Depends(get_session),
):
    user = crud.update_user(session, user_id, payload, tenant_id=ctx.tenant_id)
    return UserEnvelope(data=crud.to_user_read(session, user))


@app.delete("/api/v1/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(user_id: int, ctx: RequestContext = Depends(require_admin), session: Session = Depends(get_session)):
    crud.delete_user(session, user_id, acting_user_id=ctx.user_id, tenant_id=ctx.tenant_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- tenant administration -----------------------------------------------


@app.get("/api/admin/tenants", response_model=TenantListResponse)
def list_tenants(
    status_filter: Optional[TenantStatus] = Query(default=None, alias="status"),
    search: Optional[str] = None,
    page: Optional[int] = None,
    page_size: Optional[int] = Query(default=None, alias="pageSize"),
    ctx: RequestContext = Depends(require_super_admin),
    session: Session = Depends(get_session),
):
    rows, total = crud.list_tenants(session, parse_pagination(page, page_size), status=status_filter, search=search)
    return TenantListResponse(
        data=[TenantRead.model_validate(row) for row in rows],
        meta=_meta(total, page, page_size),
    )


@app.post("/api/admin/tenants", response_model=TenantEnvelope, status_code=status.HTTP_201_CREATED)
def create_tenant(
    payload: TenantCreate,
    ctx: RequestContext = Depends(require_super_admin),
    session: Session = Depends(get_session),
):
    return TenantEnvelope(data=TenantRead.model_validate(crud.create_tenant(session, payload)))


@app.get("/api/admin/tenants/{tenant_id_path}", response_model=TenantEnvelope)
def get_tenant(
    tenant_id_path: int,
    ctx: RequestContext = Depends(require_super_admin),
    session: Session = Depends(get_session),
):
    return TenantEnvelope(data=TenantRead.model_validate(crud.get_tenant(session, tenant_id_path)))


@app.patch("/api/admin/tenants/{tenant_id_path}", response_model=TenantEnvelope)
def update_tenant(
    tenant_id_path: int,
    payload: TenantUpdate,
    ctx: RequestContext = Depends(require_super_admin),
    session: Session = Depends(get_session),
):
    return TenantEnvelope(data=TenantRead.model_validate(crud.update_tenant(session, tenant_id_path, payload)))


@app.delete("/api/admin/tenants/{tenant_id_path}", status_code=status.HTTP_204_NO_CONTENT)
def cancel_tenant(
    tenant_id_path: int,
    ctx: RequestContext = Depends(require_super_admin),
    session: Session = Depends(get_session),
):
    crud.cancel_tenant(session, tenant_id_path)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- postal codes --------------------------------------------------------


@app.get("/api/v1/postal-codes/{postal_code}", response_model=PostalAddressEnvelope)
async def lookup_postal_code(
    postal_code: str,
    ctx: RequestContext = Depends(require_reader),
    client: httpx.AsyncClient = Depends(get_postal_client),
):
    address = await postal_codes.lookup(postal_code, client=client)
    return PostalAddressEnvelope(data=PostalAddressRead(**address.as_dict()))
