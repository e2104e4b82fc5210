import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog
from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from .admin import AdminService, require_admin
from .auth import AuthService
from .config import Settings, get_settings
from .errors import AuthenticationError, EarnHubError, NotFoundError, ServiceUnavailableError
from .log import configure_logging, get_logger
from .models import (
    CreateTaskRequest,
    GrantReferralRequest,
    LoginRequest,
    ReferralBonusResult,
    RegisterRequest,
    ResolveWithdrawalRequest,
    UpdateProfileRequest,
    UpdateTaskRequest,
    UpdateUserRequest,
    User,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .ratelimit import FixedWindowRateLimiter, RateLimitMiddleware
from .service import LedgerService
from .storage import create_storage, is_unavailable

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "0",
    "X-DNS-Prefetch-Control": "off",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Content-Security-Policy": "default-src 'self'; frame-ancestors 'none'",
}


def ok(data, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "data": jsonable_encoder(data)})


def error_response(status_code: int, code: str, message: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}},
        headers=headers,
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_ledger(request: Request) -> LedgerService:
    return request.app.state.ledger


def get_auth(request: Request) -> AuthService:
    return request.app.state.auth


def get_admin(request: Request) -> AdminService:
    return request.app.state.admin


def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    auth: AuthService = Depends(get_auth),
) -> User:
    if credentials is None:
        raise AuthenticationError("Authentication required")
    return auth.authenticate(credentials.credentials)


def admin_user(user: User = Depends(current_user)) -> User:
    require_admin(user)
    return user


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        started = time.perf_counter()

        response = await call_next(request)

        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        response.headers["X-Request-ID"] = request_id
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Turns unhandled exceptions into the 500 envelope inside the middleware stack."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            return await handle_unexpected_error(request, exc)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

auth_router = APIRouter(prefix="/api/auth", tags=["Auth"])


@auth_router.post("/register", status_code=status.HTTP_201_CREATED)
def register(request: RegisterRequest, auth: AuthService = Depends(get_auth)):
    user = auth.register(request)
    return ok(auth.issue_token(user), status.HTTP_201_CREATED)


@auth_router.post("/login")
def login(request: LoginRequest, auth: AuthService = Depends(get_auth)):
    return ok(auth.login(request))


@auth_router.get("/me")
def me(user: User = Depends(current_user)):
    return ok(user.public())


users_router = APIRouter(prefix="/api/users", tags=["Users"])


@users_router.get("/me")
def get_profile(user: User = Depends(current_user)):
    return ok(user.public())


@users_router.patch("/me")
def update_profile(
    request: UpdateProfileRequest,
    user: User = Depends(current_user),
    auth: AuthService = Depends(get_auth),
):
    return ok(auth.update_profile(user.id, request.name).public())


@users_router.get("/me/balance")
def get_balance(user: User = Depends(current_user), ledger: LedgerService = Depends(get_ledger)):
    return ok(ledger.get_balance(user.id))


@users_router.get("/me/ledger")
def get_ledger_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: User = Depends(current_user),
    ledger: LedgerService = Depends(get_ledger),
):
    return ok(ledger.get_ledger_history(user.id, limit, offset))


tasks_router = APIRouter(prefix="/api/tasks", tags=["Tasks"])


@tasks_router.get("")
def list_tasks(user: User = Depends(current_user), ledger: LedgerService = Depends(get_ledger)):
    return ok(ledger.list_tasks(user.id))


@tasks_router.post("", status_code=status.HTTP_201_CREATED)
def create_task(
    request: CreateTaskRequest,
    user: User = Depends(admin_user),
    admin: AdminService = Depends(get_admin),
):
    return ok(admin.create_task(user, request), status.HTTP_201_CREATED)


@tasks_router.get("/{task_id}")
def get_task(task_id: str, user: User = Depends(current_user), ledger: LedgerService = Depends(get_ledger)):
    return ok(ledger.get_task(task_id, user.id))


@tasks_router.post("/{task_id}/complete")
def complete_task(task_id: str, user: User = Depends(current_user), ledger: LedgerService = Depends(get_ledger)):
    return ok(ledger.credit_task_reward(user.id, task_id))


withdrawals_router = APIRouter(prefix="/api/withdrawals", tags=["Withdrawals"])


@withdrawals_router.post("", status_code=status.HTTP_201_CREATED)
def request_withdrawal(
    request: WithdrawalRequest,
    user: User = Depends(current_user),
    ledger: LedgerService = Depends(get_ledger),
):
    withdrawal = ledger.request_withdrawal(
        user.id, request.amount, request.payment_method, request.account_details
    )
    return ok(withdrawal.public(), status.HTTP_201_CREATED)


@withdrawals_router.get("")
def list_withdrawals(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: User = Depends(current_user),
    ledger: LedgerService = Depends(get_ledger),
):
    withdrawals = ledger.list_withdrawals(user_id=user.id, limit=limit, offset=offset)
    return ok([w.public() for w in withdrawals])


@withdrawals_router.get("/{withdrawal_id}")
def get_withdrawal(
    withdrawal_id: str,
    user: User = Depends(current_user),
    ledger: LedgerService = Depends(get_ledger),
):
    withdrawal = ledger.get_withdrawal(withdrawal_id)
    if withdrawal.user_id != user.id and not user.is_admin:
        raise NotFoundError(f"Withdrawal {withdrawal_id} not found", "WITHDRAWAL_NOT_FOUND")
    return ok(withdrawal if user.is_admin else withdrawal.public())


@withdrawals_router.patch("/{withdrawal_id}")
def resolve_withdrawal(
    withdrawal_id: str,
    request: ResolveWithdrawalRequest,
    user: User = Depends(admin_user),
    admin: AdminService = Depends(get_admin),
):
    return ok(admin.resolve_withdrawal(user, withdrawal_id, request.decision, request.note))


referrals_router = APIRouter(prefix="/api/referrals", tags=["Referrals"])


@referrals_router.get("")
def get_referrals(user: User = Depends(current_user), ledger: LedgerService = Depends(get_ledger)):
    return ok(ledger.get_referral_summary(user.id))


admin_router = APIRouter(prefix="/api/admin", tags=["Admin"])


@admin_router.get("/users")
def admin_list_users(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: User = Depends(admin_user),
    admin: AdminService = Depends(get_admin),
):
    return ok(admin.list_users(user, limit, offset))


@admin_router.patch("/users/{user_id}")
def admin_update_user(
    user_id: str,
    request: UpdateUserRequest,
    user: User = Depends(admin_user),
    admin: AdminService = Depends(get_admin),
):
    return ok(admin.update_user(user, user_id, request))


@admin_router.get("/tasks")
def admin_list_tasks(user: User = Depends(admin_user), admin: AdminService = Depends(get_admin)):
    return ok(admin.list_tasks(user))


@admin_router.post("/tasks", status_code=status.HTTP_201_CREATED)
def admin_create_task(
    request: CreateTaskRequest,
    user: User = Depends(admin_user),
    admin: AdminService = Depends(get_admin),
):
    return ok(admin.create_task(user, request), status.HTTP_201_CREATED)


@admin_router.patch("/tasks/{task_id}")
def admin_update_task(
    task_id: str,
    request: UpdateTaskRequest,
    user: User = Depends(admin_user),
    admin: AdminService = Depends(get_admin),
):
    return ok(admin.update_task(user, task_id, request))


@admin_router.get("/withdrawals")
def admin_list_withdrawals(
    withdrawal_status: Optional[WithdrawalStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: User = Depends(admin_user),
    admin: AdminService = Depends(get_admin),
):
    return ok(admin.list_withdrawals(user, withdrawal_status, limit, offset))


@admin_router.patch("/withdrawals/{withdrawal_id}")
def admin_resolve_withdrawal(
    withdrawal_id: str,
    request: ResolveWithdrawalRequest,
    user: User = Depends(admin_user),
    admin: AdminService = Depends(get_admin),
):
    return ok(admin.resolve_withdrawal(user, withdrawal_id, request.decision, request.note))


@admin_router.post("/referrals/grant")
def admin_grant_referral(
    request: GrantReferralRequest,
    user: User = Depends(admin_user),
    admin: AdminService = Depends(get_admin),
):
    balance = admin.grant_referral_bonus(user, request.referrer_id, request.referred_id)
    return ok(ReferralBonusResult(
        referrer_id=request.referrer_id,
        referred_id=request.referred_id,
        balance=balance,
    ))


@admin_router.get("/stats")
def admin_stats(user: User = Depends(admin_user), admin: AdminService = Depends(get_admin)):
    return ok(admin.stats(user))


system_router = APIRouter(tags=["System"])


@system_router.get("/api/health")
def health_check(request: Request):
    return {
        "status": "ok",
        "message": f"{request.app.state.settings.APP_NAME} is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@system_router.get("/")
def root(request: Request):
    settings = request.app.state.settings
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "endpoints": {
            "auth": "/api/auth",
            "users": "/api/users",
            "tasks": "/api/tasks",
            "withdrawals": "/api/withdrawals",
            "referrals": "/api/referrals",
            "admin": "/api/admin",
        },
    }


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------


async def handle_app_error(request: Request, exc: EarnHubError):
    return error_response(exc.status_code, exc.code, exc.message)


async def handle_validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else first.get("msg", message)
    return error_response(status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR", message)


async def handle_http_error(request: Request, exc: StarletteHTTPException):
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        return error_response(exc.status_code, "NOT_FOUND", "Endpoint not found")
    if exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
        return error_response(exc.status_code, "METHOD_NOT_ALLOWED", "Method not allowed")
    return error_response(exc.status_code, f"HTTP_{exc.status_code}", str(exc.detail), exc.headers)


async def handle_database_error(request: Request, exc: PyMongoError):
    if is_unavailable(exc):
        logger.warning("database_unavailable", error=str(exc), path=request.url.path)
        return await handle_app_error(
            request, ServiceUnavailableError("Database temporarily unavailable, please retry")
        )
    logger.error("database_error", error=str(exc), path=request.url.path, exc_info=exc)
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_SERVER_ERROR", "An unexpected error occurred"
    )


async def handle_unexpected_error(request: Request, exc: Exception):
    logger.error("unhandled_error", path=request.url.path, exc_info=exc)
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_SERVER_ERROR", "An unexpected error occurred"
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: Optional[Settings] = None, storage=None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    storage = storage if storage is not None else create_storage(settings)
    ledger = LedgerService(storage, settings.REFERRAL_BONUS)
    auth = AuthService(ledger, settings)
    admin = AdminService(ledger)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        storage.connect()
        if settings.ADMIN_EMAIL and settings.ADMIN_PASSWORD:
            auth.ensure_admin(settings.ADMIN_EMAIL, settings.ADMIN_PASSWORD)
        logger.info(
            "server_started",
            app=settings.APP_NAME,
            port=settings.PORT,
            environment=settings.NODE_ENV,
        )
        yield
        storage.close()
        logger.info("server_stopped")

    app = FastAPI(
        title=settings.APP_NAME,
        description="Reward and earning backend: tasks, referrals, withdrawals and admin tools",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.storage = storage
    app.state.ledger = ledger
    app.state.auth = auth
    app.state.admin = admin
    app.state.rate_limiter = FixedWindowRateLimiter(settings.RATE_LIMIT_MAX, settings.RATE_LIMIT_WINDOW_SECONDS)

    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RateLimitMiddleware, limiter=app.state.rate_limiter)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(EarnHubError, handle_app_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(PyMongoError, handle_database_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    for router in (
        system_router,
        auth_router,
        users_router,
        tasks_router,
        withdrawals_router,
        referrals_router,
        admin_router,
    ):
        app.include_router(router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.PORT)
