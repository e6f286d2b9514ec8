"""FastAPI backend for the Control Finance API."""
import logging
from typing import Any, Dict, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, UploadFile, File, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from controlfinance import config
from controlfinance.api.errors import AppError
from controlfinance.api.finance_service import FinanceService
from controlfinance.api.import_counters import import_counters
from controlfinance.web.rate_limit import (
    LOGIN_THROTTLE_MESSAGE,
    LoginGuard,
    SlidingWindowLimiter,
    login_attempt_key,
)


logger = logging.getLogger(__name__)

AUTH_REQUIRED = "Token de autenticacao ausente ou invalido."
FEATURE_REQUIRED = "Recurso disponivel apenas no plano Pro."
FILE_REQUIRED = "Arquivo CSV (file) e obrigatorio."
FILE_INVALID = "Arquivo invalido. Envie um CSV."
FILE_TOO_LARGE = "Arquivo muito grande."
CSV_CONTENT_TYPES = {"text/csv", "application/csv", "application/vnd.ms-excel"}


# Global service instance (for production use)
_service: Optional[FinanceService] = None

# Process-local throttling state
import_limiter = SlidingWindowLimiter(
    "import", config.IMPORT_RATE_LIMIT_MAX, config.IMPORT_RATE_LIMIT_WINDOW
)
login_limiter = SlidingWindowLimiter(
    "login", config.AUTH_RATE_LIMIT_MAX, config.AUTH_RATE_LIMIT_WINDOW,
    message=LOGIN_THROTTLE_MESSAGE,
)
login_guard = LoginGuard(
    config.BRUTE_FORCE_MAX_ATTEMPTS, config.BRUTE_FORCE_WINDOW, config.BRUTE_FORCE_LOCK
)


def get_service() -> FinanceService:
    """Dependency to get the finance service."""
    global _service
    if _service is None:
        _service = FinanceService()
        _service.__enter__()
    return _service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage service lifecycle."""
    yield
    # Cleanup on shutdown
    global _service
    if _service is not None:
        _service.__exit__(None, None, None)
        _service = None


app = FastAPI(
    title="Control Finance API",
    description="Personal finance API with two-phase CSV transaction import",
    version=config.VERSION,
    lifespan=lifespan
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "retryable": exc.retryable}
    )


# === Pydantic Models ===

class CredentialsRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class CategoryCreate(BaseModel):
    name: Optional[str] = None


class TransactionCreate(BaseModel):
    date: Optional[str] = None
    type: Any = None
    value: Any = None
    description: Any = None
    notes: Any = None
    categoryId: Optional[int] = None


class CommitRequest(BaseModel):
    importId: Any = None


# === Dependencies ===

def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def get_current_user_id(
    authorization: Optional[str] = Header(None),
    service: FinanceService = Depends(get_service)
) -> int:
    """Resolve ``Authorization: Bearer <token>`` to a user id."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AppError(401, AUTH_REQUIRED)
    user_id = service.auth.resolve_token(token.strip())
    if user_id is None:
        raise AppError(401, AUTH_REQUIRED)
    return user_id


def get_entitlements(user_id: int = Depends(get_current_user_id)) -> Dict[str, bool]:
    """Plan features for the current user.

    Override this dependency to plug in a billing collaborator.
    """
    return dict(config.DEFAULT_PLAN_FEATURES)


def require_feature(feature: str):
    """Dependency factory rejecting users whose plan disables ``feature``."""
    def check(entitlements: Dict[str, bool] = Depends(get_entitlements)) -> None:
        if entitlements.get(feature) is False:
            raise AppError(402, FEATURE_REQUIRED)
    return check


def limit_imports(request: Request, user_id: int = Depends(get_current_user_id)) -> None:
    """Throttle import calls per user, falling back to the client address."""
    import_limiter.hit(str(user_id) if user_id else client_address(request))


# === API Endpoints ===

@app.get("/api/health")
def health():
    """Liveness check with import activity counters."""
    return {"status": "ok", "version": config.VERSION, "imports": import_counters.snapshot()}


@app.post("/api/auth/register", status_code=201)
def register(body: CredentialsRequest, service: FinanceService = Depends(get_service)):
    """Create a user with email and password."""
    return service.auth.register(body.email, body.password)


@app.post("/api/auth/login")
def login(
    body: CredentialsRequest,
    request: Request,
    service: FinanceService = Depends(get_service)
):
    """Exchange credentials for a bearer token.

    Throttled per address, and locked per (address, email) after repeated
    failures; a successful login clears both.
    """
    address = client_address(request)
    login_limiter.hit(address)

    attempt_key = login_attempt_key(address, body.email)
    login_guard.check(attempt_key)

    try:
        result = service.auth.authenticate(body.email, body.password)
    except AppError as e:
        if e.status_code == 401:
            login_guard.register_failure(attempt_key)
        raise

    login_guard.clear(attempt_key)
    login_limiter.release(address)
    return result


@app.get("/api/categories")
def get_categories(
    include_deleted: bool = Query(False, alias="includeDeleted"),
    user_id: int = Depends(get_current_user_id),
    service: FinanceService = Depends(get_service)
):
    """Get the user's categories; deleted ones only with includeDeleted."""
    return service.get_categories(user_id, include_deleted=include_deleted)


@app.post("/api/categories", status_code=201)
def create_category(
    category: CategoryCreate,
    user_id: int = Depends(get_current_user_id),
    service: FinanceService = Depends(get_service)
):
    """Create a category."""
    return service.create_category(user_id, category.name)


@app.patch("/api/categories/{category_id}")
def rename_category(
    category_id: int,
    category: CategoryCreate,
    user_id: int = Depends(get_current_user_id),
    service: FinanceService = Depends(get_service)
):
    """Rename a category."""
    return service.rename_category(user_id, category_id, category.name)


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int,
    user_id: int = Depends(get_current_user_id),
    service: FinanceService = Depends(get_service)
):
    """Soft delete a category."""
    service.delete_category(user_id, category_id)
    return {"success": True}


@app.post("/api/categories/{category_id}/restore")
def restore_category(
    category_id: int,
    user_id: int = Depends(get_current_user_id),
    service: FinanceService = Depends(get_service)
):
    """Restore a soft-deleted category."""
    return service.restore_category(user_id, category_id)


@app.get("/api/transactions")
def get_transactions(
    limit: Optional[str] = Query(None),
    offset: Optional[str] = Query(None),
    user_id: int = Depends(get_current_user_id),
    service: FinanceService = Depends(get_service)
):
    """Get the user's transactions."""
    return service.get_transactions(user_id, limit, offset)


@app.post("/api/transactions", status_code=201)
def create_transaction(
    transaction: TransactionCreate,
    user_id: int = Depends(get_current_user_id),
    service: FinanceService = Depends(get_service)
):
    """Add a transaction by hand."""
    return service.create_transaction(
        user_id,
        transaction.type,
        transaction.value,
        transaction.description,
        date=transaction.date,
        notes=transaction.notes,
        category_id=transaction.categoryId,
    )


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(get_current_user_id),
    service: FinanceService = Depends(get_service)
):
    """Delete a transaction."""
    return service.delete_transaction(user_id, transaction_id)


# === CSV Import Endpoints ===

def _looks_like_csv(file: UploadFile) -> bool:
    filename = (file.filename or "").lower()
    content_type = (file.content_type or "").split(";")[0].strip().lower()
    return filename.endswith(".csv") or content_type in CSV_CONTENT_TYPES


@app.post(
    "/api/transactions/import/dry-run",
    dependencies=[Depends(require_feature("csv_import")), Depends(limit_imports)]
)
async def import_dry_run(
    file: Optional[UploadFile] = File(None),
    user_id: int = Depends(get_current_user_id),
    service: FinanceService = Depends(get_service)
):
    """Validate a CSV file and open a pending import session."""
    if file is None:
        raise AppError(400, FILE_REQUIRED)
    if not _looks_like_csv(file):
        raise AppError(400, FILE_INVALID)

    content = await file.read(config.IMPORT_MAX_FILE_BYTES + 1)
    if len(content) > config.IMPORT_MAX_FILE_BYTES:
        raise AppError(413, FILE_TOO_LARGE)

    return await run_in_threadpool(service.imports.dry_run, user_id, content)


@app.post(
    "/api/transactions/import/commit",
    dependencies=[Depends(require_feature("csv_import")), Depends(limit_imports)]
)
def import_commit(
    body: Optional[CommitRequest] = None,
    user_id: int = Depends(get_current_user_id),
    service: FinanceService = Depends(get_service)
):
    """Commit a pending import session into the ledger."""
    import_id = body.importId if body else None
    return service.imports.commit(user_id, import_id)


@app.get("/api/transactions/imports")
def list_imports(
    limit: Optional[str] = Query(None),
    offset: Optional[str] = Query(None),
    user_id: int = Depends(get_current_user_id),
    service: FinanceService = Depends(get_service)
):
    """Get the user's import history, newest first."""
    return service.imports.list_sessions(user_id, limit, offset)


@app.get("/api/transactions/imports/metrics")
def import_metrics(
    user_id: int = Depends(get_current_user_id),
    service: FinanceService = Depends(get_service)
):
    """Get the user's import totals."""
    return service.imports.get_metrics(user_id)
