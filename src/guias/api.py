"""FastAPI application exposing authentication, user, guía and catalog endpoints."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, Response, UploadFile
from fastapi.responses import JSONResponse
from prometheus_client import Counter, make_asgi_app
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import bulk_upload, catalog, services
from .auth import auth_service, get_current_user, get_db, get_token, require_admin, verify_user
from .config import settings
from .database import init_db
from .errors import ServiceError
from .models.user import Role, User
from .pagination import DEFAULT_PAGE_SIZE, Paged, check_page_params
from .passwords import validate_password

logger = logging.getLogger(__name__)

SENSITIVE_RATE_LIMIT = "5/minute"
SENSITIVE_HOURLY_RATE_LIMIT = "100/hour"
GUIA_PAGE_SIZE = 20
GUIA_MAX_PAGE_SIZE = 50

RESET_REQUESTED_MESSAGE = "If the email is registered, a verification code has been sent"

# Prometheus counter to track API requests by method, endpoint and status code
REQUEST_COUNTER = Counter(
    "api_requests_total",
    "Total API requests",
    ["method", "endpoint", "status"],
)


async def sweep_revoked_tokens(interval: float) -> None:
    """Periodically drop expired entries from the revoked-token store."""
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(auth_service.cleanup_revoked_tokens)
        except Exception:
            logger.exception("revoked token sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = asyncio.create_task(sweep_revoked_tokens(settings.revoked_token_sweep_seconds))
    logger.info("revoked token sweeper started (every %ss)", settings.revoked_token_sweep_seconds)
    try:
        yield
    finally:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        logger.info("revoked token sweeper stopped")


limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
app = FastAPI(title=settings.api_title, lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.mount("/metrics", make_asgi_app())
init_db()


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("service failure on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log incoming requests and their outcomes while updating metrics."""
    logger.info("request %s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=request.url.path,
            status=str(response.status_code),
        ).inc()
        logger.info(
            "response %s %s status %s",
            request.method,
            request.url.path,
            response.status_code,
        )
        return response
    except Exception:
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=request.url.path,
            status="500",
        ).inc()
        logger.exception(
            "error handling %s %s", request.method, request.url.path
        )
        raise


# ----------------------------------------------------------------------
# Schemas
# ----------------------------------------------------------------------

T = TypeVar("T")


class PagedResponse(BaseModel, Generic[T]):
    """One page of results with navigation counters."""

    page: int
    page_size: int
    total_count: int
    total_pages: int
    has_previous: bool
    has_next: bool
    data: List[T]


class LoginRequest(BaseModel):
    """Request body for user login."""

    username: str
    password: str


class LoginResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    role: str
    user_id: int


class MessageResponse(BaseModel):
    message: str


class ValidateResponse(BaseModel):
    valid: bool
    username: Optional[str] = None


class ResetRequest(BaseModel):
    email: EmailStr


class VerifyCodeRequest(BaseModel):
    email: EmailStr
    code: str = Field(..., min_length=6, max_length=6)


class ResetPasswordRequest(VerifyCodeRequest):
    new_password: str


class UserCreate(BaseModel):
    """Request body for registering a new user."""

    username: str = Field(..., max_length=50)
    password: str
    email: EmailStr
    names: str = Field("", max_length=100)
    surnames: str = Field("", max_length=100)
    role: str = Role.USER.value


class UserUpdate(BaseModel):
    username: Optional[str] = Field(None, max_length=50)
    email: Optional[EmailStr] = None
    names: Optional[str] = Field(None, max_length=100)
    surnames: Optional[str] = Field(None, max_length=100)
    role: Optional[str] = None


class PasswordChange(BaseModel):
    new_password: str


class StatusChange(BaseModel):
    status: str


class UserResponse(BaseModel):
    """Serialized user without credentials."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    first_names: str
    last_names: str
    role: str
    status: str
    created_at: datetime
    updated_at: Optional[datetime] = None


class BulkUploadResponse(BaseModel):
    total_records: int
    successful_records: int
    failed_records: int
    errors: List[str]


class GuiaResponse(BaseModel):
    id: int
    name: str
    uploaded_at: datetime
    user_id: int
    username: Optional[str] = None


class CorrelativeResponse(BaseModel):
    correlative: str


class ExistsResponse(BaseModel):
    exists: bool


class CampoResponse(BaseModel):
    campo: str
    desc_campo: str


class CuartelResponse(BaseModel):
    campo: str
    jiron: str
    cuartel: str


class JironResponse(BaseModel):
    campo: str
    jiron: str


class EmpleadoResponse(BaseModel):
    codigo: int
    empleado: str
    dni: str
    cd_transp: Optional[int] = None


class EquipoResponse(BaseModel):
    cod_equipo: int
    placa: str
    cod_transp: Optional[int] = None
    tip_equipo: str


class TransportistaResponse(BaseModel):
    cod_transp: int
    transportista: str
    ruc: str


def _paged(result: Paged, item_model=None) -> Dict[str, Any]:
    data = result.data
    if item_model is not None:
        data = [item_model.model_validate(item) for item in data]
    return {
        "page": result.page,
        "page_size": result.page_size,
        "total_count": result.total_count,
        "total_pages": result.total_pages,
        "has_previous": result.has_previous,
        "has_next": result.has_next,
        "data": data,
    }


def _found(item: Optional[Any], what: str) -> Any:
    if item is None:
        raise HTTPException(status_code=404, detail=f"{what} not found")
    return item


# ----------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------


@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("database health check failed")
        return JSONResponse(status_code=503, content={"status": "unhealthy"})
    return {"status": "healthy"}


# ----------------------------------------------------------------------
# Authentication
# ----------------------------------------------------------------------


@app.post("/api/auth/login", response_model=LoginResponse)
@limiter.limit(SENSITIVE_RATE_LIMIT)
def login(request: Request, payload: LoginRequest):
    result = auth_service.authenticate(payload.username, payload.password)
    if not result.ok:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return LoginResponse(token=result.token, role=result.role, user_id=result.user_id)


@app.get("/api/auth/validate", response_model=ValidateResponse)
def validate(current_user: User = Depends(get_current_user)):
    """Return ``valid`` and the owner for a live, unrevoked bearer token."""

    return ValidateResponse(valid=True, username=current_user.username)


@app.post("/api/auth/logout", response_model=MessageResponse)
def logout(token: str = Depends(get_token)):
    if not auth_service.revoke_token(token):
        raise HTTPException(status_code=401, detail="Invalid token")
    return MessageResponse(message="Logged out")


# ----------------------------------------------------------------------
# Password reset
# ----------------------------------------------------------------------


@app.post("/api/password-reset/request", response_model=MessageResponse)
@limiter.limit(SENSITIVE_RATE_LIMIT)
def request_reset(request: Request, payload: ResetRequest):
    """Send a reset code; the answer does not reveal whether the email exists."""

    outcome = auth_service.request_password_reset(payload.email)
    logger.info("password reset request finished with %s", outcome.value)
    return MessageResponse(message=RESET_REQUESTED_MESSAGE)


@app.post("/api/password-reset/verify", response_model=MessageResponse)
@limiter.limit(SENSITIVE_RATE_LIMIT)
def verify_reset(request: Request, payload: VerifyCodeRequest):
    if not auth_service.verify_reset_code(payload.email, payload.code):
        raise HTTPException(status_code=400, detail="Invalid or expired code")
    return MessageResponse(message="Code is valid")


@app.post("/api/password-reset/reset", response_model=MessageResponse)
@limiter.limit(SENSITIVE_RATE_LIMIT)
def reset_password(request: Request, payload: ResetPasswordRequest):
    ok, message = validate_password(payload.new_password)
    if not ok:
        raise HTTPException(status_code=400, detail=message)
    if not auth_service.reset_password(payload.email, payload.code, payload.new_password):
        raise HTTPException(status_code=400, detail="Invalid or expired code")
    return MessageResponse(message="Password has been reset")


# ----------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------


@app.post("/api/usuarios/registro", response_model=UserResponse, status_code=201)
@limiter.limit(SENSITIVE_RATE_LIMIT)
def register(request: Request, payload: UserCreate, admin: User = Depends(require_admin)):
    user = services.create_user(
        username=payload.username,
        password=payload.password,
        email=payload.email,
        first_names=payload.names,
        last_names=payload.surnames,
        role=payload.role,
    )
    logger.info("admin %s registered user %s", admin.username, user.username)
    return user


@app.get(
    "/api/usuarios",
    response_model=PagedResponse[UserResponse],
    dependencies=[Depends(require_admin)],
)
def list_users(page: int = 1, page_size: int = DEFAULT_PAGE_SIZE, all: bool = False):
    check_page_params(page, page_size, all)
    return _paged(services.list_users(page, page_size, all), UserResponse)


@app.post(
    "/api/usuarios/carga-masiva",
    response_model=BulkUploadResponse,
    dependencies=[Depends(require_admin)],
)
@limiter.limit(SENSITIVE_RATE_LIMIT)
@limiter.limit(SENSITIVE_HOURLY_RATE_LIMIT)
def upload_users(request: Request, file: UploadFile = File(...)):
    """Create users from the first sheet of an Excel workbook."""

    content = file.file.read()
    result = bulk_upload.import_workbook(content, file.filename or "")
    return BulkUploadResponse(
        total_records=result.total_records,
        successful_records=result.successful_records,
        failed_records=result.failed_records,
        errors=result.errors,
    )


@app.get(
    "/api/usuarios/{user_id}",
    response_model=UserResponse,
    dependencies=[Depends(verify_user)],
)
def get_user(user_id: int):
    return _found(services.get_user(user_id), "User")


@app.put("/api/usuarios/{user_id}", response_model=UserResponse)
def update_user(user_id: int, payload: UserUpdate, current_user: User = Depends(get_current_user)):
    is_admin = current_user.role == Role.ADMIN.value
    if current_user.id != user_id and not is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")
    if payload.role is not None and not is_admin:
        raise HTTPException(status_code=403, detail="Only administrators can change roles")
    return services.update_user(
        user_id,
        username=payload.username,
        email=payload.email,
        first_names=payload.names,
        last_names=payload.surnames,
        role=payload.role,
    )


@app.delete(
    "/api/usuarios/{user_id}",
    response_model=MessageResponse,
    dependencies=[Depends(require_admin)],
)
def delete_user(user_id: int):
    services.delete_user(user_id)
    return MessageResponse(message="User deleted")


@app.put(
    "/api/usuarios/{user_id}/password",
    response_model=MessageResponse,
    dependencies=[Depends(verify_user)],
)
def change_password(user_id: int, payload: PasswordChange):
    services.change_password(user_id, payload.new_password)
    return MessageResponse(message="Password updated")


@app.put(
    "/api/usuarios/{user_id}/estado",
    response_model=MessageResponse,
    dependencies=[Depends(require_admin)],
)
def update_status(user_id: int, payload: StatusChange):
    services.update_status(user_id, payload.status)
    return MessageResponse(message="Status updated")


# ----------------------------------------------------------------------
# Guías
# ----------------------------------------------------------------------


@app.get(
    "/api/guias",
    response_model=PagedResponse[GuiaResponse],
    dependencies=[Depends(get_current_user)],
)
def list_guias(page: int = 1, page_size: int = GUIA_PAGE_SIZE, all: bool = False):
    check_page_params(page, page_size, all, max_page_size=GUIA_MAX_PAGE_SIZE)
    return _paged(services.list_guias(page, page_size, all))


@app.get(
    "/api/guias/correlativo",
    response_model=CorrelativeResponse,
    dependencies=[Depends(get_current_user)],
)
def next_correlative():
    return CorrelativeResponse(correlative=services.next_correlative())


@app.get(
    "/api/guias/existe/{name}",
    response_model=ExistsResponse,
    dependencies=[Depends(get_current_user)],
)
def guia_exists(name: str):
    return ExistsResponse(exists=services.guia_exists(name))


@app.get(
    "/api/guias/usuario/{user_id}",
    response_model=PagedResponse[GuiaResponse],
    dependencies=[Depends(verify_user)],
)
def list_user_guias(user_id: int, page: int = 1, page_size: int = GUIA_PAGE_SIZE, all: bool = False):
    check_page_params(page, page_size, all, max_page_size=GUIA_MAX_PAGE_SIZE)
    return _paged(services.list_guias_by_user(user_id, page, page_size, all))


@app.get(
    "/api/guias/{guia_id}",
    response_model=GuiaResponse,
    dependencies=[Depends(get_current_user)],
)
def get_guia(guia_id: int):
    return _found(services.get_guia(guia_id), "Guía")


@app.get("/api/guias/{guia_id}/archivo", dependencies=[Depends(get_current_user)])
def download_guia(guia_id: int):
    name, data = services.get_guia_file(guia_id)
    return Response(
        content=data,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{name}"'},
    )


@app.post("/api/guias", response_model=GuiaResponse, status_code=201)
@limiter.limit(SENSITIVE_HOURLY_RATE_LIMIT)
def upload_guia(
    request: Request,
    file: UploadFile = File(...),
    name: Optional[str] = Form(None),
    user_id: Optional[int] = Form(None),
    current_user: User = Depends(get_current_user),
):
    """Store an uploaded PDF or Word guía for the caller (or, for admins, any user)."""

    owner_id = current_user.id
    if user_id is not None and user_id != current_user.id:
        if current_user.role != Role.ADMIN.value:
            raise HTTPException(status_code=403, detail="Forbidden")
        owner_id = user_id
    content = file.file.read()
    return services.create_guia(owner_id, content, file.content_type, name=name)


@app.delete("/api/guias/{guia_id}", response_model=MessageResponse)
def delete_guia(guia_id: int, current_user: User = Depends(get_current_user)):
    guia = _found(services.get_guia(guia_id), "Guía")
    if guia["user_id"] != current_user.id and current_user.role != Role.ADMIN.value:
        raise HTTPException(status_code=403, detail="Forbidden")
    services.delete_guia(guia_id)
    return MessageResponse(message="Guía deleted")


# ----------------------------------------------------------------------
# Reference catalog
# ----------------------------------------------------------------------


@app.get(
    "/api/campos",
    response_model=PagedResponse[CampoResponse],
    dependencies=[Depends(get_current_user)],
)
def list_campos(page: int = 1, page_size: int = DEFAULT_PAGE_SIZE, all: bool = False):
    check_page_params(page, page_size, all)
    return _paged(catalog.list_campos(page, page_size, all))


@app.get(
    "/api/campos/descripcion/{description}",
    response_model=List[CampoResponse],
    dependencies=[Depends(get_current_user)],
)
def search_campos(description: str):
    return catalog.search_campos(description)


@app.get(
    "/api/campos/existe/{campo}",
    response_model=ExistsResponse,
    dependencies=[Depends(get_current_user)],
)
def campo_exists(campo: str):
    return ExistsResponse(exists=catalog.campo_exists(campo))


@app.get(
    "/api/campos/{campo}",
    response_model=CampoResponse,
    dependencies=[Depends(get_current_user)],
)
def get_campo(campo: str):
    return _found(catalog.get_campo(campo), "Campo")


@app.get(
    "/api/cuarteles",
    response_model=PagedResponse[CuartelResponse],
    dependencies=[Depends(get_current_user)],
)
def list_cuarteles(page: int = 1, page_size: int = DEFAULT_PAGE_SIZE, all: bool = False):
    check_page_params(page, page_size, all)
    return _paged(catalog.list_cuarteles(page, page_size, all))


@app.get(
    "/api/cuarteles/campo/{campo}",
    response_model=PagedResponse[CuartelResponse],
    dependencies=[Depends(get_current_user)],
)
def list_cuarteles_by_campo(campo: str, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE, all: bool = False):
    check_page_params(page, page_size, all)
    return _paged(catalog.list_cuarteles_by_campo(campo, page, page_size, all))


@app.get(
    "/api/cuarteles/{cuartel}",
    response_model=CuartelResponse,
    dependencies=[Depends(get_current_user)],
)
def get_cuartel(cuartel: str):
    return _found(catalog.get_cuartel(cuartel), "Cuartel")


@app.get(
    "/api/jirones",
    response_model=PagedResponse[JironResponse],
    dependencies=[Depends(get_current_user)],
)
def list_jirones(page: int = 1, page_size: int = DEFAULT_PAGE_SIZE, all: bool = False):
    check_page_params(page, page_size, all)
    return _paged(catalog.list_jirones(page, page_size, all))


@app.get(
    "/api/jirones/campo/{campo}",
    response_model=PagedResponse[JironResponse],
    dependencies=[Depends(get_current_user)],
)
def list_jirones_by_campo(campo: str, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE, all: bool = False):
    check_page_params(page, page_size, all)
    return _paged(catalog.list_jirones_by_campo(campo, page, page_size, all))


@app.get(
    "/api/jirones/{jiron}",
    response_model=JironResponse,
    dependencies=[Depends(get_current_user)],
)
def get_jiron(jiron: str):
    return _found(catalog.get_jiron(jiron), "Jiron")


@app.get(
    "/api/empleados",
    response_model=PagedResponse[EmpleadoResponse],
    dependencies=[Depends(get_current_user)],
)
def list_empleados(page: int = 1, page_size: int = DEFAULT_PAGE_SIZE, all: bool = False):
    check_page_params(page, page_size, all)
    return _paged(catalog.list_empleados(page, page_size, all))


@app.get(
    "/api/empleados/dni/{dni}",
    response_model=EmpleadoResponse,
    dependencies=[Depends(get_current_user)],
)
def get_empleado_by_dni(dni: str):
    return _found(catalog.get_empleado_by_dni(dni), "Empleado")


@app.get(
    "/api/empleados/empleado/{empleado}",
    response_model=EmpleadoResponse,
    dependencies=[Depends(get_current_user)],
)
def get_empleado_by_name(empleado: str):
    return _found(catalog.get_empleado_by_name(empleado), "Empleado")


@app.get(
    "/api/empleados/codigo/{codigo}",
    response_model=EmpleadoResponse,
    dependencies=[Depends(get_current_user)],
)
def get_empleado_by_codigo(codigo: int):
    return _found(catalog.get_empleado_by_codigo(codigo), "Empleado")


@app.get(
    "/api/empleados/existe/{codigo}",
    response_model=ExistsResponse,
    dependencies=[Depends(get_current_user)],
)
def empleado_exists(codigo: str):
    return ExistsResponse(exists=catalog.empleado_exists(codigo))


@app.get(
    "/api/equipos",
    response_model=PagedResponse[EquipoResponse],
    dependencies=[Depends(get_current_user)],
)
def list_equipos(page: int = 1, page_size: int = DEFAULT_PAGE_SIZE, all: bool = False):
    check_page_params(page, page_size, all)
    return _paged(catalog.list_equipos(page, page_size, all))


@app.get(
    "/api/equipos/transportista/{cod_transp}",
    response_model=List[EquipoResponse],
    dependencies=[Depends(get_current_user)],
)
def list_equipos_by_transportista(cod_transp: int):
    return catalog.list_equipos_by_transportista(cod_transp)


@app.get(
    "/api/equipos/placa/{placa}",
    response_model=EquipoResponse,
    dependencies=[Depends(get_current_user)],
)
def get_equipo_by_placa(placa: str):
    return _found(catalog.get_equipo_by_placa(placa), "Equipo")


@app.get(
    "/api/equipos/{cod_equipo}",
    response_model=EquipoResponse,
    dependencies=[Depends(get_current_user)],
)
def get_equipo(cod_equipo: int):
    return _found(catalog.get_equipo(cod_equipo), "Equipo")


@app.get(
    "/api/transportistas",
    response_model=PagedResponse[TransportistaResponse],
    dependencies=[Depends(get_current_user)],
)
def list_transportistas(page: int = 1, page_size: int = DEFAULT_PAGE_SIZE, all: bool = False):
    check_page_params(page, page_size, all)
    return _paged(catalog.list_transportistas(page, page_size, all))


@app.get(
    "/api/transportistas/codigo/{cod_transp}",
    response_model=TransportistaResponse,
    dependencies=[Depends(get_current_user)],
)
def get_transportista(cod_transp: int):
    return _found(catalog.get_transportista(cod_transp), "Transportista")


@app.get(
    "/api/transportistas/ruc/{ruc}",
    response_model=TransportistaResponse,
    dependencies=[Depends(get_current_user)],
)
def get_transportista_by_ruc(ruc: str):
    return _found(catalog.get_transportista_by_ruc(ruc), "Transportista")
