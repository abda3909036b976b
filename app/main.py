"""
API Conciliador de Boletos - importação e sincronização de recebíveis
(Nibo, Safe2Pay, Asaas, Conta Azul) com clientes/boletos no Supabase.
"""
import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.config import settings
from app.errors import ConfigurationError, ProviderError
from app.routers import billing, boletos

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
# Silence httpx per-request logs (sync fires one GET per boleto)
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="API Conciliador de Boletos",
    description="Importação e sincronização de boletos com provedores de cobrança",
    version="1.0.0",
)

# CORS for dashboard
origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Requisição inválida.") if errors else "Requisição inválida."
    return _error(400, message)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return _error(400, str(exc))


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    error_id = str(uuid.uuid4())
    logger.error("Error ID: %s provider failure on %s %s: %s", error_id, request.method, request.url.path, exc)
    return _error(502, f"Falha ao consultar o provedor {exc.provider}. ID: {error_id}")


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    error_id = str(uuid.uuid4())
    logger.exception("Error ID: %s on %s %s", error_id, request.method, request.url.path)
    return _error(500, f"Erro interno. ID: {error_id}")


@app.get("/health")
async def health():
    return {"status": "ok"}


app.include_router(billing.router)
app.include_router(boletos.router)
