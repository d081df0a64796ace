#!/usr/bin/env python3
"""
pastebin - A minimal paste service with a rotating in-memory buffer
"""

import argparse
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, Tuple, Union

import uvicorn
import yaml
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from pydantic import BaseModel, Field, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from idgen import IdentifierGenerator, is_valid_device_code
from paste_store import (
    AuthorizationError,
    DevicePasteStore,
    NotFoundError,
    PasteError,
    PasteStore,
    SizeLimitError,
)

__version__ = "1.0.0"

# Configuration management
CONFIG_DIR = Path.home() / ".pastebin"
CONFIG_FILE = Path(os.environ.get("PASTEBIN_CONFIG", CONFIG_DIR / "config.yaml"))

DEVICE_HEADER = "Device-Code"
PLAINTEXT_AGENTS = {"curl", "Wget", "HTTPie"}
MODES = ("global", "device")
RESERVED_PATHS = ("all", "device", "health", "docs", "redoc")

logger = logging.getLogger("pastebin")


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Configure the service logger"""
    logger.setLevel(level)
    logger.propagate = False  # Keep our lines out of the uvicorn logger

    # Log format: timestamp | level | message
    formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(message)s', datefmt='%Y-%m-%d %H:%M:%S')

    # Remove existing handlers to avoid duplicates when the app is rebuilt
    logger.handlers.clear()

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"Failed to setup file logging at {log_file}: {e}")

    return logger


def parse_bind(bind: str) -> Tuple[str, int]:
    """Split "host:port" (or "[v6]:port") into its parts"""
    host, sep, port = bind.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"Bind address must look like host:port, got {bind!r}")
    port_number = int(port)
    if not 0 < port_number < 65536:
        raise ValueError(f"Port out of range: {port_number}")
    return host.strip("[]"), port_number


class ServerConfig(BaseModel):
    bind: str = "127.0.0.1:8820"
    mode: str = "global"
    buffer_size: int = Field(1000, gt=0, description="Pastes kept before rotating")
    device_quota: int = Field(2, gt=0, description="Pastes kept per device")
    max_paste_size: int = Field(32 * 1024, gt=0, description="Maximum paste size in bytes")
    id_length: int = Field(8, ge=2)
    max_id_attempts: int = Field(32, gt=0)
    public_scheme: str = "https"
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @field_validator("bind")
    @classmethod
    def check_bind(cls, value: str) -> str:
        parse_bind(value)
        return value

    @field_validator("mode")
    @classmethod
    def check_mode(cls, value: str) -> str:
        value = value.lower()
        if value not in MODES:
            raise ValueError(f"mode must be one of {', '.join(MODES)}")
        return value

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level {value}")
        return value


# Default configuration
DEFAULT_CONFIG = ServerConfig().model_dump()


def load_config(path: Optional[Path] = None) -> ServerConfig:
    """Load configuration from the YAML config file, writing defaults if it is missing"""
    path = Path(path or CONFIG_FILE)
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.exists():
        with open(path, 'r') as f:
            loaded = yaml.safe_load(f) or {}
        return ServerConfig(**{**DEFAULT_CONFIG, **loaded})

    # Create default config
    with open(path, 'w') as f:
        yaml.safe_dump(DEFAULT_CONFIG, f)
    return ServerConfig(**DEFAULT_CONFIG)


def build_store(config: ServerConfig) -> Union[PasteStore, DevicePasteStore]:
    generator = IdentifierGenerator(length=config.id_length, reserved=RESERVED_PATHS)
    if config.mode == "device":
        return DevicePasteStore(
            device_quota=config.device_quota,
            max_paste_size=config.max_paste_size,
            generator=generator,
            max_id_attempts=config.max_id_attempts,
        )
    return PasteStore(
        buffer_size=config.buffer_size,
        max_paste_size=config.max_paste_size,
        generator=generator,
        max_id_attempts=config.max_id_attempts,
    )


# Request helpers

def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def device_code(request: Request) -> Optional[str]:
    return getattr(request.state, "device_code", None)


def describe_client(request: Request) -> str:
    code = device_code(request)
    if code:
        return f"{client_ip(request)} (device {code[:4]}...)"
    return client_ip(request)


def wants_plaintext(request: Request) -> bool:
    """
    Decide whether the client wants a plaintext response.

    Anything sending or accepting text/plain wants plaintext, and so does
    anything calling from a console or that we can't identify.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.split(";")[0].strip() == "text/plain":
        return True
    if request.headers.get("accept", "").startswith("text/plain"):
        return True
    agent = request.headers.get("user-agent")
    if not agent:
        return True
    return agent.split("/")[0] in PLAINTEXT_AGENTS


def paste_url(request: Request, paste_id: str) -> str:
    host = request.headers.get("host")
    if not host:
        return f"/{paste_id}"
    return f"{request.app.state.config.public_scheme}://{host}/{paste_id}"


def error_response(request: Request, status_code: int, message: str) -> Response:
    if wants_plaintext(request):
        return PlainTextResponse(f"{message}\n", status_code=status_code)
    return JSONResponse({"error": message, "status": status_code}, status_code=status_code)


def check_declared_length(request: Request, limit: int) -> None:
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        raise SizeLimitError(f"Request of {declared} bytes exceeds max size of {limit} bytes")


async def read_body(request: Request, limit: int) -> bytes:
    """Read the raw request body, giving up as soon as it grows past limit"""
    check_declared_length(request, limit)

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise SizeLimitError(f"Paste exceeds max size of {limit} bytes")
    return bytes(body)


# Dependencies and error handlers

async def require_device_code(request: Request) -> Optional[str]:
    """Resolve the Device-Code header; paste routes need one in device mode"""
    code = request.headers.get(DEVICE_HEADER)
    request.state.device_code = code if is_valid_device_code(code) else None

    if request.app.state.config.mode == "device" and request.state.device_code is None:
        if code:
            logger.warning(f"Malformed {DEVICE_HEADER} header from {client_ip(request)} for {request.url.path}")
        else:
            logger.warning(f"Missing {DEVICE_HEADER} header from {client_ip(request)} for {request.url.path}")
        raise AuthorizationError(f"Missing or invalid {DEVICE_HEADER} header")

    return request.state.device_code


async def paste_error_handler(request: Request, exc: PasteError) -> Response:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed for {describe_client(request)}: {exc.detail}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected for {describe_client(request)}: {exc.detail}")
    return error_response(request, exc.status_code, exc.detail)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> Response:
    if exc.status_code == 404:
        logger.error(f"Couldn't find resource {request.url.path}")
    return error_response(request, exc.status_code, str(exc.detail))


async def validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', 'invalid')}"
        for error in exc.errors()
    )
    logger.warning(f"{request.method} {request.url.path} invalid request from {client_ip(request)}: {problems}")
    return error_response(request, 400, f"Invalid request: {problems}")


# Routes

router = APIRouter()

ENDPOINTS = [
    {"method": "GET", "path": "/", "description": "Get API information"},
    {"method": "POST", "path": "/", "description": "Create a new paste (form data)"},
    {"method": "PUT", "path": "/", "description": "Create a new paste (raw data)"},
    {"method": "GET", "path": "/all", "description": "Get all paste IDs"},
    {"method": "GET", "path": "/device", "description": "Issue a new device code (device mode)"},
    {"method": "GET", "path": "/{paste}", "description": "Get paste content by ID"},
]


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint with store counters"""
    return {"status": "ok", "store": request.app.state.store.stats()}


@router.get("/")
async def index(request: Request):
    """Describe the API"""
    return {
        "message": "pastebin API - A pastebin service",
        "mode": request.app.state.config.mode,
        "endpoints": ENDPOINTS,
    }


@router.head("/")
async def index_head():
    return Response(status_code=405, headers={"Allow": "GET, POST, PUT"})


@router.get("/all")
async def list_all_pastes(request: Request, device: Optional[str] = Depends(require_device_code)):
    """List live paste IDs, newest first"""
    store = request.app.state.store
    paste_ids = store.list_ids(device)
    paste_ids.reverse()
    logger.info(f"Listed {len(paste_ids)} pastes for {describe_client(request)}")
    return paste_ids


@router.get("/device")
async def issue_device_code(request: Request):
    """Hand out a device code not currently owning any paste"""
    store = request.app.state.store
    if not isinstance(store, DevicePasteStore):
        raise NotFoundError()
    code = store.new_device_code()
    logger.info(f"Issued device code {code[:4]}... to {client_ip(request)}")
    return {"device_code": code}


@router.post("/")
async def submit(request: Request, device: Optional[str] = Depends(require_device_code)):
    """Create a paste from form data and redirect to it"""
    store = request.app.state.store
    # Percent-encoding can triple a paste, plus room for the field name
    check_declared_length(request, store.max_paste_size * 3 + 64)

    form = await request.form()
    val = form.get("val", "")
    if isinstance(val, str):
        data = val.encode("utf-8")
    else:
        data = await val.read()

    paste_id = store.put(data, device)
    logger.info(f"Stored paste {paste_id} ({len(data)} bytes, form) from {describe_client(request)}")
    return RedirectResponse(url=f"/{paste_id}", status_code=302)


@router.put("/")
async def submit_raw(request: Request, device: Optional[str] = Depends(require_device_code)):
    """Create a paste from the raw request body"""
    store = request.app.state.store
    data = await read_body(request, store.max_paste_size)
    paste_id = store.put(data, device)
    url = paste_url(request, paste_id)
    logger.info(f"Stored paste {paste_id} ({len(data)} bytes) from {describe_client(request)}")

    if wants_plaintext(request):
        return PlainTextResponse(f"{url}\n", status_code=201)
    return JSONResponse({"id": paste_id, "url": url}, status_code=201)


@router.get("/{paste}")
async def show_paste(request: Request, paste: str, device: Optional[str] = Depends(require_device_code)):
    """Return a paste; any ".ext" suffix is display metadata only"""
    key, _, extension = paste.partition(".")
    store = request.app.state.store
    content = store.get(key, device)
    logger.info(f"Served paste {key} ({len(content)} bytes) to {describe_client(request)}")

    if wants_plaintext(request):
        return Response(content=content, media_type="text/plain; charset=utf-8")
    return {
        "id": key,
        "extension": extension or None,
        "content": content.decode("utf-8", errors="replace"),
    }


@router.head("/{paste}")
async def show_paste_head(paste: str):
    return Response(status_code=405, headers={"Allow": "GET"})


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = app.state.config
    logger.info("=" * 60)
    logger.info(f"pastebin {__version__} starting in {config.mode} mode")
    if config.mode == "device":
        logger.info(f"Device quota: {config.device_quota} pastes")
    else:
        logger.info(f"Buffer size: {config.buffer_size} pastes")
    logger.info(f"Max paste size: {config.max_paste_size} bytes")
    logger.info("=" * 60)
    yield
    logger.info("pastebin shutting down, in-memory pastes are dropped")


def create_app(config: Optional[ServerConfig] = None, store=None) -> FastAPI:
    """Build the FastAPI application around a paste store"""
    config = config or ServerConfig()
    setup_logging(config.log_level, config.log_file)

    app = FastAPI(title="pastebin", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.store = store if store is not None else build_store(config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PasteError, paste_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)
    return app


# Load configuration and build the app for `uvicorn pastebin_server:app`
config = load_config()
app = create_app(config)


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="a pastebin.")
    parser.add_argument("bind_addr", nargs="?", help=f"socket address to bind to (default: {config.bind})")
    parser.add_argument("--buffer-size", type=int, help="maximum amount of pastes to store before rotating")
    parser.add_argument("--max-paste-size", type=int, help="maximum paste size in bytes")
    parser.add_argument("--device-quota", type=int, help="pastes kept per device; enables device mode")
    parser.add_argument("--config", type=Path, help="path to the YAML config file")
    args = parser.parse_args(argv)

    settings = load_config(args.config) if args.config else config
    overrides = {}
    if args.bind_addr:
        overrides["bind"] = args.bind_addr
    if args.buffer_size is not None:
        overrides["buffer_size"] = args.buffer_size
    if args.max_paste_size is not None:
        overrides["max_paste_size"] = args.max_paste_size
    if args.device_quota is not None:
        overrides["device_quota"] = args.device_quota
        overrides["mode"] = "device"
    settings = ServerConfig(**{**settings.model_dump(), **overrides})

    host, port = parse_bind(settings.bind)
    server_app = create_app(settings)
    logger.info(f"Listening on http://{settings.bind}")
    uvicorn.run(server_app, host=host, port=port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
