import logging

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import models
from config import APP_NAME, CORS_ORIGINS, DEBUG, LOG_LEVEL
from database import engine
from errors import AuthError
from routes import auth_router


def configure_logging() -> None:
    logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer() if DEBUG else structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


configure_logging()
logger = structlog.get_logger(__name__)

# Create the database tables
models.Base.metadata.create_all(bind=engine)

app = FastAPI(title=APP_NAME)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _first_validation_message(errors) -> str:
    if not errors:
        return "Invalid request"

    error = errors[0]
    ctx_error = (error.get("ctx") or {}).get("error")
    if ctx_error:
        return str(ctx_error)

    loc = error.get("loc") or ("body",)
    return f"{loc[-1]}: {error.get('msg', 'invalid value')}"


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    logger.info("request_rejected", path=request.url.path, error=type(exc).__name__, status=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"success": False, "error": _first_validation_message(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_error", path=request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"success": False, "error": "An unexpected error occurred"})


@app.get('/')
async def api_root():
    return {"message": "Api is running!..."}


@app.get('/server')
async def server_health():
    return {"message": "Server is healthy!..."}


app.include_router(auth_router, prefix='/api/v1/auth', tags=['auth'])


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=DEBUG)
