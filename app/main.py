import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.db.database import init_db
from app.api import documents, search
from app.models.schemas import ErrorResponse
from app.services.embedding import create_embedding_provider
from app.services.errors import DocumentServiceError, ErrorCode

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"Starting {settings.app_name}...")

    if settings.init_db_on_startup:
        # Won't fail if the database is not available
        try:
            init_db()
            logger.info("PostgreSQL database initialized successfully")
        except Exception as e:
            logger.warning(f"PostgreSQL initialization failed: {e}")

    # One embedding client per process
    app.state.embedding_provider = create_embedding_provider()

    yield

    # Shutdown
    logger.info("Shutting down...")


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(message=message, error=code)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(DocumentServiceError)
async def document_service_error_handler(request: Request, exc: DocumentServiceError):
    return _error_response(exc.status_code, exc.code.value, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return _error_response(400, ErrorCode.VALIDATION_ERROR.value, details)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return _error_response(500, ErrorCode.INTERNAL_ERROR.value, "Internal server error")


# Include routers
app.include_router(documents.router, prefix="/api/documents", tags=["Documents"])
app.include_router(search.router, prefix="/api/search", tags=["Search"])


@app.get("/")
def root():
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "status": "running",
    }


@app.get("/health")
def health_check():
    return {"status": "healthy"}
