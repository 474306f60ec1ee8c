"""
FastAPI application for the adaptive assessment engine.
"""
import logging
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from examengine.core.config import LOG_LEVEL
from examengine.core.errors import EngineError
from examengine.api.sessions import router as sessions_router
from examengine.api.questions import router as questions_router
from examengine.api.admin import router as admin_router

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Adaptive Exam Engine", version="1.0.0")
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])
app.include_router(sessions_router, prefix="/v1/sessions", tags=["sessions"])
app.include_router(questions_router, prefix="/v1/questions", tags=["questions"])
app.include_router(admin_router, prefix="/v1/admin", tags=["admin"])

@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.error("engine error: %s", exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"message": exc.detail, "type": "http_error", "status_code": exc.status_code}},
        headers=getattr(exc, "headers", None),
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": {"message": "Validation error", "type": "validation_error",
                           "status_code": 422, "details": jsonable_errors(exc)}},
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"message": "An internal error occurred", "type": "internal_error", "status_code": 500}},
    )

def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry exception objects that JSON cannot encode
    return [{k: v for k, v in e.items() if k != "ctx"} for e in exc.errors()]

@app.get("/health")
def health(): return {"status": "ok"}
