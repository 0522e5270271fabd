import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from feedrank.errors import (
    FeedRankError,
    PersistenceConflict,
    PostNotFoundError,
    SourceNotFoundError,
    StatusTransitionError,
    UpstreamAuthError,
    UpstreamNotFoundError,
    ValidationError,
)
from feedrank.service import FeedRankCore
from feedrank.web.routes import router

logger = logging.getLogger(__name__)

_STATUS_CODES: list[tuple[type[FeedRankError], int]] = [
    (ValidationError, 400),
    (StatusTransitionError, 400),
    (UpstreamNotFoundError, 400),
    (SourceNotFoundError, 404),
    (PostNotFoundError, 404),
    (PersistenceConflict, 409),
    (UpstreamAuthError, 502),
]


async def _feedrank_error(request: Request, exc: FeedRankError) -> JSONResponse:
    status = next((code for kind, code in _STATUS_CODES if isinstance(exc, kind)), 500)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


async def _request_invalid(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


def create_app(core: FeedRankCore) -> FastAPI:
    app = FastAPI(title="FeedRank control API", version="0.1.0")
    app.state.core = core
    app.add_exception_handler(FeedRankError, _feedrank_error)
    app.add_exception_handler(RequestValidationError, _request_invalid)
    app.include_router(router)
    return app
