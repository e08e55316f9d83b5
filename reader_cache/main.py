"""FastAPI app, lifespan bootstrap, and HTTP routes.

The reader reports page transitions here and fetches page artifacts; the
session registry does the caching and background generation.

- GET    /healthz                              -> liveness
- PUT    /documents/{id}                       -> open a reading session
- POST   /documents/{id}/page                  -> page transition
- GET    /documents/{id}/pages/{page}/{kind}   -> artifact (cached or generated)
- GET    /documents/{id}/stats                 -> cache/scheduler snapshot
- DELETE /documents/{id}                       -> close the session
- GET    /debug/sessions                       -> every open session
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Depends, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import metrics
from .errors import (
    CoordinatorClosed,
    DocumentNotOpen,
    GenerationTimeout,
    PageOutOfRange,
    UnknownArtifactKind,
)
from .logging_config import configure_logging
from .schemas import (
    OpenDocumentIn,
    PageChangeIn,
    ProblemDetail,
    RegistryStatsOut,
    SessionStatsOut,
)
from .session import SessionRegistry, build_profiles
from .settings import settings

configure_logging()
log = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# App
# ---------------------------------------------------------------------

app = FastAPI(title="Reader page cache", version="0.1.0")
metrics.install(app)


_STATUS_TITLES = {
    400: "Bad Request",
    404: "Not Found",
    422: "Unprocessable Entity",
    500: "Internal Server Error",
    502: "Bad Gateway",
    504: "Gateway Timeout",
}


def _problem(
    status: int,
    title: str | None = None,
    detail: str | None = None,
    instance: str | None = None,
) -> JSONResponse:
    """Return an RFC7807 problem+json response."""
    body = {
        "type": "about:blank",
        "title": title or _STATUS_TITLES.get(status, "Error"),
        "status": status,
        "detail": detail,
        "instance": instance,
    }
    return JSONResponse(
        status_code=status, content=body, media_type="application/problem+json"
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(_req: Request, exc: HTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else None
    return _problem(
        status=exc.status_code, title=_STATUS_TITLES.get(exc.status_code), detail=detail
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_req: Request, exc: RequestValidationError):
    msg = exc.errors()[0]["msg"] if exc.errors() else "Validation error"
    return _problem(status=422, title=_STATUS_TITLES[422], detail=msg)


@app.exception_handler(DocumentNotOpen)
async def document_not_open_handler(req: Request, exc: DocumentNotOpen):
    return _problem(status=404, detail=str(exc), instance=req.url.path)


@app.exception_handler(PageOutOfRange)
async def page_out_of_range_handler(req: Request, exc: PageOutOfRange):
    return _problem(status=400, detail=str(exc), instance=req.url.path)


@app.exception_handler(UnknownArtifactKind)
async def unknown_kind_handler(req: Request, exc: UnknownArtifactKind):
    return _problem(status=400, detail=str(exc), instance=req.url.path)


# ---------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: build the session registry, close every session on exit."""
    registry = SessionRegistry(build_profiles(settings))
    app.state.registry = registry
    log.info("startup.registry kinds=%s", registry.kinds)
    try:
        yield
    finally:
        await registry.close_all()
        log.info("shutdown.registry closed")


app.router.lifespan_context = lifespan


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


_problem_resp = {
    "application/problem+json": {"schema": ProblemDetail.model_json_schema()},
}

# ---------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------


@app.get("/healthz", include_in_schema=False)
async def healthz():
    """Lightweight, in-process health endpoint."""
    return {"status": "ok"}


@app.put(
    "/documents/{document_id}",
    response_model=SessionStatsOut,
    responses={400: {"content": _problem_resp, "model": ProblemDetail}},
)
async def open_document(
    document_id: str,
    body: OpenDocumentIn,
    registry: SessionRegistry = Depends(get_registry),
):
    """Open (or reposition) the reading session and start prefetching around it."""
    session = registry.open_document(document_id, body.page_count, body.current_page)
    return session.stats()


@app.post(
    "/documents/{document_id}/page",
    response_model=SessionStatsOut,
    responses={
        400: {"content": _problem_resp, "model": ProblemDetail},
        404: {"content": _problem_resp, "model": ProblemDetail},
    },
)
async def change_page(
    document_id: str,
    body: PageChangeIn,
    registry: SessionRegistry = Depends(get_registry),
):
    """Page transition: move the cache windows and queue background generation."""
    session = registry.get(document_id)
    session.advance(body.page)
    return session.stats()


@app.get(
    "/documents/{document_id}/pages/{page}/{kind}",
    responses={
        400: {"content": _problem_resp, "model": ProblemDetail},
        404: {"content": _problem_resp, "model": ProblemDetail},
        502: {"content": _problem_resp, "model": ProblemDetail},
        504: {"content": _problem_resp, "model": ProblemDetail},
    },
)
async def get_artifact(
    document_id: str,
    page: int,
    kind: str,
    registry: SessionRegistry = Depends(get_registry),
):
    """Return the artifact of ``kind`` for ``page``.

    Served from the page cache when resident, joined with an in-flight
    generation when one is running, otherwise generated now.
    """
    session = registry.get(document_id)
    try:
        artifact = await session.get_artifact(kind, page)
    except GenerationTimeout as exc:
        log.warning("route.artifact timeout doc=%s page=%d kind=%s", document_id, page, kind)
        raise HTTPException(status_code=504, detail=str(exc)) from exc
    except (PageOutOfRange, UnknownArtifactKind):
        raise
    except (asyncio.CancelledError, CoordinatorClosed) as exc:
        # Session closed while the fetch was waiting; a client disconnect still propagates
        if document_id in registry:
            raise
        log.info(
            "route.artifact session_closed doc=%s page=%d kind=%s", document_id, page, kind
        )
        raise DocumentNotOpen(document_id) from exc
    except Exception as exc:
        log.warning(
            "route.artifact generation_failed doc=%s page=%d kind=%s error=%r",
            document_id,
            page,
            kind,
            exc,
        )
        raise HTTPException(status_code=502, detail="Artifact generation failed") from exc
    return jsonable_encoder(artifact)


@app.get(
    "/documents/{document_id}/stats",
    response_model=SessionStatsOut,
    responses={404: {"content": _problem_resp, "model": ProblemDetail}},
)
async def document_stats(document_id: str, registry: SessionRegistry = Depends(get_registry)):
    return registry.get(document_id).stats()


@app.delete("/documents/{document_id}", status_code=204)
async def close_document(document_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Close the session: drop its caches and cancel its in-flight generations."""
    if not await registry.close_document(document_id):
        raise HTTPException(status_code=404, detail=f"document {document_id!r} is not open")
    return Response(status_code=204)


@app.get("/debug/sessions", response_model=RegistryStatsOut)
async def debug_sessions(registry: SessionRegistry = Depends(get_registry)):
    return registry.stats()
