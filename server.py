from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Literal

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel

from mdrender_backend.config import LOG_LEVEL, MAX_MARKDOWN_BYTES
from mdrender_backend.coordinator import RenderCoordinator, create_coordinator
from mdrender_backend.errors import (
    NotReadyError,
    ProcessingError,
    RenderError,
    RenderTimeoutError,
    TerminationError,
    UnitFault,
)
from mdrender_backend.export import build_html_document, export_filename, print_pdf


logger = logging.getLogger("mdrender.server")


class RenderRequestBody(BaseModel):
    markdown: str


class HtmlExportRequest(BaseModel):
    markdown: str
    title: str = "Document"
    standalone: bool = True
    container: Literal["div", "article", "main", "section"] = "article"


class PdfRequest(BaseModel):
    markdown: str
    title: str = "Document"
    filename: str | None = None
    format: Literal["a4", "letter", "legal"] = "a4"
    landscape: bool = False


def configure_logging(level: str = LOG_LEVEL) -> None:
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level)


def _log_unit_fault(fault: UnitFault) -> None:
    logger.error("Renderer reported a fault: %s", fault)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # One coordinator (and one execution unit) per app instance.
    coordinator = create_coordinator(on_fault=_log_unit_fault)
    await coordinator.start()
    app.state.coordinator = coordinator
    try:
        yield
    finally:
        coordinator.shutdown()


app = FastAPI(lifespan=lifespan)

# Allow the browser app to call the API even when index.html is opened from disk
# (file:// pages send Origin: null, which otherwise fails CORS).
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _coordinator(request: Request) -> RenderCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Renderer not available")
    return coordinator


async def _render(request: Request, markdown: str) -> str:
    if len((markdown or "").encode("utf-8")) > MAX_MARKDOWN_BYTES:
        raise HTTPException(status_code=413, detail="Document too large")
    try:
        return await _coordinator(request).render(markdown or "")
    except (NotReadyError, TerminationError):
        raise HTTPException(status_code=503, detail="Renderer not ready")
    except RenderTimeoutError:
        raise HTTPException(status_code=504, detail="Rendering timed out")
    except ProcessingError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except RenderError:
        raise HTTPException(status_code=500, detail="Rendering failed")


@app.post("/api/render")
async def render(payload: RenderRequestBody, request: Request) -> JSONResponse:
    html = await _render(request, payload.markdown)
    return JSONResponse({"html": html}, headers={"Cache-Control": "no-store"})


@app.get("/api/health")
async def health(request: Request) -> JSONResponse:
    coordinator = _coordinator(request)
    ok = await coordinator.health_check()
    status = 200 if ok else 503
    return JSONResponse(
        {"ok": ok, "state": coordinator.state.value, "healthy": coordinator.healthy},
        status_code=status,
    )


@app.post("/api/export/html")
async def export_html(payload: HtmlExportRequest, request: Request) -> Response:
    html = await _render(request, payload.markdown)
    if not payload.standalone:
        return HTMLResponse(html, headers={"Cache-Control": "no-store"})

    exported = build_html_document(html, title=payload.title, container=payload.container)
    headers = {
        "Content-Disposition": f'attachment; filename="{export_filename(payload.title, "html")}"',
        "Cache-Control": "no-store",
        "X-Content-Type-Options": "nosniff",
    }
    return HTMLResponse(exported.html, headers=headers)


@app.post("/api/pdf")
async def render_pdf(payload: PdfRequest, request: Request) -> Response:
    # Generate a selectable-text PDF by printing the rendered document in headless Chromium.
    html = await _render(request, payload.markdown)
    exported = build_html_document(html, title=payload.title)
    pdf_bytes = await print_pdf(exported.html, page_format=payload.format, landscape=payload.landscape)

    filename = payload.filename or export_filename(payload.title, "pdf")
    headers = {
        "Content-Disposition": f'attachment; filename="{export_filename(filename.rsplit(".", 1)[0], "pdf")}"',
        "Cache-Control": "no-store",
    }
    return Response(content=pdf_bytes, media_type="application/pdf", headers=headers)


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    configure_logging()
    port = int(os.environ.get("PORT", "8010"))
    uvicorn.run("server:app", host="127.0.0.1", port=port, reload=False)
