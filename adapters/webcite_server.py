#!/usr/bin/env python3
"""
webcite_server.py — WebCite HTTP Sidecar

FastAPI application exposing the WebCite client to a calling agent as
plain JSON endpoints. Presentation of results is left to the caller.

Endpoints:
  POST /verify           — Blocking verification
  POST /verify/stream    — Streaming verification, collected into one result
  POST /sources/search   — Citation search (limit clamped to 1..20)
  GET  /citations        — Verification history (limit clamped to 1..50)
  GET  /citations/{id}   — One verification, citations decoded
  POST /upload           — Upload a local file as verification context
  GET  /healthz          — Liveness probe
  GET  /readyz           — Readiness probe

Configuration comes from config_loader.load_settings() (WEBCITE_API_KEY,
WEBCITE_API_URL, .webcite.config.yaml).
"""

import json
import os
import sys
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from config_loader import ConfigurationError, load_settings  # noqa: E402
from result_schema import (  # noqa: E402
    check_total_results,
    coerce_citations,
    validate_verify_result,
)
from webcite import WebCiteClient, WebCiteError  # noqa: E402

START_TIME = time.monotonic()

SEARCH_LIMIT_MAX = 20
CITATIONS_LIMIT_MAX = 50


def _clamp(value: Any, default: int, low: int, high: int) -> int:
    try:
        number = int(value) if value else default
    except (TypeError, ValueError):
        number = default
    return min(max(number, low), high)


def _invalid(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "INVALID_REQUEST", "message": message},
    )


async def _json_body(request: Request) -> Optional[dict]:
    body = await request.body()
    try:
        data = json.loads(body) if body else {}
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _verify_options(data: dict) -> dict:
    return {
        "thread_id": data.get("thread_id") or None,
        "include_stance": data.get("include_stance") is not False,
        "include_verdict": data.get("include_verdict") is not False,
        "decompose_claim": data.get("decompose_claim") is True,
    }


# --- Client Holder ---


class ClientHolder:
    """Lazily built WebCiteClient shared by all requests."""

    def __init__(self) -> None:
        self._client: Optional[WebCiteClient] = None

    def get(self) -> WebCiteClient:
        if self._client is None:
            self._client = WebCiteClient.from_settings(load_settings())
        return self._client

    def set(self, client: Optional[WebCiteClient]) -> None:
        self._client = client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


client_holder = ClientHolder()


# --- Application ---


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    try:
        settings = load_settings()
        print(f"[webcite-sidecar] Upstream: {settings.base_url}", flush=True)
        print("[webcite-sidecar] API key: configured", flush=True)
    except ConfigurationError as e:
        print(f"[webcite-sidecar] NOT CONFIGURED: {e}", flush=True)
    yield
    print("[webcite-sidecar] Shutting down, closing client...", flush=True)
    await client_holder.close()
    print("[webcite-sidecar] Shutdown complete", flush=True)


app = FastAPI(title="WebCite Sidecar", docs_url=None, redoc_url=None, lifespan=lifespan)


@app.exception_handler(WebCiteError)
async def webcite_error_handler(request: Request, exc: WebCiteError) -> JSONResponse:
    return JSONResponse(status_code=502, content=exc.to_dict())


@app.exception_handler(ConfigurationError)
async def config_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"error": "NOT_CONFIGURED", "message": str(exc)},
    )


@app.get("/healthz")
async def healthz() -> dict:
    """Liveness probe."""
    return {
        "status": "alive",
        "uptime_s": round(time.monotonic() - START_TIME, 2),
    }


@app.get("/readyz")
async def readyz() -> JSONResponse:
    """Readiness probe. 503 until an API key is configured."""
    try:
        load_settings()
    except ConfigurationError as e:
        return JSONResponse(status_code=503, content={"status": "not_ready", "message": str(e)})
    return JSONResponse(content={
        "status": "ready",
        "uptime_s": round(time.monotonic() - START_TIME, 2),
    })


@app.post("/verify")
async def verify(request: Request) -> JSONResponse:
    data = await _json_body(request)
    if data is None:
        return _invalid("Request body must be a JSON object")
    claim = data.get("claim")
    if not claim or not isinstance(claim, str):
        return _invalid("claim is required")

    result = await client_holder.get().verify_claim(claim, **_verify_options(data))
    return JSONResponse(content=result)


@app.post("/verify/stream")
async def verify_stream(request: Request) -> JSONResponse:
    """Collects the verify stream and returns the reconstructed result.

    Response: {"status": "final"|"accumulated"|"unresolved", "result": ...}
    plus "events" (raw, in arrival order) when unresolved.
    """
    data = await _json_body(request)
    if data is None:
        return _invalid("Request body must be a JSON object")
    claim = data.get("claim")
    if not claim or not isinstance(claim, str):
        return _invalid("claim is required")

    outcome = await client_holder.get().verify_claim_collected(claim, **_verify_options(data))

    if outcome.resolved:
        problems = validate_verify_result(outcome.result)
        if not problems:
            problems = check_total_results(outcome.result)
        if problems:
            print(
                f"[webcite-sidecar] WARN: {outcome.kind} result has "
                f"{len(problems)} schema issue(s): {problems[:3]}",
                flush=True,
            )
    return JSONResponse(content=outcome.to_dict())


@app.post("/sources/search")
async def search_sources(request: Request) -> JSONResponse:
    data = await _json_body(request)
    if data is None:
        return _invalid("Request body must be a JSON object")
    query = data.get("query")
    if not query or not isinstance(query, str):
        return _invalid("query is required")

    limit = _clamp(data.get("limit"), 10, 1, SEARCH_LIMIT_MAX)
    result = await client_holder.get().search_sources(query, limit)
    return JSONResponse(content=result)


@app.get("/citations")
async def list_citations(
    page: Optional[str] = None,
    limit: Optional[str] = None,
    thread_id: Optional[str] = None,
) -> JSONResponse:
    result = await client_holder.get().list_citations(
        page=_clamp(page, 1, 1, sys.maxsize),
        limit=_clamp(limit, 10, 1, CITATIONS_LIMIT_MAX),
        thread_id=thread_id or None,
    )
    return JSONResponse(content=result)


@app.get("/citations/{citation_id}")
async def get_citation(citation_id: str) -> JSONResponse:
    result = await client_holder.get().get_citation(citation_id)
    record = result.get("data") or {}
    return JSONResponse(content={
        "prompt": record.get("prompt"),
        "citations": coerce_citations(record.get("citation")),
    })


@app.post("/upload")
async def upload(request: Request) -> JSONResponse:
    data = await _json_body(request)
    if data is None:
        return _invalid("Request body must be a JSON object")
    file_path = data.get("file_path")
    if not file_path or not isinstance(file_path, str):
        return _invalid("file_path is required")
    if not os.path.isfile(file_path):
        return _invalid(f"File not found: {file_path}")

    result = await client_holder.get().upload_file(file_path)
    return JSONResponse(content=result)
