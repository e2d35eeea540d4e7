#!/usr/bin/env python3
"""
webcite.py — WebCite fact-verification API client

Library:  from webcite import WebCiteClient
Human CLI:
  python3 webcite.py verify <claim> [--stream] [--thread-id ID] [--no-stance] [--no-verdict] [--decompose]
  python3 webcite.py search <query> [--limit N]
  python3 webcite.py citations [--page N] [--limit N] [--thread-id ID]
  python3 webcite.py citation <citation-id>
  python3 webcite.py upload <file-path>

Results are printed as JSON on stdout.

Exit codes:
  0 = success
  1 = API returned error (non-2xx, missing body, non-JSON)
  2 = network/timeout error
  4 = invalid usage or configuration
  5 = internal error
"""

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List, Optional
from urllib.parse import quote

import httpx

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from config_loader import (  # noqa: E402
    WebCiteSettings,
    load_settings,
    redact_headers,
    redact_string,
)
from sse_decoder import sse_decode  # noqa: E402
from stream_aggregator import (  # noqa: E402
    ParsedEvent,
    StreamOutcome,
    collect_stream,
    parse_frame,
)

logger = logging.getLogger("webcite.client")

DEFAULT_BASE_URL = "https://api.webcite.co"

VERIFY_PATH = "/api/v1/verify"
VERIFY_STREAM_PATH = "/api/v1/verify/stream"
SEARCH_PATH = "/api/v1/sources/search"
CITATIONS_PATH = "/api/v1/citations"
UPLOAD_PATH = "/api/v1/upload"


# === Error Classes ===

class WebCiteError(Exception):
    """Structured error with code, HTTP status and raw body."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.body = body

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": str(self),
            "status_code": self.status_code,
        }


class TransportError(WebCiteError):
    """Non-2xx response. Raised before any stream frame is read."""

    def __init__(self, status_code: int, body: str):
        super().__init__(
            code="api_error",
            message=f"WebCite API error ({status_code}): {body}",
            status_code=status_code,
            body=body,
        )


class MissingBodyError(WebCiteError):
    """2xx streaming response that carries no body."""

    def __init__(self, status_code: int):
        super().__init__(
            code="missing_body",
            message="No response body received from streaming endpoint",
            status_code=status_code,
        )


def _network_error(e: Exception) -> WebCiteError:
    if isinstance(e, httpx.TimeoutException):
        return WebCiteError(code="network_error", message=f"Request timed out: {e}")
    if isinstance(e, httpx.ConnectError):
        return WebCiteError(code="network_error", message=f"Connection failed: {e}")
    return WebCiteError(code="network_error", message=f"Network error: {e}")


# === Request Building ===

def build_verify_request(
    claim: str,
    thread_id: Optional[str] = None,
    include_stance: bool = True,
    include_verdict: bool = True,
    decompose_claim: bool = False,
) -> Dict[str, Any]:
    """Build the verify / verify-stream request body."""
    body: Dict[str, Any] = {"claim": claim}
    if thread_id:
        body["thread_id"] = thread_id
    body["include_stance"] = include_stance is not False
    body["include_verdict"] = include_verdict is not False
    body["decompose_claim"] = bool(decompose_claim)
    return body


async def _check_stream_response(response: httpx.Response) -> None:
    """Fail fast on a bad streaming response, before any frame is parsed."""
    if not response.is_success:
        await response.aread()
        raise TransportError(response.status_code, response.text)

    if response.status_code == 204 or response.headers.get("content-length") == "0":
        raise MissingBodyError(response.status_code)


# === Client ===

class WebCiteClient:
    """Async client for the WebCite API.

    Args:
        api_key: WebCite API key, sent as x-api-key.
        base_url: API base URL. Defaults to https://api.webcite.co.
        timeout_s: Read/write timeout in seconds.
        connect_timeout_s: Connect timeout in seconds.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = 60.0,
        connect_timeout_s: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"x-api-key": api_key},
            timeout=httpx.Timeout(timeout_s, connect=connect_timeout_s),
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: WebCiteSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "WebCiteClient":
        return cls(
            settings.api_key,
            base_url=settings.base_url,
            timeout_s=settings.timeout_s,
            connect_timeout_s=settings.connect_timeout_s,
            transport=transport,
        )

    async def __aenter__(self) -> "WebCiteClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise _network_error(e) from e
        logger.debug(
            "%s %s -> HTTP %d (headers: %s)",
            method,
            path,
            response.status_code,
            redact_headers(dict(response.request.headers)),
        )

        if not response.is_success:
            raise TransportError(response.status_code, response.text)

        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise WebCiteError(
                code="api_error",
                message=f"Non-JSON response body: {response.text[:200]}",
                status_code=response.status_code,
            ) from e

    async def verify_claim(
        self,
        claim: str,
        thread_id: Optional[str] = None,
        include_stance: bool = True,
        include_verdict: bool = True,
        decompose_claim: bool = False,
    ) -> Dict[str, Any]:
        """Blocking verification. Returns the VerifyResult dict."""
        body = build_verify_request(
            claim, thread_id, include_stance, include_verdict, decompose_claim
        )
        return await self._request("POST", VERIFY_PATH, json=body)

    async def verify_claim_stream(
        self,
        claim: str,
        thread_id: Optional[str] = None,
        include_stance: bool = True,
        include_verdict: bool = True,
        decompose_claim: bool = False,
    ) -> AsyncGenerator[ParsedEvent, None]:
        """Streaming verification. Yields ParsedEvent objects in arrival order.

        The response is held open only while the generator runs and is
        released when it finishes, raises, or is closed with aclose().
        Callers that may stop early should close the generator (or use
        collect_stream / contextlib.aclosing).
        """
        body = build_verify_request(
            claim, thread_id, include_stance, include_verdict, decompose_claim
        )
        try:
            async with self._client.stream(
                "POST",
                VERIFY_STREAM_PATH,
                json=body,
                headers={"Accept": "text/event-stream"},
            ) as response:
                await _check_stream_response(response)
                logger.debug("Verify stream opened (HTTP %d)", response.status_code)
                async for frame in sse_decode(response.aiter_bytes()):
                    yield parse_frame(frame)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise _network_error(e) from e

    async def verify_claim_collected(
        self,
        claim: str,
        thread_id: Optional[str] = None,
        include_stance: bool = True,
        include_verdict: bool = True,
        decompose_claim: bool = False,
    ) -> StreamOutcome:
        """Streaming verification, drained and reconstructed into one outcome."""
        return await collect_stream(
            self.verify_claim_stream(
                claim, thread_id, include_stance, include_verdict, decompose_claim
            )
        )

    async def search_sources(self, query: str, limit: int = 10) -> Dict[str, Any]:
        """Citation search without stance analysis or verdict."""
        return await self._request(
            "POST", SEARCH_PATH, json={"query": query, "limit": limit or 10}
        )

    async def list_citations(
        self,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        thread_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Past verifications, paginated. Unset filters are omitted."""
        params = {}
        if page:
            params["page"] = str(page)
        if limit:
            params["limit"] = str(limit)
        if thread_id:
            params["thread_id"] = thread_id
        return await self._request("GET", CITATIONS_PATH, params=params)

    async def get_citation(self, citation_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"{CITATIONS_PATH}/{quote(citation_id, safe='')}")

    async def upload_file(self, file_path: str) -> Dict[str, Any]:
        """Upload a local file as verification context (multipart field 'file')."""
        path = Path(file_path)
        content = path.read_bytes()
        return await self._request(
            "POST", UPLOAD_PATH, files={"file": (path.name, content)}
        )


# === Human CLI Mode ===

VALUE_FLAGS = ("--thread-id", "--limit", "--page")


def _flag_value(args: List[str], flag: str) -> Optional[str]:
    if flag not in args:
        return None
    idx = args.index(flag)
    if idx + 1 >= len(args):
        print(f"ERROR: {flag} requires a value", file=sys.stderr)
        sys.exit(4)
    return args[idx + 1]


def _int_flag(args: List[str], flag: str) -> Optional[int]:
    value = _flag_value(args, flag)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        print(f"ERROR: {flag} must be an integer, got {value!r}", file=sys.stderr)
        sys.exit(4)


def _positional(args: List[str]) -> Optional[str]:
    """First argument that is neither a flag nor a flag's value."""
    skip = False
    for arg in args:
        if skip:
            skip = False
        elif arg in VALUE_FLAGS:
            skip = True
        elif not arg.startswith("--"):
            return arg
    return None


async def run_command(client: WebCiteClient, command: str, args: List[str]) -> Any:
    """Dispatch one CLI command and return its JSON-serializable result."""
    positional = _positional(args)

    if command == "verify":
        if not positional:
            raise ValueError("verify requires <claim>")
        options = dict(
            thread_id=_flag_value(args, "--thread-id"),
            include_stance="--no-stance" not in args,
            include_verdict="--no-verdict" not in args,
            decompose_claim="--decompose" in args,
        )
        if "--stream" in args:
            outcome = await client.verify_claim_collected(positional, **options)
            return outcome.to_dict()
        return await client.verify_claim(positional, **options)

    if command == "search":
        if not positional:
            raise ValueError("search requires <query>")
        return await client.search_sources(positional, _int_flag(args, "--limit") or 10)

    if command == "citations":
        return await client.list_citations(
            page=_int_flag(args, "--page"),
            limit=_int_flag(args, "--limit"),
            thread_id=_flag_value(args, "--thread-id"),
        )

    if command == "citation":
        if not positional:
            raise ValueError("citation requires <citation-id>")
        return await client.get_citation(positional)

    if command == "upload":
        if not positional:
            raise ValueError("upload requires <file-path>")
        return await client.upload_file(positional)

    raise ValueError(f"Unknown command: {command}")


async def _run(settings: WebCiteSettings, command: str, args: List[str]) -> Any:
    async with WebCiteClient.from_settings(settings) as client:
        return await run_command(client, command, args)


def main(argv: Optional[List[str]] = None) -> None:
    args = sys.argv[1:] if argv is None else argv

    if not args:
        print(__doc__.strip(), file=sys.stderr)
        sys.exit(4)

    command, rest = args[0], args[1:]

    try:
        settings = load_settings()
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(4)

    try:
        result = asyncio.run(_run(settings, command, rest))
    except WebCiteError as e:
        print(json.dumps(e.to_dict()), file=sys.stdout)
        sys.exit(2 if e.code == "network_error" else 1)
    except (ValueError, OSError) as e:
        print(f"ERROR: {redact_string(str(e), [settings.api_key])}", file=sys.stderr)
        sys.exit(4)
    except Exception as e:
        print(f"ERROR: Internal error: {redact_string(str(e), [settings.api_key])}", file=sys.stderr)
        sys.exit(5)

    print(json.dumps(result, indent=2))
    sys.exit(0)


if __name__ == "__main__":
    main()
