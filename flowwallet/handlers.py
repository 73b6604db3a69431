"""HTTP helpers, middleware wrappers and the job, health and debug views."""

import gzip
import json
import logging
import zlib
from typing import Any, Callable

from werkzeug.wrappers import Request, Response

from .errors import RequestError
from .jobs import JobService

log = logging.getLogger(__name__)

SYNC_QUERY_PARAMETER = "sync"

_CORS_METHODS = ("GET", "HEAD", "POST")
_CORS_HEADERS = ("Accept", "Accept-Language", "Content-Language", "Origin")
_JSON_CONTENT_TYPES = ("application/json",)


def _error_text(message: str, status: int) -> Response:
    response = Response(message + "\n", status=status, content_type="text/plain; charset=utf-8")
    response.headers["X-Content-Type-Options"] = "nosniff"
    return response


def handle_error(err: BaseException) -> Response:
    """Turn an error into an HTTP error response."""
    log.warning("Error while handling request: %s", err)
    if isinstance(err, RequestError):
        return _error_text(str(err), err.status_code)
    message = str(err)
    if "record not found" in message:
        return _error_text(message, 404)
    return _error_text(message, 400)


def json_response(status: int, body: Any) -> Response:
    return Response(json.dumps(body) + "\n", status=status, content_type="application/json")


def check_non_empty_body(request: Request) -> None:
    """Raise a 400 RequestError when the request has no body."""
    if not request.get_data(cache=True):
        raise RequestError(400, "empty body")


def plain_text(text: str) -> Response:
    data = text.encode("utf-8")
    response = Response(data, status=200, content_type="text/plain")
    response.headers["Content-Length"] = str(len(data))
    return response


def _canonical_header(name: str) -> str:
    return "-".join(part.capitalize() for part in name.split("-"))


def use_cors(app):
    """Allow cross-origin requests from any origin."""

    def wrapped(environ, start_response):
        request = Request(environ)
        headers = [("Access-Control-Allow-Origin", "*")]

        if request.method == "OPTIONS":
            if "Access-Control-Request-Method" not in request.headers:
                return Response(status=400)(environ, start_response)
            method = request.headers.get("Access-Control-Request-Method", "")
            if method not in _CORS_METHODS:
                return Response(status=405)(environ, start_response)
            allowed = []
            requested = request.headers.get("Access-Control-Request-Headers", "")
            for raw in requested.split(","):
                name = _canonical_header(raw.strip())
                if not name or name in _CORS_HEADERS:
                    continue
                return Response(status=403)(environ, start_response)
            if allowed:
                headers.append(("Access-Control-Allow-Headers", ",".join(allowed)))
            response = Response(status=200)
            for key, value in headers:
                response.headers[key] = value
            return response(environ, start_response)

        def cors_start_response(status, response_headers, exc_info=None):
            return start_response(status, list(response_headers) + headers, exc_info)

        return app(environ, cors_start_response)

    return wrapped


def use_json(app):
    """Refuse PUT, POST and PATCH requests whose body is not JSON."""

    def wrapped(environ, start_response):
        if environ.get("REQUEST_METHOD") not in ("PUT", "POST", "PATCH"):
            return app(environ, start_response)
        content_type = environ.get("CONTENT_TYPE", "")
        media_type = content_type.split(";", 1)[0]
        if media_type in _JSON_CONTENT_TYPES:
            return app(environ, start_response)
        message = (
            f"Unsupported content type {json.dumps(content_type)}; "
            f"expected one of {json.dumps(list(_JSON_CONTENT_TYPES))}"
        )
        return _error_text(message, 415)(environ, start_response)

    return wrapped


def use_compress(app):
    """Compress responses with gzip or deflate when the client accepts it."""

    def wrapped(environ, start_response):
        request = Request(environ)
        if "Upgrade" in request.headers:
            return app(environ, start_response)
        encoding = None
        for token in request.headers.get("Accept-Encoding", "").split(","):
            token = token.strip()
            if token in ("gzip", "deflate"):
                encoding = token
                break
        if encoding is None:
            return app(environ, start_response)

        response = Response.from_app(app, environ, buffered=True)
        data = response.get_data()
        if encoding == "gzip":
            data = gzip.compress(data)
        else:
            compressor = zlib.compressobj(wbits=-15)
            data = compressor.compress(data) + compressor.flush()
        response.set_data(data)
        response.headers["Content-Encoding"] = encoding
        response.headers.add("Vary", "Accept-Encoding")
        return response(environ, start_response)

    return wrapped


def health_ready(request: Request) -> Response:
    return Response(status=200)


def liveness(get_liveness: Callable[[], Any]):
    """A view that reports what get_liveness returns as JSON."""

    def view(request: Request) -> Response:
        try:
            result = get_liveness()
        except Exception as err:
            return handle_error(err)
        return json_response(200, result)

    return view


def debug(repo_url: str, sha1ver: str, buildtime: str):
    """A view that echoes the request and the build information as plain text."""

    def view(request: Request, api_version: str = "") -> Response:
        environ = request.environ
        uri = environ.get("REQUEST_URI") or environ.get("RAW_URI")
        if not uri:
            query = environ.get("QUERY_STRING", "")
            uri = request.path + (f"?{query}" if query else "")
        lines = [f"url: {request.method} {uri}", "Headers:"]
        seen = []
        for key, _ in request.headers.items():
            if key not in seen:
                seen.append(key)
        for key in seen:
            values = request.headers.getlist(key)
            if not values:
                lines.append(key)
            elif len(values) == 1:
                lines.append(f"  {key}: {values[0]}")
            else:
                lines.append(f"  {key}:")
                lines.extend(f"    {value}" for value in values)
        lines.append("")
        lines.append(f"ver: {repo_url}/commit/{sha1ver}")
        lines.append(f"built on: {buildtime}")
        lines.append(f"api version called: {api_version}")
        return plain_text("\n".join(lines))

    return view


def _int_arg(request: Request, name: str) -> int:
    try:
        return int(request.args.get(name, ""))
    except ValueError:
        return 0


class JobsHandlers:
    """Views for listing jobs and showing one job."""

    def __init__(self, service: JobService):
        self.service = service

    def list(self, request: Request) -> Response:
        limit = _int_arg(request, "limit")
        offset = _int_arg(request, "offset")
        try:
            jobs = self.service.list(limit, offset)
        except Exception as err:
            return handle_error(err)
        return json_response(200, [job.to_json_response() for job in jobs])

    def details(self, request: Request, job_id: str) -> Response:
        try:
            job = self.service.details(job_id)
        except Exception as err:
            return handle_error(err)
        return json_response(200, job.to_json_response())