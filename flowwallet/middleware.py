"""WSGI middleware that logs each request once its response has been sent."""

import logging
import time

log = logging.getLogger(__name__)


class _Snoop:
    def __init__(self):
        self.status = 200
        self.size = 0
        self.start = time.monotonic()


def _request_uri(environ) -> str:
    uri = environ.get("REQUEST_URI") or environ.get("RAW_URI")
    if uri:
        return uri
    path = environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", "")
    query = environ.get("QUERY_STRING", "")
    return f"{path}?{query}" if query else path


class _LoggedBody:
    def __init__(self, body, snoop, environ):
        self._body = body
        self._snoop = snoop
        self._environ = environ
        self._logged = False

    def __iter__(self):
        for chunk in self._body:
            self._snoop.size += len(chunk)
            yield chunk
        self._finish()

    def close(self):
        close = getattr(self._body, "close", None)
        try:
            if close is not None:
                close()
        finally:
            self._finish()

    def _finish(self):
        if self._logged:
            return
        self._logged = True
        environ = self._environ
        fields = {
            "method": environ.get("REQUEST_METHOD", ""),
            "path": _request_uri(environ),
            "remote": environ.get("REMOTE_ADDR", ""),
            "user-agent": environ.get("HTTP_USER_AGENT", ""),
            "status": self._snoop.status,
            "size": self._snoop.size,
            "duration": (time.monotonic() - self._snoop.start) * 1000.0,
        }
        log.info(
            "HTTP request method=%s path=%s status=%s size=%s duration=%.3fms",
            fields["method"],
            fields["path"],
            fields["status"],
            fields["size"],
            fields["duration"],
            extra={"http": fields},
        )


def logging_handler(app):
    """Wrap a WSGI app so that every request is logged with status, size and duration."""

    def handler(environ, start_response):
        snoop = _Snoop()

        def snooping_start_response(status, headers, exc_info=None):
            snoop.status = int(status.split(" ", 1)[0])
            write = start_response(status, headers, exc_info)

            def counting_write(data):
                snoop.size += len(data)
                return write(data)

            return counting_write

        body = app(environ, snooping_start_response)
        return _LoggedBody(body, snoop, environ)

    return handler