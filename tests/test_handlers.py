import gzip
import json
import uuid
import zlib

import pytest
from werkzeug.test import Client, EnvironBuilder
from werkzeug.wrappers import Response

from flowwallet.accounts import RecordNotFound
from flowwallet.errors import RequestError
from flowwallet.handlers import (
    JobsHandlers,
    check_non_empty_body,
    debug,
    handle_error,
    health_ready,
    json_response,
    liveness,
    plain_text,
    use_compress,
    use_cors,
    use_json,
)
from flowwallet.jobs import Job, JobService, MemoryJobStore


def make_request(**kwargs):
    return EnvironBuilder(**kwargs).get_request()


def body_text(response):
    return response.get_data(as_text=True)


def test_handle_error_request_error():
    response = handle_error(RequestError(404, "job not found"))
    assert response.status_code == 404
    assert body_text(response) == "job not found\n"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_handle_error_record_not_found_is_404():
    response = handle_error(RecordNotFound())
    assert response.status_code == 404
    assert body_text(response) == "record not found\n"


def test_handle_error_other_is_400():
    response = handle_error(ValueError("bad"))
    assert response.status_code == 400
    assert body_text(response) == "bad\n"


def test_json_response_round_trip():
    response = json_response(201, {"a": [1, 2]})
    assert response.status_code == 201
    assert response.mimetype == "application/json"
    assert json.loads(body_text(response)) == {"a": [1, 2]}


def test_check_non_empty_body():
    with pytest.raises(RequestError) as info:
        check_non_empty_body(make_request(method="POST"))
    assert info.value.status_code == 400
    assert str(info.value) == "empty body"

    request = make_request(method="POST", data=b"{}")
    assert check_non_empty_body(request) is None
    assert request.get_data() == b"{}"


def test_plain_text_sets_length():
    response = plain_text("abc")
    assert response.mimetype == "text/plain"
    assert response.headers["Content-Length"] == str(len("abc"))
    assert body_text(response) == "abc"


def test_cors_adds_origin_header():
    client = Client(use_cors(Response("hi")))
    response = client.get("/", headers={"Origin": "http://localhost"})
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert body_text(response) == "hi"


def test_cors_preflight_rules():
    calls = []

    def app(environ, start_response):
        calls.append(environ)
        return Response("hi")(environ, start_response)

    client = Client(use_cors(app))
    ok = client.options("/", headers={"Origin": "http://localhost",
                                      "Access-Control-Request-Method": "POST"})
    assert ok.status_code == 200
    assert ok.headers["Access-Control-Allow-Origin"] == "*"
    assert calls == []

    assert client.options("/", headers={"Origin": "http://localhost"}).status_code == 400
    put = client.options("/", headers={"Origin": "http://localhost",
                                       "Access-Control-Request-Method": "PUT"})
    assert put.status_code == 405
    forbidden = client.options("/", headers={"Origin": "http://localhost",
                                             "Access-Control-Request-Method": "POST",
                                             "Access-Control-Request-Headers": "content-type"})
    assert forbidden.status_code == 403


def test_use_json_checks_content_type():
    client = Client(use_json(Response("ok")))
    good = client.post("/", data="{}", content_type="application/json; charset=utf-8")
    assert good.status_code == 200
    bad = client.post("/", data="x", content_type="text/plain")
    assert bad.status_code == 415
    assert body_text(bad).startswith('Unsupported content type "text/plain"')
    assert client.get("/").status_code == 200


def test_use_compress_gzip_and_deflate():
    text = "hello world " * 20
    client = Client(use_compress(Response(text)))
    gz = client.get("/", headers={"Accept-Encoding": "gzip"})
    assert gz.headers["Content-Encoding"] == "gzip"
    assert gzip.decompress(gz.get_data()).decode() == text
    deflated = client.get("/", headers={"Accept-Encoding": "deflate, gzip"})
    assert deflated.headers["Content-Encoding"] == "deflate"
    assert zlib.decompress(deflated.get_data(), -15).decode() == text
    plain = client.get("/")
    assert "Content-Encoding" not in plain.headers
    assert body_text(plain) == text


def test_health_ready():
    response = health_ready(make_request())
    assert response.status_code == 200
    assert response.get_data() == b""


def test_liveness():
    view = liveness(lambda: {"alive": True})
    response = view(make_request())
    assert response.status_code == 200
    assert json.loads(body_text(response)) == {"alive": True}

    def broken():
        raise ValueError("down")

    failed = liveness(broken)(make_request())
    assert failed.status_code == 400
    assert body_text(failed) == "down\n"


def test_debug_view():
    view = debug("repo", "abc123", "today")
    request = make_request(path="/v1/debug", headers=[("X-Test", "one"), ("X-Test", "two")])
    lines = body_text(view(request, api_version="v1")).split("\n")
    assert lines[0] == "url: GET /v1/debug"
    assert lines[1] == "Headers:"
    assert "  X-Test:" in lines
    assert "    one" in lines and "    two" in lines
    assert lines[-3:] == ["ver: repo/commit/abc123", "built on: today",
                          "api version called: v1"]


@pytest.fixture
def jobs_setup():
    store = MemoryJobStore()
    created = []
    for name in ("a", "b", "c"):
        job = Job(type=name)
        store.insert_job(job)
        created.append(job)
    return JobsHandlers(JobService(store)), created


def test_jobs_list(jobs_setup):
    handlers, created = jobs_setup
    everything = json.loads(body_text(handlers.list(make_request(path="/jobs"))))
    assert sorted(j["jobId"] for j in everything) == sorted(str(j.id) for j in created)
    limited = handlers.list(make_request(path="/jobs", query_string={"limit": "1"}))
    assert len(json.loads(body_text(limited))) == 1
    bad = handlers.list(make_request(path="/jobs", query_string={"limit": "x"}))
    assert len(json.loads(body_text(bad))) == len(created)


def test_jobs_details(jobs_setup):
    handlers, created = jobs_setup
    response = handlers.details(make_request(), str(created[1].id))
    assert response.status_code == 200
    data = json.loads(body_text(response))
    assert data["jobId"] == str(created[1].id)
    assert data["type"] == "b"
    assert data["state"] == "INIT"


def test_jobs_details_errors(jobs_setup):
    handlers, _ = jobs_setup
    invalid = handlers.details(make_request(), "nope")
    assert invalid.status_code == 400
    assert body_text(invalid) == "invalid job id\n"
    missing = handlers.details(make_request(), str(uuid.uuid4()))
    assert missing.status_code == 404
    assert body_text(missing) == "job not found\n"