"""Tests for request ID middleware."""

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from apiguard.app.middleware.request_id import RequestIdMiddleware, get_request_id


def make_app(**kwargs) -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware, **kwargs)

    @app.get("/echo")
    async def echo(request: Request):
        return {"request_id": get_request_id(request)}

    return app


class TestRequestIdMiddleware:
    """Request ID propagation."""

    def test_generates_request_id(self):
        """A UUID is generated when the client sends none."""
        response = TestClient(make_app()).get("/echo")

        request_id = response.headers["X-Request-ID"]
        assert len(request_id) == 36
        assert response.json()["request_id"] == request_id

    def test_propagates_incoming_id(self):
        """An incoming X-Request-ID is kept."""
        response = TestClient(make_app()).get("/echo", headers={"X-Request-ID": "abc-123"})

        assert response.headers["X-Request-ID"] == "abc-123"
        assert response.json()["request_id"] == "abc-123"

    def test_custom_header_name(self):
        response = TestClient(make_app(header_name="X-Correlation-ID")).get(
            "/echo", headers={"X-Correlation-ID": "corr-1"}
        )
        assert response.headers["X-Correlation-ID"] == "corr-1"


def test_get_request_id_default():
    """Requests that never passed the middleware report "unknown"."""
    request = Request({"type": "http", "method": "GET", "path": "/", "headers": []})
    assert get_request_id(request) == "unknown"
