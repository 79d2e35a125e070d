from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from syncwatch.middleware.request_context import RequestContextMiddleware


def _app():
    app = FastAPI()
    app.add_middleware(RequestContextMiddleware)

    @app.get("/echo")
    async def echo(request: Request):
        return {"request_id": request.state.request_id}

    return app


def test_generates_request_id_when_missing():
    response = TestClient(_app()).get("/echo")

    assert response.status_code == 200
    request_id = response.json()["request_id"]
    assert request_id
    assert response.headers["X-Request-ID"] == request_id


def test_propagates_caller_request_id():
    response = TestClient(_app()).get("/echo", headers={"X-Request-ID": "req-abc"})

    assert response.json()["request_id"] == "req-abc"
    assert response.headers["X-Request-ID"] == "req-abc"
