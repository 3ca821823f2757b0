from __future__ import annotations

import logging
import uuid

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from offline_queue.errors import MutationNotFound, StorageError
from offline_queue.logging_config import get_trace_id
from offline_queue.middleware import REQUEST_ID_HEADER, resolve_request_id, setup_middleware


def _app() -> FastAPI:
    app = FastAPI()
    setup_middleware(app)

    @app.get("/echo")
    async def echo() -> dict:
        return {"trace_id": get_trace_id()}

    @app.get("/missing")
    async def missing() -> dict:
        raise MutationNotFound("m1")

    @app.get("/broken")
    async def broken() -> dict:
        raise StorageError("disk full")

    @app.get("/live")
    async def live() -> dict:
        return {"status": "alive"}

    return app


@pytest.fixture
def client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=_app()), base_url="http://test")


class TestResolveRequestId:
    def test_keeps_well_formed_id(self) -> None:
        assert resolve_request_id("client-42.retry:1") == "client-42.retry:1"

    @pytest.mark.parametrize("value", [None, "", "has space", "x" * 129, "line\nbreak"])
    def test_mints_uuid_otherwise(self, value) -> None:
        uuid.UUID(resolve_request_id(value))


@pytest.mark.asyncio
class TestRequestContextMiddleware:
    async def test_request_id_is_trace_id_inside_handler(self, client: AsyncClient) -> None:
        response = await client.get("/echo", headers={REQUEST_ID_HEADER: "req-7"})
        assert response.headers[REQUEST_ID_HEADER] == "req-7"
        assert response.json() == {"trace_id": "req-7"}

    async def test_trace_id_cleared_after_request(self, client: AsyncClient) -> None:
        await client.get("/echo", headers={REQUEST_ID_HEADER: "req-8"})
        assert get_trace_id() is None

    async def test_invalid_header_replaced(self, client: AsyncClient) -> None:
        response = await client.get("/echo", headers={REQUEST_ID_HEADER: "bad id"})
        request_id = response.headers[REQUEST_ID_HEADER]
        uuid.UUID(request_id)
        assert response.json()["trace_id"] == request_id

    async def test_access_log_line(self, client: AsyncClient, caplog) -> None:
        with caplog.at_level(logging.DEBUG, logger="offline_queue.middleware"):
            await client.get("/echo")
            await client.get("/live")

        by_path = {r.getMessage().split(" ")[1]: r for r in caplog.records if " -> " in r.getMessage()}
        assert by_path["/echo"].levelno == logging.INFO
        assert by_path["/echo"].extra_fields["status_code"] == 200
        assert "duration_ms" in by_path["/echo"].extra_fields
        assert by_path["/live"].levelno == logging.DEBUG


@pytest.mark.asyncio
class TestQueueErrorHandler:
    async def test_client_error_body(self, client: AsyncClient, caplog) -> None:
        with caplog.at_level(logging.ERROR, logger="offline_queue.middleware"):
            response = await client.get("/missing", headers={REQUEST_ID_HEADER: "req-404"})

        assert response.status_code == 404
        assert response.headers[REQUEST_ID_HEADER] == "req-404"
        body = response.json()
        assert body["code"] == "MUTATION_NOT_FOUND"
        assert body["trace_id"] == "req-404"
        assert not caplog.records

    async def test_server_error_is_logged(self, client: AsyncClient, caplog) -> None:
        with caplog.at_level(logging.ERROR, logger="offline_queue.middleware"):
            response = await client.get("/broken")

        assert response.status_code == 500
        assert response.json()["code"] == "STORAGE_ERROR"
        assert any("disk full" in r.getMessage() for r in caplog.records)
