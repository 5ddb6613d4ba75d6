"""
Security headers on marketplace API responses.

Successful reads, service failures rendered from ServiceResult and requests
rejected before reaching a service all carry the same headers.
"""
import pytest
from fastapi import FastAPI
from starlette.testclient import TestClient

from app.api.dependencies.auth import result_response
from app.core.exceptions import ErrorCode
from app.core.middleware import setup_exception_handlers, setup_middleware
from app.domain.results import ServiceResult

HSTS = "max-age=31536000; includeSubDomains"


def _assert_production_headers(response) -> None:
    assert response.headers["x-content-type-options"] == "nosniff"
    assert response.headers["content-security-policy"] == "upgrade-insecure-requests"
    assert response.headers["strict-transport-security"] == HSTS


class TestApiResponses:
    """The application under test runs with DEBUG=False"""

    @pytest.mark.integration
    async def test_public_job_search(self, test_client, open_job) -> None:
        response = await test_client.get("/api/jobs/")

        assert response.status_code == 200
        _assert_production_headers(response)

    @pytest.mark.integration
    async def test_credit_balance(self, test_client, tradie) -> None:
        response = await test_client.get(
            "/api/credits/balance", headers={"X-Account-ID": str(tradie.id)}
        )

        assert response.status_code == 200
        _assert_production_headers(response)

    @pytest.mark.integration
    async def test_missing_account_header(self, test_client) -> None:
        response = await test_client.get("/api/credits/balance")

        assert response.status_code == 401
        _assert_production_headers(response)

    @pytest.mark.integration
    async def test_service_failure(self, test_client, tradie) -> None:
        response = await test_client.get(
            "/api/jobs/987654", headers={"X-Account-ID": str(tradie.id)}
        )

        assert response.status_code == 404
        _assert_production_headers(response)

    @pytest.mark.integration
    async def test_health(self, test_client) -> None:
        response = await test_client.get("/health")

        assert response.status_code == 200
        _assert_production_headers(response)


class TestDebugMode:

    @staticmethod
    def _app(debug: bool) -> FastAPI:
        app = FastAPI()
        setup_middleware(app, debug=debug)
        setup_exception_handlers(app)

        @app.get("/packages")
        async def packages():
            return result_response(ServiceResult.ok("Packages", {"default": "standard"}))

        @app.get("/short")
        async def short():
            return result_response(
                ServiceResult.fail(
                    "Insufficient credits", error_code=ErrorCode.INSUFFICIENT_BALANCE, status_code=402
                )
            )

        return app

    @pytest.mark.unit
    @pytest.mark.parametrize("path,status", [("/packages", 200), ("/short", 402)])
    def test_only_nosniff_in_debug(self, path: str, status: int) -> None:
        with TestClient(self._app(debug=True)) as client:
            response = client.get(path)

        assert response.status_code == status
        assert response.headers["x-content-type-options"] == "nosniff"
        assert "content-security-policy" not in response.headers
        assert "strict-transport-security" not in response.headers

    @pytest.mark.unit
    def test_full_set_outside_debug(self) -> None:
        with TestClient(self._app(debug=False)) as client:
            response = client.get("/short")

        assert response.status_code == 402
        _assert_production_headers(response)
