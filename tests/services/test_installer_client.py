"""Tests for the CI/CD installer REST client using httpx.MockTransport."""

import json

import httpx
import pytest

from update_center.errors import HandleNotFoundError, InstallerError, SubmissionError
from update_center.services.installer_client import (
    CicdInstallerClient,
    HandleState,
    parse_progress_result,
)

BASE_URL = "https://example.test"


def _client(handler) -> CicdInstallerClient:
    return CicdInstallerClient(
        BASE_URL, "admin", "secret", transport=httpx.MockTransport(handler)
    )


class TestParseProgressResult:
    def test_maps_status_codes(self):
        assert parse_progress_result({"status": "0"}).state == HandleState.starting
        assert parse_progress_result({"status": "1"}).state == HandleState.running
        assert parse_progress_result({"status": "2"}).state == HandleState.complete
        assert parse_progress_result({"status": "3"}).state == HandleState.error
        assert parse_progress_result({"status": "4"}).state == HandleState.cancelled

    def test_unknown_status_is_running(self):
        assert parse_progress_result({"status": "9"}).state == HandleState.running

    def test_fields(self):
        snap = parse_progress_result(
            {
                "status": "3",
                "status_message": "Failed",
                "status_detail": "2 of 3 installed",
                "percent_complete": "66",
                "error": "Dependency check failed",
            }
        )
        assert snap.message == "Failed"
        assert snap.percent_complete == 66
        assert snap.error_message == "Dependency check failed"
        assert snap.output_summary == "2 of 3 installed"
        assert snap.is_terminal

    def test_percent_is_clamped_and_tolerant(self):
        assert parse_progress_result({"percent_complete": 140}).percent_complete == 100
        assert parse_progress_result({"percent_complete": "n/a"}).percent_complete == 0
        assert parse_progress_result({}).percent_complete == 0


class TestSubmit:
    @pytest.mark.asyncio
    async def test_returns_progress_handle(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(
                200, json={"result": {"links": {"progress": {"id": "abc123"}}}}
            )

        async with _client(handler) as client:
            handle = await client.submit({"packages": [{"id": "pkg-core"}]})

        assert handle == "abc123"
        assert seen["path"] == "/api/sn_cicd/app/batch/install"
        assert seen["body"] == {"packages": [{"id": "pkg-core"}]}
        assert seen["auth"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_error_response_raises_submission_error(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"message": "Invalid manifest"}})

        async with _client(handler) as client:
            with pytest.raises(SubmissionError, match="Invalid manifest"):
                await client.submit({"packages": []})

    @pytest.mark.asyncio
    async def test_missing_handle_raises_submission_error(self):
        def handler(request):
            return httpx.Response(200, json={"result": {}})

        async with _client(handler) as client:
            with pytest.raises(SubmissionError, match="no progress handle"):
                await client.submit({"packages": []})

    @pytest.mark.asyncio
    async def test_transport_error_raises_submission_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(SubmissionError):
                await client.submit({"packages": []})

    @pytest.mark.asyncio
    async def test_requires_open_client(self):
        client = _client(lambda request: httpx.Response(200))
        with pytest.raises(InstallerError):
            await client.submit({})


class TestReadHandle:
    @pytest.mark.asyncio
    async def test_reads_snapshot(self):
        def handler(request):
            assert request.url.path == "/api/sn_cicd/progress/abc123"
            return httpx.Response(
                200,
                json={
                    "result": {
                        "status": "1",
                        "status_message": "Installing Reports",
                        "percent_complete": 40,
                    }
                },
            )

        async with _client(handler) as client:
            snap = await client.read_handle("abc123")

        assert snap.state == HandleState.running
        assert snap.message == "Installing Reports"
        assert snap.percent_complete == 40
        assert not snap.is_terminal

    @pytest.mark.asyncio
    async def test_404_is_handle_not_found(self):
        async with _client(lambda request: httpx.Response(404)) as client:
            with pytest.raises(HandleNotFoundError):
                await client.read_handle("abc123")

    @pytest.mark.asyncio
    async def test_server_error_is_installer_error(self):
        async with _client(lambda request: httpx.Response(503, text="down")) as client:
            with pytest.raises(InstallerError, match="down"):
                await client.read_handle("abc123")
