"""Tests for the HTTP endpoint stage plugin against a local HTTP server."""

from __future__ import annotations

import pytest
from pytest_httpserver import HTTPServer
from werkzeug import Request, Response

from integration_workflows.engine.exceptions import (
    CircuitOpenBlocked,
    ConfigurationError,
    RetryExhausted,
    StageFailure,
    TransportError,
)
from integration_workflows.engine.executors_endpoint import HttpStagePlugin
from integration_workflows.engine.schema import WorkflowStageDefinition
from integration_workflows.engine.stage_status import CircuitState
from integration_workflows.engine.template_resolver import MissingValueError

REFERENCES = {"apis": [{"name": "accounts", "definition": "accounts"}]}


def make_stage(**fields) -> WorkflowStageDefinition:
    data = {
        "name": "create",
        "kind": "Endpoint",
        "apiRef": "accounts",
        "endpoint": "/accounts",
        "httpVerb": "POST",
        "expectedStatus": 201,
        **fields,
    }
    return WorkflowStageDefinition.model_validate(data)


class StatusSequence:
    """werkzeug handler replying with scripted statuses (last one repeats)."""

    def __init__(self, *statuses: int) -> None:
        self.statuses = list(statuses)
        self.calls = 0

    def __call__(self, request: Request) -> Response:
        status = self.statuses[min(self.calls, len(self.statuses) - 1)]
        self.calls += 1
        return Response('{"id": "a-1"}', status=status, content_type="application/json")


@pytest.fixture
def plugin() -> HttpStagePlugin:
    return HttpStagePlugin()


@pytest.fixture
def endpoint_context(make_context, make_services, accounts_api):
    def _make(**kwargs):
        services = make_services(accounts_api)
        return make_context({"references": REFERENCES}, services=services, **kwargs)

    return _make


class TestHttpStageExecution:
    """Tests for request building and output capture."""

    @pytest.mark.asyncio
    async def test_request_and_outputs(
        self, plugin, endpoint_context, httpserver: HTTPServer
    ) -> None:
        """Headers, query and body are resolved; outputs include http_status."""
        httpserver.expect_request(
            "/accounts",
            method="POST",
            query_string={"tenant": "acme"},
            headers={"X-Tenant": "acme"},
            json={"name": "Ada"},
        ).respond_with_json({"id": "a-1", "owner": {"name": "Ada"}}, status=201)
        ctx = endpoint_context(inputs={"name": "Ada", "tenant": "acme"})
        stage = make_stage(
            headers={"X-Tenant": "{{input.tenant}}"},
            query={"tenant": "{{input.tenant}}"},
            body='{"name": "{{input.name}}"}',
            output={"id": "{{response.id}}", "owner": "{{response.owner}}"},
        )

        target = await plugin.execute(stage, ctx)

        assert target is None
        assert ctx.endpoint_outputs["create"] == {
            "id": "a-1",
            "owner": '{"name":"Ada"}',
            "http_status": "201",
        }
        httpserver.check_assertions()

    @pytest.mark.asyncio
    async def test_structured_body(self, plugin, endpoint_context, httpserver) -> None:
        httpserver.expect_request("/accounts", method="POST", json={"n": 1}).respond_with_data(
            "", status=201
        )
        ctx = endpoint_context()
        await plugin.execute(make_stage(body={"n": 1}), ctx)
        assert ctx.endpoint_outputs["create"]["http_status"] == "201"

    @pytest.mark.asyncio
    async def test_jump_on_status(self, plugin, endpoint_context, httpserver) -> None:
        """A mapped status returns the jump target instead of failing."""
        httpserver.expect_request("/accounts").respond_with_json({"error": "exists"}, status=409)
        ctx = endpoint_context()
        stage = make_stage(jumpOnStatus={409: "endStage"}, output={"id": "{{response.id}}"})

        assert await plugin.execute(stage, ctx) == "endStage"
        assert ctx.endpoint_outputs["create"] == {"id": "", "http_status": "409"}

    @pytest.mark.asyncio
    async def test_unexpected_status_fails(self, plugin, endpoint_context, httpserver) -> None:
        httpserver.expect_request("/accounts").respond_with_data("boom", status=500)
        ctx = endpoint_context()

        with pytest.raises(StageFailure, match="returned 500 but expected 201") as exc_info:
            await plugin.execute(make_stage(), ctx)
        assert exc_info.value.status == 500

    @pytest.mark.asyncio
    async def test_missing_output_on_success_fails(
        self, plugin, endpoint_context, httpserver
    ) -> None:
        httpserver.expect_request("/accounts").respond_with_json({"other": 1}, status=201)
        ctx = endpoint_context()
        with pytest.raises(MissingValueError, match="response.id"):
            await plugin.execute(make_stage(output={"id": "{{response.id}}"}), ctx)

    @pytest.mark.asyncio
    async def test_unknown_api_ref(self, plugin, make_context) -> None:
        ctx = make_context({"references": REFERENCES})
        with pytest.raises(ConfigurationError, match="apiRef 'accounts'"):
            await plugin.execute(make_stage(), ctx)


class TestHttpStageRetry:
    """Tests for retries against the live server."""

    @pytest.mark.asyncio
    async def test_retry_then_success(
        self, plugin, endpoint_context, httpserver, recording_sleep
    ) -> None:
        handler = StatusSequence(503, 503, 201)
        httpserver.expect_request("/accounts").respond_with_handler(handler)
        ctx = endpoint_context()
        stage = make_stage(
            retry={"maxRetries": 3, "delayMs": 10, "httpStatus": [503]},
            output={"id": "{{response.id}}"},
        )

        assert await plugin.execute(stage, ctx) is None
        assert handler.calls == 3
        assert recording_sleep.delays == [0.01, 0.01]
        assert ctx.endpoint_outputs["create"]["id"] == "a-1"

    @pytest.mark.asyncio
    async def test_retry_exhausted(self, plugin, endpoint_context, httpserver) -> None:
        handler = StatusSequence(503)
        httpserver.expect_request("/accounts").respond_with_handler(handler)
        ctx = endpoint_context()
        stage = make_stage(retry={"maxRetries": 2, "delayMs": 1, "httpStatus": [503]})

        with pytest.raises(RetryExhausted) as exc_info:
            await plugin.execute(stage, ctx)
        assert exc_info.value.attempts == 3
        assert handler.calls == 3

    @pytest.mark.asyncio
    async def test_jump_wins_over_exhaustion(self, plugin, endpoint_context, httpserver) -> None:
        httpserver.expect_request("/accounts").respond_with_handler(StatusSequence(503))
        ctx = endpoint_context()
        stage = make_stage(
            retry={"maxRetries": 1, "delayMs": 1, "httpStatus": [503]},
            jumpOnStatus={503: "end"},
        )
        assert await plugin.execute(stage, ctx) == "end"

    @pytest.mark.asyncio
    async def test_transport_error(
        self, plugin, make_context, make_services, recording_sleep
    ) -> None:
        """Connection failures are retried, then surface as a TransportError."""
        services = make_services("http://127.0.0.1:1")
        ctx = make_context({"references": REFERENCES}, services=services)
        stage = make_stage(retry={"maxRetries": 1, "delayMs": 5, "httpStatus": [503]})

        with pytest.raises(TransportError, match="failed with exception") as exc_info:
            await plugin.execute(stage, ctx)
        assert exc_info.value.stage_name == "create"
        assert recording_sleep.delays == [0.005]


class TestHttpStageCircuitBreaker:
    """Tests for the circuit breaker wrapped around the retry loop."""

    @pytest.mark.asyncio
    async def test_open_blocks_without_request(
        self, plugin, endpoint_context, httpserver, fake_clock
    ) -> None:
        handler = StatusSequence(503)
        httpserver.expect_request("/accounts").respond_with_handler(handler)
        ctx = endpoint_context()
        stage = make_stage(
            name="lookup",
            retry={"maxRetries": 1, "delayMs": 1, "httpStatus": [503]},
            circuitBreaker={"failureThreshold": 2, "breakMs": 50},
        )

        for _ in range(2):
            with pytest.raises(RetryExhausted):
                await plugin.execute(stage, ctx)
        assert ctx.circuit_breakers["lookup"].state is CircuitState.OPEN
        assert handler.calls == 4

        with pytest.raises(CircuitOpenBlocked) as exc_info:
            await plugin.execute(stage, ctx)
        assert exc_info.value.breaker_name == "lookup"
        assert handler.calls == 4

        fake_clock.advance(50)
        handler.statuses = [201]
        assert await plugin.execute(stage, ctx) is None
        assert ctx.circuit_breakers["lookup"].state is CircuitState.CLOSED
        assert handler.calls == 5

    @pytest.mark.asyncio
    async def test_breaker_state_is_shared_by_ref(
        self, plugin, make_context, make_services, accounts_api, httpserver
    ) -> None:
        httpserver.expect_request("/accounts").respond_with_handler(StatusSequence(503))
        ctx = make_context(
            {
                "references": REFERENCES,
                "resilience": {
                    "circuitBreakers": {"Accounts": {"failureThreshold": 1, "breakMs": 100}}
                },
            },
            services=make_services(accounts_api),
        )
        breaker = {"ref": "Accounts"}
        retry = {"maxRetries": 1, "delayMs": 1, "httpStatus": [503]}

        first = make_stage(name="first", retry=retry, circuitBreaker=breaker)
        second = make_stage(name="second", retry=retry, circuitBreaker=breaker)

        with pytest.raises(RetryExhausted):
            await plugin.execute(first, ctx)
        with pytest.raises(CircuitOpenBlocked):
            await plugin.execute(second, ctx)
        assert list(ctx.circuit_breakers) == ["accounts"]


class TestHttpStageMocked:
    """Tests for mocked mode."""

    @pytest.mark.asyncio
    async def test_mock_payload(self, plugin, make_context, httpserver) -> None:
        """Mocks are template-resolved and no request is sent."""
        ctx = make_context({"references": REFERENCES}, inputs={"name": "Ada"}, mocked=True)
        stage = make_stage(
            mock={"status": 201, "payload": '{"id": "{{input.name}}-1"}'},
            output={"id": "{{response.id}}"},
        )

        assert await plugin.execute(stage, ctx) is None
        assert ctx.endpoint_outputs["create"] == {"id": "Ada-1", "http_status": "201"}
        assert len(httpserver.log) == 0

    @pytest.mark.asyncio
    async def test_mock_payload_file(self, plugin, make_context, tmp_path) -> None:
        (tmp_path / "create.json").write_text('{"id": "from-file"}', encoding="utf-8")
        ctx = make_context({"references": REFERENCES}, mocked=True)
        stage = make_stage(mock={"payloadFile": "create.json"}, output={"id": "{{response.id}}"})

        await plugin.execute(stage, ctx)
        assert ctx.endpoint_outputs["create"]["id"] == "from-file"
        assert ctx.endpoint_outputs["create"]["http_status"] == "201"

    @pytest.mark.asyncio
    async def test_mock_status_jump(self, plugin, make_context) -> None:
        ctx = make_context({"references": REFERENCES}, mocked=True)
        stage = make_stage(mock={"status": 409, "payload": "{}"}, jumpOnStatus={409: "endStage"})
        assert await plugin.execute(stage, ctx) == "endStage"

    @pytest.mark.asyncio
    async def test_invalid_mock_json(self, plugin, make_context) -> None:
        ctx = make_context({"references": REFERENCES}, mocked=True)
        stage = make_stage(mock={"payload": "{not json"})
        with pytest.raises(ConfigurationError, match="not valid JSON"):
            await plugin.execute(stage, ctx)
