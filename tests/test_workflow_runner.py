"""Tests for the workflow runner (stage sequencing, init and end stages)."""

from __future__ import annotations

import json

import pytest
from pytest_httpserver import HTTPServer
from werkzeug import Request, Response

from integration_workflows.engine.exceptions import ConfigurationError, MockedSelfJumpError
from integration_workflows.engine.execution_context import RunOptions
from integration_workflows.engine.loader import WorkflowLoader
from integration_workflows.engine.output_writer import WorkflowOutputWriter
from integration_workflows.engine.stage_status import StageStatus, WorkflowResultStatus
from integration_workflows.engine.workflow_runner import WorkflowRunner, WorkflowRunResult

ONBOARDING = """
version: "1.0"
id: onboarding
name: onboarding
references:
  apis:
    - name: accounts
      definition: accounts
input:
  - name: name
  - name: tag
    required: false
initStage:
  variables:
    - name: tenant
      type: Fixed
      value: "acme-{{input.name}}"
  context:
    attempt: "1"
stages:
  - name: create
    kind: Endpoint
    apiRef: accounts
    endpoint: /accounts
    httpVerb: POST
    expectedStatus: 201
    body: '{"name": "{{input.name}}", "tenant": "{{global.tenant}}"}'
    output:
      id: "{{response.id}}"
    jumpOnStatus:
      409: endStage
    set:
      accountId: "{{stage:create.output.id}}"
    context:
      created: "yes"
  - name: activate
    kind: Endpoint
    apiRef: accounts
    endpoint: "/accounts/{{global.accountId}}/activate"
    httpVerb: POST
    expectedStatus: 200
    runIf: "{{input.tag}} != null"
    mock:
      status: 200
      payload: '{"active": true}'
  - name: fetch
    kind: Endpoint
    apiRef: accounts
    endpoint: "/accounts/{{stage:create.output.id}}"
    httpVerb: GET
    expectedStatus: 200
    output:
      owner: "{{response.owner}}"
    mock:
      payload: '{"owner": "{{input.name}}"}'
endStage:
  output:
    id: "{{stage:create.output.id}}"
    status: "{{stage:create.output.http_status}}"
    owner: "{{stage:fetch.output.owner}}"
  context:
    finished: "{{context.created}}"
  result:
    message: "Account {{stage:create.output.id}} ready"
"""


@pytest.fixture
def onboarding(write_workflow):
    return WorkflowLoader().load(write_workflow("onboarding.workflow", ONBOARDING))


async def run(document, services, inputs=None, **options) -> WorkflowRunResult:
    return await WorkflowRunner().run(
        document, inputs, RunOptions(environment="dev", **options), services
    )


class TestStageSequencing:
    """Tests for the stage loop against a live server."""

    @pytest.mark.asyncio
    async def test_sequential_run(
        self, onboarding, make_services, accounts_api, httpserver: HTTPServer
    ) -> None:
        httpserver.expect_request(
            "/accounts", method="POST", json={"name": "Ada", "tenant": "acme-Ada"}
        ).respond_with_json({"id": "a-1"}, status=201)
        httpserver.expect_request("/accounts/a-1/activate", method="POST").respond_with_json(
            {"active": True}
        )
        httpserver.expect_request("/accounts/a-1", method="GET").respond_with_json(
            {"owner": "Ada"}
        )

        result = await run(onboarding, make_services(accounts_api), {"name": "Ada", "tag": ""})

        assert result.status is WorkflowResultStatus.OK
        assert result.outputs == {"id": "a-1", "status": "201", "owner": "Ada"}
        assert result.message == "Account a-1 ready"
        assert result.context == {"attempt": "1", "created": "yes", "finished": "yes"}
        assert result.stage_statuses == {
            "create": StageStatus.COMPLETED,
            "activate": StageStatus.COMPLETED,
            "fetch": StageStatus.COMPLETED,
        }

    @pytest.mark.asyncio
    async def test_run_if_skips_stage(
        self, onboarding, make_services, accounts_api, httpserver
    ) -> None:
        """A missing optional input is null, so the activate stage is skipped."""
        httpserver.expect_request("/accounts", method="POST").respond_with_json(
            {"id": "a-1"}, status=201
        )
        httpserver.expect_request("/accounts/a-1", method="GET").respond_with_json(
            {"owner": "Ada"}
        )

        result = await run(onboarding, make_services(accounts_api), {"name": "Ada"})

        assert result.status.is_ok()
        assert result.stage_statuses["activate"] is StageStatus.SKIPPED
        assert [entry[0].path for entry in httpserver.log] == ["/accounts", "/accounts/a-1"]

    @pytest.mark.asyncio
    async def test_jump_to_end_stage(
        self, onboarding, make_services, accounts_api, httpserver
    ) -> None:
        """409 jumps straight to the end stage; later stages never run."""
        httpserver.expect_request("/accounts", method="POST").respond_with_json(
            {"error": "exists"}, status=409
        )

        result = await run(onboarding, make_services(accounts_api), {"name": "Ada", "tag": "x"})

        assert result.status.is_ok()
        assert result.stage_statuses == {
            "create": StageStatus.JUMPED,
            "activate": StageStatus.PENDING,
            "fetch": StageStatus.PENDING,
        }
        assert result.outputs == {"id": "", "status": "409", "owner": ""}
        assert len(httpserver.log) == 1

    @pytest.mark.asyncio
    async def test_stage_failure_stops_workflow(
        self, onboarding, make_services, accounts_api, httpserver
    ) -> None:
        """A fatal failure ends the run with Error; end-stage context still runs."""
        httpserver.expect_request("/accounts", method="POST").respond_with_data("", status=500)

        result = await run(onboarding, make_services(accounts_api), {"name": "Ada", "tag": "x"})

        assert result.status is WorkflowResultStatus.ERROR
        assert "returned 500 but expected 201" in result.message
        assert result.stage_statuses["create"] is StageStatus.FAILED
        assert result.stage_statuses["fetch"] is StageStatus.PENDING
        assert result.context["finished"] == ""
        assert result.outputs == {}

    @pytest.mark.asyncio
    async def test_jump_backwards(
        self, write_workflow, make_services, accounts_api, httpserver
    ) -> None:
        """A jump to an earlier stage re-runs it until the status changes."""
        handler_calls: list[str] = []

        def handler(request: Request) -> Response:
            handler_calls.append(request.path)
            status = 202 if len(handler_calls) < 3 else 200
            return Response("{}", status=status, content_type="application/json")

        httpserver.expect_request("/jobs/1").respond_with_handler(handler)
        path = write_workflow(
            "poll.workflow",
            """
            version: "1.0"
            id: poll
            name: poll
            references:
              apis:
                - name: accounts
                  definition: accounts
            stages:
              - name: poll
                kind: Endpoint
                apiRef: accounts
                endpoint: /jobs/1
                httpVerb: GET
                expectedStatus: 200
                jumpOnStatus:
                  202: wait
              - name: wait
                kind: Endpoint
                apiRef: accounts
                endpoint: /jobs/1
                httpVerb: GET
                expectedStatus: 200
                runIf: "{{stage:poll.output.http_status}} == 202"
                jumpOnStatus:
                  202: poll
            """,
        )

        result = await run(WorkflowLoader().load(path), make_services(accounts_api))

        assert result.status.is_ok()
        assert len(handler_calls) == 3


class TestMockedRuns:
    """Tests for --mocked runs."""

    @pytest.mark.asyncio
    async def test_mocked_run_uses_mocks(self, write_workflow, make_services, httpserver) -> None:
        path = write_workflow(
            "mocked.workflow",
            """
            version: "1.0"
            id: mocked
            name: mocked
            references:
              apis:
                - name: accounts
                  definition: accounts
            input:
              - name: name
            stages:
              - name: create
                kind: Endpoint
                apiRef: accounts
                endpoint: /accounts
                httpVerb: POST
                expectedStatus: 201
                output:
                  id: "{{response.id}}"
                mock:
                  payload: '{"id": "mock-1"}'
            endStage:
              output:
                id: "{{stage:create.output.id}}"
            """,
        )

        result = await run(WorkflowLoader().load(path), make_services(), mocked=True)

        assert result.status.is_ok()
        assert result.outputs == {"id": "mock-1"}
        assert len(httpserver.log) == 0

    @pytest.mark.asyncio
    async def test_mocked_self_jump(self, write_workflow, make_services) -> None:
        path = write_workflow(
            "loop.workflow",
            """
            version: "1.0"
            id: loop
            name: loop
            references:
              apis:
                - name: accounts
                  definition: accounts
            stages:
              - name: poll
                kind: Endpoint
                apiRef: accounts
                endpoint: /jobs/1
                httpVerb: GET
                expectedStatus: 200
                jumpOnStatus:
                  202: poll
                mock:
                  status: 202
                  payload: "{}"
            """,
        )

        with pytest.raises(MockedSelfJumpError, match="poll"):
            await run(WorkflowLoader().load(path), make_services(), mocked=True)


class TestInitAndEndStage:
    """Tests for required inputs, init-stage values and outputs."""

    @pytest.mark.asyncio
    async def test_required_input_missing(self, onboarding, make_services) -> None:
        with pytest.raises(ConfigurationError, match="Required input 'name' was not provided"):
            await run(onboarding, make_services(), {})

    @pytest.mark.asyncio
    async def test_init_context_seeds_absent_keys_only(self, make_context) -> None:
        ctx = make_context(
            {
                "initStage": {
                    "variables": [{"name": "code", "type": "Number", "min": 7, "max": 7}],
                    "context": {"attempt": "1", "code": "{{global.code}}"},
                },
                "stages": [],
                "endStage": {"output": {"attempt": "{{context.attempt}}"}},
            }
        )
        ctx.context["attempt"] = "3"

        result = await WorkflowRunner().execute(ctx)

        assert ctx.globals == {"code": "7"}
        assert result.context == {"attempt": "3", "code": "7"}
        assert result.outputs == {"attempt": "3"}

    @pytest.mark.asyncio
    async def test_output_file_written(self, write_workflow, make_services, tmp_path) -> None:
        path = write_workflow(
            "report.workflow",
            """
            version: "1.0"
            id: report
            name: account report
            output: true
            references:
              apis:
                - name: accounts
                  definition: accounts
            stages:
              - name: fetch
                kind: Endpoint
                apiRef: accounts
                endpoint: /accounts
                httpVerb: GET
                expectedStatus: 200
                output:
                  items: "{{response.items}}"
                mock:
                  payload: '{"items": [1, 2]}'
            endStage:
              output:
                items: "{{stage:fetch.output.items}}"
            """,
        )
        services = make_services(output_writer=WorkflowOutputWriter())

        result = await run(WorkflowLoader().load(path), services, mocked=True)

        assert result.output_path is not None
        assert result.output_path.parent == tmp_path.resolve() / "output"
        assert result.output_path.name.startswith("account-report.report.")
        assert json.loads(result.output_path.read_text()) == {"items": [1, 2]}
        assert result.to_response()["outputFile"] == str(result.output_path)

    @pytest.mark.asyncio
    async def test_output_file_disabled(self, write_workflow, make_services, tmp_path) -> None:
        path = write_workflow(
            "quiet.workflow",
            """
            version: "1.0"
            id: quiet
            name: quiet
            output: true
            stages: []
            endStage:
              output:
                a: "1"
            """,
        )
        services = make_services(output_writer=WorkflowOutputWriter())

        result = await run(WorkflowLoader().load(path), services, write_output=False)

        assert result.output_path is None
        assert not (tmp_path / "output").exists()


class TestWorkflowRunResult:
    """Tests for the result value object."""

    def test_to_response(self) -> None:
        result = WorkflowRunResult(
            status=WorkflowResultStatus.OK,
            message="done",
            outputs={"id": "1"},
            stage_statuses={"create": StageStatus.JUMPED},
        )
        assert result.to_response() == {
            "status": "Ok",
            "message": "done",
            "outputs": {"id": "1"},
            "context": {},
            "stages": {"create": "jumped"},
        }

    def test_error_without_context(self) -> None:
        result = WorkflowRunResult.error("boom")
        assert result.status.is_error()
        assert result.context == {}
