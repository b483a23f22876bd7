"""Tests for the command line interface."""

from __future__ import annotations

import json

import pytest

from integration_workflows.cli import build_parser, main, parse_input_pairs
from integration_workflows.engine.exceptions import ConfigurationError

GREETING = """
version: "1.0"
id: greeting
name: greeting
references:
  apis:
    - name: accounts
      definition: accounts
input:
  - name: name
stages:
  - name: hello
    kind: Endpoint
    apiRef: accounts
    endpoint: /hello
    httpVerb: GET
    expectedStatus: 200
    output:
      text: "{{response.text}}"
    mock:
      payload: '{"text": "hi {{input.name}}"}'
endStage:
  output:
    text: "{{stage:hello.output.text}}"
"""


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    monkeypatch.delenv("INTEGRATION_WORKFLOWS_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def greeting(write_workflow) -> str:
    return str(write_workflow("greeting.workflow", GREETING))


def read_response(capsys) -> dict:
    return json.loads(capsys.readouterr().out)


class TestParseInputPairs:
    def test_pairs(self) -> None:
        assert parse_input_pairs(["a=1", " b =x=y", "c="]) == {"a": "1", "b": "x=y", "c": ""}
        assert parse_input_pairs(None) == {}

    @pytest.mark.parametrize("pair", ["novalue", "=x"])
    def test_invalid_pair(self, pair: str) -> None:
        with pytest.raises(ConfigurationError, match="Expected key=value"):
            parse_input_pairs([pair])


class TestParser:
    def test_env_is_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["main.workflow"])

    def test_repeated_inputs(self) -> None:
        args = build_parser().parse_args(
            ["main.workflow", "--env", "dev", "--input", "a=1", "--input", "b=2", "--mocked"]
        )
        assert args.input == ["a=1", "b=2"]
        assert args.mocked
        assert not args.no_output_file


class TestMain:
    """End-to-end runs through main()."""

    def test_validate_only(self, greeting, capsys) -> None:
        assert main([greeting, "--env", "dev", "--validate-only"]) == 0
        assert read_response(capsys) == {
            "status": "Ok",
            "message": "Workflow is valid.",
            "errors": [],
        }

    def test_mocked_run(self, greeting, capsys) -> None:
        exit_code = main([greeting, "--env", "dev", "--mocked", "--input", "name=Ada"])

        response = read_response(capsys)
        assert exit_code == 0
        assert response["status"] == "Ok"
        assert response["outputs"] == {"text": "hi Ada"}
        assert response["stages"] == {"hello": "completed"}

    def test_vars_file_supplies_inputs(self, greeting, write_workflow, capsys) -> None:
        vars_path = write_workflow("greeting.dev.wfvars", "name: Global\ndev:\nname: Dev\n")

        exit_code = main([greeting, "--env", "dev", "--mocked", "--varsfile", str(vars_path)])

        assert exit_code == 0
        assert read_response(capsys)["outputs"] == {"text": "hi Dev"}

    def test_explicit_input_overrides_vars_file(self, greeting, write_workflow, capsys) -> None:
        vars_path = write_workflow("greeting.dev.wfvars", "name: Global\n")

        main(
            [greeting, "--env", "dev", "--mocked"]
            + ["--varsfile", str(vars_path), "--input", "name=Cli"]
        )

        assert read_response(capsys)["outputs"] == {"text": "hi Cli"}

    def test_invalid_workflow(self, write_workflow, capsys) -> None:
        content = GREETING.replace("apiRef: accounts", "apiRef: billing")
        path = write_workflow("broken.workflow", content)

        exit_code = main([str(path), "--env", "dev", "--validate-only"])

        response = read_response(capsys)
        assert exit_code == 1
        assert response["status"] == "Error"
        assert response["errors"] == [
            "Stage 'hello' apiRef 'billing' is not declared in references.apis."
        ]

    def test_missing_input(self, greeting, capsys) -> None:
        assert main([greeting, "--env", "dev"]) == 1
        assert "Required input 'name' was not provided" in read_response(capsys)["message"]

    def test_missing_workflow_file(self, tmp_path, capsys) -> None:
        assert main([str(tmp_path / "nope.workflow"), "--env", "dev"]) == 1
        assert "Workflow file not found" in read_response(capsys)["message"]

    def test_unwritable_output_directory(self, write_workflow, capsys) -> None:
        """An output file that cannot be written ends the run with an Error response."""
        content = GREETING.replace("name: greeting\n", "name: greeting\noutput: true\n", 1)
        path = write_workflow("report.workflow", content)
        write_workflow("output", "not a directory")

        exit_code = main([str(path), "--env", "dev", "--mocked", "--input", "name=Ada"])

        response = read_response(capsys)
        assert exit_code == 1
        assert response["status"] == "Error"
        assert response["message"].startswith("I/O error:")
