"""Command line interface for running integration workflows.

    integration-workflows onboarding.workflow --env dev --catalog catalog.json \\
        --catalog-version 3.10 --input email=a@b.c --mocked

Prints the workflow result as JSON on stdout; logs go to stderr. Exit code
is 0 when the workflow finished Ok, 1 otherwise (including configuration
and validation errors).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any

from .context import AppContext
from .engine.exceptions import ConfigurationError, WorkflowError, WorkflowValidationError
from .engine.execution_context import RunOptions

logger = logging.getLogger(__name__)

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def parse_input_pairs(pairs: list[str] | None) -> dict[str, str]:
    """Parse repeated ``--input key=value`` arguments.

    Raises:
        ConfigurationError: A pair without ``=`` or with an empty key
    """
    inputs: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ConfigurationError(f"Invalid --input '{pair}'. Expected key=value.")
        inputs[key.strip()] = value
    return inputs


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="integration-workflows",
        description="Run a declarative integration workflow.",
    )
    parser.add_argument("workflow", help="Workflow file to run")
    parser.add_argument("--env", required=True, help="Environment name (dev, qa, prod, ...)")
    parser.add_argument("--catalog", help="API catalog JSON file")
    parser.add_argument("--catalog-version", help="API catalog version")
    parser.add_argument(
        "--input",
        action="append",
        metavar="KEY=VALUE",
        help="Workflow input (repeatable)",
    )
    parser.add_argument("--varsfile", help="Vars file supplying root inputs (overrides sidecars)")
    parser.add_argument("--envfile", help="Environment file used instead of the workflow's")
    parser.add_argument("--config", help="workflows.config file selecting stage plugins")
    parser.add_argument("--mocked", action="store_true", help="Use stage mocks instead of calls")
    parser.add_argument("--debug", action="store_true", help="Log stage debug maps")
    parser.add_argument("--verbose", action="store_true", help="DEBUG logging")
    parser.add_argument(
        "--validate-only", action="store_true", help="Validate the workflow tree and exit"
    )
    parser.add_argument(
        "--no-output-file", action="store_true", help="Do not write workflow output files"
    )
    return parser


def configure_logging(verbose: bool) -> None:
    """Configure logging to stderr (stdout carries the JSON result)."""
    log_level_str = os.getenv("INTEGRATION_WORKFLOWS_LOG_LEVEL", "INFO").upper()
    if log_level_str not in VALID_LOG_LEVELS:
        print(
            f"Warning: Invalid INTEGRATION_WORKFLOWS_LOG_LEVEL '{log_level_str}'. "
            f"Valid levels: {', '.join(sorted(VALID_LOG_LEVELS))}. "
            "Using INFO.",
            file=sys.stderr,
        )
        log_level_str = "INFO"

    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, log_level_str),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


async def run_from_args(args: argparse.Namespace) -> dict[str, Any]:
    """Load, validate and run the workflow described by parsed arguments.

    Returns:
        JSON-serializable response (``status`` is ``Ok`` or ``Error``)

    Raises:
        WorkflowError: Configuration or validation failure
    """
    app = AppContext.create(args.workflow, catalog_path=args.catalog, config_path=args.config)
    document = app.load(args.workflow, environment_file=args.envfile)
    app.validate(document)
    if args.validate_only:
        logger.info(f"Workflow '{document.definition.name}' is valid.")
        return {"status": "Ok", "message": "Workflow is valid.", "errors": []}

    options = RunOptions(
        environment=args.env,
        catalog_version=args.catalog_version,
        mocked=args.mocked,
        debug=args.debug,
        write_output=not args.no_output_file,
    )
    inputs: dict[str, str] = {}
    if args.varsfile:
        inputs.update(app.load_vars_file(args.varsfile, options, document))
    inputs.update(parse_input_pairs(args.input))

    result = await app.run(document, inputs, options)
    return result.to_response()


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``integration-workflows`` command."""
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        response = asyncio.run(run_from_args(args))
    except WorkflowValidationError as e:
        logger.error(str(e))
        response = {"status": "Error", "message": str(e), "errors": e.errors}
    except WorkflowError as e:
        logger.error(f"Workflow failed: {e}")
        response = {"status": "Error", "message": str(e)}
    except OSError as e:
        logger.error(f"Workflow failed: {e}")
        response = {"status": "Error", "message": f"I/O error: {e}"}
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        return 130

    print(json.dumps(response, indent=2, ensure_ascii=False))
    return 0 if response.get("status") == "Ok" else 1


__all__ = ["build_parser", "configure_logging", "main", "parse_input_pairs", "run_from_args"]
