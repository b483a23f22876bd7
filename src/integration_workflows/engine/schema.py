"""
Workflow document schema with Pydantic v2 models.

This module defines the typed representation of a workflow document:
- Workflow metadata (version, id, name, description, output flag)
- References to APIs, child workflows and an environment file
- Input declarations and init-stage variables (globals)
- Named resilience policies (retries, circuit breakers)
- Ordered stage definitions (Endpoint, Workflow or any plugin kind)
- End stage (output map, context writes, result message)

Documents use camelCase keys (``initStage``, ``jumpOnStatus``, ``delayMs``).
Models accept both the camelCase alias and the snake_case field name.

Structural checks live here (types, required keys, mutually exclusive mock
payloads). Cross-reference checks (unknown apiRef, unknown jump target,
out-of-scope template tokens) live in ``validation`` because they need the
plugin registry and the filesystem.
"""

import json
from datetime import date, datetime, time
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def _bool_to_text(v: Any) -> Any:
    # Unquoted YAML true/false arrive as booleans
    if isinstance(v, bool):
        return "true" if v else "false"
    return v


TemplateText = Annotated[str, BeforeValidator(_bool_to_text)]
TemplateMap = dict[str, TemplateText]


class _DocumentModel(BaseModel):
    """Base model for document sections (camelCase aliases, unknown keys ignored)."""

    model_config = {
        "extra": "ignore",
        "alias_generator": to_camel,
        "populate_by_name": True,
        "coerce_numbers_to_str": True,
    }


class VariableType(str, Enum):
    """
    Value generators available to init-stage variables and inputs.

    Type mappings:
    - fixed: literal value (template-resolved)
    - number: random integer in [min, max], optional zero padding
    - text: random alphanumeric string of ``length`` characters
    - guid: random UUID4
    - ulid: new ULID
    - datetime / date / time: random instant inside an optional range
    - sequence: ``start + (index - 1) * step``
    """

    FIXED = "fixed"
    NUMBER = "number"
    TEXT = "text"
    GUID = "guid"
    ULID = "ulid"
    DATETIME = "datetime"
    DATE = "date"
    TIME = "time"
    SEQUENCE = "sequence"

    @classmethod
    def _missing_(cls, value: object) -> "VariableType | None":
        # Documents write "Fixed", "DateTime", "ULID"
        if isinstance(value, str):
            lowered = value.lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None

    def is_temporal(self) -> bool:
        """Check if the type generates a date, time or datetime."""
        return self in (VariableType.DATETIME, VariableType.DATE, VariableType.TIME)


# ============================================================================
# References
# ============================================================================


class WorkflowReferenceItem(_DocumentModel):
    """Named alias for a child workflow file (path relative to the parent)."""

    name: str = Field(default="", description="Alias used by stage workflowRef")
    path: str = Field(default="", description="Workflow file path relative to this document")


class ApiReferenceItem(_DocumentModel):
    """Named alias for an API definition in the catalog."""

    name: str = Field(default="", description="Alias used by stage apiRef")
    definition: str = Field(default="", description="Definition name in the API catalog")


class WorkflowReferences(_DocumentModel):
    workflows: list[WorkflowReferenceItem] = Field(default_factory=list)
    apis: list[ApiReferenceItem] = Field(default_factory=list)
    environment_file: str | None = Field(
        default=None, description="KEY=VALUE file relative to this document"
    )


# ============================================================================
# Inputs and init stage
# ============================================================================


class WorkflowInputDefinition(_DocumentModel):
    name: str = Field(default="", description="Input name referenced as {{input.name}}")
    type: VariableType = Field(default=VariableType.FIXED, description="Declared value type")
    required: bool = Field(default=True, description="Whether the caller must provide it")
    description: str | None = None


class WorkflowVariableDefinition(_DocumentModel):
    """
    Init-stage variable producing a global value.

    Attributes:
        name: Variable name referenced as {{global.name}}
        type: Generator type
        value: Literal value for ``fixed`` variables (templates allowed)
        min/max/padding: Number generator settings
        length: Text generator length
        from_date_time/to_date_time, from_date/to_date, from_time/to_time: Temporal ranges
        format: strftime format overriding the default temporal rendering
        start/step: Sequence generator settings
    """

    name: str = ""
    type: VariableType = VariableType.FIXED
    value: TemplateText | None = None
    min: int | None = None
    max: int | None = None
    padding: int | None = None
    length: int | None = None
    from_date_time: datetime | None = None
    to_date_time: datetime | None = None
    from_date: date | None = None
    to_date: date | None = None
    from_time: time | None = None
    to_time: time | None = None
    format: str | None = None
    start: int | None = None
    step: int | None = None

    def has_range_settings(self) -> bool:
        """Check if any generator-specific setting is present."""
        return any(
            v is not None
            for v in (
                self.min,
                self.max,
                self.padding,
                self.length,
                self.from_date_time,
                self.to_date_time,
                self.from_date,
                self.to_date,
                self.from_time,
                self.to_time,
                self.format,
                self.start,
                self.step,
            )
        )


class WorkflowInitStage(_DocumentModel):
    variables: list[WorkflowVariableDefinition] = Field(default_factory=list)
    context: TemplateMap | None = Field(
        default=None, description="Context seed, only applied to absent keys"
    )


# ============================================================================
# Resilience
# ============================================================================


class RetryPolicyDefinition(_DocumentModel):
    max_retries: int | None = None
    delay_ms: int | None = None
    backoff_multiplier: float | None = Field(
        default=None, description="Delay multiplier per attempt (1.0 = fixed delay)"
    )


class CircuitBreakerDefinition(_DocumentModel):
    failure_threshold: int | None = None
    break_ms: int | None = None
    close_on_success_attempts: int | None = None


class WorkflowResilienceDefinition(_DocumentModel):
    retries: dict[str, RetryPolicyDefinition] = Field(default_factory=dict)
    circuit_breakers: dict[str, CircuitBreakerDefinition] = Field(default_factory=dict)


class RetryMessages(_DocumentModel):
    on_exception: str | None = None


class CircuitBreakerMessages(_DocumentModel):
    on_open: str | None = None
    on_blocked: str | None = None


class StageRetryDefinition(_DocumentModel):
    """Stage retry block: optional named policy ref plus inline overrides."""

    ref: str | None = None
    max_retries: int | None = None
    delay_ms: int | None = None
    backoff_multiplier: float | None = None
    http_status: list[int] | None = Field(
        default=None, description="Response statuses that trigger a retry"
    )
    messages: RetryMessages | None = None


class StageCircuitBreakerDefinition(_DocumentModel):
    """Stage circuit breaker block: optional named policy ref plus inline overrides."""

    ref: str | None = None
    failure_threshold: int | None = None
    break_ms: int | None = None
    close_on_success_attempts: int | None = None
    messages: CircuitBreakerMessages | None = None


# ============================================================================
# Stages
# ============================================================================


class StageMockDefinition(_DocumentModel):
    """
    Synthetic stage result used in mocked mode.

    Endpoint stages use ``status`` with ``payload`` or ``payloadFile``.
    Workflow stages use ``output``.
    """

    status: int | None = None
    payload: str | None = None
    payload_file: str | None = None
    output: TemplateMap | None = None

    @field_validator("payload", mode="before")
    @classmethod
    def dump_structured_payload(cls, v: Any) -> Any:
        if isinstance(v, (dict, list)):
            return json.dumps(v)
        return v

    @model_validator(mode="after")
    def validate_payload_exclusive(self) -> "StageMockDefinition":
        if self.payload is not None and self.payload_file is not None:
            raise ValueError("mock.payload and mock.payloadFile are mutually exclusive")
        return self


class WorkflowStageDefinition(_DocumentModel):
    """
    One unit of work in a workflow.

    ``kind`` selects the stage plugin. Endpoint fields (apiRef, endpoint,
    httpVerb, expectedStatus, headers, query, body, retry, circuitBreaker)
    and Workflow fields (workflowRef, inputs, allowVersion) share one model;
    each plugin validates the fields it needs.

    Example:
        stages:
          - name: create_account
            kind: Endpoint
            apiRef: accounts
            endpoint: /api/accounts
            httpVerb: POST
            expectedStatus: 201
            body: '{"name": "{{input.accountName}}"}'
            output:
              id: "{{response.id}}"
            jumpOnStatus:
              409: endStage
    """

    name: str = ""
    kind: str = ""
    api_ref: str | None = None
    endpoint: str | None = None
    http_verb: str | None = None
    expected_status: int | None = None
    headers: TemplateMap | None = None
    query: TemplateMap | None = None
    body: str | None = None
    workflow_ref: str | None = None
    inputs: TemplateMap | None = None
    debug: TemplateMap | None = None
    message: str | None = None
    output: TemplateMap | None = None
    jump_on_status: dict[int, str] | None = None
    delay_seconds: int | None = None
    allow_version: str | None = None
    run_if: str | None = None
    set: TemplateMap | None = None
    context: TemplateMap | None = None
    mock: StageMockDefinition | None = None
    retry: StageRetryDefinition | None = None
    circuit_breaker: StageCircuitBreakerDefinition | None = None

    @field_validator("body", mode="before")
    @classmethod
    def dump_structured_body(cls, v: Any) -> Any:
        if isinstance(v, (dict, list)):
            return json.dumps(v)
        return v


# ============================================================================
# End stage and workflow
# ============================================================================


class WorkflowResultDefinition(_DocumentModel):
    message: str | None = None


class WorkflowEndStage(_DocumentModel):
    output: TemplateMap = Field(default_factory=dict)
    output_json: bool = Field(default=True, description="Parse JSON-looking values on write")
    context: TemplateMap | None = None
    result: WorkflowResultDefinition | None = None


class WorkflowDefinition(_DocumentModel):
    """
    Complete workflow document.

    Example:
        version: "3.10"
        id: onboarding
        name: onboarding
        references:
          apis:
            - name: accounts
              definition: accounts-api
        input:
          - name: accountName
            type: Fixed
        stages:
          - name: create_account
            kind: Endpoint
            ...
        endStage:
          output:
            accountId: "{{stage:create_account.output.id}}"
    """

    version: str = ""
    id: str = ""
    name: str = ""
    description: str | None = None
    references: WorkflowReferences | None = None
    input: list[WorkflowInputDefinition] = Field(default_factory=list)
    output: bool = False
    init_stage: WorkflowInitStage | None = None
    resilience: WorkflowResilienceDefinition | None = None
    stages: list[WorkflowStageDefinition] = Field(default_factory=list)
    end_stage: WorkflowEndStage | None = None

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, v: Any) -> Any:
        # YAML reads 3.10 as a float
        if isinstance(v, float):
            return str(v)
        return v

    def find_api_reference(self, name: str) -> ApiReferenceItem | None:
        apis = self.references.apis if self.references else []
        return next((a for a in apis if a.name.lower() == name.lower()), None)

    def find_workflow_reference(self, name: str) -> WorkflowReferenceItem | None:
        workflows = self.references.workflows if self.references else []
        return next((w for w in workflows if w.name.lower() == name.lower()), None)

    def find_stage(self, name: str) -> WorkflowStageDefinition | None:
        return next((s for s in self.stages if s.name.lower() == name.lower()), None)


# ============================================================================
# API catalog
# ============================================================================


class ApiDefinition(_DocumentModel):
    name: str
    swagger_url: str | None = None
    base_url: dict[str, str] | None = Field(
        default=None, description="Per-environment base URL overriding the version's"
    )
    base_path: str | None = None


class ApiCatalogVersion(_DocumentModel):
    version: str
    base_url: dict[str, str] = Field(default_factory=dict)
    definitions: list[ApiDefinition] = Field(default_factory=list)

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, v: Any) -> Any:
        if isinstance(v, float):
            return str(v)
        return v


__all__ = [
    "ApiCatalogVersion",
    "ApiDefinition",
    "ApiReferenceItem",
    "CircuitBreakerDefinition",
    "CircuitBreakerMessages",
    "RetryMessages",
    "RetryPolicyDefinition",
    "StageCircuitBreakerDefinition",
    "StageMockDefinition",
    "StageRetryDefinition",
    "TemplateMap",
    "TemplateText",
    "VariableType",
    "WorkflowDefinition",
    "WorkflowEndStage",
    "WorkflowInitStage",
    "WorkflowInputDefinition",
    "WorkflowReferenceItem",
    "WorkflowReferences",
    "WorkflowResilienceDefinition",
    "WorkflowResultDefinition",
    "WorkflowStageDefinition",
    "WorkflowVariableDefinition",
]
