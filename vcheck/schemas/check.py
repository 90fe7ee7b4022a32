import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator

from vcheck.core.config import get_settings
from vcheck.models import CheckDefinition, CheckSeverity, ExecutionType, Host, VCenter
from vcheck.utils.time import utcnow

settings = get_settings()

ParameterValue = Union[bool, int, float, str]


class VCenterCredentials(BaseModel):
    username: str
    password: str
    domain: str = ""

    @property
    def full_username(self) -> str:
        return f"{self.domain}\\{self.username}" if self.domain else self.username

    @property
    def is_valid(self) -> bool:
        return bool(self.username.strip()) and bool(self.password.strip())


class CheckEngineResult(BaseModel):
    """Backend-level outcome of a single check execution."""
    success: bool = False
    output: str = ""
    error_message: Optional[str] = None
    execution_time: float = 0.0  # seconds
    raw_data: Optional[str] = None
    warnings: Optional[list[str]] = None
    metadata: Optional[dict[str, Any]] = None

    def add_warning(self, warning: str) -> None:
        if self.warnings is None:
            self.warnings = []
        self.warnings.append(warning)


class ApiCheckResult(BaseModel):
    """Answer of the vSphere REST session collaborator for one check call."""
    success: bool = False
    data: str = ""
    error_message: Optional[str] = None
    properties: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class CheckValidationResult(BaseModel):
    is_valid: bool = False
    error_message: str = ""
    sample_output: str = ""
    warnings: list[str] = Field(default_factory=list)
    execution_time: float = 0.0


class CheckRunSummary(BaseModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    total_execution_time: float = 0.0


@dataclass
class CheckExecution:
    """One (host, check, vCenter) triple queued for a batch run."""
    host: Host
    check_definition: CheckDefinition
    vcenter: VCenter
    is_manual_run: bool = False
    priority: int = 0
    timeout_seconds: Optional[int] = None  # overrides CheckDefinition.timeout_seconds
    scheduled_at: datetime = field(default_factory=utcnow)


class CheckDefinitionCreate(BaseModel):
    """Validated input for a new check definition.

    Parameters and thresholds are typed maps here and are only serialised to
    JSON text when the table row is built.
    """
    name: str
    category: str = "General"
    description: str = ""
    execution_type: ExecutionType = ExecutionType.VSPHERE_REST_API
    script: str
    parameters: dict[str, ParameterValue] = Field(default_factory=dict)
    thresholds: dict[str, ParameterValue] = Field(default_factory=dict)
    threshold_criteria: Optional[str] = None
    default_severity: CheckSeverity = CheckSeverity.WARNING
    enabled: bool = True
    timeout_seconds: int = Field(default=settings.DEFAULT_TIMEOUT_SECONDS, gt=0, le=settings.MAX_TIMEOUT_SECONDS)

    @field_validator("name", "script")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be blank")
        return value

    def to_model(self) -> CheckDefinition:
        return CheckDefinition(
            name=self.name,
            category=self.category,
            description=self.description,
            execution_type=self.execution_type.value,
            script=self.script,
            parameters=json.dumps(self.parameters),
            thresholds=json.dumps(self.thresholds),
            threshold_criteria=self.threshold_criteria,
            default_severity=self.default_severity,
            enabled=self.enabled,
            timeout_seconds=self.timeout_seconds,
        )
