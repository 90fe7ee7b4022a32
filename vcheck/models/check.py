import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlmodel import Field, SQLModel

from vcheck.core.config import get_settings
from vcheck.utils.time import utcnow

settings = get_settings()


class ExecutionType(str, Enum):
    POWERCLI = "PowerCLI"  # legacy script backend
    SSH = "SSH"
    VSPHERE_API = "vSphereAPI"
    VSPHERE_REST_API = "vSphereRestAPI"
    CUSTOM = "Custom"


class CheckSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class CheckStatus(str, Enum):
    UNKNOWN = "unknown"
    SUCCESS = "success"
    FAILED = "failed"
    WARNING = "warning"
    CRITICAL = "critical"
    ERROR = "error"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


ATTENTION_STATUSES = {
    CheckStatus.FAILED,
    CheckStatus.WARNING,
    CheckStatus.CRITICAL,
    CheckStatus.ERROR,
    CheckStatus.TIMEOUT,
}


def _load_json_map(raw: Optional[str]) -> dict[str, Any]:
    if not raw or not raw.strip():
        return {}
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError(f"expected a JSON object, got {type(value).__name__}")
    return value


class CheckDefinition(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    category: str = Field(default="General", index=True)
    name: str = Field(index=True)
    description: str = ""
    execution_type: str = Field(default=ExecutionType.POWERCLI.value)
    script: str = ""
    parameters: str = "{}"  # JSON object of ParameterValue
    thresholds: str = "{}"  # JSON object of ParameterValue
    threshold_criteria: Optional[str] = Field(default=None)  # e.g. ">=80", "not_empty"
    default_severity: CheckSeverity = Field(default=CheckSeverity.WARNING)
    enabled: bool = Field(default=True)
    timeout_seconds: int = Field(default=settings.DEFAULT_TIMEOUT_SECONDS)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_parameters(self) -> dict[str, Any]:
        try:
            return _load_json_map(self.parameters)
        except ValueError:
            return {}

    def get_thresholds(self) -> dict[str, Any]:
        try:
            return _load_json_map(self.thresholds)
        except ValueError:
            return {}

    @property
    def has_threshold(self) -> bool:
        return bool(self.threshold_criteria) or len(self.get_thresholds()) > 0


class CheckResult(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    host_id: Optional[int] = Field(default=None, index=True)
    check_definition_id: Optional[int] = Field(default=None, index=True)
    executed_at: datetime = Field(default_factory=utcnow, index=True)
    status: CheckStatus = Field(default=CheckStatus.UNKNOWN)
    output: str = ""
    details: str = ""
    error_message: str = ""
    execution_time: float = 0.0  # seconds
    raw_data: Optional[str] = Field(default=None)
    is_manual_run: bool = Field(default=False)
    run_by: Optional[str] = Field(default=None)  # user or scheduler that triggered the run

    @property
    def requires_attention(self) -> bool:
        return self.status in ATTENTION_STATUSES

    @property
    def summary(self) -> str:
        status = self.status.value if isinstance(self.status, CheckStatus) else str(self.status)
        text = f"Check {self.check_definition_id}: {status}"
        if self.output and len(self.output) > 100:
            text += f" - {self.output[:97]}..."
        elif self.output:
            text += f" - {self.output}"
        return text
