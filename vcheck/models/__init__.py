from .inventory import VCenter, Host, HostProfile, HostType, HealthStatus
from .check import (
    CheckDefinition,
    CheckResult,
    CheckStatus,
    CheckSeverity,
    ExecutionType,
    ATTENTION_STATUSES,
)
