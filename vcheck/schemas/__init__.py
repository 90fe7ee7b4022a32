from .check import (
    ApiCheckResult,
    CheckDefinitionCreate,
    CheckEngineResult,
    CheckExecution,
    CheckRunSummary,
    CheckValidationResult,
    ParameterValue,
    VCenterCredentials,
)
