import json
import logging
import re
import time
from dataclasses import asdict
from typing import Any, Optional

from vcheck.core.config import get_settings
from vcheck.models import CheckDefinition, ExecutionType, Host, VCenter
from vcheck.schemas import CheckEngineResult
from vcheck.services.cancellation import CancellationSignal
from vcheck.services.credentials import CredentialService
from vcheck.services.engines.base import CheckEngine, parse_check_parameters
from vcheck.services.powershell import PowerShellService

settings = get_settings()
logger = logging.getLogger(__name__)

_HOST_CONTEXT_PATTERN = re.compile(r"\$VMHost\b|Get-VMHost", re.IGNORECASE)
_READ_VERBS = ("Get-", "Invoke-")
_DESTRUCTIVE_VERBS = ("Remove-", "Delete-")


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def format_objects(objects: list[Any]) -> str:
    """Collapses PowerShell pipeline objects into one line each.

    An object with a single property becomes that property's value, an object
    with several becomes "Name: value" pairs joined by commas, anything else
    uses its plain string form. Lines are joined with newlines.
    """
    lines = []
    for obj in objects:
        if isinstance(obj, dict) and len(obj) == 1:
            lines.append(_format_value(next(iter(obj.values()))))
        elif isinstance(obj, dict) and obj:
            lines.append(", ".join(f"{name}: {_format_value(value)}" for name, value in obj.items()))
        elif isinstance(obj, dict):
            lines.append("")
        else:
            lines.append(_format_value(obj))
    return "\n".join(lines)


class PowerCLICheckEngine(CheckEngine):
    """Runs user-authored PowerCLI check scripts against a vCenter host."""

    execution_type = ExecutionType.POWERCLI.value

    def __init__(self, credential_service: CredentialService, powershell_service: PowerShellService):
        self.credential_service = credential_service
        self.powershell_service = powershell_service

    @staticmethod
    def build_script(definition: CheckDefinition) -> str:
        """Wraps the check body with vCenter connect/disconnect and host context.

        The disconnect sits in a `finally` block so the connection is released
        on every exit path of the user script, including terminating errors.
        """
        lines = []
        if settings.IGNORE_INVALID_CERTIFICATES:
            lines.append(
                "Set-PowerCLIConfiguration -InvalidCertificateAction Ignore -Scope Session "
                "-Confirm:$false -ErrorAction SilentlyContinue | Out-Null"
            )
        lines.append("try {")
        lines.append("    $connection = Connect-VIServer -Server $VCenterUrl -User $Username -Password $Password -ErrorAction Stop")
        if _HOST_CONTEXT_PATTERN.search(definition.script or ""):
            lines.append("    $VMHost = Get-VMHost -Name $HostName -ErrorAction Stop")
        lines.append("")
        lines.append("    # User-defined check script")
        lines.append(definition.script)
        lines.append("")
        lines.append("} finally {")
        lines.append("    Disconnect-VIServer -Server $VCenterUrl -Confirm:$false -ErrorAction SilentlyContinue")
        lines.append("}")
        return "\n".join(lines)

    def build_parameters(
        self, host: Host, definition: CheckDefinition, vcenter: VCenter, username: str, password: str
    ) -> dict[str, Any]:
        parameters: dict[str, Any] = {
            "VCenterUrl": vcenter.url,
            "Username": username,
            "Password": password,
            "HostName": host.name,
        }
        parameters.update(parse_check_parameters(definition, logger))
        return parameters

    async def execute(
        self,
        host: Host,
        definition: CheckDefinition,
        vcenter: VCenter,
        cancel: Optional[CancellationSignal] = None,
    ) -> CheckEngineResult:
        start = time.perf_counter()
        try:
            logger.debug(f"Executing PowerCLI check '{definition.name}' on host '{host.display_name}'")

            credentials = self.credential_service.decrypt(vcenter.encrypted_credentials)
            if credentials is None:
                return CheckEngineResult(
                    success=False,
                    error_message="Failed to decrypt vCenter credentials",
                    execution_time=time.perf_counter() - start,
                )

            script = self.build_script(definition)
            parameters = self.build_parameters(
                host, definition, vcenter, credentials.full_username, credentials.password
            )
            ps_result = await self.powershell_service.execute_powercli(script, parameters)

            result = CheckEngineResult(
                success=ps_result.success,
                execution_time=ps_result.execution_time,
                raw_data=json.dumps(asdict(ps_result), default=str),
                metadata={"exit_code": ps_result.exit_code, "object_count": len(ps_result.objects)},
            )
            if ps_result.success:
                result.output = format_objects(ps_result.objects) if ps_result.objects else ps_result.stdout
                if ps_result.warnings:
                    result.warnings = list(ps_result.warnings)
            else:
                result.error_message = ps_result.error_message or "PowerCLI script failed"
                result.output = ps_result.stdout

            logger.debug(
                f"PowerCLI check '{definition.name}' on host '{host.display_name}' completed in "
                f"{(time.perf_counter() - start) * 1000:.0f}ms with status: {result.success}"
            )
            return result
        except Exception as e:
            logger.exception(f"PowerCLI check '{definition.name}' on host '{host.display_name}' failed with exception")
            return CheckEngineResult(
                success=False,
                error_message=str(e),
                execution_time=time.perf_counter() - start,
            )

    async def validate(
        self,
        host: Host,
        definition: CheckDefinition,
        vcenter: VCenter,
        cancel: Optional[CancellationSignal] = None,
    ) -> CheckEngineResult:
        """Static script review followed by a dry run of the check.

        Why: Check scripts are expected to be read-only. Missing read verbs or
        present destructive verbs are surfaced as advisory warnings, never as
        failures, so the author can still save an unusual but intended script.
        """
        logger.debug(f"Validating PowerCLI check '{definition.name}'")
        script = definition.script or ""
        warnings = []
        if not any(verb in script for verb in _READ_VERBS):
            warnings.append("Script does not contain common PowerCLI cmdlets (Get-*, Invoke-*)")
        if any(verb in script for verb in _DESTRUCTIVE_VERBS):
            warnings.append("Script contains potentially destructive operations")

        dry_run = await self.execute(host, definition, vcenter, cancel)
        return CheckEngineResult(
            success=dry_run.success,
            output=dry_run.output,
            error_message=dry_run.error_message,
            execution_time=dry_run.execution_time,
            warnings=warnings + (dry_run.warnings or []),
        )

    async def is_available(self) -> bool:
        try:
            return await self.powershell_service.test_powercli_availability()
        except Exception as e:
            logger.error(f"Failed to check PowerCLI availability: {e}")
            return False
