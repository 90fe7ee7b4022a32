import json
import logging
import time
from typing import Any, Optional

from vcheck.models import CheckDefinition, ExecutionType, Host, VCenter
from vcheck.schemas import ApiCheckResult, CheckEngineResult
from vcheck.services.cancellation import CancellationSignal
from vcheck.services.credentials import CredentialService
from vcheck.services.engines.base import CheckEngine, parse_check_parameters
from vcheck.services.vsphere import VSphereRestService

logger = logging.getLogger(__name__)

DEFAULT_CHECK_TYPE = "host-configuration"

# First match wins; applied to the check name, then to the script body
CHECK_TYPE_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("storage", "datastore", "vmfs"), "host-storage"),
    (("network", "vnic", "vmkernel"), "host-networking"),
    (("cpu", "memory", "performance"), "host-performance"),
    (("iscsi",), "host-storage"),
    (("hardware", "bios", "firmware"), "host-hardware"),
    (("security", "firewall", "certificate", "ssh"), "host-security"),
    (("configuration", "settings", "policy"), "host-configuration"),
)


def _match_check_type(text: Optional[str]) -> Optional[str]:
    if not text or not text.strip():
        return None
    lowered = text.lower()
    for keywords, check_type in CHECK_TYPE_RULES:
        if any(keyword in lowered for keyword in keywords):
            return check_type
    return None


def determine_check_type(definition: CheckDefinition) -> str:
    """Maps a check definition to one of the REST API host check types."""
    return (
        _match_check_type(definition.name)
        or _match_check_type(definition.script)
        or DEFAULT_CHECK_TYPE
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class RestApiCheckEngine(CheckEngine):
    """Runs checks through the vSphere Automation REST API.

    Every execution opens its own session and always closes it, whatever
    happens to the check call in between.
    """

    execution_type = ExecutionType.VSPHERE_REST_API.value

    def __init__(self, credential_service: CredentialService, vsphere_service: VSphereRestService):
        self.credential_service = credential_service
        self.vsphere_service = vsphere_service

    def build_parameters(self, definition: CheckDefinition) -> dict[str, Any]:
        parameters = {}
        for name, value in parse_check_parameters(definition, logger).items():
            if value is None or isinstance(value, (bool, int, float, str)):
                parameters[name] = value
            else:
                parameters[name] = json.dumps(value, default=str)
        parameters["timeout"] = definition.timeout_seconds
        parameters["category"] = definition.category or "Unknown"
        severity = definition.default_severity
        parameters["severity"] = getattr(severity, "value", severity)
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
            logger.debug(f"Executing REST API check '{definition.name}' on host '{host.display_name}'")

            credentials = self.credential_service.decrypt(vcenter.encrypted_credentials)
            if credentials is None:
                return CheckEngineResult(
                    success=False,
                    error_message="Failed to decrypt vCenter credentials",
                    execution_time=time.perf_counter() - start,
                )

            try:
                session = await self.vsphere_service.connect(vcenter, credentials, cancel)
            except Exception as e:
                logger.warning(f"Failed to connect to vCenter {vcenter.display_name}: {e}")
                return CheckEngineResult(
                    success=False,
                    error_message=f"Failed to connect to vCenter: {e}",
                    execution_time=time.perf_counter() - start,
                )

            try:
                parameters = self.build_parameters(definition)
                check_type = determine_check_type(definition)
                api_result = await self.vsphere_service.execute_check(
                    session, host.mo_id, check_type, parameters, cancel
                )

                result = CheckEngineResult(
                    success=api_result.success,
                    output=api_result.data,
                    execution_time=time.perf_counter() - start,
                    raw_data=api_result.model_dump_json(),
                    metadata={"check_type": check_type, "session_id": session.session_id},
                )
                if not api_result.success:
                    result.error_message = api_result.error_message or "Check execution failed"
                elif definition.has_threshold:
                    self.annotate_thresholds(result, definition, api_result)

                logger.debug(
                    f"REST API check '{definition.name}' on host '{host.display_name}' completed in "
                    f"{(time.perf_counter() - start) * 1000:.0f}ms with status: {result.success}"
                )
                return result
            finally:
                await self.vsphere_service.disconnect(session)
        except Exception as e:
            logger.exception(f"REST API check '{definition.name}' on host '{host.display_name}' failed with exception")
            return CheckEngineResult(
                success=False,
                error_message=str(e),
                execution_time=time.perf_counter() - start,
            )

    def annotate_thresholds(
        self, result: CheckEngineResult, definition: CheckDefinition, api_result: ApiCheckResult
    ) -> None:
        """Adds a warning for every numeric property above its configured threshold.

        Only annotates; the pass/fail verdict is left to the execution service.
        """
        properties = {str(key).lower(): value for key, value in api_result.properties.items()}
        for key, limit in definition.get_thresholds().items():
            actual = properties.get(str(key).lower())
            if _is_number(actual) and _is_number(limit) and actual > limit:
                message = f"{key} value {actual} exceeds threshold {limit}"
                logger.info(f"Check '{definition.name}': {message}")
                result.add_warning(message)

    async def validate(
        self,
        host: Host,
        definition: CheckDefinition,
        vcenter: VCenter,
        cancel: Optional[CancellationSignal] = None,
    ) -> CheckEngineResult:
        """Static review of the definition plus a vCenter connection test.

        Why: REST checks read live inventory; validating never runs the check
        itself, it only proves the definition is complete and the vCenter is
        reachable with the stored credentials.
        """
        start = time.perf_counter()
        logger.debug(f"Validating REST API check '{definition.name}'")
        warnings = []

        if not definition.name or not definition.name.strip():
            warnings.append("Check name is required")
        if definition.timeout_seconds is None or definition.timeout_seconds <= 0:
            warnings.append("Check timeout must be greater than 0")
        if definition.has_threshold and not definition.get_thresholds() and not (
            definition.threshold_criteria and definition.threshold_criteria.strip()
        ):
            warnings.append("Threshold configuration is incomplete")

        credentials = self.credential_service.decrypt(vcenter.encrypted_credentials)
        if credentials is None:
            warnings.append("Unable to decrypt vCenter credentials")
        else:
            connection = await self.vsphere_service.test_connection(vcenter, credentials, cancel)
            if not connection.success:
                warnings.append(f"vCenter connection test failed: {connection.error_message}")

        return CheckEngineResult(
            success=not warnings,
            output="Validation successful" if not warnings else "Validation completed with warnings",
            warnings=warnings,
            execution_time=time.perf_counter() - start,
            metadata={"check_type": determine_check_type(definition)},
        )

    async def is_available(self) -> bool:
        return True
