from vcheck.services.credentials import CredentialService
from vcheck.services.engines.base import CheckEngine, parse_check_parameters
from vcheck.services.engines.powercli import PowerCLICheckEngine, format_objects
from vcheck.services.engines.rest import RestApiCheckEngine, determine_check_type
from vcheck.services.powershell import PowerShellService
from vcheck.services.vsphere import VSphereRestService


def build_engine_registry(
    credential_service: CredentialService,
    powershell_service: PowerShellService,
    vsphere_service: VSphereRestService,
) -> dict[str, CheckEngine]:
    """Builds the execution-type -> engine mapping handed to the execution service."""
    engines: list[CheckEngine] = [
        PowerCLICheckEngine(credential_service, powershell_service),
        RestApiCheckEngine(credential_service, vsphere_service),
    ]
    return {engine.execution_type: engine for engine in engines}


__all__ = [
    "CheckEngine",
    "PowerCLICheckEngine",
    "RestApiCheckEngine",
    "build_engine_registry",
    "determine_check_type",
    "format_objects",
    "parse_check_parameters",
]
