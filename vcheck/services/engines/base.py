import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from vcheck.models import CheckDefinition, Host, VCenter
from vcheck.schemas import CheckEngineResult
from vcheck.services.cancellation import CancellationSignal


def parse_check_parameters(definition: CheckDefinition, logger: logging.Logger) -> dict[str, Any]:
    """Leniently decodes the JSON parameter bag of a check definition.

    Malformed JSON or a non-object document is logged and treated as an
    empty parameter set; it never fails the check.
    """
    raw = definition.parameters
    if not raw or not raw.strip():
        return {}
    try:
        parameters = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse custom parameters for check '{definition.name}': {e}")
        return {}
    if not isinstance(parameters, dict):
        logger.warning(f"Ignoring non-object parameters for check '{definition.name}'")
        return {}
    return parameters


class CheckEngine(ABC):
    """Executes checks of one execution type against a host.

    Ordinary failures (connection refused, script error, bad response) are
    reported as `CheckEngineResult(success=False)`. Only `asyncio.CancelledError`
    and programming errors escape.
    """

    execution_type: str = ""

    @abstractmethod
    async def execute(
        self,
        host: Host,
        definition: CheckDefinition,
        vcenter: VCenter,
        cancel: Optional[CancellationSignal] = None,
    ) -> CheckEngineResult:
        ...

    @abstractmethod
    async def validate(
        self,
        host: Host,
        definition: CheckDefinition,
        vcenter: VCenter,
        cancel: Optional[CancellationSignal] = None,
    ) -> CheckEngineResult:
        ...

    @abstractmethod
    async def is_available(self) -> bool:
        ...
