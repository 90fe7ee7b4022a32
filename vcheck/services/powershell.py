import asyncio
import json
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from vcheck.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

RESULT_MARKER = "__VCHECK_RESULT__"
PARAMS_ENV_VAR = "VCHECK_SCRIPT_PARAMS"

# Binds every key of the JSON parameter bag to a PowerShell variable of the same name
_PARAMS_PRELUDE = f"""$ErrorActionPreference = 'Stop'
if ($env:{PARAMS_ENV_VAR}) {{
    $__params = $env:{PARAMS_ENV_VAR} | ConvertFrom-Json
    foreach ($__p in $__params.PSObject.Properties) {{
        Set-Variable -Name $__p.Name -Value $__p.Value
    }}
    Remove-Item Env:\\{PARAMS_ENV_VAR}
}}
"""

# Collects objects and the warning stream of the body into one JSON line on stdout
_RESULT_WRAPPER = """$__output = @(& {{
{body}
}} 3>&1)
$__warnings = @($__output | Where-Object {{ $_ -is [System.Management.Automation.WarningRecord] }} | ForEach-Object {{ $_.Message }})
$__objects = @($__output | Where-Object {{ $_ -isnot [System.Management.Automation.WarningRecord] }})
$__envelope = @{{ objects = $__objects; warnings = $__warnings }}
Write-Output ("{marker}" + ($__envelope | ConvertTo-Json -Depth 4 -Compress))
"""

_POWERCLI_PROBE = """$modules = @('VMware.VimAutomation.Core', 'VMware.VimAutomation.Common')
foreach ($module in $modules) {
    if (-not (Get-Module -ListAvailable -Name $module)) {
        Write-Output "MISSING: $module"
        exit 1
    }
}
Write-Output "PowerCLI modules available"
"""


@dataclass
class ScriptResult:
    """Outcome of one PowerShell process run."""
    success: bool = False
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    error_message: Optional[str] = None
    objects: list[Any] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    execution_time: float = 0.0
    structured: bool = False  # True when the result envelope was found on stdout


class PowerShellService:
    """Runs PowerShell/PowerCLI scripts in an external `pwsh` process.

    Scripts are written to a temporary .ps1 file; parameters travel through an
    environment variable as JSON so secrets never appear on the command line
    or in the script file.
    """

    def __init__(self, executable: Optional[str] = None):
        self.executable = executable or settings.POWERSHELL_PATH

    def resolve_executable(self) -> Optional[str]:
        return shutil.which(self.executable)

    @staticmethod
    def wrap_script(body: str) -> str:
        """Wraps a script body so its pipeline output comes back as structured JSON."""
        return _PARAMS_PRELUDE + "\n" + _RESULT_WRAPPER.format(body=body, marker=RESULT_MARKER)

    @staticmethod
    def parse_envelope(stdout: str) -> tuple[Optional[list[Any]], list[str], str]:
        """Splits process stdout into (objects, warnings, plain text).

        Returns `None` for objects when no result envelope is present.
        """
        plain_lines = []
        envelope = None
        for line in stdout.splitlines():
            if line.startswith(RESULT_MARKER):
                try:
                    envelope = json.loads(line[len(RESULT_MARKER):])
                except json.JSONDecodeError:
                    logger.warning("Discarding unparseable PowerShell result envelope")
                continue
            plain_lines.append(line)
        text = "\n".join(plain_lines).strip()
        if not isinstance(envelope, dict):
            return None, [], text

        objects = envelope.get("objects")
        # ConvertTo-Json collapses single-element arrays
        if objects is None:
            objects = []
        elif not isinstance(objects, list):
            objects = [objects]
        warnings = envelope.get("warnings") or []
        if not isinstance(warnings, list):
            warnings = [warnings]
        return objects, [str(w) for w in warnings], text

    async def execute_script(
        self,
        script: str,
        parameters: Optional[dict[str, Any]] = None,
        structured: bool = True,
    ) -> ScriptResult:
        """Executes a script and captures its output.

        Why: The process is killed if the awaiting task is cancelled (timeout
        or caller abort), and the temporary script file is always removed.

        Args:
            script: PowerShell source to run.
            parameters: Values bound to PowerShell variables by name.
            structured: Wrap the script so objects and warnings are returned as JSON.

        Returns:
            A ScriptResult. Launch failures and non-zero exits are reported
            in it, never raised.
        """
        start = time.perf_counter()
        result = ScriptResult()
        executable = self.resolve_executable()
        if not executable:
            result.error_message = f"PowerShell executable '{self.executable}' not found in PATH"
            result.execution_time = time.perf_counter() - start
            return result

        source = self.wrap_script(script) if structured else script
        env = os.environ.copy()
        env[PARAMS_ENV_VAR] = json.dumps(parameters or {}, default=str)

        fd, script_path = tempfile.mkstemp(suffix=".ps1", prefix="vcheck_")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as script_file:
                script_file.write(source)

            process = await asyncio.create_subprocess_exec(
                executable, "-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-File", script_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
            try:
                stdout, stderr = await process.communicate()
            except asyncio.CancelledError:
                if process.returncode is None:
                    process.kill()
                    await process.wait()
                logger.warning(f"PowerShell process {process.pid} killed after cancellation")
                raise

            result.exit_code = process.returncode
            result.stdout = stdout.decode("utf-8", errors="replace")
            result.stderr = stderr.decode("utf-8", errors="replace").strip()
            result.success = process.returncode == 0

            objects, warnings, text = self.parse_envelope(result.stdout)
            if objects is not None:
                result.objects = objects
                result.structured = True
            result.warnings = warnings
            result.stdout = text

            if not result.success:
                result.error_message = (
                    f"PowerShell process exited with code {process.returncode}. Error: {result.stderr}"
                )
                logger.warning(f"PowerShell process failed with exit code {process.returncode}")
        except OSError as e:
            logger.error(f"Failed to start PowerShell process: {e}")
            result.success = False
            result.error_message = f"Failed to execute PowerShell script: {e}"
        finally:
            try:
                os.remove(script_path)
            except OSError as e:
                logger.warning(f"Failed to delete temporary script file {script_path}: {e}")

        result.execution_time = time.perf_counter() - start
        return result

    async def execute_powercli(self, script: str, parameters: Optional[dict[str, Any]] = None) -> ScriptResult:
        """Executes a script after importing the PowerCLI core module."""
        prelude = "Import-Module VMware.VimAutomation.Core -ErrorAction Stop\n"
        return await self.execute_script(prelude + script, parameters)

    async def test_powercli_availability(self, timeout: Optional[float] = None) -> bool:
        """Probes whether the runtime exists and the PowerCLI modules are installed."""
        if not self.resolve_executable():
            return False
        try:
            result = await asyncio.wait_for(
                self.execute_script(_POWERCLI_PROBE, structured=False),
                timeout=timeout or settings.POWERCLI_PROBE_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning("PowerCLI availability probe timed out")
            return False
        return result.success
