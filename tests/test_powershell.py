import json

import pytest

from vcheck.services.powershell import PARAMS_ENV_VAR, RESULT_MARKER, PowerShellService


def test_wrap_script_binds_parameters_and_emits_envelope():
    wrapped = PowerShellService.wrap_script("Get-VMHost | Select Name")

    assert f"$env:{PARAMS_ENV_VAR}" in wrapped
    assert "Get-VMHost | Select Name" in wrapped
    assert RESULT_MARKER in wrapped
    assert "ConvertTo-Json" in wrapped


def test_parse_envelope_splits_objects_warnings_and_text():
    envelope = json.dumps({"objects": [{"Name": "esx01"}, 5], "warnings": ["deprecated cmdlet"]})
    stdout = f"Connecting...\n{RESULT_MARKER}{envelope}\n"

    objects, warnings, text = PowerShellService.parse_envelope(stdout)

    assert objects == [{"Name": "esx01"}, 5]
    assert warnings == ["deprecated cmdlet"]
    assert text == "Connecting..."


def test_parse_envelope_single_object_is_listed():
    stdout = RESULT_MARKER + json.dumps({"objects": {"Count": 3}, "warnings": "one warning"})

    objects, warnings, _ = PowerShellService.parse_envelope(stdout)

    assert objects == [{"Count": 3}]
    assert warnings == ["one warning"]


def test_parse_envelope_without_marker():
    objects, warnings, text = PowerShellService.parse_envelope("plain output\n")

    assert objects is None
    assert warnings == []
    assert text == "plain output"


def test_parse_envelope_with_broken_json():
    objects, _, text = PowerShellService.parse_envelope(f"line\n{RESULT_MARKER}{{broken")

    assert objects is None
    assert text == "line"


@pytest.mark.asyncio
async def test_missing_executable_is_reported():
    service = PowerShellService(executable="definitely-not-pwsh-xyz")

    result = await service.execute_script("Get-Date")

    assert result.success is False
    assert "not found" in result.error_message
    assert await service.test_powercli_availability() is False
