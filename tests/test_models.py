import json

import pytest
from pydantic import ValidationError

from vcheck.models import CheckDefinition, CheckResult, CheckStatus, ExecutionType, Host, VCenter
from vcheck.schemas import CheckDefinitionCreate


def test_definition_create_serialises_typed_maps():
    payload = CheckDefinitionCreate(
        name="Datastore free space",
        script="Get-Datastore",
        parameters={"MinFreePercent": 20, "IncludeLocal": False, "Label": "prod"},
        thresholds={"free_percent": 15.5},
        threshold_criteria=">=20",
    )

    definition = payload.to_model()

    assert definition.execution_type == ExecutionType.VSPHERE_REST_API.value
    assert json.loads(definition.parameters) == {"MinFreePercent": 20, "IncludeLocal": False, "Label": "prod"}
    assert definition.get_thresholds() == {"free_percent": 15.5}
    assert definition.has_threshold is True


@pytest.mark.parametrize("timeout", [0, 3601])
def test_definition_create_rejects_out_of_range_timeout(timeout):
    with pytest.raises(ValidationError):
        CheckDefinitionCreate(name="x", script="Get-VMHost", timeout_seconds=timeout)


def test_definition_create_rejects_nested_parameters():
    with pytest.raises(ValidationError):
        CheckDefinitionCreate(name="x", script="Get-VMHost", parameters={"paths": [1, 2]})


def test_definition_create_rejects_blank_name():
    with pytest.raises(ValidationError):
        CheckDefinitionCreate(name="  ", script="Get-VMHost")


def test_raw_definition_parses_leniently():
    definition = CheckDefinition(name="x", script="y", parameters="{oops", thresholds="[1]")

    assert definition.get_parameters() == {}
    assert definition.get_thresholds() == {}
    assert definition.has_threshold is False


def test_result_summary_and_attention():
    result = CheckResult(check_definition_id=7, status=CheckStatus.TIMEOUT, output="x" * 150)

    assert result.requires_attention is True
    assert result.summary.startswith("Check 7: timeout - ")
    assert result.summary.endswith("...")
    assert CheckResult(status=CheckStatus.SKIPPED).requires_attention is False


def test_timestamps_are_timezone_aware():
    definition = CheckDefinition(name="x", script="y")
    result = CheckResult(status=CheckStatus.SUCCESS)

    assert definition.created_at.tzinfo is not None
    assert result.executed_at.tzinfo is not None
    assert definition.timeout_seconds == 300


def test_definition_and_result_are_stored(store, db_session, host):
    definition = CheckDefinition(name="NTP", script="Get-VMHostNtpServer")
    db_session.add(definition)
    db_session.commit()
    db_session.refresh(definition)

    saved = store.save_result(
        CheckResult(host_id=host.id, check_definition_id=definition.id, status=CheckStatus.SUCCESS)
    )

    assert saved.id is not None
    assert db_session.get(CheckResult, saved.id).check_definition_id == definition.id


def test_display_name_falls_back_to_address():
    assert Host(name="", ip_address="10.0.0.12").display_name == "10.0.0.12"
    assert VCenter(name="", url="https://vc02.lab.local").display_name == "https://vc02.lab.local"
    assert Host(name="esx01", ip_address="10.0.0.11").display_name == "esx01"
