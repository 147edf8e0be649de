from datetime import date, datetime, timezone

import pytest
from botocore.stub import Stubber

import batchops.sfn_trigger.app as trigger
from batchops.shared.utils import ConfigError


SM_ARN = "arn:aws:states:us-east-1:123456789012:stateMachine:retry-workflow"
EXEC_PREFIX = "arn:aws:states:us-east-1:123456789012:execution:retry-workflow"
STARTED_AT = datetime(2026, 1, 12, tzinfo=timezone.utc)


def _sfn():
    return trigger.boto3.client("stepfunctions", region_name="us-east-1")


def _set_env(monkeypatch, **overrides):
    values = {
        "STATE_MACHINE_ARN": SM_ARN,
        "START_DATE": "2025-01-01",
        "END_DATE": "2025-01-01",
        # two slots per day keeps the stub queues short
        "INTERVAL_MINUTES": "720",
        "CONCURRENCY": "1",
    }
    monkeypatch.delenv("REDRIVE_FAILED", raising=False)
    monkeypatch.delenv("DRY_RUN", raising=False)
    monkeypatch.delenv("EXECUTION_NAME_PREFIX", raising=False)
    values.update(overrides)
    for k, v in values.items():
        monkeypatch.setenv(k, v)


def _start_params(time_str, name):
    return {"stateMachineArn": SM_ARN, "name": name, "input": '{"time":"%s"}' % time_str}


def _already_exists(stubber):
    stubber.add_client_error(
        "start_execution",
        service_error_code="ExecutionAlreadyExists",
        service_message="Execution Already Exists",
        http_status_code=400,
    )


def test_time_slots_cover_each_day_on_the_grid():
    slots = trigger.time_slots(date(2025, 12, 25), date(2025, 12, 26))
    assert len(slots) == 2 * 288
    assert slots[0] == datetime(2025, 12, 25, 0, 0, tzinfo=timezone.utc)
    assert slots[1] == datetime(2025, 12, 25, 0, 5, tzinfo=timezone.utc)
    assert slots[287] == datetime(2025, 12, 25, 23, 55, tzinfo=timezone.utc)
    assert slots[-1] == datetime(2025, 12, 26, 23, 55, tzinfo=timezone.utc)


def test_execution_name_is_deterministic():
    slot = datetime(2025, 12, 25, 0, 5, tzinfo=timezone.utc)
    assert trigger.format_slot(slot) == "2025-12-25T00:05:00.000Z"
    assert trigger.execution_name(slot) == "retry-execution-1-2025-12-25T00-05-00-000"
    assert trigger.execution_name(slot, "backfill") == "backfill-2025-12-25T00-05-00-000"
    assert trigger.execution_arn(SM_ARN, "n1") == f"{EXEC_PREFIX}:n1"


def test_handler_starts_new_and_skips_existing(monkeypatch):
    _set_env(monkeypatch)
    sfn = _sfn()
    monkeypatch.setattr(trigger, "_clients", lambda region: sfn)

    name0 = "retry-execution-1-2025-01-01T00-00-00-000"
    with Stubber(sfn) as stubber:
        stubber.add_response(
            "start_execution",
            {"executionArn": f"{EXEC_PREFIX}:{name0}", "startDate": STARTED_AT},
            _start_params("2025-01-01T00:00:00.000Z", name0),
        )
        _already_exists(stubber)
        resp = trigger.handler({}, context=None)
        stubber.assert_no_pending_responses()

    assert resp["executions"]["total"] == 2
    assert resp["started"] == 1
    assert resp["executions"]["skipped"] == 1
    assert resp["executions"]["failed"] == 0
    assert resp["days"] == 1


def test_handler_redrives_failed_duplicates_only(monkeypatch):
    _set_env(monkeypatch, REDRIVE_FAILED="true")
    sfn = _sfn()
    monkeypatch.setattr(trigger, "_clients", lambda region: sfn)

    name0 = "retry-execution-1-2025-01-01T00-00-00-000"
    name1 = "retry-execution-1-2025-01-01T12-00-00-000"
    with Stubber(sfn) as stubber:
        _already_exists(stubber)
        stubber.add_response(
            "describe_execution",
            {"executionArn": f"{EXEC_PREFIX}:{name0}", "stateMachineArn": SM_ARN, "status": "FAILED", "startDate": STARTED_AT},
            {"executionArn": f"{EXEC_PREFIX}:{name0}"},
        )
        stubber.add_response("redrive_execution", {"redriveDate": STARTED_AT}, {"executionArn": f"{EXEC_PREFIX}:{name0}"})
        _already_exists(stubber)
        stubber.add_response(
            "describe_execution",
            {"executionArn": f"{EXEC_PREFIX}:{name1}", "stateMachineArn": SM_ARN, "status": "SUCCEEDED", "startDate": STARTED_AT},
            {"executionArn": f"{EXEC_PREFIX}:{name1}"},
        )
        resp = trigger.handler({}, context=None)
        stubber.assert_no_pending_responses()

    assert resp["redriven"] == 1
    assert resp["started"] == 0
    assert resp["executions"]["succeeded"] == 1
    assert resp["executions"]["skipped"] == 1


def test_one_failed_slot_does_not_stop_the_rest(monkeypatch):
    _set_env(monkeypatch)
    sfn = _sfn()
    monkeypatch.setattr(trigger, "_clients", lambda region: sfn)

    name1 = "retry-execution-1-2025-01-01T12-00-00-000"
    with Stubber(sfn) as stubber:
        stubber.add_client_error(
            "start_execution",
            service_error_code="ThrottlingException",
            service_message="Rate exceeded",
            http_status_code=400,
        )
        stubber.add_response(
            "start_execution",
            {"executionArn": f"{EXEC_PREFIX}:{name1}", "startDate": STARTED_AT},
            _start_params("2025-01-01T12:00:00.000Z", name1),
        )
        resp = trigger.handler({}, context=None)

    assert resp["started"] == 1
    assert resp["executions"]["failed"] == 1
    failure = resp["executions"]["failures"][0]
    assert failure["item"] == "2025-01-01T00:00:00.000Z"
    assert "Rate exceeded" in failure["error"]


def test_dry_run_makes_no_calls(monkeypatch):
    _set_env(monkeypatch, END_DATE="2025-01-03")
    sfn = _sfn()
    monkeypatch.setattr(trigger, "_clients", lambda region: sfn)

    with Stubber(sfn):
        resp = trigger.handler({"dry_run": True}, context=None)

    assert resp["executions"]["total"] == 6
    assert resp["executions"]["skipped"] == 6
    assert resp["started"] == 0


@pytest.mark.parametrize(
    "overrides,match",
    [
        ({"START_DATE": ""}, "START_DATE"),
        ({"END_DATE": "2025/01/02"}, "END_DATE"),
        ({"START_DATE": "2025-02-01"}, "after END_DATE"),
        ({"INTERVAL_MINUTES": "7"}, "INTERVAL_MINUTES"),
        ({"STATE_MACHINE_ARN": "retry-workflow"}, "state machine ARN"),
    ],
)
def test_config_errors(monkeypatch, overrides, match):
    _set_env(monkeypatch, **overrides)
    with pytest.raises(ConfigError, match=match):
        trigger.TriggerConfig.from_event({})


def test_main_prints_summary_and_exits_zero(monkeypatch, capsys):
    _set_env(monkeypatch)
    sfn = _sfn()
    monkeypatch.setattr(trigger, "_clients", lambda region: sfn)

    with Stubber(sfn) as stubber:
        _already_exists(stubber)
        _already_exists(stubber)
        rc = trigger._main([])

    out = capsys.readouterr().out
    assert rc == 0
    assert "Total: 2" in out
    assert "New executions: 0" in out
    assert "Skipped (already exists): 2" in out
    assert '"_aws"' not in out


def test_main_config_error_exits_non_zero(monkeypatch):
    _set_env(monkeypatch)
    monkeypatch.delenv("STATE_MACHINE_ARN")
    with pytest.raises(SystemExit) as exc:
        trigger._main([])
    assert "STATE_MACHINE_ARN" in str(exc.value.code)
