"""
Step Functions backfill trigger: one execution per time slot.

What it does:
- Builds every UTC slot on an `INTERVAL_MINUTES` grid from `START_DATE 00:00`
  through the last slot of `END_DATE`.
- Starts one execution per slot with input `{"time": "<ISO-8601 Z>"}` and a
  deterministic name, so re-running the same range never starts a slot twice:
  `ExecutionAlreadyExists` is reported as skipped, not failed.
- With `REDRIVE_FAILED=true`, an existing execution that ended FAILED,
  TIMED_OUT or ABORTED is redriven instead of skipped.

Environment variables (event keys in parentheses override):
- `STATE_MACHINE_ARN` (`state_machine_arn`, required)
- `START_DATE` / `END_DATE` (`start_date` / `end_date`, required, ISO dates)
- `INTERVAL_MINUTES` (`interval_minutes`, default 5)
- `CONCURRENCY` (`concurrency`, default 1)
- `EXECUTION_NAME_PREFIX` (`execution_name_prefix`, default "retry-execution-1")
- `REDRIVE_FAILED` (`redrive_failed`, default false), `DRY_RUN` (`dry_run`, default false)
- `AWS_REGION` (`region`, default "us-east-1")
"""

import argparse
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import boto3
from botocore.exceptions import ClientError

from aws_lambda_powertools import Logger, Metrics
from aws_lambda_powertools.metrics import MetricUnit

from batchops.shared.runner import RunSummary, run_map, summarize
from batchops.shared.utils import ConfigError, as_bool, as_positive_int, json_dumps, parse_date, setting


logger = Logger(service="batchops.sfn-trigger")
metrics = Metrics(namespace="BatchOps", service="sfn-trigger")

MINUTES_PER_DAY = 24 * 60
REDRIVABLE_STATUSES = ("FAILED", "TIMED_OUT", "ABORTED")

STARTED = "started"
REDRIVEN = "redriven"
SKIPPED = "skipped"
DRY_RUN = "dry_run"


@dataclass(frozen=True)
class TriggerConfig:
    state_machine_arn: str
    start_date: date
    end_date: date
    interval_minutes: int = 5
    concurrency: int = 1
    execution_name_prefix: str = "retry-execution-1"
    redrive_failed: bool = False
    dry_run: bool = False
    region: str = "us-east-1"

    @classmethod
    def from_event(cls, event: Dict[str, Any]) -> "TriggerConfig":
        state_machine_arn = setting(event, "state_machine_arn", "STATE_MACHINE_ARN")
        if ":stateMachine:" not in state_machine_arn:
            raise ConfigError(f"Invalid state machine ARN: {state_machine_arn}")
        start_date = parse_date(setting(event, "start_date", "START_DATE"), "START_DATE")
        end_date = parse_date(setting(event, "end_date", "END_DATE"), "END_DATE")
        if start_date > end_date:
            raise ConfigError(f"START_DATE {start_date} is after END_DATE {end_date}")
        interval = as_positive_int(setting(event, "interval_minutes", "INTERVAL_MINUTES", "5"), "INTERVAL_MINUTES")
        if MINUTES_PER_DAY % interval:
            raise ConfigError(f"INTERVAL_MINUTES must divide {MINUTES_PER_DAY}, got {interval}")
        return cls(
            state_machine_arn=state_machine_arn,
            start_date=start_date,
            end_date=end_date,
            interval_minutes=interval,
            concurrency=as_positive_int(setting(event, "concurrency", "CONCURRENCY", "1"), "CONCURRENCY"),
            execution_name_prefix=setting(event, "execution_name_prefix", "EXECUTION_NAME_PREFIX", "retry-execution-1"),
            redrive_failed=as_bool(setting(event, "redrive_failed", "REDRIVE_FAILED", "false")),
            dry_run=as_bool(setting(event, "dry_run", "DRY_RUN", "false")),
            region=setting(event, "region", "AWS_REGION", "us-east-1"),
        )


@dataclass(frozen=True)
class ExecutionResult:
    time: str
    execution_name: str
    execution_arn: Optional[str] = None
    status: str = STARTED


def _clients(region: str):
    return boto3.session.Session(region_name=region).client("stepfunctions")


def _log(event: str, **fields: Any) -> None:
    logger.info(event, extra=fields)


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def day_range(start: date, end: date) -> List[date]:
    days: List[date] = []
    current = start
    while current <= end:
        days.append(current)
        current += timedelta(days=1)
    return days


def time_slots(start: date, end: date, interval_minutes: int = 5) -> List[datetime]:
    if interval_minutes < 1:
        raise ValueError(f"interval_minutes must be >= 1, got {interval_minutes}")
    slots: List[datetime] = []
    for day in day_range(start, end):
        midnight = datetime.combine(day, time(0), tzinfo=timezone.utc)
        for minutes in range(0, MINUTES_PER_DAY, interval_minutes):
            slots.append(midnight + timedelta(minutes=minutes))
    return slots


def format_slot(slot: datetime) -> str:
    # 2025-12-25T00:05:00.000Z
    return slot.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def execution_name(slot: datetime, prefix: str = "retry-execution-1") -> str:
    stamp = format_slot(slot).replace(":", "-").replace(".", "-").replace("Z", "")
    return f"{prefix}-{stamp}"


def execution_arn(state_machine_arn: str, name: str) -> str:
    return f"{state_machine_arn.replace(':stateMachine:', ':execution:')}:{name}"


def _redrive_if_failed(sfn, state_machine_arn: str, time_str: str, name: str) -> ExecutionResult:
    arn = execution_arn(state_machine_arn, name)
    status = sfn.describe_execution(executionArn=arn)["status"]
    if status not in REDRIVABLE_STATUSES:
        return ExecutionResult(time=time_str, execution_name=name, execution_arn=arn, status=SKIPPED)

    sfn.redrive_execution(executionArn=arn)
    _log("trigger_slot_redriven", time=time_str, execution_arn=arn, previous_status=status)
    return ExecutionResult(time=time_str, execution_name=name, execution_arn=arn, status=REDRIVEN)


def trigger_slot(
    sfn,
    state_machine_arn: str,
    slot: datetime,
    name_prefix: str = "retry-execution-1",
    redrive_failed: bool = False,
    dry_run: bool = False,
) -> ExecutionResult:
    time_str = format_slot(slot)
    name = execution_name(slot, name_prefix)
    if dry_run:
        return ExecutionResult(time=time_str, execution_name=name, status=DRY_RUN)

    try:
        resp = sfn.start_execution(
            stateMachineArn=state_machine_arn,
            name=name,
            input=json_dumps({"time": time_str}),
        )
    except ClientError as e:
        if _error_code(e) != "ExecutionAlreadyExists":
            raise
        if redrive_failed:
            return _redrive_if_failed(sfn, state_machine_arn, time_str, name)
        return ExecutionResult(
            time=time_str,
            execution_name=name,
            execution_arn=execution_arn(state_machine_arn, name),
            status=SKIPPED,
        )
    return ExecutionResult(time=time_str, execution_name=name, execution_arn=resp["executionArn"], status=STARTED)


def run_trigger(config: TriggerConfig, sfn) -> Dict[str, Any]:
    slots = time_slots(config.start_date, config.end_date, config.interval_minutes)
    days = len(day_range(config.start_date, config.end_date))
    _log(
        "trigger_start",
        state_machine_arn=config.state_machine_arn,
        start_date=config.start_date.isoformat(),
        end_date=config.end_date.isoformat(),
        days=days,
        interval_minutes=config.interval_minutes,
        per_day=MINUTES_PER_DAY // config.interval_minutes,
        executions=len(slots),
        concurrency=config.concurrency,
        redrive_failed=config.redrive_failed,
        dry_run=config.dry_run,
    )

    total = len(slots)

    def _op(item: Tuple[int, datetime]) -> ExecutionResult:
        index, slot = item
        _log("trigger_slot", position=f"{index + 1}/{total}", time=format_slot(slot))
        return trigger_slot(
            sfn,
            config.state_machine_arn,
            slot,
            name_prefix=config.execution_name_prefix,
            redrive_failed=config.redrive_failed,
            dry_run=config.dry_run,
        )

    outcomes = run_map(list(enumerate(slots)), _op, config.concurrency)
    summary = summarize(
        outcomes,
        label=lambda item: format_slot(item[1]),
        is_skipped=lambda r: r.status in (SKIPPED, DRY_RUN),
    )

    results: List[ExecutionResult] = [o.value for o in outcomes if o.succeeded and o.value is not None]
    started = sum(1 for r in results if r.status == STARTED)
    redriven = sum(1 for r in results if r.status == REDRIVEN)

    metrics.add_metric(name="ExecutionsStarted", unit=MetricUnit.Count, value=started)
    if redriven:
        metrics.add_metric(name="ExecutionsRedriven", unit=MetricUnit.Count, value=redriven)
    if summary.skipped:
        metrics.add_metric(name="ExecutionsSkipped", unit=MetricUnit.Count, value=summary.skipped)
    if summary.failed:
        metrics.add_metric(name="ExecutionsFailed", unit=MetricUnit.Count, value=summary.failed)

    for item, error in summary.failures:
        _log("trigger_slot_failed", time=item, error=error)
    _log("trigger_done", executions=summary.total, started=started, redriven=redriven, skipped=summary.skipped, failed=summary.failed)

    return {
        "executions": summary.as_dict(),
        "started": started,
        "redriven": redriven,
        "days": days,
        "dry_run": config.dry_run,
    }


@metrics.log_metrics
def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    config = TriggerConfig.from_event(event or {})
    sfn = _clients(config.region)
    return run_trigger(config, sfn)


def report_lines(result: Dict[str, Any]) -> List[str]:
    summary = RunSummary.from_dict(result["executions"])
    lines = summary.report_lines("Step Function trigger summary", skipped_label="Skipped (already exists)")
    lines.insert(4, f"New executions: {result['started']}")
    lines.insert(5, f"Redriven (retried failed): {result['redriven']}")
    return lines


def _main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Start one Step Functions execution per time slot across a date range.")
    parser.add_argument("--state-machine-arn", default=None)
    parser.add_argument("--start-date", default=None, help="ISO date, e.g. 2025-12-25")
    parser.add_argument("--end-date", default=None, help="ISO date, e.g. 2026-01-11 (inclusive)")
    parser.add_argument("--interval-minutes", type=int, default=None)
    parser.add_argument("--concurrency", type=int, default=None)
    parser.add_argument("--execution-name-prefix", default=None)
    parser.add_argument("--region", default=None)
    parser.add_argument("--redrive-failed", action="store_true", help="Redrive existing executions that ended FAILED/TIMED_OUT/ABORTED.")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args(argv)

    event: Dict[str, Any] = {
        k: v
        for k, v in {
            "state_machine_arn": args.state_machine_arn,
            "start_date": args.start_date,
            "end_date": args.end_date,
            "interval_minutes": args.interval_minutes,
            "concurrency": args.concurrency,
            "execution_name_prefix": args.execution_name_prefix,
            "region": args.region,
        }.items()
        if v is not None
    }
    if args.redrive_failed:
        event["redrive_failed"] = "true"
    if args.dry_run:
        event["dry_run"] = "true"

    try:
        config = TriggerConfig.from_event(event)
    except ConfigError as e:
        raise SystemExit(f"Configuration error: {e}")

    # not via handler: the EMF metrics flush would land on stdout ahead of the report
    result = run_trigger(config, _clients(config.region))

    print("\n".join(report_lines(result)))
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
