"""
Firehose error replay (S3 error objects → Firehose).

Source:
- Objects Firehose wrote under its error output prefix, laid out as
  `<prefix>/YYYY/MM/DD/HH/`. Each line is a JSON envelope
  (`rawData`, `errorCode`, `errorMessage`, `attemptsMade`, ...) whose `rawData`
  is the base64 of the original record.

What it does:
- Lists every date-hour prefix in the window (bounded concurrency).
- For each object: decodes the records, keeps those matching `EVENT_NAME`,
  resubmits them with PutRecordBatch (≤ 500 per call), then deletes the object
  once every record was accepted.
- An object is deleted only when every decoded record in it was sent. When
  `EVENT_NAME` leaves some records behind, the object is kept and counted as such.
- A bad line is dropped and logged; a failed object is reported and left in
  place so the next run picks it up again.
- `MAX_RECORDS` caps how many records one run sends (trial runs). An object
  that does not fit in the remaining budget is skipped and left untouched.

Environment variables (event keys in parentheses override):
- `S3_BUCKET` (`bucket`, required), `S3_PREFIX` (`prefix`, default "")
- `FIREHOSE_ARN` (`firehose_arn`, required)
- `START_DATE` / `END_DATE` (`start_date` / `end_date`, default yesterday / today, UTC)
- `EVENT_NAME` (`event_name`, default "": replay every record)
- `CONCURRENCY` (`concurrency`, default 20)
- `MAX_RECORDS` (`max_records`, default 0: no cap)
- `DELETE_ON_SUCCESS` (`delete_on_success`, default true), `DRY_RUN` (`dry_run`, default false)
- `AWS_REGION` (`region`, default "us-east-1")
"""

import argparse
import base64
import json
import threading
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import boto3

from aws_lambda_powertools import Logger, Metrics
from aws_lambda_powertools.metrics import MetricUnit

from batchops.shared.runner import Outcome, RunSummary, run_map, summarize
from batchops.shared.utils import (
    ConfigError,
    as_bool,
    as_int,
    as_positive_int,
    chunked,
    json_dumps,
    parse_date,
    setting,
    utc_today,
)


logger = Logger(service="batchops.firehose-retry")
metrics = Metrics(namespace="BatchOps", service="firehose-retry")

MAX_BATCH_RECORDS = 500
LINE_EXCERPT_CHARS = 100


class DeliveryError(RuntimeError):
    pass


@dataclass(frozen=True)
class ReplayConfig:
    bucket: str
    prefix: str
    firehose_arn: str
    stream_name: str
    start_date: date
    end_date: date
    event_name: str = ""
    concurrency: int = 20
    max_records: int = 0
    delete_on_success: bool = True
    dry_run: bool = False
    region: str = "us-east-1"

    @classmethod
    def from_event(cls, event: Dict[str, Any]) -> "ReplayConfig":
        firehose_arn = setting(event, "firehose_arn", "FIREHOSE_ARN")
        today = utc_today()
        start_date = parse_date(setting(event, "start_date", "START_DATE", (today - timedelta(days=1)).isoformat()), "START_DATE")
        end_date = parse_date(setting(event, "end_date", "END_DATE", today.isoformat()), "END_DATE")
        if start_date > end_date:
            raise ConfigError(f"START_DATE {start_date} is after END_DATE {end_date}")
        return cls(
            bucket=setting(event, "bucket", "S3_BUCKET"),
            prefix=setting(event, "prefix", "S3_PREFIX", ""),
            firehose_arn=firehose_arn,
            stream_name=stream_name_from_arn(firehose_arn),
            start_date=start_date,
            end_date=end_date,
            event_name=setting(event, "event_name", "EVENT_NAME", ""),
            concurrency=as_positive_int(setting(event, "concurrency", "CONCURRENCY", "20"), "CONCURRENCY"),
            max_records=as_int(setting(event, "max_records", "MAX_RECORDS", "0"), "MAX_RECORDS"),
            delete_on_success=as_bool(setting(event, "delete_on_success", "DELETE_ON_SUCCESS", "true")),
            dry_run=as_bool(setting(event, "dry_run", "DRY_RUN", "false")),
            region=setting(event, "region", "AWS_REGION", "us-east-1"),
        )


@dataclass(frozen=True)
class ObjectResult:
    key: str
    decoded: int = 0
    dropped: int = 0
    matched: int = 0
    sent: int = 0
    deleted: bool = False
    kept: bool = False
    skipped: bool = False
    capped: bool = False
    event_names: Tuple[str, ...] = ()


class RecordBudget:
    """Run-wide cap on records sent; 0 means unlimited. Claims are all-or-nothing per object."""

    def __init__(self, limit: int = 0):
        self.limit = limit
        self.claimed = 0
        self._lock = threading.Lock()

    def claim(self, n: int) -> bool:
        if not self.limit:
            return True
        with self._lock:
            if self.claimed + n > self.limit:
                return False
            self.claimed += n
            return True


def _clients(region: str):
    session = boto3.session.Session(region_name=region)
    return (
        session.client("s3"),
        session.client("firehose"),
    )


def _log(event: str, **fields: Any) -> None:
    logger.info(event, extra=fields)


def stream_name_from_arn(arn: str) -> str:
    # arn:aws:firehose:<region>:<account>:deliverystream/<name>
    if "/" not in arn:
        raise ConfigError(f"Invalid Firehose ARN (no '/'): {arn}")
    name = arn.rsplit("/", 1)[1]
    if not name:
        raise ConfigError(f"Invalid Firehose ARN (empty stream name): {arn}")
    return name


def hour_prefixes(base_prefix: str, start_date: date, end_date: date) -> List[str]:
    if start_date > end_date:
        raise ConfigError(f"start date {start_date} is after end date {end_date}")
    base = base_prefix
    if base and not base.endswith("/"):
        base += "/"
    current = datetime.combine(start_date, time(0), tzinfo=timezone.utc)
    stop = datetime.combine(end_date, time(23), tzinfo=timezone.utc)
    out: List[str] = []
    while current <= stop:
        out.append(f"{base}{current:%Y/%m/%d/%H}/")
        current += timedelta(hours=1)
    return out


def list_keys(s3, bucket: str, prefix: str) -> List[str]:
    keys: List[str] = []
    paginator = s3.get_paginator("list_objects_v2")
    for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
        for obj in page.get("Contents", []):
            keys.append(obj["Key"])
    return keys


def list_error_keys(s3, bucket: str, prefixes: Sequence[str], concurrency: int) -> Tuple[List[str], List[Outcome]]:
    outcomes = run_map(prefixes, lambda prefix: list_keys(s3, bucket, prefix), concurrency)
    keys: List[str] = []
    for o in outcomes:
        if o.succeeded:
            keys.extend(o.value or [])
        else:
            _log("replay_list_error", bucket=bucket, prefix=o.item, error=o.error)
    return keys, outcomes


def decode_error_line(line: str) -> Dict[str, Any]:
    envelope = json.loads(line)
    if not isinstance(envelope, dict) or not isinstance(envelope.get("rawData"), str):
        raise ValueError("Error record has no rawData string")
    decoded = base64.b64decode(envelope["rawData"], validate=True).decode("utf-8")
    record = json.loads(decoded)
    if not isinstance(record, dict):
        raise ValueError("Decoded rawData is not a JSON object")
    return record


def read_error_records(s3, bucket: str, key: str) -> Tuple[List[Dict[str, Any]], int]:
    obj = s3.get_object(Bucket=bucket, Key=key)
    body = obj["Body"].read()
    records: List[Dict[str, Any]] = []
    dropped = 0
    # decode per line so one undecodable line cannot fail the whole object
    for line_no, raw in enumerate(body.splitlines(), start=1):
        if not raw.strip():
            continue
        try:
            records.append(decode_error_line(raw.decode("utf-8")))
        except ValueError as e:
            dropped += 1
            excerpt = raw.decode("utf-8", errors="replace")[:LINE_EXCERPT_CHARS]
            logger.warning(
                "replay_drop_bad_line",
                extra={"key": key, "line_no": line_no, "line": excerpt, "error": str(e)},
            )
    return records, dropped


def filter_records(records: Sequence[Dict[str, Any]], event_name: str) -> List[Dict[str, Any]]:
    if not event_name:
        return list(records)
    return [r for r in records if r.get("eventName") == event_name]


def send_records(firehose, stream_name: str, records: Sequence[Dict[str, Any]], batch_size: int = MAX_BATCH_RECORDS) -> int:
    sent = 0
    failed = 0
    errors: List[str] = []
    for batch_no, batch in enumerate(chunked(records, batch_size), start=1):
        entries = [{"Data": (json_dumps(r) + "\n").encode("utf-8")} for r in batch]
        try:
            resp = firehose.put_record_batch(DeliveryStreamName=stream_name, Records=entries)
        except Exception as e:
            failed += len(batch)
            errors.append(str(e))
            _log("replay_batch_error", stream=stream_name, batch=batch_no, records=len(batch), error=str(e))
            continue
        failed_put = int(resp.get("FailedPutCount", 0))
        if failed_put:
            first = next((r for r in resp.get("RequestResponses", []) if r.get("ErrorCode")), {})
            errors.append(f"{first.get('ErrorCode')}: {first.get('ErrorMessage')}")
        failed += failed_put
        sent += len(batch) - failed_put
        _log("replay_batch_sent", stream=stream_name, batch=batch_no, records=len(batch), failed=failed_put)

    if failed:
        raise DeliveryError(f"firehose_put_failed={failed} sent={sent} first={errors[0]}")
    return sent


def delete_object(s3, bucket: str, key: str) -> None:
    s3.delete_object(Bucket=bucket, Key=key)


def replay_object(s3, firehose, config: ReplayConfig, key: str, budget: Optional[RecordBudget] = None) -> ObjectResult:
    records, dropped = read_error_records(s3, config.bucket, key)
    matched = filter_records(records, config.event_name)
    event_names = tuple(sorted({str(r["eventName"]) for r in records if r.get("eventName")}))
    result = ObjectResult(
        key=key,
        decoded=len(records),
        dropped=dropped,
        matched=len(matched),
        event_names=event_names,
    )

    if not matched or config.dry_run:
        _log("replay_object_skipped", key=key, decoded=len(records), matched=len(matched), dry_run=config.dry_run)
        return replace(result, skipped=True)

    if budget is not None and not budget.claim(len(matched)):
        _log("replay_object_capped", key=key, matched=len(matched), max_records=budget.limit)
        return replace(result, skipped=True, capped=True)

    sent = send_records(firehose, config.stream_name, matched)
    # records the filter left behind exist only in this object
    kept = len(matched) < len(records)
    deleted = False
    if config.delete_on_success and not kept:
        delete_object(s3, config.bucket, key)
        deleted = True
    _log("replay_object_done", key=key, decoded=len(records), dropped=dropped, sent=sent, deleted=deleted, kept=kept)
    return replace(result, sent=sent, deleted=deleted, kept=kept)


def run_replay(config: ReplayConfig, s3, firehose) -> Dict[str, Any]:
    prefixes = hour_prefixes(config.prefix, config.start_date, config.end_date)
    _log(
        "replay_start",
        bucket=config.bucket,
        prefix=config.prefix,
        stream=config.stream_name,
        start_date=config.start_date.isoformat(),
        end_date=config.end_date.isoformat(),
        prefixes=len(prefixes),
        event_name=config.event_name or None,
        concurrency=config.concurrency,
        max_records=config.max_records or None,
        dry_run=config.dry_run,
    )

    keys, listing = list_error_keys(s3, config.bucket, prefixes, config.concurrency)
    listing_summary = summarize(listing)
    metrics.add_metric(name="ObjectsListed", unit=MetricUnit.Count, value=len(keys))
    _log("replay_listed", prefixes=len(prefixes), objects=len(keys), listing_failed=listing_summary.failed)

    budget = RecordBudget(config.max_records)
    outcomes = run_map(keys, lambda key: replay_object(s3, firehose, config, key, budget), config.concurrency)
    summary = summarize(outcomes, is_skipped=lambda r: r.skipped)

    results: List[ObjectResult] = [o.value for o in outcomes if o.succeeded and o.value is not None]
    decoded = sum(r.decoded for r in results)
    dropped = sum(r.dropped for r in results)
    matched = sum(r.matched for r in results)
    sent = sum(r.sent for r in results)
    deleted = sum(1 for r in results if r.deleted)
    kept = sum(1 for r in results if r.kept)
    capped = sum(1 for r in results if r.capped)
    event_names = sorted({n for r in results for n in r.event_names})

    metrics.add_metric(name="ObjectsReplayed", unit=MetricUnit.Count, value=summary.succeeded)
    metrics.add_metric(name="RecordsSent", unit=MetricUnit.Count, value=sent)
    if summary.failed:
        metrics.add_metric(name="ObjectsFailed", unit=MetricUnit.Count, value=summary.failed)
    if summary.skipped:
        metrics.add_metric(name="ObjectsSkipped", unit=MetricUnit.Count, value=summary.skipped)
    if dropped:
        metrics.add_metric(name="RecordsDropped", unit=MetricUnit.Count, value=dropped)

    for item, error in summary.failures:
        _log("replay_object_error", key=item, error=error)
    _log("replay_done", objects=summary.total, succeeded=summary.succeeded, failed=summary.failed, skipped=summary.skipped, sent=sent)

    return {
        "prefixes": len(prefixes),
        "listing": listing_summary.as_dict(),
        "objects": summary.as_dict(),
        "records": {"decoded": decoded, "dropped": dropped, "matched": matched, "sent": sent},
        "deleted": deleted,
        "kept": kept,
        "capped": capped,
        "event_names": event_names,
        "dry_run": config.dry_run,
    }


@metrics.log_metrics
def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    config = ReplayConfig.from_event(event or {})
    s3, firehose = _clients(config.region)
    return run_replay(config, s3, firehose)


def report_lines(result: Dict[str, Any]) -> List[str]:
    lines = RunSummary.from_dict(result["objects"]).report_lines("Firehose replay summary", skipped_label="Skipped (nothing to send)")
    records = result["records"]
    lines.append(
        f"Records: decoded={records['decoded']} dropped={records['dropped']} "
        f"matched={records['matched']} sent={records['sent']} | objects deleted={result['deleted']}"
    )
    if result.get("kept"):
        lines.append(f"Objects kept (hold records not matching the event filter): {result['kept']}")
    if result.get("capped"):
        lines.append(f"Objects left for a later run (MAX_RECORDS reached): {result['capped']}")
    if result.get("event_names"):
        lines.append(f"Event names found: {', '.join(result['event_names'])}")
    listing = RunSummary.from_dict(result["listing"])
    if listing.failures:
        lines.append("Listing failures (prefixes not scanned):")
        lines.extend(f"  {item}: {error}" for item, error in listing.failures)
    return lines


def _main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Replay Firehose error records from S3 back into the delivery stream.")
    parser.add_argument("--bucket", default=None)
    parser.add_argument("--prefix", default=None, help="Firehose error output prefix (date-hour folders live below it).")
    parser.add_argument("--firehose-arn", default=None)
    parser.add_argument("--start-date", default=None, help="ISO date, e.g. 2025-12-25 (default: yesterday, UTC)")
    parser.add_argument("--end-date", default=None, help="ISO date, e.g. 2025-12-26 (default: today, UTC)")
    parser.add_argument("--event-name", default=None, help="Only replay records with this eventName.")
    parser.add_argument("--concurrency", type=int, default=None)
    parser.add_argument("--max-records", type=int, default=None, help="Stop sending once this many records went out (0: no cap).")
    parser.add_argument("--region", default=None)
    parser.add_argument("--keep-objects", action="store_true", help="Do not delete source objects after delivery.")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args(argv)

    event: Dict[str, Any] = {
        k: v
        for k, v in {
            "bucket": args.bucket,
            "prefix": args.prefix,
            "firehose_arn": args.firehose_arn,
            "start_date": args.start_date,
            "end_date": args.end_date,
            "event_name": args.event_name,
            "concurrency": args.concurrency,
            "max_records": args.max_records,
            "region": args.region,
        }.items()
        if v is not None
    }
    if args.keep_objects:
        event["delete_on_success"] = "false"
    if args.dry_run:
        event["dry_run"] = "true"

    try:
        config = ReplayConfig.from_event(event)
    except ConfigError as e:
        raise SystemExit(f"Configuration error: {e}")

    # not via handler: the EMF metrics flush would land on stdout ahead of the report
    s3, firehose = _clients(config.region)
    result = run_replay(config, s3, firehose)

    print("\n".join(report_lines(result)))
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
