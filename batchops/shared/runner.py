"""
Bounded-concurrency map over a list of work items.

`run_map` calls `op` once per item with at most `concurrency` calls in flight.
A worker picks up the next un-started item as soon as it finishes its current
one (sliding window, not batch-then-wait). Every item is visited even when
others fail: an exception raised by `op` becomes a failed `Outcome` for that
item only. Results come back in input order regardless of completion order.

`summarize` folds the outcomes into counts plus the failure list that the
tools print at the end of a run.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, List, Optional, Sequence, Tuple, TypeVar

from batchops.shared.utils import log


T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    item: Any
    succeeded: bool
    value: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, item: Any, value: T) -> "Outcome[T]":
        return cls(item=item, succeeded=True, value=value)

    @classmethod
    def fail(cls, item: Any, error: str) -> "Outcome[T]":
        return cls(item=item, succeeded=False, error=error)


@dataclass(frozen=True)
class RunSummary:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)

    def report_lines(self, title: str = "Summary", skipped_label: str = "Skipped") -> List[str]:
        bar = "=" * 70
        lines = [
            bar,
            title,
            bar,
            f"Total: {self.total}",
            f"Succeeded: {self.succeeded}",
            f"{skipped_label}: {self.skipped}",
            f"Failed: {self.failed}",
            bar,
        ]
        if self.failures:
            lines.append("Failures:")
            lines.extend(f"  {item}: {error}" for item, error in self.failures)
        return lines

    @classmethod
    def from_dict(cls, d: dict) -> "RunSummary":
        return cls(
            total=int(d.get("total", 0)),
            succeeded=int(d.get("succeeded", 0)),
            failed=int(d.get("failed", 0)),
            skipped=int(d.get("skipped", 0)),
            failures=[(f["item"], f["error"]) for f in d.get("failures", [])],
        )

    def as_dict(self) -> dict:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "failures": [{"item": item, "error": error} for item, error in self.failures],
        }


def _call(op: Callable[[Any], T], item: Any) -> Outcome[T]:
    try:
        return Outcome.ok(item, op(item))
    except Exception as e:
        return Outcome.fail(item, str(e) or type(e).__name__)


def run_map(items: Sequence[Any], op: Callable[[Any], T], concurrency: int) -> List[Outcome[T]]:
    if concurrency < 1:
        raise ValueError(f"concurrency must be >= 1, got {concurrency}")
    if not items:
        return []

    results: List[Optional[Outcome[T]]] = [None] * len(items)

    def _task(index: int) -> None:
        results[index] = _call(op, items[index])

    workers = min(concurrency, len(items))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_task, i) for i in range(len(items))]
        for f in futures:
            f.result()

    log("run_map_done", items=len(items), concurrency=concurrency)
    return [r for r in results if r is not None]


def summarize(
    outcomes: Sequence[Outcome[Any]],
    label: Callable[[Any], str] = str,
    is_skipped: Optional[Callable[[Any], bool]] = None,
) -> RunSummary:
    succeeded = 0
    skipped = 0
    failures: List[Tuple[str, str]] = []
    for o in outcomes:
        if not o.succeeded:
            failures.append((label(o.item), o.error or "unknown error"))
        elif is_skipped is not None and is_skipped(o.value):
            skipped += 1
        else:
            succeeded += 1
    return RunSummary(
        total=len(outcomes),
        succeeded=succeeded,
        failed=len(failures),
        skipped=skipped,
        failures=failures,
    )
