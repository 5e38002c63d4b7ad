"""Bounded fan-out of generate -> commit -> tag over a batch of products.

Idempotency is a selection-time filter: callers fetch entities with a
`-tag:<tag>` search so anything tagged by an earlier run never reaches `run`.
The orchestrator does not re-check tags.

Tagging is a separate mutation after the content update. A crash between the
two leaves a product updated but untagged; the next run picks it up again and
regenerates it. Nothing here makes that atomic.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from phoenix.config import BATCH_CONCURRENCY, BATCH_BACKOFF_SECONDS
from phoenix.errors import InfrastructureError, RateLimitError

log = logging.getLogger(__name__)


class Outcome(str, Enum):
    PENDING = "pending"
    OPTIMIZED = "optimized"
    FAILED = "failed"
    SKIPPED = "skipped"


class ItemState(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    GENERATED = "generated"
    COMMITTING = "committing"
    COMMITTED = "committed"
    TAGGED = "tagged"
    FAILED = "failed"
    SKIPPED = "skipped"


_OUTCOMES = {
    ItemState.TAGGED: Outcome.OPTIMIZED,
    ItemState.FAILED: Outcome.FAILED,
    ItemState.SKIPPED: Outcome.SKIPPED,
}


@dataclass
class BatchItem:
    entity_id: str
    snapshot: Dict[str, Any] = field(default_factory=dict)
    state: ItemState = ItemState.PENDING
    tag: Optional[str] = None
    patch_summary: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    failure_stage: Optional[str] = None
    rate_limited: bool = False
    charged: bool = False
    charge_error: Optional[str] = None

    @property
    def outcome(self) -> Outcome:
        # In-flight states only show up in aborted runs; they never reached a terminal state
        return _OUTCOMES.get(self.state, Outcome.PENDING)

    def fail(self, stage: str, err: BaseException, *, rate_limited: bool = False):
        self.state = ItemState.FAILED
        self.failure_stage = stage
        self.error = str(err) or err.__class__.__name__
        self.rate_limited = rate_limited

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"id": self.entity_id, "status": self.outcome.value}
        if self.outcome == Outcome.OPTIMIZED:
            out["patch"] = self.patch_summary
            out["tag"] = self.tag
        if self.outcome == Outcome.FAILED:
            out["stage"] = self.failure_stage
            out["error"] = self.error
            if self.rate_limited:
                out["rate_limited"] = True
        if self.charge_error:
            out["charge_error"] = self.charge_error
        return out


@dataclass
class BatchReport:
    tag: str
    items: List[BatchItem] = field(default_factory=list)
    aborted: bool = False
    error: Optional[str] = None

    def _count(self, outcome: Outcome) -> int:
        return sum(1 for i in self.items if i.outcome == outcome)

    @property
    def optimized(self) -> int:
        return self._count(Outcome.OPTIMIZED)

    @property
    def failed(self) -> int:
        return self._count(Outcome.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(Outcome.SKIPPED)

    @property
    def pending(self) -> int:
        return self._count(Outcome.PENDING)

    @property
    def rate_limited(self) -> int:
        return sum(1 for i in self.items if i.rate_limited)

    @property
    def charge_failed(self) -> int:
        return sum(1 for i in self.items if i.charge_error)

    def get(self, entity_id: str) -> Optional[BatchItem]:
        for i in self.items:
            if i.entity_id == entity_id:
                return i
        return None

    def counts(self) -> Dict[str, int]:
        return {
            "optimized": self.optimized,
            "failed": self.failed,
            "skipped": self.skipped,
            "pending": self.pending,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tag": self.tag,
            "count": len(self.items),
            **self.counts(),
            "rate_limited": self.rate_limited,
            "charge_failed": self.charge_failed,
            "aborted": self.aborted,
            "error": self.error,
            "report": [i.to_dict() for i in self.items],
        }


Transform = Callable[[Dict[str, Any]], Dict[str, Any]]
Commit = Callable[[str, Dict[str, Any]], Any]
ApplyTag = Callable[[str, str], Any]
Charge = Callable[[BatchItem], Any]


class BatchOrchestrator:
    """Runs the per-product pipeline with at most `concurrency` products in flight.

    Collaborators (transform, commit, apply_tag, charge) are plain blocking
    callables, the way the Shopify and Gemini clients are written; each call
    runs in a worker thread.
    """

    def __init__(self, *, concurrency: int | None = None, backoff_seconds: float | None = None, id_key: str = "id"):
        self.concurrency = max(1, int(concurrency or BATCH_CONCURRENCY))
        self.backoff_seconds = BATCH_BACKOFF_SECONDS if backoff_seconds is None else float(backoff_seconds)
        self.id_key = id_key

    async def run(
        self,
        entities: Iterable[Dict[str, Any]],
        transform: Transform,
        tag: str,
        *,
        commit: Commit,
        apply_tag: ApplyTag,
        charge: Charge | None = None,
        skipped: Iterable[str] = (),
        summarize: Callable[[Dict[str, Any]], Dict[str, Any]] | None = None,
    ) -> BatchReport:
        """Process every entity; entity failures stay in the report and never raise.

        `skipped` lists ids the caller's selection excluded; they are reported
        but never processed. `charge` is called once per product after its
        commit and tag both succeeded (per-unit billing).
        """
        items = [BatchItem(entity_id=str(e.get(self.id_key)), snapshot=dict(e)) for e in entities]
        report = BatchReport(tag=tag, items=items)
        report.items.extend(BatchItem(entity_id=str(s), state=ItemState.SKIPPED) for s in skipped)
        if not items:
            return report

        loop = asyncio.get_running_loop()
        sem = asyncio.Semaphore(self.concurrency)
        abort = asyncio.Event()
        resume_at = [0.0]

        async def worker(item: BatchItem):
            async with sem:
                wait = resume_at[0] - loop.time()
                if wait > 0:
                    await asyncio.sleep(wait)
                if abort.is_set():
                    return
                try:
                    await self._process(item, transform, tag, commit, apply_tag, charge, summarize)
                except InfrastructureError as e:
                    abort.set()
                    report.aborted = True
                    report.error = str(e)
                    if item.state != ItemState.TAGGED:
                        item.fail("infrastructure", e)
                    log.error("[batch] tag=%s aborting after infrastructure failure on %s: %s", tag, item.entity_id, e)
                if item.rate_limited:
                    resume_at[0] = max(resume_at[0], loop.time() + self.backoff_seconds)

        await asyncio.gather(*(worker(i) for i in items))
        log.info(
            "[batch] tag=%s done optimized=%s failed=%s skipped=%s pending=%s aborted=%s",
            tag, report.optimized, report.failed, report.skipped, report.pending, report.aborted,
        )
        return report

    async def _process(self, item: BatchItem, transform, tag, commit, apply_tag, charge, summarize):
        item.state = ItemState.GENERATING
        try:
            patch = await asyncio.to_thread(transform, item.snapshot)
            if not patch:
                raise ValueError("generator returned no changes")
            summary = summarize(patch) if summarize else patch
        except InfrastructureError:
            raise
        except RateLimitError as e:
            item.fail("generation", e, rate_limited=True)
            log.warning("[batch] generation throttled for %s: %s", item.entity_id, e)
            return
        except Exception as e:
            item.fail("generation", e)
            log.warning("[batch] generation failed for %s: %s", item.entity_id, e)
            return
        item.state = ItemState.GENERATED
        item.patch_summary = summary

        item.state = ItemState.COMMITTING
        try:
            await asyncio.to_thread(commit, item.entity_id, patch)
        except InfrastructureError:
            raise
        except RateLimitError as e:
            item.fail("commit", e, rate_limited=True)
            log.warning("[batch] commit throttled for %s: %s", item.entity_id, e)
            return
        except Exception as e:
            item.fail("commit", e)
            log.warning("[batch] commit failed for %s: %s", item.entity_id, e)
            return
        item.state = ItemState.COMMITTED

        try:
            await asyncio.to_thread(apply_tag, item.entity_id, tag)
        except InfrastructureError:
            raise
        except Exception as e:
            # Content is live but untagged, so the next run will pick it up again
            item.fail("tag", e, rate_limited=isinstance(e, RateLimitError))
            log.warning("[batch] %s updated but tagging %r failed: %s", item.entity_id, tag, e)
            return
        item.state = ItemState.TAGGED
        item.tag = tag

        if charge:
            # Product is live and tagged either way; a billing failure only marks it unbilled
            try:
                await asyncio.to_thread(charge, item)
            except Exception as e:
                item.charge_error = str(e) or e.__class__.__name__
                log.error("[batch] %s committed and tagged but charging failed: %s", item.entity_id, e)
                if isinstance(e, InfrastructureError):
                    raise
                return
            item.charged = True
