"""
Order/job state store.

`JobStore` is the capability request handlers depend on. `SqlJobStore` backs it
with the orders/jobs tables; `MockJobStore` keeps everything in process memory
with TTL eviction for POC mock mode. Both apply the same state rules:

* terminal statuses (SUCCEEDED, FAILED) are absorbing;
* output URLs are filled, never cleared (an incoming None keeps the stored value);
* the poller may only move an order out of PROCESSING.
"""
import abc
import logging
import threading
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import TERMINAL_STATUSES, Job, Order, OrderStatus, WebhookEvent, utcnow

logger = logging.getLogger(__name__)

MANUAL_REF_PREFIX = "MANUAL-"


def new_order_id(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"ORD-{now:%Y%m%d}-{uuid.uuid4().hex[:4].upper()}"


def new_manual_ref() -> str:
    return f"{MANUAL_REF_PREFIX}{int(time.time() * 1000)}-{uuid.uuid4().hex[:8].upper()}"


def is_manual_ref(external_ref: Optional[str]) -> bool:
    return not external_ref or external_ref.startswith(MANUAL_REF_PREFIX)


def fill(existing: Optional[str], incoming: Optional[str]) -> Optional[str]:
    return incoming if incoming is not None else existing


def is_terminal(status: Optional[str]) -> bool:
    return status in TERMINAL_STATUSES


def _as_utc_timestamp(value: Optional[datetime]) -> float:
    if value is None:
        return 0.0
    # Naive values come back from columns without a time zone and are stored as UTC.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


@dataclass
class JobRecord:
    """Flattened Order + Job view."""
    runpod_id: str
    order_id: str
    status: str
    shopify_order_id: str = ""
    source_image_url: str = ""
    style: str = ""
    seed: Optional[int] = None
    output_image_url: Optional[str] = None
    output_video_url: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0
    expires_at: Optional[float] = None


@dataclass
class Transition:
    record: Optional[JobRecord]
    changed: bool


class JobStore(abc.ABC):
    @abc.abstractmethod
    def get(self, runpod_id: str) -> Optional[JobRecord]:
        ...

    @abc.abstractmethod
    def put(self, record: JobRecord) -> JobRecord:
        ...

    @abc.abstractmethod
    def delete(self, runpod_id: str) -> bool:
        ...

    @abc.abstractmethod
    def sweep_expired(self) -> int:
        ...

    @abc.abstractmethod
    def create_order(self, *, external_ref: str, image_url: str, style: str) -> str:
        """Insert a PENDING order, or update image/style of the order with the same external ref."""

    @abc.abstractmethod
    def attach_job(
        self,
        order_id: str,
        runpod_id: str,
        *,
        status: str,
        image_url: Optional[str] = None,
        video_url: Optional[str] = None,
        seed: Optional[int] = None,
    ) -> JobRecord:
        """Insert-or-update the job row and set the order status in one transaction."""

    @abc.abstractmethod
    def set_order_status(self, order_id: str, status: str) -> bool:
        ...

    @abc.abstractmethod
    def mark_failed(self, runpod_id: str) -> Transition:
        ...

    @abc.abstractmethod
    def mark_succeeded(self, runpod_id: str, image_url: Optional[str], video_url: Optional[str]) -> Transition:
        ...

    @abc.abstractmethod
    def apply_poll_result(
        self,
        runpod_id: str,
        status: Optional[str],
        image_url: Optional[str],
        video_url: Optional[str],
    ) -> Transition:
        ...

    @abc.abstractmethod
    def record_webhook_event(self, event_id: str, topic: str) -> bool:
        """True if the event was new, False for a duplicate delivery."""


class SqlJobStore(JobStore):
    def __init__(self, db: Session):
        self.db = db

    def _load(self, runpod_id: str):
        return (
            self.db.query(Job, Order)
            .join(Order, Job.order_id == Order.id)
            .filter(Job.runpod_id == runpod_id)
            .first()
        )

    @staticmethod
    def _to_record(job: Job, order: Order) -> JobRecord:
        created = _as_utc_timestamp(order.created_at)
        return JobRecord(
            runpod_id=job.runpod_id,
            order_id=order.id,
            status=order.status,
            shopify_order_id=order.shopify_order_id,
            source_image_url=order.image_url,
            style=order.style,
            output_image_url=job.output_image_url,
            output_video_url=job.output_video_url,
            created_at=created,
            updated_at=created,
        )

    def get(self, runpod_id: str) -> Optional[JobRecord]:
        row = self._load(runpod_id)
        if not row:
            return None
        return self._to_record(*row)

    def put(self, record: JobRecord) -> JobRecord:
        try:
            order = self.db.get(Order, record.order_id)
            if order is None:
                order = Order(
                    id=record.order_id,
                    shopify_order_id=record.shopify_order_id or new_manual_ref(),
                    image_url=record.source_image_url,
                    style=record.style,
                    status=record.status,
                )
                self.db.add(order)
            else:
                order.status = record.status
            job = self.db.get(Job, record.runpod_id)
            if job is None:
                job = Job(runpod_id=record.runpod_id, order_id=record.order_id)
                self.db.add(job)
            job.order_id = record.order_id
            job.output_image_url = fill(job.output_image_url, record.output_image_url)
            job.output_video_url = fill(job.output_video_url, record.output_video_url)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return self.get(record.runpod_id)

    def delete(self, runpod_id: str) -> bool:
        deleted = self.db.query(Job).filter(Job.runpod_id == runpod_id).delete(synchronize_session=False)
        self.db.commit()
        return deleted > 0

    def sweep_expired(self) -> int:
        # Rows are only removed through order deletion upstream.
        return 0

    def create_order(self, *, external_ref: str, image_url: str, style: str) -> str:
        for _ in range(2):
            existing = self.db.query(Order).filter(Order.shopify_order_id == external_ref).first()
            if existing:
                existing.image_url = image_url
                existing.style = style
                self.db.commit()
                return existing.id
            order = Order(
                id=new_order_id(),
                shopify_order_id=external_ref,
                image_url=image_url,
                style=style,
                status=OrderStatus.PENDING.value,
            )
            self.db.add(order)
            try:
                self.db.commit()
                return order.id
            except IntegrityError:
                # Lost a race on shopify_order_id (or an id collision); retry as an update.
                self.db.rollback()
        raise RuntimeError("Failed to create or fetch order record")

    def attach_job(
        self,
        order_id: str,
        runpod_id: str,
        *,
        status: str,
        image_url: Optional[str] = None,
        video_url: Optional[str] = None,
        seed: Optional[int] = None,
    ) -> JobRecord:
        try:
            job = self.db.get(Job, runpod_id)
            if job is None:
                job = Job(
                    runpod_id=runpod_id,
                    order_id=order_id,
                    output_image_url=image_url,
                    output_video_url=video_url,
                )
                self.db.add(job)
            else:
                job.order_id = order_id
                job.output_image_url = fill(job.output_image_url, image_url)
                job.output_video_url = fill(job.output_video_url, video_url)
            self.db.query(Order).filter(Order.id == order_id).update(
                {Order.status: status}, synchronize_session=False
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return self.get(runpod_id)

    def set_order_status(self, order_id: str, status: str) -> bool:
        updated = (
            self.db.query(Order)
            .filter(Order.id == order_id, Order.status != status)
            .update({Order.status: status}, synchronize_session=False)
        )
        self.db.commit()
        return updated > 0

    def _promote(self, order_id: str, status: str, allowed_from) -> bool:
        updated = (
            self.db.query(Order)
            .filter(Order.id == order_id, Order.status.in_(allowed_from))
            .update({Order.status: status}, synchronize_session=False)
        )
        return updated > 0

    def mark_failed(self, runpod_id: str) -> Transition:
        row = self._load(runpod_id)
        if not row:
            return Transition(None, False)
        _, order = row
        try:
            changed = self._promote(
                order.id,
                OrderStatus.FAILED.value,
                (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value),
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return Transition(self.get(runpod_id), changed)

    def mark_succeeded(self, runpod_id: str, image_url: Optional[str], video_url: Optional[str]) -> Transition:
        row = self._load(runpod_id)
        if not row:
            return Transition(None, False)
        job, order = row
        try:
            job.output_image_url = fill(job.output_image_url, image_url)
            job.output_video_url = fill(job.output_video_url, video_url)
            changed = self._promote(
                order.id,
                OrderStatus.SUCCEEDED.value,
                (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value),
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return Transition(self.get(runpod_id), changed)

    def apply_poll_result(
        self,
        runpod_id: str,
        status: Optional[str],
        image_url: Optional[str],
        video_url: Optional[str],
    ) -> Transition:
        row = self._load(runpod_id)
        if not row:
            return Transition(None, False)
        job, order = row
        try:
            job.output_image_url = fill(job.output_image_url, image_url)
            job.output_video_url = fill(job.output_video_url, video_url)
            changed = False
            if is_terminal(status):
                changed = self._promote(order.id, status, (OrderStatus.PROCESSING.value,))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return Transition(self.get(runpod_id), changed)

    def record_webhook_event(self, event_id: str, topic: str) -> bool:
        self.db.add(WebhookEvent(event_id=event_id, topic=topic))
        try:
            self.db.commit()
            return True
        except IntegrityError:
            self.db.rollback()
            return False


@dataclass
class StoredObject:
    key: str
    body: bytes
    content_type: str
    content_length: int
    created_at: float
    expires_at: float


class MockJobStore(JobStore):
    """Single-process store for POC mock mode. Expired entries are swept on every access."""

    def __init__(self, ttl_seconds: float, clock=time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._jobs: Dict[str, JobRecord] = {}
        self._orders: Dict[str, JobRecord] = {}  # orders awaiting a job id, keyed by order id
        self._objects: Dict[str, StoredObject] = {}
        self._events: Dict[str, float] = {}
        self._lock = threading.RLock()

    def _stamp(self, record: JobRecord) -> JobRecord:
        now = self.clock()
        return replace(record, updated_at=now, expires_at=now + self.ttl_seconds)

    def sweep_expired(self) -> int:
        with self._lock:
            now = self.clock()
            removed = 0
            for table in (self._jobs, self._orders, self._objects):
                for key in [k for k, v in table.items() if v.expires_at is not None and v.expires_at <= now]:
                    del table[key]
                    removed += 1
            for key in [k for k, expires in self._events.items() if expires <= now]:
                del self._events[key]
                removed += 1
            return removed

    def get(self, runpod_id: str) -> Optional[JobRecord]:
        with self._lock:
            self.sweep_expired()
            return self._jobs.get(runpod_id)

    def put(self, record: JobRecord) -> JobRecord:
        with self._lock:
            self.sweep_expired()
            existing = self._jobs.get(record.runpod_id)
            if existing:
                record = replace(
                    record,
                    output_image_url=fill(existing.output_image_url, record.output_image_url),
                    output_video_url=fill(existing.output_video_url, record.output_video_url),
                    created_at=existing.created_at,
                )
            elif not record.created_at:
                record = replace(record, created_at=self.clock())
            stamped = self._stamp(record)
            self._jobs[record.runpod_id] = stamped
            return stamped

    def delete(self, runpod_id: str) -> bool:
        with self._lock:
            self.sweep_expired()
            return self._jobs.pop(runpod_id, None) is not None

    def put_object(self, key: str, body: bytes, content_type: str) -> StoredObject:
        with self._lock:
            self.sweep_expired()
            now = self.clock()
            stored = StoredObject(
                key=key,
                body=body,
                content_type=content_type,
                content_length=len(body),
                created_at=now,
                expires_at=now + self.ttl_seconds,
            )
            self._objects[key] = stored
            return stored

    def get_object(self, key: str) -> Optional[StoredObject]:
        with self._lock:
            self.sweep_expired()
            return self._objects.get(key)

    def create_order(self, *, external_ref: str, image_url: str, style: str) -> str:
        with self._lock:
            self.sweep_expired()
            for table in (self._orders, self._jobs):
                for key, record in table.items():
                    if record.shopify_order_id == external_ref:
                        table[key] = self._stamp(replace(record, source_image_url=image_url, style=style))
                        return record.order_id
            order_id = new_order_id()
            self._orders[order_id] = self._stamp(
                JobRecord(
                    runpod_id="",
                    order_id=order_id,
                    status=OrderStatus.PENDING.value,
                    shopify_order_id=external_ref,
                    source_image_url=image_url,
                    style=style,
                    created_at=self.clock(),
                )
            )
            return order_id

    def attach_job(
        self,
        order_id: str,
        runpod_id: str,
        *,
        status: str,
        image_url: Optional[str] = None,
        video_url: Optional[str] = None,
        seed: Optional[int] = None,
    ) -> JobRecord:
        with self._lock:
            self.sweep_expired()
            base = self._orders.pop(order_id, None) or self._jobs.get(runpod_id)
            if base is None:
                base = JobRecord(runpod_id=runpod_id, order_id=order_id, status=status, created_at=self.clock())
            record = replace(
                base,
                runpod_id=runpod_id,
                order_id=order_id,
                status=status,
                seed=seed if seed is not None else base.seed,
            )
            record.output_image_url = fill(base.output_image_url, image_url)
            record.output_video_url = fill(base.output_video_url, video_url)
            self._jobs[runpod_id] = self._stamp(record)
            return self._jobs[runpod_id]

    def set_order_status(self, order_id: str, status: str) -> bool:
        with self._lock:
            self.sweep_expired()
            changed = False
            for table in (self._orders, self._jobs):
                for key, record in table.items():
                    if record.order_id == order_id and record.status != status:
                        table[key] = self._stamp(replace(record, status=status))
                        changed = True
            return changed

    def _transition(
        self,
        runpod_id: str,
        status: Optional[str],
        allowed_from,
        image_url: Optional[str] = None,
        video_url: Optional[str] = None,
    ) -> Transition:
        with self._lock:
            self.sweep_expired()
            existing = self._jobs.get(runpod_id)
            if existing is None:
                return Transition(None, False)
            changed = status is not None and existing.status in allowed_from
            updated = replace(
                existing,
                status=status if changed else existing.status,
                output_image_url=fill(existing.output_image_url, image_url),
                output_video_url=fill(existing.output_video_url, video_url),
            )
            if updated != existing:
                updated = self._stamp(updated)
                self._jobs[runpod_id] = updated
            return Transition(updated, changed)

    def mark_failed(self, runpod_id: str) -> Transition:
        return self._transition(
            runpod_id,
            OrderStatus.FAILED.value,
            (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value),
        )

    def mark_succeeded(self, runpod_id: str, image_url: Optional[str], video_url: Optional[str]) -> Transition:
        return self._transition(
            runpod_id,
            OrderStatus.SUCCEEDED.value,
            (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value),
            image_url,
            video_url,
        )

    def apply_poll_result(
        self,
        runpod_id: str,
        status: Optional[str],
        image_url: Optional[str],
        video_url: Optional[str],
    ) -> Transition:
        target = status if is_terminal(status) else None
        return self._transition(runpod_id, target, (OrderStatus.PROCESSING.value,), image_url, video_url)

    def record_webhook_event(self, event_id: str, topic: str) -> bool:
        with self._lock:
            self.sweep_expired()
            if event_id in self._events:
                return False
            self._events[event_id] = self.clock() + self.ttl_seconds
            return True
