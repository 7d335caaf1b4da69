"""
Batched, bounded-concurrency writes of records to a Kinesis stream.

The pipeline has three stages:
  - Chunker: buffers records and cuts them into PutRecords-sized batches.
  - KinesisBackgroundWriter: sends batches on a small thread pool, blocking
    the producer while every slot is busy.
  - KinesisRetrier: resubmits only the entries that a PutRecords call
    reported as failed, with exponential backoff and jitter.

Errors from any stage are collected, never raised into `enqueue`. Callers must
call `on_idle()` before exiting and inspect the errors it returns.
"""

import json
import logging
import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from mypy_boto3_kinesis import KinesisClient

from .exceptions import TransientTransportError
from .model import PutRecordsEntry

logger = logging.getLogger(__name__)

# PutRecords accepts at most 500 records and 5 MiB per request
DEFAULT_COUNT_LIMIT = 500
DEFAULT_SIZE_LIMIT = int(5 * 1024 * 1024 * 0.95)


def build_kinesis_record(partition_key: str, payload: Any) -> PutRecordsEntry:
    """Serializes `payload` as JSON into a PutRecords entry."""
    return {"PartitionKey": partition_key, "Data": json.dumps(payload).encode("utf-8")}


def record_size(record: PutRecordsEntry) -> int:
    # Kinesis bills the partition key against the request size too
    return len(record["Data"]) + len(record["PartitionKey"].encode("utf-8"))


class Chunker:
    """
    Groups enqueued records into batches bounded by count and total size.

    When adding a record would exceed either bound, the buffered batch is
    flushed first and the record starts the next batch. A single record larger
    than `size_limit` is sent alone.
    """

    def __init__(
        self,
        writer: Callable[[List[Any]], Any],
        count_limit: int = DEFAULT_COUNT_LIMIT,
        size_limit: int = DEFAULT_SIZE_LIMIT,
        sizer: Callable[[Any], int] = record_size,
    ):
        if count_limit < 1 or size_limit < 1:
            raise ValueError("count_limit and size_limit must be positive")
        self._writer = writer
        self._count_limit = count_limit
        self._size_limit = size_limit
        self._sizer = sizer
        self._buffer: List[Any] = []
        self._buffer_bytes = 0
        self._lock = threading.Lock()
        self.errors: List[Exception] = []
        self.batches_flushed = 0

    def enqueue(self, item: Any) -> None:
        """Adds a record; may block while the writer has no free slot."""
        size = self._sizer(item)
        with self._lock:
            if self._buffer and (
                len(self._buffer) + 1 > self._count_limit or self._buffer_bytes + size > self._size_limit
            ):
                self._flush_locked()
            self._buffer.append(item)
            self._buffer_bytes += size

    def flush(self) -> None:
        with self._lock:
            self._flush_locked()

    def _flush_locked(self) -> None:
        if not self._buffer:
            return
        batch = self._buffer
        self._buffer = []
        self._buffer_bytes = 0
        self.batches_flushed += 1
        try:
            self._writer(batch)
        except Exception as e:
            logger.error(f"Writer rejected a batch of {len(batch)} records: {e}")
            self.errors.append(e)

    def on_idle(self) -> List[Exception]:
        """Flushes whatever is buffered and returns the errors seen so far."""
        self.flush()
        return list(self.errors)

    @property
    def buffered(self) -> int:
        return len(self._buffer)


class SendOutcome(NamedTuple):
    records: int
    error: Optional[Exception]


class DrainResult(NamedTuple):
    sent: int
    errors: List[Exception]


class KinesisBackgroundWriter:
    """
    Sends PutRecords requests on a thread pool capped at `concurrency`.

    `send()` returns as soon as a slot is free; it blocks while all slots are
    busy, which is what pushes back on the Chunker and its producer.
    """

    def __init__(self, retrier: "KinesisRetrier", concurrency: int = 1):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._retrier = retrier
        self._slots = threading.BoundedSemaphore(concurrency)
        self._executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="kinesis-writer")
        self._futures: List["Future[SendOutcome]"] = []
        self._lock = threading.Lock()
        self._errors: List[Exception] = []
        self._sent = 0

    def send(self, request: Dict[str, Any]) -> "Future[SendOutcome]":
        self._slots.acquire()
        try:
            future = self._executor.submit(self._run, request)
        except Exception:
            self._slots.release()
            raise
        with self._lock:
            self._futures.append(future)
        return future

    def _run(self, request: Dict[str, Any]) -> SendOutcome:
        records = request["Records"]
        try:
            self._retrier.put_records(**request)
        except Exception as e:
            logger.error(f"Failed to write {len(records)} records to {request.get('StreamName')}: {e}")
            with self._lock:
                self._errors.append(e)
            return SendOutcome(len(records), e)
        finally:
            self._slots.release()
        with self._lock:
            self._sent += len(records)
        return SendOutcome(len(records), None)

    @property
    def errors(self) -> List[Exception]:
        with self._lock:
            return list(self._errors)

    @property
    def sent(self) -> int:
        with self._lock:
            return self._sent

    def on_idle(self) -> DrainResult:
        """Waits for every outstanding send to finish."""
        with self._lock:
            pending, self._futures = self._futures, []
        for future in pending:
            future.result()
        return DrainResult(self.sent, self.errors)

    drain = on_idle

    def close(self) -> DrainResult:
        result = self.on_idle()
        self._executor.shutdown(wait=True)
        return result


class KinesisRetrier:
    """
    Wraps `put_records`, resubmitting only the entries that failed.

    Whole-call failures (throttling of the request itself, connection errors)
    are retried by botocore according to the client's retry configuration and
    propagate from here once botocore gives up.
    """

    def __init__(
        self,
        kinesis_client: KinesisClient,
        max_attempts: int = 5,
        base_delay_seconds: float = 0.2,
        max_delay_seconds: float = 20.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = kinesis_client
        self._max_attempts = max_attempts
        self._base_delay = base_delay_seconds
        self._max_delay = max_delay_seconds
        self._sleep = sleep

    def put_records(self, *, StreamName: str, Records: List[PutRecordsEntry]) -> int:
        """
        Writes `Records`, retrying the failed subset until all succeed.

        Returns:
            The number of attempts used.

        Raises:
            TransientTransportError: Entries were still failing after
                `max_attempts` calls.
        """
        pending = list(Records)
        for attempt in range(self._max_attempts):
            response = self._client.put_records(StreamName=StreamName, Records=pending)
            if not response.get("FailedRecordCount"):
                return attempt + 1

            # Response entries line up with request entries by position
            failed = [
                record for record, result in zip(pending, response["Records"]) if result.get("ErrorCode")
            ]
            logger.warning(
                f"Partial failure in Kinesis put_records: {len(failed)} of {len(pending)} records failed "
                f"(attempt {attempt + 1} of {self._max_attempts})."
            )
            pending = failed

            if attempt + 1 < self._max_attempts:
                # Exponential backoff with jitter: 0.2s, 0.4s, 0.8s + random jitter
                wait_time = min(self._base_delay * (2**attempt), self._max_delay) + random.uniform(0.0, 0.1)
                self._sleep(wait_time)

        raise TransientTransportError(
            f"{len(pending)} records failed to be written to {StreamName} after all retries.",
            failed_records=[dict(r) for r in pending],
        )


@dataclass
class WritePipeline:
    """The three wired stages, driven through `enqueue` and `on_idle`."""

    chunker: Chunker
    writer: KinesisBackgroundWriter
    retrier: KinesisRetrier
    stream_name: str
    enqueued: int = field(default=0)

    def enqueue(self, partition_key: str, payload: Any) -> None:
        self.chunker.enqueue(build_kinesis_record(partition_key, payload))
        self.enqueued += 1

    @property
    def errors(self) -> List[Exception]:
        return self.chunker.errors + self.writer.errors

    def on_idle(self) -> DrainResult:
        """Flushes the chunker and waits for every batch to be written."""
        chunker_errors = self.chunker.on_idle()
        drained = self.writer.on_idle()
        return DrainResult(drained.sent, chunker_errors + drained.errors)

    def close(self) -> DrainResult:
        self.chunker.on_idle()
        drained = self.writer.close()
        return DrainResult(drained.sent, self.chunker.errors + drained.errors)


def create_pipeline(
    kinesis_client: KinesisClient,
    stream_name: str,
    concurrency: int = 1,
    count_limit: int = DEFAULT_COUNT_LIMIT,
    size_limit: int = DEFAULT_SIZE_LIMIT,
    max_attempts: int = 5,
    sleep: Callable[[float], None] = time.sleep,
) -> WritePipeline:
    """Wires Chunker, KinesisBackgroundWriter and KinesisRetrier for `stream_name`."""
    retrier = KinesisRetrier(kinesis_client, max_attempts=max_attempts, sleep=sleep)
    writer = KinesisBackgroundWriter(retrier, concurrency=concurrency)
    chunker = Chunker(
        lambda records: writer.send({"StreamName": stream_name, "Records": records}),
        count_limit=count_limit,
        size_limit=size_limit,
    )
    return WritePipeline(chunker=chunker, writer=writer, retrier=retrier, stream_name=stream_name)
