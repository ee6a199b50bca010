from __future__ import annotations
import queue
import threading
from typing import Optional

import redis

from .logging_config import logger


class BrokerError(Exception):
    """The queue broker cannot be reached or rejected an operation."""


class JobBroker:
    """Durable hand-off between the dispatch router and the worker."""

    name = "broker"

    def ping(self) -> None:
        raise NotImplementedError

    def enqueue(self, payload: bytes) -> None:
        raise NotImplementedError

    def dequeue(self, timeout: float) -> Optional[bytes]:
        """Next payload, or None when nothing arrived within timeout."""
        raise NotImplementedError

    def ack(self, payload: bytes) -> None:
        """Drop a payload that reached a terminal outcome."""
        raise NotImplementedError

    def close(self) -> None:
        pass


class RedisJobBroker(JobBroker):
    """Reliable list queue: RPUSH in, BLMOVE to a processing list, LREM on ack."""

    name = "redis"

    def __init__(self, url: str, queue_name: str = "exchange-jobs", connect_timeout: float = 3.0, block_timeout: float = 1.0):
        self.url = url
        self.queue_name = queue_name
        self.processing_name = f"{queue_name}:processing"
        self.client = redis.Redis.from_url(
            url,
            socket_connect_timeout=connect_timeout,
            socket_timeout=connect_timeout + block_timeout,
        )

    def ping(self) -> None:
        try:
            self.client.ping()
        except redis.RedisError as e:
            raise BrokerError(f"redis ping failed: {e}") from e

    def enqueue(self, payload: bytes) -> None:
        try:
            self.client.rpush(self.queue_name, payload)
        except redis.RedisError as e:
            raise BrokerError(f"redis enqueue failed: {e}") from e

    def dequeue(self, timeout: float) -> Optional[bytes]:
        try:
            return self.client.blmove(self.queue_name, self.processing_name, timeout, "LEFT", "RIGHT")
        except redis.RedisError as e:
            raise BrokerError(f"redis dequeue failed: {e}") from e

    def ack(self, payload: bytes) -> None:
        try:
            self.client.lrem(self.processing_name, 1, payload)
        except redis.RedisError as e:
            raise BrokerError(f"redis ack failed: {e}") from e

    def close(self) -> None:
        self.client.close()


class MemoryJobBroker(JobBroker):
    """In-process queue (``memory://``). Not durable across restarts."""

    name = "memory"

    def __init__(self):
        self.q: queue.Queue[bytes] = queue.Queue()
        self.in_flight: list[bytes] = []
        self.lock = threading.Lock()

    def ping(self) -> None:
        return None

    def enqueue(self, payload: bytes) -> None:
        self.q.put(payload)

    def dequeue(self, timeout: float) -> Optional[bytes]:
        try:
            payload = self.q.get(timeout=timeout)
        except queue.Empty:
            return None
        with self.lock:
            self.in_flight.append(payload)
        return payload

    def ack(self, payload: bytes) -> None:
        with self.lock:
            if payload in self.in_flight:
                self.in_flight.remove(payload)
        self.q.task_done()


def broker_from_url(url: str, queue_name: str, connect_timeout: float, block_timeout: float) -> JobBroker:
    if url.startswith("memory://"):
        return MemoryJobBroker()
    return RedisJobBroker(url, queue_name=queue_name, connect_timeout=connect_timeout, block_timeout=block_timeout)


def probe_broker(settings) -> Optional[JobBroker]:
    """Probe queue infrastructure once. None means: run everything inline."""
    url = settings.queue_url
    if not url:
        logger.info("No queue broker configured. Using inline mode for jobs.")
        return None
    try:
        broker = broker_from_url(
            url,
            queue_name=settings.QUEUE_NAME,
            connect_timeout=settings.QUEUE_PROBE_TIMEOUT_SECONDS,
            block_timeout=settings.WORKER_POLL_SECONDS,
        )
        broker.ping()
    except (BrokerError, redis.RedisError, ValueError) as e:
        logger.warning(f"Queue broker configured but unreachable, falling back to inline mode: {e}")
        return None
    logger.info(f"Queue broker reachable ({broker.name})")
    return broker
