import os
import ssl
import json
import time
import asyncio
import hashlib
import logging
from dataclasses import dataclass
from nats.aio.client import Client as NATS
from nats.js.api import AckPolicy, ConsumerConfig, DeliverPolicy, RetentionPolicy, StreamConfig
from nats.errors import TimeoutError
from typing import Awaitable, Callable, Dict, Any, List, Optional, Set

import uuid6

from core.config_defaults import (
    DEFAULT_NATS_CERT_DIR,
    DEFAULT_NATS_CMD_MAX_AGE_SECONDS,
    DEFAULT_NATS_EVT_MAX_AGE_SECONDS,
    DEFAULT_NATS_FETCH_BATCH,
    DEFAULT_NATS_FETCH_TIMEOUT_SECONDS,
    DEFAULT_NATS_SERVERS,
    DEFAULT_PROTOCOL_VERSION,
)
from core.subject import cmd_pattern, evt_pattern
from core.utils import consumer_label


logger = logging.getLogger("NATSClient")

TRACE_HEADER = "TR-Trace-Id"
MSG_TYPE_HEADER = "TR-Msg-Type"
TIMESTAMP_HEADER = "TR-Timestamp"
VERSION_HEADER = "TR-Version"
SENDER_HEADER = "TR-Sender"
DELIVERY_HEADER = "TR-Delivery-Count"

# JetStream durable names longer than this get a hashed suffix
_MAX_DURABLE_LEN = 64

MessageCallback = Callable[[str, Dict[str, Any], Dict[str, str]], Awaitable[Any]]


@dataclass(frozen=True)
class NATSSubscriptionHandle:
    durable_name: str
    task: asyncio.Task

    def stop(self) -> None:
        self.task.cancel()

    async def wait(self, cancel_ok: bool = True) -> None:
        """Wait for the pull loop; cancellation after stop() counts as a clean exit."""
        try:
            await self.task
        except asyncio.CancelledError:
            if not cancel_ok:
                raise


def durable_name_for(prefix: str, subject: str) -> str:
    """Stable durable name for a (consumer prefix, filter subject) pair."""
    readable = consumer_label(f"{prefix}_{subject.replace('*', 'all').replace('>', 'rest')}")
    if len(readable) <= _MAX_DURABLE_LEN:
        return readable
    digest = hashlib.md5(f"{prefix}|{subject}".encode()).hexdigest()[:8]
    return f"{consumer_label(prefix)[: _MAX_DURABLE_LEN - 9]}_{digest}"


def _delivery_count(msg: Any) -> int:
    try:
        return int(msg.metadata.num_delivered)
    except Exception:  # noqa: BLE001
        return 1


class _PullWorker:
    """Fetch loop for one pull consumer; each message runs as its own task, bounded by max_inflight."""

    def __init__(
        self,
        sub: Any,
        *,
        durable_name: str,
        callback: MessageCallback,
        batch: int,
        fetch_timeout: float,
        max_inflight: int,
    ) -> None:
        self.sub = sub
        self.durable_name = durable_name
        self.callback = callback
        self.batch = batch
        self.fetch_timeout = fetch_timeout
        self._slots = asyncio.Semaphore(max_inflight)
        self._inflight: Set[asyncio.Task] = set()

    async def _handle(self, msg: Any) -> None:
        try:
            data = json.loads(msg.data.decode("utf-8"))
        except ValueError as exc:
            # undecodable payloads are acked, never redelivered
            logger.warning("Dropping undecodable message subject=%s: %s", msg.subject, exc)
            try:
                await msg.ack()
            except Exception as ack_exc:  # noqa: BLE001
                logger.debug("ack of undecodable message failed: %s", ack_exc)
            return

        headers = dict(msg.headers or {})
        delivered = _delivery_count(msg)
        headers[DELIVERY_HEADER] = str(delivered)
        if delivered > 1:
            logger.info(
                "Redelivery #%s subject=%s turn=%s",
                delivered,
                msg.subject,
                headers.get("TR-Turn-Id", "-"),
            )
        try:
            await self.callback(msg.subject, data, headers)
            await msg.ack()
        except Exception as exc:  # noqa: BLE001
            logger.error("Error processing message subject=%s: %s", msg.subject, exc, exc_info=True)
            try:
                await msg.nak()
            except Exception as nak_exc:  # noqa: BLE001
                logger.debug("nak failed subject=%s: %s", msg.subject, nak_exc)

    def _release(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        self._slots.release()

    async def run(self) -> None:
        try:
            while True:
                try:
                    msgs = await self.sub.fetch(self.batch, timeout=self.fetch_timeout)
                except TimeoutError:
                    continue
                except Exception as exc:  # noqa: BLE001
                    logger.error("Fetch failed durable=%s: %s", self.durable_name, exc)
                    await asyncio.sleep(1)
                    continue
                for msg in msgs:
                    await self._slots.acquire()
                    task = asyncio.create_task(self._handle(msg), name=f"hop_msg:{self.durable_name}")
                    self._inflight.add(task)
                    task.add_done_callback(self._release)
        except asyncio.CancelledError:
            pass
        finally:
            if self._inflight:
                for task in list(self._inflight):
                    task.cancel()
                await asyncio.gather(*list(self._inflight), return_exceptions=True)


class NATSClient:
    """JetStream wrapper owning the two turnrelay streams.

    ``tr_cmd_<ver>`` is a work queue: a hop command is removed once one
    worker acks it. ``tr_evt_<ver>`` keeps broadcast hops and session
    notifications under limits retention.
    """

    def __init__(
        self,
        servers: Optional[list[str]] = None,
        cert_dir: Optional[str] = None,
        tls_enabled: Optional[bool] = None,
        config: Optional[Dict[str, Any]] = None,
        protocol_version: str = DEFAULT_PROTOCOL_VERSION,
    ):
        cfg = config or {}

        raw_servers = servers if isinstance(servers, list) else cfg.get("servers")
        self.servers = [
            s.strip() for s in (raw_servers or []) if isinstance(s, str) and s.strip()
        ] or list(DEFAULT_NATS_SERVERS)

        self.tls_enabled = bool(tls_enabled if tls_enabled is not None else cfg.get("tls_enabled", False))
        self.cert_dir = cert_dir or cfg.get("cert_dir") or DEFAULT_NATS_CERT_DIR
        self.protocol_version = protocol_version

        self.cmd_max_age = int(cfg.get("cmd_max_age_seconds") or DEFAULT_NATS_CMD_MAX_AGE_SECONDS)
        self.evt_max_age = int(cfg.get("evt_max_age_seconds") or DEFAULT_NATS_EVT_MAX_AGE_SECONDS)
        self.fetch_batch = max(1, int(cfg.get("fetch_batch") or DEFAULT_NATS_FETCH_BATCH))
        self.fetch_timeout = float(cfg.get("fetch_timeout_seconds") or DEFAULT_NATS_FETCH_TIMEOUT_SECONDS)

        self.nc = NATS()
        self.js = None
        self._tasks: Set[asyncio.Task] = set()
        self._streams_ready = False

    @property
    def cmd_stream(self) -> str:
        return f"tr_cmd_{self.protocol_version}"

    @property
    def evt_stream(self) -> str:
        return f"tr_evt_{self.protocol_version}"

    def stream_configs(self) -> List[StreamConfig]:
        return [
            StreamConfig(
                name=self.cmd_stream,
                subjects=[cmd_pattern(self.protocol_version)],
                retention=RetentionPolicy.WORK_QUEUE,
                max_age=self.cmd_max_age,
            ),
            StreamConfig(
                name=self.evt_stream,
                subjects=[evt_pattern(self.protocol_version)],
                retention=RetentionPolicy.LIMITS,
                max_age=self.evt_max_age,
            ),
        ]

    def _require_js(self):
        if not self.js:
            raise RuntimeError("NATS JetStream not connected")
        return self.js

    @staticmethod
    async def _stream_exists(js: Any, name: str) -> bool:
        try:
            await js.stream_info(name)
        except Exception as exc:  # noqa: BLE001
            logger.debug("stream_info(%s) failed: %s", name, exc)
            return False
        return True

    async def _ensure_streams(self) -> None:
        if self._streams_ready:
            return
        js = self._require_js()
        for stream_cfg in self.stream_configs():
            if await self._stream_exists(js, stream_cfg.name):
                continue
            try:
                await js.add_stream(config=stream_cfg)
            except Exception as exc:
                raise RuntimeError(
                    f"Failed to create JetStream stream {stream_cfg.name!r}. "
                    "If a stream with overlapping subjects already exists, delete it and retry."
                ) from exc
            logger.info("Created stream %s (%s)", stream_cfg.name, stream_cfg.retention)
        self._streams_ready = True

    def _tls_context(self) -> Optional[ssl.SSLContext]:
        if not self.tls_enabled:
            return None
        ca_file = os.path.join(self.cert_dir, "ca.crt")
        if not os.path.exists(ca_file):
            logger.warning("Certs not found at %s, TLS handshake may fail", self.cert_dir)
        ssl_ctx = ssl.create_default_context(purpose=ssl.Purpose.SERVER_AUTH)
        try:
            ssl_ctx.load_verify_locations(ca_file)
            ssl_ctx.load_cert_chain(
                certfile=os.path.join(self.cert_dir, "client.crt"),
                keyfile=os.path.join(self.cert_dir, "client.key"),
            )
            ssl_ctx.check_hostname = False
        except FileNotFoundError:
            logger.warning("TLS files not found, switching to non-TLS connection for dev mode")
            return None
        return ssl_ctx

    async def connect(self):
        ssl_ctx = self._tls_context()
        await self.nc.connect(servers=self.servers, tls=ssl_ctx)
        self.js = self.nc.jetstream()
        await self._ensure_streams()
        logger.info("Connected to %s (%s)", self.servers, "tls" if ssl_ctx else "plain")

    def _publish_headers(self, payload: Any, headers: Optional[Dict[str, str]]) -> Dict[str, str]:
        final = {k: str(v) for k, v in (headers or {}).items() if v is not None}
        final.setdefault(TRACE_HEADER, uuid6.uuid7().hex)
        final.setdefault(TIMESTAMP_HEADER, str(int(time.time() * 1000)))
        final.setdefault(VERSION_HEADER, self.protocol_version)
        msg_type = payload.get("__msg_type__") if isinstance(payload, dict) else None
        final.setdefault(MSG_TYPE_HEADER, msg_type or "Payload")
        final.setdefault(SENDER_HEADER, os.getenv("TR_SENDER", "turnrelay"))
        return final

    async def publish_event(
        self,
        subject: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ):
        """Publish one JSON message and wait for the JetStream ack. Errors propagate."""
        js = self._require_js()
        await self._ensure_streams()
        data = json.dumps(payload, default=str).encode("utf-8")
        return await js.publish(subject, data, headers=self._publish_headers(payload, headers))

    @staticmethod
    def consumer_config(
        subject: str,
        durable_name: str,
        *,
        ack_wait: int,
        max_deliver: int,
        inactive_threshold: Optional[float] = None,
    ) -> ConsumerConfig:
        """Queue durables start from the oldest pending command.

        Broadcast durables (those with an inactive threshold) start at new
        messages and are dropped by the server once idle that long.
        """
        return ConsumerConfig(
            durable_name=durable_name,
            filter_subject=subject,
            deliver_policy=DeliverPolicy.ALL if inactive_threshold is None else DeliverPolicy.NEW,
            ack_policy=AckPolicy.EXPLICIT,
            ack_wait=int(ack_wait),
            max_deliver=int(max_deliver),
            inactive_threshold=float(inactive_threshold) if inactive_threshold is not None else None,
        )

    async def _pull_subscribe(
        self,
        subject: str,
        *,
        stream: str,
        durable_name: str,
        callback: MessageCallback,
        ack_wait: int,
        max_deliver: int,
        max_inflight: Optional[int],
        inactive_threshold: Optional[float] = None,
    ) -> NATSSubscriptionHandle:
        js = self._require_js()
        await self._ensure_streams()

        config = self.consumer_config(
            subject,
            durable_name,
            ack_wait=ack_wait,
            max_deliver=max_deliver,
            inactive_threshold=inactive_threshold,
        )
        sub = await js.pull_subscribe(subject, durable=durable_name, stream=stream, config=config)
        logger.info(
            "Pull-subscribed to %s (stream=%s durable=%s deliver=%s ack_wait=%ss max_deliver=%s)",
            subject,
            stream,
            durable_name,
            config.deliver_policy,
            ack_wait,
            max_deliver,
        )
        worker = _PullWorker(
            sub,
            durable_name=durable_name,
            callback=callback,
            batch=self.fetch_batch,
            fetch_timeout=self.fetch_timeout,
            max_inflight=max(1, int(max_inflight or 1)),
        )
        task = asyncio.create_task(worker.run(), name=f"hop_pull:{durable_name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return NATSSubscriptionHandle(durable_name=durable_name, task=task)

    async def subscribe_queue(
        self,
        subject: str,
        queue_group: str,
        callback: MessageCallback,
        *,
        ack_wait: int = 30,
        max_deliver: int = 3,
        max_inflight: Optional[int] = None,
    ) -> NATSSubscriptionHandle:
        """Point-to-point: every worker binds the same durable, so each message goes to one worker."""
        return await self._pull_subscribe(
            subject,
            stream=self.cmd_stream,
            durable_name=durable_name_for(queue_group, subject),
            callback=callback,
            ack_wait=ack_wait,
            max_deliver=max_deliver,
            max_inflight=max_inflight,
        )

    async def subscribe_broadcast(
        self,
        subject: str,
        consumer_name: str,
        callback: MessageCallback,
        *,
        ack_wait: int = 30,
        max_deliver: int = 3,
        max_inflight: Optional[int] = None,
        inactive_seconds: float = 3600,
    ) -> NATSSubscriptionHandle:
        """Fan-out: each consumer name gets its own durable and sees every new message.

        Reusing a consumer name resumes its durable; an abandoned one is
        removed by the server after ``inactive_seconds``.
        """
        return await self._pull_subscribe(
            subject,
            stream=self.evt_stream,
            durable_name=durable_name_for(consumer_name, subject),
            callback=callback,
            ack_wait=ack_wait,
            max_deliver=max_deliver,
            max_inflight=max_inflight,
            inactive_threshold=inactive_seconds,
        )

    async def close(self):
        if self._tasks:
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.nc.close()
