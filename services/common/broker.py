"""
共通 — イベントバス (Redis Streams)

Redis Pub/Sub は fire-and-forget 方式で、購読側が落ちている間のイベントは失われる。
ここでは Redis Streams + コンシューマグループを使い、耐久性のあるイベントフィードにする。

  RabbitMQ 風の用語との対応:

    exchange   ─  1 本のストリーム (例: "app.topic")
    queue      ─  コンシューマグループ (例: "orders.q")
    binding    ─  グループごとのルーティングキーパターン (アプリ側で判定)
    ack        ─  XACK
    nack       ─  requeue=False: XACK して破棄 / requeue=True: XADD し直してから XACK

  ┌──────────────┐  XADD   ┌───────────┐  XREADGROUP  ┌────────────────┐
  │ users / orders│ ──────▶ │ app.topic │ ───────────▶ │ orders.q group │
  │  (publisher)  │         │ (stream)  │ ◀─── XACK ── │  (subscriber)  │
  └──────────────┘         └───────────┘              └────────────────┘

配信は at-least-once。ACK 前にプロセスが落ちたメッセージは、
同じコンシューマ名で再起動したときに自分の保留リスト (PEL) から再配信される。

ストリームは XADD のたびに MAXLEN ~ maxlen で刈り込む (近似トリム)。
ACK 済みかどうかは見ないので、maxlen は購読側の遅れより十分大きく取ること。

requeue=True はストリーム末尾への再 XADD なので、同じストリームを読む
他のグループにも同じメッセージがもう一度届く。エントリには queue フィールドで
宛先グループを付け、他のグループは読み飛ばして ACK する。

Redis クライアントは decode_responses=True で作ること (フィールドを str で扱う)。
"""

import asyncio
import json
import logging
import time
from collections.abc import Iterable
from enum import Enum
from typing import Any

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError, ResponseError

from .events import matches_binding

logger = logging.getLogger(__name__)

DEFAULT_EXCHANGE = "app.topic"
DEFAULT_MAXLEN = 10_000


def encode_payload(payload: Any) -> str:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json", by_alias=True)
    return json.dumps(payload, default=str)


# ── Publisher ────────────────────────────────────


class PublisherState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class EventPublisher:
    """
    ベストエフォートのイベント発行者。

    接続状態を自分で持ち、DISCONNECTED の間の publish はログを残すだけの no-op になる。
    一度 connect() を試みた後は、reconnect_interval 秒おきに publish の中で再接続を試す。
    disconnect() した後は再接続しない。
    発行の失敗は呼び出し側に伝播しない (戻り値 False で報告する)。
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        exchange: str = DEFAULT_EXCHANGE,
        timeout: float = 2.0,
        maxlen: int | None = DEFAULT_MAXLEN,
        reconnect_interval: float = 5.0,
    ):
        self.redis = redis
        self.exchange = exchange
        self.timeout = timeout
        self.maxlen = maxlen
        self.reconnect_interval = reconnect_interval
        self.state = PublisherState.DISCONNECTED
        self._last_attempt: float | None = None

    @property
    def connected(self) -> bool:
        return self.state is PublisherState.CONNECTED

    async def connect(self) -> bool:
        self._last_attempt = time.monotonic()
        try:
            await asyncio.wait_for(self.redis.ping(), self.timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.error("Event bus connection failed: %s", e)
            self.state = PublisherState.DISCONNECTED
            return False
        self.state = PublisherState.CONNECTED
        logger.info("Event bus connected (exchange=%s)", self.exchange)
        return True

    def disconnect(self) -> None:
        self.state = PublisherState.DISCONNECTED
        self._last_attempt = None

    def _should_reconnect(self) -> bool:
        if self._last_attempt is None:
            return False
        return time.monotonic() - self._last_attempt >= self.reconnect_interval

    async def publish(self, routing_key: str, payload: Any) -> bool:
        """routing_key 付きでイベントを発行する。成功したら True。"""
        if not self.connected and self._should_reconnect():
            await self.connect()
        if not self.connected:
            logger.warning("Event bus disconnected, dropping %s event", routing_key)
            return False
        try:
            await asyncio.wait_for(
                self.redis.xadd(
                    self.exchange,
                    {"routing_key": routing_key, "body": encode_payload(payload)},
                    maxlen=self.maxlen,
                    approximate=True,
                ),
                self.timeout,
            )
        except (RedisError, OSError, asyncio.TimeoutError):
            logger.exception("Failed to publish %s event", routing_key)
            return False
        logger.info("Published event: %s", routing_key)
        return True


# ── Subscriber ───────────────────────────────────


class Delivery:
    """受信した 1 メッセージ。ハンドラは ack() か reject() のどちらかを必ず呼ぶ。"""

    def __init__(self, subscriber: "StreamSubscriber", message_id: str, routing_key: str, body: str):
        self.subscriber = subscriber
        self.message_id = message_id
        self.routing_key = routing_key
        self.body = body
        self.settled = False

    async def ack(self) -> None:
        if self.settled:
            return
        await self.subscriber.ack(self.message_id)
        self.settled = True

    async def reject(self, requeue: bool = False) -> None:
        if self.settled:
            return
        if requeue:
            await self.subscriber.requeue(self.routing_key, self.body)
        else:
            logger.warning(
                "Discarding message %s (%s) from %s",
                self.message_id, self.routing_key, self.subscriber.queue,
            )
        await self.subscriber.ack(self.message_id)
        self.settled = True


class StreamSubscriber:
    """
    コンシューマグループ経由でストリームを読む購読者。

    bindings にマッチしないルーティングキーのエントリは、そのグループには
    「届かなかった」ものとして即座に ACK して読み飛ばす。
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        queue: str,
        consumer: str,
        bindings: Iterable[str],
        exchange: str = DEFAULT_EXCHANGE,
        maxlen: int | None = DEFAULT_MAXLEN,
    ):
        self.redis = redis
        self.exchange = exchange
        self.maxlen = maxlen
        self.queue = queue
        self.consumer = consumer
        self.bindings = tuple(bindings)
        # 起動直後はまず自分の未 ACK メッセージ (前回のクラッシュ分) を読む
        self._backlog = True

    async def declare(self) -> None:
        """コンシューマグループを作る (既にあれば何もしない)。"""
        try:
            await self.redis.xgroup_create(self.exchange, self.queue, id="$", mkstream=True)
            logger.info("Declared queue %s on %s", self.queue, self.exchange)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._backlog = True

    def is_bound(self, routing_key: str) -> bool:
        return any(matches_binding(b, routing_key) for b in self.bindings)

    async def read(self, count: int = 10, block_ms: int = 1000) -> list[Delivery]:
        """次のメッセージ群を待つ。タイムアウトしたら空リストを返す。"""
        if self._backlog:
            entries = await self._read_entries("0", count, None)
            if not entries:
                self._backlog = False
        if not self._backlog:
            entries = await self._read_entries(">", count, block_ms)

        deliveries = []
        for message_id, fields in entries:
            if not fields:
                # PEL に残っているがストリームからは削除済みのエントリ
                await self.ack(message_id)
                continue
            routing_key = fields.get("routing_key", "")
            target = fields.get("queue")
            if (target and target != self.queue) or not self.is_bound(routing_key):
                await self.ack(message_id)
                continue
            deliveries.append(Delivery(self, message_id, routing_key, fields.get("body", "")))
        return deliveries

    async def _read_entries(self, last_id: str, count: int, block_ms: int | None) -> list:
        response = await self.redis.xreadgroup(
            self.queue, self.consumer, {self.exchange: last_id}, count=count, block=block_ms,
        )
        if not response:
            return []
        # [[stream, [(id, fields), ...]], ...]
        return [entry for _stream, entries in response for entry in entries]

    async def ack(self, message_id: str) -> None:
        await self.redis.xack(self.exchange, self.queue, message_id)

    async def requeue(self, routing_key: str, body: str) -> None:
        """このグループ宛てとしてストリーム末尾に積み直す。"""
        await self.redis.xadd(
            self.exchange,
            {"routing_key": routing_key, "body": body, "queue": self.queue},
            maxlen=self.maxlen,
            approximate=True,
        )
