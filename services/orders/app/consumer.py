"""
Orders Service — ユーザーイベントの購読ループ

orders.q キューに届く user.created / user.updated を読み、ユーザーキャッシュに適用する。

  - 適用に成功したら ACK
  - パースできない / レコードの形になっていないメッセージは requeue せずに破棄
    (ポイズンメッセージでキューを詰まらせない。DLQ は無いのでログにだけ残る)
  - それ以外の適用エラーもそのメッセージだけの失敗として破棄し、ループは続ける

ループが止まるのは shutdown_event がセットされたときか、
ブローカーへの再接続を使い切ったときだけ。後者の場合キャッシュは最後の状態のまま凍結される。
"""

import asyncio
import json
import logging

from pydantic import ValidationError
from redis.exceptions import RedisError

from services.common.broker import Delivery, StreamSubscriber
from services.common.events import USER_EVENTS, User

from .cache import UserCache

logger = logging.getLogger(__name__)


async def handle_delivery(delivery: Delivery, cache: UserCache) -> None:
    """1 メッセージを処理し、必ず ACK か reject のどちらかで決着させる。"""
    try:
        payload = json.loads(delivery.body)
        user = User.model_validate(payload) if delivery.routing_key in USER_EVENTS else None
    except (ValueError, ValidationError) as e:
        logger.warning("Malformed %s message %s: %s", delivery.routing_key, delivery.message_id, e)
        await delivery.reject(requeue=False)
        return

    try:
        if user is not None:
            cache.apply(delivery.routing_key, user)
    except Exception:
        logger.exception("Failed to apply %s message %s", delivery.routing_key, delivery.message_id)
        await delivery.reject(requeue=False)
        return

    await delivery.ack()


async def run_consumer(
    subscriber: StreamSubscriber,
    cache: UserCache,
    shutdown_event: asyncio.Event,
    max_reconnects: int = 5,
    reconnect_delay: float = 1.0,
) -> None:
    """
    shutdown_event がセットされるまでメッセージを処理し続ける。
    ブローカーのエラー (接続断、NOGROUP などの応答エラー) が max_reconnects 回連続したら
    諦めて終了する。エラーのたびにグループを宣言し直す。
    """
    failures = 0
    declared = False

    while not shutdown_event.is_set():
        try:
            if not declared:
                await subscriber.declare()
                declared = True
                logger.info("Consuming %s from %s", subscriber.bindings, subscriber.queue)
            deliveries = await subscriber.read()
        except (RedisError, OSError) as e:
            failures += 1
            declared = False
            if failures > max_reconnects:
                logger.error("Event bus lost after %d attempts, user cache is now frozen", failures)
                return
            logger.warning("Event bus error (%s), retry %d/%d", e, failures, max_reconnects)
            await asyncio.sleep(reconnect_delay)
            continue

        failures = 0
        for delivery in deliveries:
            try:
                await handle_delivery(delivery, cache)
            except RedisError:
                # 未 ACK のまま PEL に残り、再起動後に再配信される
                logger.exception("Failed to settle message %s", delivery.message_id)
