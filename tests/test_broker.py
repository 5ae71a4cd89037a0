import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from services.common.broker import EventPublisher, PublisherState, StreamSubscriber

from conftest import make_user


def mock_redis() -> MagicMock:
    redis = MagicMock()
    redis.ping = AsyncMock(return_value=True)
    redis.xadd = AsyncMock(return_value="1-0")
    redis.xack = AsyncMock(return_value=1)
    redis.xgroup_create = AsyncMock(return_value=True)
    redis.xreadgroup = AsyncMock(return_value=[])
    return redis


# ── EventPublisher ───────────────────────────────


@pytest.mark.asyncio
async def test_publisher_starts_disconnected_and_drops_events():
    redis = mock_redis()
    publisher = EventPublisher(redis)

    assert publisher.state is PublisherState.DISCONNECTED
    assert await publisher.publish("order.created", {"id": "o_1"}) is False
    redis.xadd.assert_not_awaited()
    redis.ping.assert_not_awaited()


@pytest.mark.asyncio
async def test_publish_after_connect_writes_stream_entry():
    redis = mock_redis()
    publisher = EventPublisher(redis, exchange="app.topic", maxlen=500)

    assert await publisher.connect() is True
    assert await publisher.publish("user.created", make_user()) is True

    stream, fields = redis.xadd.await_args.args
    assert stream == "app.topic"
    assert fields["routing_key"] == "user.created"
    assert json.loads(fields["body"])["id"] == "u1"
    assert redis.xadd.await_args.kwargs == {"maxlen": 500, "approximate": True}


@pytest.mark.asyncio
async def test_payload_uses_camel_case_keys():
    redis = mock_redis()
    publisher = EventPublisher(redis)
    await publisher.connect()

    await publisher.publish("user.updated", make_user())

    body = json.loads(redis.xadd.await_args.args[1]["body"])
    assert set(body) == {"id", "name", "email", "createdAt", "updatedAt"}


@pytest.mark.asyncio
async def test_connect_failure_leaves_publisher_disconnected():
    redis = mock_redis()
    redis.ping.side_effect = RedisConnectionError("refused")
    publisher = EventPublisher(redis)

    assert await publisher.connect() is False
    assert publisher.state is PublisherState.DISCONNECTED


@pytest.mark.asyncio
async def test_publish_failure_is_reported_not_raised():
    redis = mock_redis()
    redis.xadd.side_effect = RedisConnectionError("gone")
    publisher = EventPublisher(redis)
    await publisher.connect()

    assert await publisher.publish("order.cancelled", {"id": "o_1"}) is False


@pytest.mark.asyncio
async def test_disconnect_turns_publish_into_noop():
    redis = mock_redis()
    publisher = EventPublisher(redis, reconnect_interval=0)
    await publisher.connect()
    publisher.disconnect()

    assert await publisher.publish("order.created", {"id": "o_1"}) is False
    redis.xadd.assert_not_awaited()
    assert redis.ping.await_count == 1


@pytest.mark.asyncio
async def test_publish_reconnects_after_startup_failure():
    redis = mock_redis()
    redis.ping.side_effect = [RedisConnectionError("not yet"), True]
    publisher = EventPublisher(redis, reconnect_interval=0)
    assert await publisher.connect() is False

    assert await publisher.publish("order.created", {"id": "o_1"}) is True
    assert publisher.state is PublisherState.CONNECTED
    redis.xadd.assert_awaited_once()


@pytest.mark.asyncio
async def test_reconnect_attempts_wait_for_interval():
    redis = mock_redis()
    redis.ping.side_effect = RedisConnectionError("down")
    publisher = EventPublisher(redis, reconnect_interval=60)
    await publisher.connect()

    assert await publisher.publish("order.created", {"id": "o_1"}) is False
    assert await publisher.publish("order.created", {"id": "o_2"}) is False
    assert redis.ping.await_count == 1
    redis.xadd.assert_not_awaited()


# ── StreamSubscriber ─────────────────────────────


def entries(*items):
    return [["app.topic", list(items)]]


@pytest.mark.asyncio
async def test_declare_ignores_existing_group():
    redis = mock_redis()
    redis.xgroup_create.side_effect = ResponseError("BUSYGROUP Consumer Group name already exists")
    subscriber = StreamSubscriber(redis, "orders.q", "c1", ["user.*"])

    await subscriber.declare()

    redis.xgroup_create.assert_awaited_once_with("app.topic", "orders.q", id="$", mkstream=True)


@pytest.mark.asyncio
async def test_declare_propagates_other_errors():
    redis = mock_redis()
    redis.xgroup_create.side_effect = ResponseError("WRONGTYPE")
    subscriber = StreamSubscriber(redis, "orders.q", "c1", ["user.*"])

    with pytest.raises(ResponseError):
        await subscriber.declare()


@pytest.mark.asyncio
async def test_read_redelivers_pending_before_new_messages():
    redis = mock_redis()
    redis.xreadgroup.side_effect = [
        entries(("1-0", {"routing_key": "user.created", "body": "{}"})),
        [],
        entries(("2-0", {"routing_key": "user.updated", "body": "{}"})),
    ]
    subscriber = StreamSubscriber(redis, "orders.q", "c1", ["user.created", "user.updated"])

    first = await subscriber.read()
    second = await subscriber.read()

    assert [d.message_id for d in first] == ["1-0"]
    assert [d.message_id for d in second] == ["2-0"]
    last_ids = [call.args[2]["app.topic"] for call in redis.xreadgroup.await_args_list]
    assert last_ids == ["0", "0", ">"]


@pytest.mark.asyncio
async def test_read_acks_and_skips_unbound_routing_keys():
    redis = mock_redis()
    redis.xreadgroup.side_effect = [
        [],
        entries(
            ("1-0", {"routing_key": "order.created", "body": "{}"}),
            ("2-0", {"routing_key": "user.created", "body": "{\"id\": \"u1\"}"}),
        ),
    ]
    subscriber = StreamSubscriber(redis, "orders.q", "c1", ["user.created"])

    deliveries = await subscriber.read()

    assert [(d.message_id, d.routing_key) for d in deliveries] == [("2-0", "user.created")]
    redis.xack.assert_awaited_once_with("app.topic", "orders.q", "1-0")


@pytest.mark.asyncio
async def test_reject_without_requeue_discards():
    redis = mock_redis()
    redis.xreadgroup.side_effect = [[], entries(("1-0", {"routing_key": "user.created", "body": "x"}))]
    subscriber = StreamSubscriber(redis, "orders.q", "c1", ["user.created"])
    (delivery,) = await subscriber.read()

    await delivery.reject(requeue=False)
    await delivery.ack()

    redis.xadd.assert_not_awaited()
    redis.xack.assert_awaited_once_with("app.topic", "orders.q", "1-0")


@pytest.mark.asyncio
async def test_reject_with_requeue_republishes_then_acks():
    redis = mock_redis()
    redis.xreadgroup.side_effect = [[], entries(("1-0", {"routing_key": "user.created", "body": "x"}))]
    subscriber = StreamSubscriber(redis, "orders.q", "c1", ["user.created"], maxlen=500)
    (delivery,) = await subscriber.read()

    await delivery.reject(requeue=True)

    redis.xadd.assert_awaited_once_with(
        "app.topic",
        {"routing_key": "user.created", "body": "x", "queue": "orders.q"},
        maxlen=500,
        approximate=True,
    )
    redis.xack.assert_awaited_once_with("app.topic", "orders.q", "1-0")


@pytest.mark.asyncio
async def test_requeued_entry_is_skipped_by_other_groups():
    redis = mock_redis()
    redis.xreadgroup.side_effect = [
        [],
        entries(
            ("1-0", {"routing_key": "user.created", "body": "x", "queue": "orders.q"}),
            ("2-0", {"routing_key": "user.created", "body": "y"}),
        ),
    ]
    subscriber = StreamSubscriber(redis, "audit.q", "c1", ["user.*"])

    deliveries = await subscriber.read()

    assert [d.message_id for d in deliveries] == ["2-0"]
    redis.xack.assert_awaited_once_with("app.topic", "audit.q", "1-0")


@pytest.mark.asyncio
async def test_requeued_entry_reaches_its_own_group():
    redis = mock_redis()
    redis.xreadgroup.side_effect = [
        [],
        entries(("1-0", {"routing_key": "user.created", "body": "x", "queue": "orders.q"})),
    ]
    subscriber = StreamSubscriber(redis, "orders.q", "c1", ["user.*"])

    (delivery,) = await subscriber.read()

    assert delivery.body == "x"
    redis.xack.assert_not_awaited()
