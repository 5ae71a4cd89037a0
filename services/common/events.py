"""
共通 — イベント定義

users サービスと orders サービスの間を流れるイベントを定義する。
イベントは「ルーティングキー + その時点のレコード全体」というエンベロープで運ばれる。

    routing key        payload
    ─────────────────  ───────────────
    user.created       User (作成直後)
    user.updated       User (更新直後)
    order.created      Order (作成直後)
    order.cancelled    Order (キャンセル直後)

ペイロードの JSON キーは camelCase (userId, createdAt, ...)。

エンベロープにはシーケンス番号もイベント ID も無い。
そのため購読側は「最後に適用したものが勝つ」以上の順序保証を持たない。
"""

from datetime import datetime
from enum import Enum
from functools import lru_cache

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class RoutingKey(str, Enum):
    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    ORDER_CREATED = "order.created"
    ORDER_CANCELLED = "order.cancelled"


USER_EVENTS = frozenset({RoutingKey.USER_CREATED.value, RoutingKey.USER_UPDATED.value})


class CamelModel(BaseModel):
    """ワイヤ上では camelCase、Python 側ではフィールド名でも受け付けるモデル"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class User(CamelModel):
    """ユーザーレコード（users サービスが所有する。orders 側が持つのはコピー）"""
    id: str
    name: str
    email: str
    created_at: datetime
    updated_at: datetime | None = None


# ── トピック型バインディング ─────────────────────
#
#   "*" はちょうど 1 語、"#" は 0 語以上にマッチする (語の区切りは ".")。
#   例: "user.*" は "user.created" にマッチし、"#" はすべてにマッチする。


@lru_cache(maxsize=256)
def _match_words(pattern: tuple[str, ...], words: tuple[str, ...]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match_words(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match_words(rest, words[1:])
    return False


def matches_binding(pattern: str, routing_key: str) -> bool:
    """routing_key がバインディングパターンにマッチするか判定する。"""
    return _match_words(tuple(pattern.split(".")), tuple(routing_key.split(".")))
