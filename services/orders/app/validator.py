"""
Orders Service — ユーザー検証 (Validator)

注文作成の前に「この user_id は使えるか」を判定する。

  1. users サービスへ同期 HTTP で問い合わせる (タイムアウト付き)
     ├─ 2xx             → USABLE
     ├─ 404 / 410       → UNUSABLE   … 信頼できる否定。キャッシュでは覆さない
     └─ タイムアウト / 接続失敗 / それ以外の 4xx (408, 429 など) / 5xx
  2.   → ユーザーキャッシュを見る
         ├─ あり → USABLE (フォールバックでの信頼)
         └─ なし → INDETERMINATE (「無効なユーザー」ではなく「今は確認できない」)

結果は例外ではなく値で返す。呼び出し側がフォールバックの分岐を取りこぼさないため。
"""

import asyncio
import logging
from enum import Enum
from urllib.parse import quote

import httpx

from .cache import UserCache

logger = logging.getLogger(__name__)

NOT_FOUND_STATUSES = frozenset({404, 410})


class Validation(str, Enum):
    USABLE = "usable"
    UNUSABLE = "unusable"
    INDETERMINATE = "indeterminate"


class Unreachable(Exception):
    """users サービスから権威ある回答を得られなかった"""


class UserValidator:
    def __init__(
        self,
        client: httpx.AsyncClient,
        users_base_url: str,
        cache: UserCache,
        timeout_ms: int = 2000,
    ):
        self.client = client
        self.users_base_url = users_base_url.rstrip("/")
        self.cache = cache
        self.timeout = timeout_ms / 1000

    async def validate(self, user_id: str) -> Validation:
        try:
            exists = await self._check(user_id)
        except Unreachable as e:
            logger.warning("users-service unavailable (%s), falling back to cache", e)
            if user_id in self.cache:
                return Validation.USABLE
            return Validation.INDETERMINATE
        return Validation.USABLE if exists else Validation.UNUSABLE

    async def _check(self, user_id: str) -> bool:
        url = f"{self.users_base_url}/{quote(user_id, safe='')}"
        try:
            # wait_for はタイムアウト時に実行中のリクエストをキャンセルする
            resp = await asyncio.wait_for(self.client.get(url), self.timeout)
        except asyncio.TimeoutError:
            raise Unreachable(f"timed out after {self.timeout:.3f}s") from None
        except httpx.HTTPError as e:
            raise Unreachable(str(e) or type(e).__name__) from e

        if resp.is_success:
            return True
        if resp.status_code in NOT_FOUND_STATUSES:
            return False
        raise Unreachable(f"HTTP {resp.status_code}")
