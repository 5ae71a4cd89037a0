"""
Orders Service — ユーザーキャッシュ

user.created / user.updated イベントだけで更新される、プロセスローカルなユーザーのコピー。
users サービスに到達できないときの「最後の手段」として Validator が参照する。

マージ規則は Last-Write-Wins:
  - 同じイベントを何度適用しても結果は同じ (重複配信に強い)
  - 配信順が入れ替わると古い内容が最後に残りうる (並べ替えには弱い)
エントリに有効期限は無く、同じ ID の次のイベントで上書きされるまで信頼する。

並行性: 書き込みは購読タスク 1 本だけ、読み取りは多数のリクエストタスク。
各操作は dict のキー単位の置き換え/参照だけなので、読み手が書き手を待たせることはない。
"""

import logging

from services.common.events import USER_EVENTS, User

logger = logging.getLogger(__name__)


class UserCache:
    def __init__(self) -> None:
        self._users: dict[str, User] = {}

    def apply(self, routing_key: str, user: User) -> bool:
        """イベントを適用する。キャッシュを書き換えたら True、対象外のキーなら False。"""
        if routing_key not in USER_EVENTS:
            return False
        self._users[user.id] = user
        logger.info("Cached user %s from %s", user.id, routing_key)
        return True

    def get(self, user_id: str) -> User | None:
        return self._users.get(user_id)

    def snapshot(self) -> list[User]:
        return list(self._users.values())

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._users

    def __len__(self) -> int:
        return len(self._users)
