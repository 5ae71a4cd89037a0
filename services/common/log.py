"""共通 — ロギング設定"""

import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)s [{service}] %(name)s: %(message)s"


def setup_logging(service: str, level: str | None = None) -> None:
    """ルートロガーをサービス名入りのフォーマットで設定する (プロセスごとに 1 回)。"""
    level = level or os.environ.get("LOG_LEVEL", "INFO")
    logging.basicConfig(
        level=level.upper(),
        format=LOG_FORMAT.format(service=service),
    )
