from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# 第三方库默认太吵
_NOISY_LOGGERS = ("httpx", "httpcore")


def setup_logging(level: int | str = logging.INFO) -> None:
    """进程启动时调用一次（CLI / webhook 服务入口）。"""
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    root_level = logging.getLogger().level
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root_level, logging.WARNING))
