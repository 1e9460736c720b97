import logging

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def setup_logger(name: str = "trading", level: int | None = None) -> logging.Logger:
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    elif logger.level == logging.NOTSET:
        logger.setLevel(logging.INFO)
    # 控制台 handler（同名 logger 只挂一次，避免重复输出）
    if not logger.handlers:
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(ch)
    return logger


def set_quiet(names: list[str] | tuple[str, ...], quiet: bool = True) -> None:
    """批量调整日志级别：quiet 时只输出 WARNING 以上。"""
    for name in names:
        logging.getLogger(name).setLevel(logging.WARNING if quiet else logging.INFO)
