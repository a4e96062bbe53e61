"""Locate and read the log files of an instance."""
from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable, Iterator
from datetime import date
from enum import Enum
from pathlib import Path


class LogType(str, Enum):
    """Log families a user can ask for."""

    TOMCAT = "tomcat"
    SERVER = "server"
    WEB = "web"


def log_file(
    instance_dir: Path,
    log_type: LogType | str = LogType.TOMCAT,
    *,
    log_name: str | None = None,
    today: date | None = None,
) -> Path:
    """Return the log file to show for *log_type*.

    *log_name* selects a specific file in the family's folder (with or without
    ``.log``). Otherwise: ``tomcat`` is today's ``catalina.<date>.log``, then
    ``server.out`` and ``server.err``; ``server`` is the Lucee server
    context's ``application.log`` then ``out.log``; ``web`` is the web
    context's ``application.log``.
    """
    kind = LogType(log_type)
    if kind is LogType.TOMCAT:
        folder = instance_dir / "logs"
    elif kind is LogType.SERVER:
        folder = instance_dir / "lucee-server" / "context" / "logs"
    else:
        folder = instance_dir / "lucee-web" / "logs"

    if log_name:
        for candidate in (folder / log_name, folder / f"{log_name}.log"):
            if candidate.is_file():
                return candidate

    if kind is LogType.TOMCAT:
        stamp = (today or date.today()).strftime("%Y-%m-%d")
        for candidate in (
            folder / f"catalina.{stamp}.log",
            folder / "server.out",
            folder / "server.err",
        ):
            if candidate.is_file():
                return candidate
        return folder / "server.err"
    if kind is LogType.SERVER:
        application = folder / "application.log"
        return application if application.is_file() else folder / "out.log"
    return folder / "application.log"


def tail_lines(path: Path, lines: int = 50) -> list[str]:
    """Return the last *lines* lines of *path* (without newlines)."""
    if lines <= 0:
        return []
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        return [line.rstrip("\n") for line in deque(handle, maxlen=lines)]


def follow(
    path: Path,
    *,
    interval: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
    should_stop: Callable[[], bool] = lambda: False,
) -> Iterator[str]:
    """Yield lines appended to *path* until *should_stop* returns ``True``."""
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        handle.seek(0, 2)
        while not should_stop():
            line = handle.readline()
            if line:
                yield line.rstrip("\n")
                continue
            sleep(interval)


__all__ = ["LogType", "follow", "log_file", "tail_lines"]
