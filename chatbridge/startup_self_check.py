from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from chatbridge.container import _parse_bool, _parse_int, users_file_path


@dataclass(frozen=True)
class StartupSelfCheckResult:
    telegram_token_present: bool
    polling_enabled: bool
    users_file: str
    users_dir_writable: bool
    poll_timeout_sec: int
    issues: list[str]


def run_startup_self_check(logger: logging.Logger) -> StartupSelfCheckResult:
    users_file = users_file_path()
    polling_flag = os.getenv("TELEGRAM_POLLING_ENABLED")
    token_present = bool((os.getenv("TELEGRAM_TOKEN") or "").strip())
    result = analyze_startup_config(
        telegram_token_present=token_present,
        polling_requested=_parse_bool(polling_flag, default=token_present),
        users_file=users_file,
        users_dir_writable=_directory_writable(users_file),
        poll_timeout_sec=_parse_int(os.getenv("TELEGRAM_POLL_TIMEOUT_SEC"), default=60),
    )

    if "telegram_token_missing" in result.issues:
        logger.warning(
            "startup_self_check anomaly=telegram_token_missing detail=set_TELEGRAM_TOKEN"
        )
    if "users_dir_not_writable" in result.issues:
        logger.warning(
            "startup_self_check anomaly=users_dir_not_writable path=%s",
            result.users_file,
        )
    if "poll_timeout_not_long_polling" in result.issues:
        logger.warning(
            "startup_self_check anomaly=poll_timeout_not_long_polling timeout_sec=%s",
            result.poll_timeout_sec,
        )
    if not result.issues:
        logger.info(
            "startup_self_check ok polling_enabled=%s users_file=%s",
            result.polling_enabled,
            result.users_file,
        )
    return result


def analyze_startup_config(
    *,
    telegram_token_present: bool,
    polling_requested: bool,
    users_file: str,
    users_dir_writable: bool = True,
    poll_timeout_sec: int = 60,
) -> StartupSelfCheckResult:
    issues: list[str] = []
    if polling_requested and not telegram_token_present:
        issues.append("telegram_token_missing")
    if not users_dir_writable:
        issues.append("users_dir_not_writable")
    if polling_requested and poll_timeout_sec <= 0:
        issues.append("poll_timeout_not_long_polling")

    return StartupSelfCheckResult(
        telegram_token_present=telegram_token_present,
        polling_enabled=polling_requested and telegram_token_present,
        users_file=users_file,
        users_dir_writable=users_dir_writable,
        poll_timeout_sec=poll_timeout_sec,
        issues=issues,
    )


def _directory_writable(path: str) -> bool:
    directory = os.path.dirname(os.path.abspath(path))
    while directory and not os.path.exists(directory):
        parent = os.path.dirname(directory)
        if parent == directory:
            break
        directory = parent
    return os.access(directory, os.W_OK)

