#!/usr/bin/env python3
"""Shared helpers for the Fuel Finder downloader: event logging and text decoding."""

from __future__ import annotations

import json
import logging
import re

LOGGER_NAME = "fuel_finder"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

SAFE_LOG_VALUE = re.compile(r"[A-Za-z0-9._:/+\-]+")

logger = logging.getLogger(LOGGER_NAME)


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(level=logging.WARNING, format=LOG_FORMAT)
    logger.setLevel(logging.INFO if verbose else logging.WARNING)


def _log_value(value: object) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return repr(value)
    text = str(value)
    # Paths and URLs stay bare; anything with spaces or quotes is JSON-quoted.
    return text if SAFE_LOG_VALUE.fullmatch(text) else json.dumps(text)


def format_event(event: str, **fields: object) -> str:
    parts = [event]
    for key, value in fields.items():
        parts.append(f"{key}={_log_value(value)}")
    return " ".join(parts)


def log_event(event: str, level: int = logging.INFO, **fields: object) -> None:
    logger.log(level, format_event(event, **fields))


def format_exception_message(exc: BaseException) -> str:
    """Return a one-line description of ``exc``, never an empty string."""
    message = " ".join(str(exc).split())
    return message or type(exc).__name__


def decode_csv_payload(raw: bytes) -> str:
    """Decode the fetched CSV as UTF-8, dropping a leading BOM.

    Invalid byte sequences become U+FFFD one at a time so the rest of the
    payload keeps its characters.
    """
    return raw.decode("utf-8-sig", errors="replace")
