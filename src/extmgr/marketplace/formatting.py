"""Formatting helpers shared across listings, history and status output."""

from __future__ import annotations


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    index = 0
    scaled = float(size)
    while scaled >= 1024 and index < len(units) - 1:
        scaled /= 1024
        index += 1
    value = round(scaled, 1)
    if value.is_integer():
        return f"{int(value)} {units[index]}"
    return f"{value} {units[index]}"


def pluralize(count: int, singular: str, plural: str | None = None) -> str:
    word = singular if count == 1 else (plural or f"{singular}s")
    return f"{count} {word}"
