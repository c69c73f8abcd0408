"""Plain-text and JSON output helpers shared by the commands."""

from __future__ import annotations

import json
from typing import Any, Iterable, List, Sequence, Tuple


def to_json(data: Any, *, pretty: bool = True) -> str:
    if pretty:
        return json.dumps(data, indent=2, ensure_ascii=False)
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def table(rows: Iterable[Sequence[Any]], headers: Sequence[str] = ()) -> str:
    """Tab-separated rows.  *headers* is accepted for symmetry and unused."""
    return "\n".join("\t".join(str(cell) for cell in row) for row in rows)


def format_value(value: Any) -> str:
    """Display form: ``-`` for ``None``, thousands separators for ints."""
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return f"{value:,}"
    if isinstance(value, (list, tuple)):
        return ", ".join(format_value(v) for v in value)
    return str(value)


def key_value(pairs: Sequence[Tuple[str, Any]], separator: str = " : ") -> str:
    """``key : value`` lines with the keys padded to equal width."""
    width = max((len(str(k)) for k, _ in pairs), default=0)
    return "\n".join(f"{str(k).ljust(width)}{separator}{format_value(v)}" for k, v in pairs)


def hex_dump(data: bytes, bytes_per_line: int = 16) -> str:
    """``hexdump -C`` style: ``OFFSET: HEX |ASCII|``."""
    lines: List[str] = []
    for offset in range(0, len(data), bytes_per_line):
        chunk = data[offset:offset + bytes_per_line]
        hex_part = " ".join(f"{b:02X}" for b in chunk)
        hex_part += "   " * (bytes_per_line - len(chunk))
        ascii_part = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
        lines.append(f"{offset:08X}: {hex_part} |{ascii_part}|")
    return "\n".join(lines)
