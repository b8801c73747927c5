"""
Local variable file codec.

Reads and writes the line-oriented ``KEY=value`` format:

    # comment
    export API_KEY=abc123
    GREETING="hello world"
    CERT="-----BEGIN-----
    line two
    -----END-----"

Double-quoted values may span several physical lines and use ``\\"``
and ``\\\\`` escapes. Files are always written with mode 0600.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Mapping, Optional

from .errors import LocalIOError

logger = logging.getLogger("op_env_manager.envfile")

_NEEDS_QUOTES = ("\n", " ", "#", '"', "'", "\t")


def parse_env(text: str) -> dict[str, str]:
    """Parse env-file text into an ordered mapping.

    Lines without ``=`` and lines with an empty key are ignored. Later
    definitions of a key replace earlier ones.

    Args:
        text: File content.

    Returns:
        dict mapping variable name to value.
    """
    variables: dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1

        body = line.lstrip()
        if not body.strip() or body.startswith("#"):
            continue
        if body.startswith("export "):
            body = body[len("export "):].lstrip()
        if "=" not in body:
            logger.debug("Ignoring line without '=': %r", body[:40])
            continue

        key, raw = body.split("=", 1)
        key = key.strip()
        if not key:
            continue
        raw = raw.lstrip()

        if raw.startswith('"'):
            value, closed = _scan_double_quoted(raw[1:])
            while not closed and i < len(lines):
                more, closed = _scan_double_quoted(lines[i])
                value += "\n" + more
                i += 1
            if not closed:
                logger.warning("Unterminated quoted value for %s", key)
        else:
            raw = raw.rstrip()
            if raw.startswith("'") and raw.endswith("'") and len(raw) >= 2:
                value = raw[1:-1]
            else:
                value = raw

        variables[key] = value
    return variables


def _scan_double_quoted(segment: str) -> tuple[str, bool]:
    """Consume a double-quoted segment up to its closing quote.

    Returns:
        (unescaped text, whether the closing quote was found)
    """
    out: list[str] = []
    j = 0
    while j < len(segment):
        ch = segment[j]
        if ch == "\\" and j + 1 < len(segment) and segment[j + 1] in ('"', "\\"):
            out.append(segment[j + 1])
            j += 2
            continue
        if ch == '"':
            return "".join(out), True
        out.append(ch)
        j += 1
    return "".join(out), False


def format_value(value: str) -> str:
    """Render a value, quoting it when it would not survive a bare round trip."""
    if value == "" or not any(c in value for c in _NEEDS_QUOTES):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def format_env(variables: Mapping[str, str], header: Optional[list[str]] = None) -> str:
    """Render variables to env-file text."""
    lines = [f"# {h}" if h else "" for h in (header or [])]
    if header:
        lines.append("")
    for key, value in variables.items():
        lines.append(f"{key}={format_value(value)}")
    return "\n".join(lines) + "\n" if lines else ""


def read_env_file(path: Path, missing_ok: bool = False) -> dict[str, str]:
    """Read and parse a local variable file.

    Args:
        path: File to read.
        missing_ok: Return an empty mapping instead of failing when absent.

    Returns:
        dict of variables.

    Raises:
        LocalIOError: If the file is missing (and not missing_ok) or unreadable.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        if missing_ok:
            logger.info("Local file does not exist yet: %s", path)
            return {}
        raise LocalIOError(path, "Environment file not found")
    except (OSError, UnicodeDecodeError) as exc:
        raise LocalIOError(path, f"Cannot read environment file ({exc})") from exc
    return parse_env(text)


def write_text_private(path: Path, content: str) -> None:
    """Atomically write ``content`` to ``path`` with mode 0600.

    Raises:
        LocalIOError: If the write fails. The original file is left untouched.
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
        )
    except OSError as exc:
        raise LocalIOError(path, f"Cannot write file ({exc})") from exc

    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as fh:
            fh.write(content)
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except OSError as exc:
        Path(tmp_name).unlink(missing_ok=True)
        raise LocalIOError(path, f"Cannot write file ({exc})") from exc


def write_env_file(
    path: Path,
    variables: Mapping[str, str],
    header: Optional[list[str]] = None,
) -> None:
    """Write variables to a local file (atomic, mode 0600)."""
    write_text_private(path, format_env(variables, header=header))
    logger.debug("Wrote %d variables to %s", len(variables), path)
