"""
op:// secret references -- parsing, locating, and bulk resolution.

A reference has the form ``op://vault/item/[section/]field`` and may be
embedded in a larger value, for example the password segment of a URL:

    DATABASE_URL=postgresql://app:op://Personal/db/password@db.internal/app

A reference starts at ``op://`` and ends at the next ``@``, the start of
the next ``op://``, or the end of the value. Once inside the section or
field segment it also ends at ``:``, ``?``, ``&`` or ``#``, so
``user:password`` pairs and query strings split cleanly. Several
references in one value are supported; substitution replaces exactly
the located spans.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Sequence

from .errors import MalformedReferenceError
from .retry import ResilientClient
from .sync.backends import VaultBackend

logger = logging.getLogger("op_env_manager.references")

PREFIX = "op://"
DEFAULT_WORKERS = 8

_FIELD_DELIMITERS = frozenset(":?&#")


@dataclass(frozen=True)
class Reference:
    """A parsed ``op://`` reference."""

    vault: str
    item: str
    field: str
    section: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "Reference":
        """Parse reference text.

        Raises:
            MalformedReferenceError: If the text is not
                ``op://vault/item/[section/]field`` with non-empty segments.
        """
        if not text.startswith(PREFIX):
            raise MalformedReferenceError(f"Not an op:// reference: {text!r}")
        parts = text[len(PREFIX):].split("/")
        if len(parts) not in (3, 4) or not all(p.strip() for p in parts):
            raise MalformedReferenceError(
                f"Malformed reference {text!r} "
                "(expected op://vault/item/field or op://vault/item/section/field)"
            )
        if len(parts) == 4:
            return cls(vault=parts[0], item=parts[1], section=parts[2], field=parts[3])
        return cls(vault=parts[0], item=parts[1], field=parts[2])

    def __str__(self) -> str:
        middle = f"{self.section}/" if self.section else ""
        return f"{PREFIX}{self.vault}/{self.item}/{middle}{self.field}"


@dataclass(frozen=True)
class ReferenceSpan:
    """Location of one reference inside a value: ``value[start:end] == text``."""

    start: int
    end: int
    text: str


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving one reference for one key."""

    key: str
    reference: str
    value: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def contains_reference(value: str) -> bool:
    return PREFIX in value


def _reference_end(value: str, body: int) -> int:
    """Index where the reference whose path starts at ``body`` ends."""
    slashes = 0
    for index in range(body, len(value)):
        char = value[index]
        if char == "@" or value.startswith(PREFIX, index):
            return index
        if char == "/":
            slashes += 1
        elif slashes >= 2 and char in _FIELD_DELIMITERS:
            return index
    return len(value)


def extract_references(value: str) -> list[ReferenceSpan]:
    """Locate every reference embedded in ``value``, left to right."""
    spans = []
    start = value.find(PREFIX)
    while start != -1:
        end = _reference_end(value, start + len(PREFIX))
        spans.append(ReferenceSpan(start=start, end=end, text=value[start:end]))
        start = value.find(PREFIX, end)
    return spans


def substitute(
    value: str,
    spans: Sequence[ReferenceSpan],
    replacements: Sequence[str],
) -> str:
    """Replace each span of ``value`` with the matching replacement.

    Text outside the spans is preserved exactly.

    Raises:
        ValueError: If the spans are out of bounds, overlap, or no longer
            match the text they were extracted from.
    """
    if len(spans) != len(replacements):
        raise ValueError("spans and replacements differ in length")

    out = []
    cursor = 0
    for span, replacement in sorted(zip(spans, replacements), key=lambda p: p[0].start):
        if span.start < cursor or span.end > len(value) or span.start >= span.end:
            raise ValueError(f"Invalid reference span [{span.start}, {span.end})")
        if value[span.start:span.end] != span.text:
            raise ValueError(f"Span [{span.start}, {span.end}) does not match {span.text!r}")
        out.append(value[cursor:span.start])
        out.append(replacement)
        cursor = span.end
    out.append(value[cursor:])
    return "".join(out)


class BulkResolver:
    """Resolves many references in parallel.

    Every reference is submitted before any result is awaited, and every
    future is joined. One failure never aborts the others.
    """

    def __init__(
        self,
        backend: VaultBackend,
        client: Optional[ResilientClient] = None,
        max_workers: int = DEFAULT_WORKERS,
    ):
        self.backend = backend
        self.client = client or ResilientClient()
        self.max_workers = max_workers

    def _read(self, reference: Reference) -> str:
        return self.client.call(
            "resolve secret reference", self.backend.read_reference, str(reference)
        )

    def resolve_all(self, pairs: Iterable[tuple[str, str]]) -> list[Resolution]:
        """Resolve ``(key, reference_text)`` pairs.

        Returns:
            One Resolution per pair, in input order.
        """
        pairs = list(pairs)
        if not pairs:
            return []

        logger.info("Resolving %d op:// references in parallel", len(pairs))
        results: list[Optional[Resolution]] = [None] * len(pairs)
        futures: dict[int, Future] = {}

        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(pairs)),
            thread_name_prefix="op-env-resolve",
        ) as pool:
            for index, (key, text) in enumerate(pairs):
                try:
                    reference = Reference.parse(text)
                except MalformedReferenceError as exc:
                    results[index] = Resolution(key=key, reference=text, error=exc)
                    continue
                futures[index] = pool.submit(self._read, reference)
            wait(futures.values())

        for index, future in futures.items():
            key, text = pairs[index]
            exc = future.exception()
            if exc is not None:
                logger.debug("Failed to resolve %s for %s: %s", text, key, exc)
                results[index] = Resolution(key=key, reference=text, error=exc)
            else:
                results[index] = Resolution(key=key, reference=text, value=future.result())

        failed = sum(1 for r in results if r is not None and not r.ok)
        if failed:
            logger.warning("%d of %d references failed to resolve", failed, len(pairs))
        return [r for r in results if r is not None]


def resolve_variables(
    variables: Mapping[str, str],
    resolver: Optional[BulkResolver] = None,
    dry_run: bool = False,
) -> tuple[dict[str, str], list[Resolution]]:
    """Replace every reference in ``variables`` with its resolved value.

    Values without references pass through unchanged. A key with any
    failed reference is dropped from the result and its failures returned.
    In dry-run mode nothing is resolved: each reference becomes a
    ``[RESOLVED:<ref>]`` placeholder.

    Returns:
        (resolved variables in input order, failed resolutions)
    """
    spans_by_key = {
        key: extract_references(value)
        for key, value in variables.items()
        if contains_reference(value)
    }

    if dry_run:
        preview = {}
        for key, value in variables.items():
            spans = spans_by_key.get(key)
            if spans:
                value = substitute(value, spans, [f"[RESOLVED:{s.text}]" for s in spans])
            preview[key] = value
        return preview, []

    if resolver is None:
        raise ValueError("a resolver is required unless dry_run is set")

    pairs = [(key, span.text) for key, spans in spans_by_key.items() for span in spans]
    outcomes = resolver.resolve_all(pairs)

    by_key: dict[str, list[Resolution]] = {}
    for outcome in outcomes:
        by_key.setdefault(outcome.key, []).append(outcome)

    resolved: dict[str, str] = {}
    failures: list[Resolution] = []
    for key, value in variables.items():
        spans = spans_by_key.get(key)
        if not spans:
            resolved[key] = value
            continue
        key_outcomes = by_key.get(key, [])
        bad = [r for r in key_outcomes if not r.ok]
        if bad:
            failures.extend(bad)
            continue
        resolved[key] = substitute(value, spans, [r.value or "" for r in key_outcomes])
    return resolved, failures
