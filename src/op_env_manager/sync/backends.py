"""
Vault backends -- where the remote variable set lives.

The engine only talks to the VaultBackend interface. OnePasswordBackend
drives the 1Password ``op`` CLI:

    op item get <record> --vault <vault> --format json    read fields
    op item create --category "Secure Note" ...            new record
    op item edit <record> --vault <vault> a=b c=d ...      batched update
    op read --no-newline op://vault/item/field             resolve reference

Field values store embedded newlines as the two-character escape ``\\n``.
Backends raise RemoteError and never retry; retry is the caller's job.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import Mapping, Optional

from .. import ITEM_TAG
from ..errors import RemoteError
from .models import VaultTarget

logger = logging.getLogger("op_env_manager.sync.backends")

DEFAULT_TIMEOUT = 60.0

_MISSING_RECORD = re.compile(r"isn't an item|not found|no item", re.IGNORECASE)


class VaultBackend(ABC):
    """Abstract remote store for variable sets."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name."""

    @abstractmethod
    def available(self) -> bool:
        """Check if this backend is currently usable."""

    @abstractmethod
    def record_exists(self, target: VaultTarget) -> bool:
        """Whether the target's record exists in its vault."""

    @abstractmethod
    def fetch_variables(self, target: VaultTarget) -> dict[str, str]:
        """Read the variable set of an existing record.

        Returns:
            dict of variable name to value, newlines decoded.
        """

    @abstractmethod
    def write_variables(
        self,
        target: VaultTarget,
        variables: Mapping[str, str],
        create: bool = False,
    ) -> None:
        """Write fields to the record in one batched call.

        Args:
            target: Vault target.
            variables: Fields to set. Fields not named are left alone.
            create: Create the record instead of editing it.
        """

    @abstractmethod
    def read_reference(self, reference: str) -> str:
        """Resolve one ``op://`` reference to its value."""


def escape_field_name(name: str) -> str:
    """Escape the characters ``op`` treats specially in assignment names."""
    return re.sub(r"([\\.=])", r"\\\1", name)


def encode_value(value: str) -> str:
    return value.replace("\r\n", "\n").replace("\n", "\\n")


def decode_value(value: str) -> str:
    return value.replace("\\n", "\n")


def field_assignment(key: str, value: str, subsection: Optional[str] = None) -> str:
    """Build a concealed-field assignment: ``[section.]KEY[password]=value``."""
    name = escape_field_name(key)
    if subsection:
        name = f"{escape_field_name(subsection)}.{name}"
    return f"{name}[password]={encode_value(value)}"


def parse_item_fields(item: dict, subsection: Optional[str] = None) -> dict[str, str]:
    """Extract variables from ``op item get --format json`` output.

    With a subsection, fields whose section label equals it are used;
    otherwise top-level concealed and string fields.
    """
    variables: dict[str, str] = {}
    for field in item.get("fields") or []:
        label = field.get("label")
        if not label:
            continue
        section = field.get("section") or {}
        if subsection:
            if section.get("label") != subsection:
                continue
        else:
            if section.get("label"):
                continue
            if field.get("type") not in ("CONCEALED", "STRING"):
                continue
            if field.get("purpose") == "NOTES":
                continue
        variables[label] = decode_value(field.get("value") or "")
    return variables


class OnePasswordBackend(VaultBackend):
    """1Password backend driven through the ``op`` CLI."""

    def __init__(self, op_binary: str = "op", timeout: float = DEFAULT_TIMEOUT):
        self.op_binary = op_binary
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "1password"

    def available(self) -> bool:
        return shutil.which(self.op_binary) is not None

    def _run(self, label: str, args: list[str]) -> str:
        """Run ``op`` and return stdout, raising RemoteError on failure."""
        cmd = [self.op_binary, *args]
        logger.debug("Running: %s %s", self.op_binary, " ".join(args[:2]))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
                stdin=subprocess.DEVNULL,
                env=os.environ.copy(),
            )
        except FileNotFoundError as exc:
            raise RemoteError(label, f"1Password CLI '{self.op_binary}' not found") from exc

        if result.returncode != 0:
            raise RemoteError(
                label, result.stderr or result.stdout, result.returncode
            )
        return result.stdout

    def record_exists(self, target: VaultTarget) -> bool:
        try:
            self._run(
                "check if item exists",
                ["item", "get", target.record, "--vault", target.vault, "--format", "json"],
            )
        except RemoteError as exc:
            if exc.returncode is not None and _MISSING_RECORD.search(exc.output):
                return False
            raise
        return True

    def fetch_variables(self, target: VaultTarget) -> dict[str, str]:
        out = self._run(
            "get item from vault",
            ["item", "get", target.record, "--vault", target.vault, "--format", "json"],
        )
        try:
            item = json.loads(out)
        except json.JSONDecodeError as exc:
            raise RemoteError("get item from vault", f"invalid JSON from op: {exc}") from exc
        variables = parse_item_fields(item, target.subsection)
        logger.info("Fetched %d variables from %s", len(variables), target.label)
        return variables

    def write_variables(
        self,
        target: VaultTarget,
        variables: Mapping[str, str],
        create: bool = False,
    ) -> None:
        assignments = [
            field_assignment(key, value, target.subsection)
            for key, value in variables.items()
        ]
        if create:
            self._run(
                "create item",
                [
                    "item", "create",
                    "--category", "Secure Note",
                    "--title", target.record,
                    "--vault", target.vault,
                    "--tags", ITEM_TAG,
                    *assignments,
                ],
            )
            logger.info("Created %s with %d fields", target.label, len(assignments))
            return

        if not assignments:
            return
        self._run(
            "update item",
            ["item", "edit", target.record, "--vault", target.vault, *assignments],
        )
        logger.info("Updated %d fields in %s", len(assignments), target.label)

    def read_reference(self, reference: str) -> str:
        return self._run("resolve secret reference", ["read", "--no-newline", reference])
