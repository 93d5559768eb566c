from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

logger = logging.getLogger("uvicorn.error")

_ENV_KEY_PATTERN = re.compile(r"^AUTH_JSON_(\d+)$")
_FILE_NAME_PATTERN = re.compile(r"^auth-(\d+)\.json$")
UNNAMED_ACCOUNT = "unnamed"


class AccountDirectory(Protocol):
    def list_usable_indices(self) -> list[int]: ...

    def name_of(self, index: int) -> str | None: ...


class AuthSourceDirectory:
    """Accounts discovered from ``AUTH_JSON_<n>`` variables or ``auth-<n>.json`` files.

    Environment mode wins when ``AUTH_JSON_1`` is present. Sources that cannot
    be read or do not hold valid JSON are reported as invalid and are never
    offered as rotation targets.
    """

    def __init__(
        self,
        auth_dir: str | Path,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._auth_dir = Path(auth_dir)
        self._environ = environ if environ is not None else os.environ
        self.mode = "env" if self._environ.get("AUTH_JSON_1") else "file"
        self.initial_indices: list[int] = []
        self.invalid_indices: list[int] = []
        self._names: dict[int, str] = {}
        self._usable: list[int] = []
        self.reload()

    def reload(self) -> None:
        self.initial_indices = sorted(set(self._discover()))
        self._names = {}
        self.invalid_indices = []
        usable: list[int] = []
        for index in self.initial_indices:
            content = self._read(index)
            if content is None:
                self.invalid_indices.append(index)
                continue
            try:
                payload = json.loads(content)
            except json.JSONDecodeError:
                self.invalid_indices.append(index)
                continue
            name = payload.get("accountName") if isinstance(payload, dict) else None
            self._names[index] = str(name) if name else UNNAMED_ACCOUNT
            usable.append(index)
        self._usable = usable

        if self.invalid_indices:
            logger.warning(
                "account_sources_invalid mode=%s indices=%s",
                self.mode,
                ",".join(str(index) for index in self.invalid_indices),
            )
        if not self._usable:
            logger.error("account_sources_empty mode=%s", self.mode)
        else:
            logger.info(
                "account_sources_loaded mode=%s usable=%s",
                self.mode,
                ",".join(str(index) for index in self._usable),
            )

    def list_usable_indices(self) -> list[int]:
        return list(self._usable)

    def name_of(self, index: int) -> str | None:
        return self._names.get(index)

    def describe(self) -> list[dict[str, object]]:
        return [
            {
                "index": index,
                "name": self._names.get(index),
                "valid": index in self._names,
            }
            for index in self.initial_indices
        ]

    def _discover(self) -> list[int]:
        if self.mode == "env":
            indices: list[int] = []
            for key in self._environ:
                match = _ENV_KEY_PATTERN.match(key)
                if match:
                    indices.append(int(match.group(1)))
            return indices
        if not self._auth_dir.is_dir():
            logger.warning("account_dir_missing path=%s", self._auth_dir)
            return []
        indices = []
        for entry in self._auth_dir.iterdir():
            match = _FILE_NAME_PATTERN.match(entry.name)
            if match and entry.is_file():
                indices.append(int(match.group(1)))
        return indices

    def _read(self, index: int) -> str | None:
        if self.mode == "env":
            return self._environ.get(f"AUTH_JSON_{index}") or None
        path = self._auth_dir / f"auth-{index}.json"
        try:
            return path.read_text(encoding="utf-8")
        except OSError:
            return None
