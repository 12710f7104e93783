"""
``ORDERFLOW_*`` environment variables, optionally seeded from a ``.env`` file.

The sweeper, the outbox relay and the CLI all read their settings through
:class:`EnvManager`; :meth:`OrderflowConfig.from_env` maps each config field
to ``ORDERFLOW_<FIELD>``.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

from dotenv import load_dotenv

PREFIX = "ORDERFLOW_"

_TRUE = frozenset({"true", "1", "yes", "on"})
_FALSE = frozenset({"false", "0", "no", "off"})

T = TypeVar("T")


class EnvManager:
    """
    Typed reads of the process environment.

    Example:
        >>> env = EnvManager()          # picks up ./.env when present
        >>> env.get_int("ORDERFLOW_SWEEP_BATCH_SIZE", 20)
        >>> env.settings()              # {"sweep_batch_size": "20", ...}
    """

    def __init__(self, project_root: Path | str | None = None, auto_load: bool = True):
        """
        Args:
            project_root: Directory holding the ``.env`` file (cwd if not provided)
            auto_load: Read ``<project_root>/.env`` right away
        """
        self.project_root = Path(project_root) if project_root else Path.cwd()
        self._loaded = False

        if auto_load:
            self.load()

    @property
    def loaded(self) -> bool:
        """Whether a ``.env`` file has been read."""
        return self._loaded

    def load(self, env_file: str | Path | None = None, override: bool = False) -> bool:
        """
        Read a ``.env`` file into ``os.environ``.

        Variables already set in the process win unless ``override`` is true.
        Returns False when the file does not exist.
        """
        path = Path(env_file) if env_file is not None else self.project_root / ".env"
        if not path.is_file():
            return False

        load_dotenv(path, override=override)
        self._loaded = True
        return True

    def get(self, key: str, default: str | None = None, required: bool = False) -> str | None:
        """
        Raises:
            ValueError: ``required`` and the variable is unset
        """
        if key in os.environ:
            return os.environ[key]
        if required and default is None:
            msg = f"Required environment variable not set: {key}"
            raise ValueError(msg)
        return default

    def _parse(self, key: str, default: T, parser: Callable[[str], T]) -> T:
        raw = self.get(key)
        if raw is None or not raw.strip():
            return default
        try:
            return parser(raw.strip())
        except ValueError:
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        """``true/1/yes/on`` or ``false/0/no/off``; anything else gives ``default``."""

        def parse(raw: str) -> bool:
            lowered = raw.lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(raw)

        return self._parse(key, default, parse)

    def get_int(self, key: str, default: int = 0) -> int:
        return self._parse(key, default, int)

    def get_float(self, key: str, default: float = 0.0) -> float:
        return self._parse(key, default, float)

    def settings(self, prefix: str = PREFIX) -> dict[str, str]:
        """Variables under ``prefix``, keyed by the lower-cased remainder of the name."""
        return {
            key[len(prefix) :].lower(): value
            for key, value in os.environ.items()
            if key.startswith(prefix) and len(key) > len(prefix)
        }
