from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Callable, Mapping

logger = logging.getLogger("meterboard.cache")

_UNSAFE = re.compile(r"[^A-Za-z0-9\-.]")
_CATEGORY = re.compile(r"^[A-Za-z0-9_\-.]+$")


def sanitize(value: Any) -> str:
    return _UNSAFE.sub("-", str(value))


class ResultCache:
    """Whole-response cache for periods whose data can no longer change.

    Entries are never updated or evicted; removing the directory is the only
    way to drop them.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    @staticmethod
    def key_for(params: Mapping[str, Any]) -> str:
        parts = [f"{sanitize(name)}_{sanitize(value)}" for name, value in sorted(params.items()) if value is not None]
        return "__".join(parts)

    def path_for(self, category: str, params: Mapping[str, Any]) -> Path:
        # Categories are fixed by the routes and keep their underscores.
        if not _CATEGORY.match(category):
            raise ValueError(f"Invalid cache category: {category!r}")
        return self.directory / f"{category}___{self.key_for(params)}.json"

    def with_cache(
        self,
        category: str,
        params: Mapping[str, Any],
        compute: Callable[[], bytes],
        closed: bool,
    ) -> bytes:
        if not closed:
            return compute()

        path = self.path_for(category, params)
        try:
            payload = path.read_bytes()
            logger.debug("Cache hit %s", path.name)
            return payload
        except FileNotFoundError:
            logger.debug("Cache miss %s", path.name)
        except OSError:
            logger.warning("Unreadable cache file %s; recomputing", path, exc_info=True)

        payload = compute()
        self._store(path, payload)
        return payload

    def _store(self, path: Path, payload: bytes) -> None:
        tmp_name: str | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile("wb", dir=path.parent, prefix=".tmp-", delete=False) as handle:
                tmp_name = handle.name
                handle.write(payload)
            os.replace(tmp_name, path)
        except OSError:
            logger.exception("Failed to write cache file %s", path)
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
