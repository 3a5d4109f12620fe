"""On-disk cache of validated structured LLM responses.

Entries are YAML files under ``<cache_dir>/<purpose>/<key>.yaml`` where the
key is a SHA-256 of the request (model, purpose, prompts). Only responses
that passed schema validation are stored.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


def _write_atomic(path: Path, content: str) -> None:
    """Replace ``path`` via a temp file in the same directory."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError:
        Path(tmp).unlink(missing_ok=True)
        raise


def compute_cache_key(
    model: str,
    purpose: str,
    prompt: str,
    system_prompt: str | None = None,
) -> str:
    """Compute a deterministic key for a structured request.

    Line endings and trailing whitespace are normalized so cosmetic
    differences do not miss the cache.
    """
    payload = {
        "model": model,
        "purpose": purpose,
        "prompt": prompt.replace("\r\n", "\n").rstrip(),
        "system_prompt": (system_prompt or "").replace("\r\n", "\n").rstrip(),
    }
    raw = json.dumps(payload, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(raw.encode()).hexdigest()


class ResponseCache:
    """File cache of structured responses, grouped by purpose."""

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = cache_dir

    def _entry_path(self, purpose: str, key: str) -> Path:
        return self.cache_dir / purpose / f"{key}.yaml"

    def get(self, purpose: str, key: str) -> dict[str, Any] | None:
        """Load a cached response payload, or None on a miss."""
        path = self._entry_path(purpose, key)
        if not path.exists():
            return None
        try:
            entry = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError:
            logger.warning("Ignoring unreadable cache entry %s", path)
            return None
        if not isinstance(entry, dict) or "data" not in entry:
            return None
        return entry

    def put(
        self,
        purpose: str,
        key: str,
        data: dict[str, Any],
        model: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> Path:
        """Store a validated response payload."""
        path = self._entry_path(purpose, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        entry = {
            "model": model,
            "purpose": purpose,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "data": data,
        }
        _write_atomic(path, yaml.safe_dump(entry, sort_keys=True, allow_unicode=True))
        return path

    def clear(self, purpose: str | None = None) -> int:
        """Delete cached entries, optionally for one purpose only.

        Returns:
            Number of entries removed.
        """
        root = self.cache_dir / purpose if purpose else self.cache_dir
        if not root.exists():
            return 0
        removed = 0
        for path in root.rglob("*.yaml"):
            path.unlink()
            removed += 1
        return removed
