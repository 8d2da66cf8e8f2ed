"""Persisted installation record (base path, lifecycle state, device, mirrors)."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from desktop_launcher.utils.fs import atomic_write

logger = logging.getLogger(__name__)


class InstallStateStore:
    """Key-value installation record in a JSON file.

    Every write is persisted immediately, so an interrupted install leaves the
    last transition on disk.
    """

    KEYS = (
        'basePath',
        'installState',
        'selectedDevice',
        'pythonMirror',
        'pypiMirror',
        'torchMirror',
        'migrateCustomNodesFrom',
        'detectedGpu',
    )

    def __init__(self, state_path: Path):
        self.state_path = Path(state_path)
        self._state: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        """Load state from disk, or return empty state."""
        try:
            if self.state_path.exists():
                data = json.loads(self.state_path.read_text(encoding='utf-8'))
                if isinstance(data, dict):
                    return data
                logger.warning("Ignoring install state %s: not a JSON object", self.state_path)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable install state %s: %s", self.state_path, e)
        return {}

    def _save(self):
        """Atomically persist state to disk."""
        atomic_write(self.state_path, json.dumps(self._state, indent=2) + '\n')

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        return self._state.get(key, default)

    def set(self, key: str, value: Any):
        self._state[key] = value
        self._save()

    def update(self, **values: Any):
        """Set several keys with a single write."""
        self._state.update(values)
        self._save()

    def delete(self, key: str):
        if key in self._state:
            del self._state[key]
            self._save()

    def has_record(self) -> bool:
        return bool(self._state)

    def clear(self):
        """Remove the record from memory and disk (uninstall)."""
        self._state = {}
        self.state_path.unlink(missing_ok=True)

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._state)
