"""The application's own settings file, ``<base>/user/default/comfy.settings.json``.

The launcher may write this file only until the server starts; from then on
the server process owns it. :meth:`AppSettings.hand_over` marks that point by
returning a read-only :class:`SettingsView` and locking the writable object.
"""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Iterator, Mapping

from desktop_launcher.exceptions import SettingsLockedError
from desktop_launcher.utils.fs import atomic_write

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: dict[str, Any] = {
    'Comfy-Desktop.AutoUpdate': True,
    'Comfy-Desktop.SendStatistics': True,
    'Comfy.ColorPalette': 'dark',
    'Comfy.UseNewMenu': 'Top',
    'Comfy.Workflow.WorkflowTabsPosition': 'Topbar',
    'Comfy.Workflow.ShowMissingModelsWarning': True,
    'Comfy.Server.LaunchArgs': {},
    'Comfy-Desktop.UV.PythonInstallMirror': '',
    'Comfy-Desktop.UV.PypiInstallMirror': '',
    'Comfy-Desktop.UV.TorchInstallMirror': '',
}


def settings_file_path(base_path: Path) -> Path:
    return Path(base_path) / 'user' / 'default' / 'comfy.settings.json'


class SettingsView(Mapping[str, Any]):
    """Read-only snapshot of settings, falling back to defaults."""

    def __init__(self, data: Mapping[str, Any]) -> None:
        self._data = copy.deepcopy(dict(data))

    def __getitem__(self, key: str) -> Any:
        if key in self._data:
            return copy.deepcopy(self._data[key])
        return copy.deepcopy(DEFAULT_SETTINGS[key])

    def __iter__(self) -> Iterator[str]:
        return iter({**DEFAULT_SETTINGS, **self._data})

    def __len__(self) -> int:
        return len({**DEFAULT_SETTINGS, **self._data})


class AppSettings:
    """Writable settings, valid until handed over to the server."""

    def __init__(self, base_path: Path, data: Mapping[str, Any] | None = None) -> None:
        self.base_path = Path(base_path)
        self._settings: dict[str, Any] = {**copy.deepcopy(DEFAULT_SETTINGS), **dict(data or {})}
        self._locked = False

    @property
    def file_path(self) -> Path:
        return settings_file_path(self.base_path)

    @property
    def locked(self) -> bool:
        return self._locked

    @classmethod
    def load(cls, base_path: Path) -> "AppSettings":
        """Read settings from disk, merged over defaults.

        A missing or unreadable file yields defaults.
        """
        instance = cls(base_path)
        path = instance.file_path
        if not path.exists():
            logger.info("Settings file %s does not exist. Using default settings.", path)
            return instance

        try:
            content = json.loads(path.read_text(encoding='utf-8'))
        except json.JSONDecodeError as e:
            logger.error("Settings file contains invalid JSON: %s", e)
            return instance
        except OSError as e:
            logger.error("Settings file cannot be loaded: %s", e)
            return instance

        if isinstance(content, dict):
            instance._settings.update(content)
        else:
            logger.error("Settings file %s does not contain a JSON object", path)
        return instance

    def get(self, key: str, default: Any = None) -> Any:
        if key in self._settings:
            return self._settings[key]
        return DEFAULT_SETTINGS.get(key, default)

    def set(self, key: str, value: Any) -> None:
        if self._locked:
            raise SettingsLockedError('Settings are locked and cannot be modified')
        self._settings[key] = value

    def save(self) -> None:
        if self._locked:
            logger.error('Attempted to save settings after hand-over')
            raise SettingsLockedError('Settings are locked and cannot be modified')
        atomic_write(self.file_path, json.dumps(self._settings, indent=2))

    def hand_over(self) -> SettingsView:
        """Lock this object and return a read-only view of its settings."""
        self._locked = True
        return SettingsView(self._settings)
