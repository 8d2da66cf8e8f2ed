"""First-install seeding: folder layout, settings file and model search paths."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from desktop_launcher.config import Settings
from desktop_launcher.core.events import EventTracker, LoggingEventTracker, track_event
from desktop_launcher.core.launch_args import LAUNCH_ARGS_SETTING
from desktop_launcher.models.install import InstallOptions, TorchDevice
from desktop_launcher.services.app_settings import AppSettings
from desktop_launcher.utils.fs import atomic_write

logger = logging.getLogger(__name__)

MODEL_FOLDERS = [
    'checkpoints',
    'classifiers',
    'clip',
    'clip_vision',
    'configs',
    'controlnet',
    'diffusers',
    'diffusion_models',
    'embeddings',
    'gligen',
    'hypernetworks',
    'loras',
    'photomaker',
    'style_models',
    'text_encoders',
    'unet',
    'upscale_models',
    'vae',
    'vae_approx',
    'animatediff_models',
    'animatediff_motion_lora',
    'animatediff_video_formats',
    'ipadapter',
    'liveportrait',
    'insightface',
    'layerstyle',
    'LLM',
    'Joy_caption',
    'sams',
    'blip',
    'CogVideo',
    'xlabs',
    'instantid',
]

NESTED_MODEL_FOLDERS = [
    'insightface/buffalo_1',
    'blip/checkpoints',
    'xlabs/loras',
    'xlabs/controlnets',
]

# Migration item ids offered by the install UI
MIGRATE_USER_FILES = 'user_files'
MIGRATE_MODELS = 'models'
MIGRATE_CUSTOM_NODES = 'custom_nodes'

EXTRA_MODEL_PATHS_FILE = 'extra_model_paths.yaml'


def base_model_paths(prefix: str = '') -> Dict[str, str]:
    """Model folder entries relative to a ComfyUI directory."""
    paths = {name: f'{prefix}models/{name}/' for name in MODEL_FOLDERS}
    paths['custom_nodes'] = f'{prefix}custom_nodes/'
    return paths


def create_comfy_directories(base_path: Path) -> None:
    """Create the standard ComfyUI layout under *base_path*. Existing folders are kept."""
    logger.info('Creating ComfyUI directories in %s', base_path)
    for name in ('custom_nodes', 'input', 'output', 'user/default'):
        (base_path / name).mkdir(parents=True, exist_ok=True)

    models = base_path / 'models'
    for name in MODEL_FOLDERS + NESTED_MODEL_FOLDERS:
        (models / name).mkdir(parents=True, exist_ok=True)


def read_repo_model_paths(repo_path: Path) -> Dict[str, Any]:
    """Sections of an existing install's ``extra_model_paths.yaml``, if it has one."""
    config_path = repo_path / EXTRA_MODEL_PATHS_FILE
    if not config_path.exists():
        return {}
    try:
        with open(config_path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError) as e:
        logger.error('Unable to read %s: %s', config_path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning('Ignoring %s: not a mapping', config_path)
        return {}
    return data


class InstallWizard:
    """Applies confirmed install options to a new base path."""

    def __init__(
        self,
        install_options: InstallOptions,
        config: Settings,
        events: Optional[EventTracker] = None,
    ) -> None:
        self.install_options = install_options
        self.config = config
        self.events = events or LoggingEventTracker()
        self.migration_item_ids = set(install_options.migration_item_ids)

    @property
    def migration_source(self) -> Optional[Path]:
        source = self.install_options.migration_source_path
        return Path(source) if source else None

    @property
    def base_path(self) -> Path:
        return Path(self.install_options.install_path)

    def should_migrate(self, item_id: str) -> bool:
        return self.migration_source is not None and item_id in self.migration_item_ids

    async def install(self) -> None:
        await track_event(self.events, 'install_flow:create_comfy_directories', self._install)

    async def _install(self) -> None:
        create_comfy_directories(self.base_path)
        self.initialize_user_files()
        self.initialize_settings()
        self.initialize_model_paths()

    def initialize_user_files(self) -> None:
        """Copy ``user/`` from the migration source into the new base path."""
        if not self.should_migrate(MIGRATE_USER_FILES):
            return

        self.events.track('migrate_flow:migrate_user_files')
        src = self.migration_source / 'user'
        dest = self.base_path / 'user'
        if src.resolve() == dest.resolve():
            logger.warning('Skipping user files migration: source and destination are the same (%s)', src)
            return
        shutil.copytree(src, dest, dirs_exist_ok=True)

    def initialize_settings(self) -> None:
        """Write install options into the settings file, keeping existing values."""
        settings = AppSettings.load(self.base_path)
        options = self.install_options

        settings.set('Comfy-Desktop.AutoUpdate', options.auto_update)
        settings.set('Comfy-Desktop.SendStatistics', options.allow_metrics)
        settings.set('Comfy-Desktop.UV.PythonInstallMirror', options.python_mirror)
        settings.set('Comfy-Desktop.UV.PypiInstallMirror', options.pypi_mirror)
        settings.set('Comfy-Desktop.UV.TorchInstallMirror', options.torch_mirror)

        if options.device == TorchDevice.CPU:
            launch_args = dict(settings.get(LAUNCH_ARGS_SETTING) or {})
            launch_args['cpu'] = ''
            settings.set(LAUNCH_ARGS_SETTING, launch_args)

        settings.save()
        logger.info('Wrote install options to comfy settings file.')

    def initialize_model_paths(self) -> None:
        """Write the extra model paths file the server is launched with."""
        desktop_config: Dict[str, Any] = {'is_default': 'true', **base_model_paths()}
        desktop_config['base_path'] = str(self.base_path)

        content: Dict[str, Any]
        if self.should_migrate(MIGRATE_MODELS):
            self.events.track('migrate_flow:migrate_models')
            migration_config: Dict[str, Any] = base_model_paths()
            migration_config['base_path'] = str(self.migration_source)
            content = {
                **read_repo_model_paths(self.migration_source),
                'comfyui_migration': migration_config,
                'comfyui_desktop': desktop_config,
            }
        else:
            content = {'comfyui_desktop': desktop_config}

        target = self.config.extra_model_paths_config
        atomic_write(target, yaml.safe_dump(content, sort_keys=False))
        logger.info('Wrote model paths config to %s', target)
