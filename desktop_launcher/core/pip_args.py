"""Installer (``uv pip``) argument building and accelerator mirror rules."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from desktop_launcher.models.install import TorchDevice

logger = logging.getLogger(__name__)

TORCH_PACKAGES = ['torch', 'torchvision', 'torchaudio']


class TorchMirrorUrl(str, Enum):
    DEFAULT = 'https://download.pytorch.org/whl/cpu'
    CUDA = 'https://download.pytorch.org/whl/cu128'
    NIGHTLY_CPU = 'https://download.pytorch.org/whl/nightly/cpu'


@dataclass
class PipInstallConfig:
    packages: list[str] = field(default_factory=list)
    index_url: Optional[str] = None
    extra_index_url: Optional[str] = None
    prerelease: bool = False
    upgrade_packages: bool = False
    requirements_file: Optional[str] = None
    index_strategy: Optional[str] = None  # 'compatible' | 'unsafe-best-match'
    dry_run: bool = False


def get_pip_install_args(config: PipInstallConfig) -> list[str]:
    args = ['pip', 'install']

    if config.upgrade_packages:
        args.append('-U')
    if config.prerelease:
        args.append('--pre')
    if config.dry_run:
        args.append('--dry-run')

    if config.requirements_file:
        args.extend(['-r', config.requirements_file])
    else:
        args.extend(config.packages)

    # Empty mirror strings mean "unset"
    if config.index_url:
        args.extend(['--index-url', config.index_url])
    if config.extra_index_url:
        args.extend(['--extra-index-url', config.extra_index_url])
    if config.index_strategy:
        args.extend(['--index-strategy', config.index_strategy])

    return args


def default_torch_mirror(device: TorchDevice) -> str:
    logger.debug('Falling back to default torch mirror')
    if device == TorchDevice.MPS:
        return TorchMirrorUrl.NIGHTLY_CPU.value
    if device == TorchDevice.NVIDIA:
        return TorchMirrorUrl.CUDA.value
    return TorchMirrorUrl.DEFAULT.value


def fix_device_mirror_mismatch(device: TorchDevice, mirror: Optional[str]) -> Optional[str]:
    """Disallow the CPU-only default mirror when the selected device is not CPU."""
    if mirror == TorchMirrorUrl.DEFAULT.value:
        if device == TorchDevice.NVIDIA:
            return TorchMirrorUrl.CUDA.value
        if device == TorchDevice.MPS:
            return TorchMirrorUrl.NIGHTLY_CPU.value
    return mirror or None
