"""Wrapper for the bundled manager plugin's command line (``cm-cli.py``).

Used to migrate custom nodes from another installation: a snapshot of the
source's nodes is saved, then restored into the new base path.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Mapping, Optional, Sequence

from desktop_launcher.core.events import EventTracker, track_event
from desktop_launcher.exceptions import ManagerCliError
from desktop_launcher.models.command import ProcessCallbacks
from desktop_launcher.services.runtime_environment import RuntimeEnvironment
from desktop_launcher.utils.fs import path_accessible

logger = logging.getLogger(__name__)


class ManagerCli:
    def __init__(self, runtime: RuntimeEnvironment, events: Optional[EventTracker] = None) -> None:
        self.runtime = runtime
        self.events = events or runtime.events
        self.comfyui_path = runtime.resources_path / 'ComfyUI'
        self.cli_path = self.comfyui_path / 'custom_nodes' / 'ComfyUI-Manager' / 'cm-cli.py'

    async def run_command_async(
        self,
        args: Sequence[str],
        callbacks: Optional[ProcessCallbacks] = None,
        env: Optional[Mapping[str, str]] = None,
        check_exit: bool = True,
        cwd: Optional[Path] = None,
    ) -> str:
        """Run ``cm-cli.py`` with the environment's interpreter and return its stdout."""
        full_env = {'COMFYUI_PATH': str(self.runtime.base_path), **(env or {})}
        callbacks = callbacks or ProcessCallbacks()

        def on_stderr(message: str) -> None:
            logger.warning(message.rstrip())
            if callbacks.on_stderr:
                callbacks.on_stderr(message)

        result = await self.runtime.run_python_command_async(
            [str(self.cli_path), *args],
            ProcessCallbacks(on_stdout=callbacks.on_stdout, on_stderr=on_stderr),
            full_env,
            cwd,
        )

        if check_exit and result.exit_code != 0:
            output = f"Output:{result.stdout}\n\nError:{result.stderr}"
            raise ManagerCliError('Error calling cm-cli', result.exit_code, output)
        return result.stdout

    async def restore_custom_nodes(self, from_comfy_dir: Path, callbacks: Optional[ProcessCallbacks] = None) -> None:
        await track_event(
            self.events,
            'migrate_flow:migrate_custom_nodes',
            self._restore_custom_nodes,
            Path(from_comfy_dir),
            callbacks,
        )

    async def _restore_custom_nodes(self, from_comfy_dir: Path, callbacks: Optional[ProcessCallbacks]) -> None:
        fd, snapshot_name = tempfile.mkstemp(suffix='.json')
        os.close(fd)
        snapshot = Path(snapshot_name)
        try:
            logger.debug('Using temp file: %s', snapshot)
            await self.save_snapshot(from_comfy_dir, snapshot, callbacks)
            await self.restore_snapshot(snapshot, self.runtime.base_path / 'custom_nodes', callbacks)

            # Restoring also copies the manager itself, which is bundled already
            manager_path = self.runtime.base_path / 'custom_nodes' / 'ComfyUI-Manager'
            if path_accessible(manager_path):
                await asyncio.to_thread(shutil.rmtree, manager_path, True)
                logger.info('Removed extra ComfyUI-Manager directory: %s', manager_path)
        finally:
            snapshot.unlink(missing_ok=True)

    async def save_snapshot(
        self, from_comfy_dir: Path, out_file: Path, callbacks: Optional[ProcessCallbacks] = None
    ) -> None:
        output = await self.run_command_async(
            ['save-snapshot', '--output', str(out_file), '--no-full-snapshot'],
            callbacks,
            {'COMFYUI_PATH': str(from_comfy_dir), 'PYTHONPATH': str(from_comfy_dir)},
            cwd=Path(from_comfy_dir),
        )
        logger.info(output)

    async def restore_snapshot(
        self, snapshot_file: Path, to_comfy_dir: Path, callbacks: Optional[ProcessCallbacks] = None
    ) -> None:
        logger.info('Restoring snapshot %s', snapshot_file)
        output = await self.run_command_async(
            ['restore-snapshot', str(snapshot_file), '--restore-to', str(to_comfy_dir)],
            callbacks,
            {'COMFYUI_PATH': str(self.comfyui_path)},
        )
        logger.info(output)
