"""Lifecycle of the bundled server process.

``start`` races two things: the process exiting, and an HTTP readiness check
against ``<listen>:<port><health_path>``. Whichever resolves first decides the
outcome. A readiness timeout is reported separately from a crash, since the
process may still be alive and starting.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import httpx
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_delay, wait_fixed

from desktop_launcher.config import Settings
from desktop_launcher.core.events import EventTracker, LoggingEventTracker, track_event
from desktop_launcher.core.launch_args import build_launch_args, merge_launch_args
from desktop_launcher.exceptions import (
    ServerAlreadyRunningError,
    ServerExitedError,
    ServerKillError,
    ServerKillTimeoutError,
    ServerStartTimeoutError,
)
from desktop_launcher.logging_config import SERVER_OUTPUT_LOGGER
from desktop_launcher.models.command import OutputSink, ProcessCallbacks
from desktop_launcher.models.server import ServerArgs
from desktop_launcher.services.app_settings import AppSettings, SettingsView
from desktop_launcher.services.runtime_environment import RuntimeEnvironment
from desktop_launcher.utils.process import StreamingProcess

logger = logging.getLogger(__name__)
server_log = logging.getLogger(SERVER_OUTPUT_LOGGER)


class ServerSupervisor:
    """Starts, monitors and stops one server process.

    is_running: the server process is running.
    timed_out_whilst_starting: the last start did not see the server become
    ready in time. The process may still be running.
    """

    def __init__(
        self,
        base_path: Path,
        server_args: ServerArgs,
        runtime: RuntimeEnvironment,
        config: Settings,
        *,
        events: Optional[EventTracker] = None,
        on_output: Optional[OutputSink] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_path = Path(base_path)
        self.server_args = server_args
        self.runtime = runtime
        self.config = config
        self.events = events or LoggingEventTracker()
        self.on_output = on_output
        self._http_transport = http_transport

        self.main_script_path = config.comfyui_path / 'main.py'
        self.web_root_path = config.comfyui_path / 'web_custom_versions' / 'desktop_app'

        self.timed_out_whilst_starting = False
        self.settings: Optional[SettingsView] = None
        self._process: Optional[StreamingProcess] = None
        self._exit_watcher: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._process is not None

    @property
    def base_url(self) -> str:
        return f"http://{self.server_args.listen}:{self.server_args.port}"

    @property
    def health_url(self) -> str:
        return f"{self.base_url}{self.config.health_path}"

    @property
    def core_launch_args(self) -> dict[str, str]:
        """Arguments the desktop layout depends on. These override user flags."""
        return {
            'user-directory': str(self.base_path / 'user'),
            'input-directory': str(self.base_path / 'input'),
            'output-directory': str(self.base_path / 'output'),
            'front-end-root': str(self.web_root_path),
            'base-directory': str(self.base_path),
            'extra-model-paths-config': str(self.config.extra_model_paths_config),
            'log-stdout': '',
        }

    @property
    def launch_args(self) -> list[str]:
        args = merge_launch_args(self.core_launch_args, self.server_args.as_flags())
        return [str(self.main_script_path), *build_launch_args(args)]

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self, app_settings: Optional[AppSettings] = None) -> None:
        """Start the server and wait until it is ready or has exited.

        Raises:
            ServerAlreadyRunningError: a server process is already running.
            ServerExitedError: the process exited non-zero before becoming ready.
            ServerStartTimeoutError: readiness was not seen within the maximum wait.
            OSError: the interpreter could not be spawned.
        """
        if self.is_running:
            message = 'ComfyUI server is already running'
            logger.error(message)
            raise ServerAlreadyRunningError(message)

        # The server owns the settings file from here on
        if app_settings is not None:
            self.settings = app_settings.hand_over()

        await track_event(self.events, 'comfyui:server_start', self._start)

    async def _start(self) -> None:
        self.timed_out_whilst_starting = False
        process = await self.runtime.run_python_command(
            self.launch_args,
            ProcessCallbacks(on_stdout=self._on_stdout, on_stderr=self._on_stderr),
        )
        self._process = process

        exit_task = asyncio.create_task(process.wait())
        ready_task = asyncio.create_task(self._wait_until_ready())
        try:
            await asyncio.wait({exit_task, ready_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            exit_task.cancel()
            ready_task.cancel()
            raise

        if exit_task.done():
            ready_task.cancel()
            await asyncio.gather(ready_task, return_exceptions=True)
            self._process = None
            code = exit_task.result()
            if code != 0:
                logger.error('Python process exited with code %s', code)
                raise ServerExitedError(code)
            logger.info('Python process exited successfully')
            return

        # Process still alive: keep watching so is_running tracks it
        self._exit_watcher = exit_task
        exit_task.add_done_callback(lambda task: self._on_process_exit(process, task))

        try:
            ready_task.result()
        except RetryError as error:
            self.timed_out_whilst_starting = True
            logger.error('Server failed to start within timeout: %s', error)
            raise ServerStartTimeoutError('Python server failed to start within timeout.') from error
        logger.info('Python server is ready')

    async def _wait_until_ready(self) -> None:
        """Poll the health endpoint until it answers 2xx.

        Raises ``tenacity.RetryError`` when the maximum wait elapses.
        """
        async with httpx.AsyncClient(
            transport=self._http_transport,
            timeout=self.config.health_request_timeout_seconds,
        ) as client:
            async for attempt in AsyncRetrying(
                wait=wait_fixed(self.config.health_check_interval_seconds),
                stop=stop_after_delay(self.config.max_start_wait_seconds),
                retry=retry_if_exception_type(httpx.HTTPError),
            ):
                with attempt:
                    response = await client.get(self.health_url)
                    response.raise_for_status()

    def _on_process_exit(self, process: StreamingProcess, task: asyncio.Task) -> None:
        if self._process is process:
            self._process = None
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error('Error waiting for python process: %s', error)
        else:
            logger.info('Python process exited with code %s', task.result())

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _on_stdout(self, data: str) -> None:
        server_log.info(data.rstrip('\r\n'))
        if self.on_output is not None:
            self.on_output(data)

    def _on_stderr(self, data: str) -> None:
        server_log.error(data.rstrip('\r\n'))
        if self.on_output is not None:
            self.on_output(data)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def kill(self) -> None:
        """Terminate the server and wait for it to exit.

        Raises:
            ServerKillError: the termination signal could not be sent.
            ServerKillTimeoutError: the process did not exit within the kill timeout.
        """
        process = self._process
        if process is None:
            logger.info('No python server process to kill')
            return

        logger.info('Killing ComfyUI python server.')
        try:
            process.terminate()
        except OSError as e:
            logger.error('Failed to initiate kill signal for python server: %s', e)
            raise ServerKillError('Failed to initiate kill signal for python server') from e

        timeout = self.config.kill_timeout_seconds
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ServerKillTimeoutError(
                f'Timeout: Python server did not exit within {timeout:g} seconds'
            ) from e

        if self._process is process:
            self._process = None
