"""Supervisor for the local gateway child process."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping

from tokligence.config import ConfigView, GatewayConfig, default_binary_path, install_dir
from tokligence.consent import ConsentDenied, ConsentGate
from tokligence.gateway.health import HealthProbe
from tokligence.gateway.installer import BinaryProvisioner, ProgressCallback, is_executable, locate_binary
from tokligence.schemas import ConsentAction, GatewayStatus, ProcessState

logger = logging.getLogger(__name__)
process_logger = logging.getLogger("tokligence.gateway.process")

STOP_TIMEOUT = 5.0  # seconds before SIGKILL
STATUS_PROBE_TIMEOUT = 2.0  # seconds
PIPE_DRAIN_TIMEOUT = 1.0  # seconds to finish reading output after exit
PIPE_READ_LIMIT = 1024 * 1024  # bytes buffered per output line

OutputSink = Callable[[str, str], None]
ExitCallback = Callable[[int], None]


class SupervisorError(Exception):
    """Base class for errors that fail a start attempt."""

    pass


class BinaryNotInstalled(SupervisorError):
    """Raised when the binary is missing and auto-download is disabled."""

    def __init__(self, path: Path):
        super().__init__(
            f"Gateway binary not found or not executable: {path}. "
            "Run 'tokligence download' first."
        )
        self.path = path


class BinaryStillMissing(SupervisorError):
    """Raised when provisioning finished but no executable can be found."""

    def __init__(self, path: Path):
        super().__init__(f"Binary still missing or not executable: {path}")
        self.path = path


class SpawnFailed(SupervisorError):
    """Raised when the operating system refuses to start the process."""

    pass


class ProcessCrashed(SupervisorError):
    """Raised when the gateway exits before it finished starting."""

    def __init__(self, code: int | None):
        super().__init__(f"Gateway exited with code {code} during startup")
        self.code = code


@dataclass
class GatewayProcessHandle:
    """The single child process owned by a supervisor."""

    process: asyncio.subprocess.Process
    pid: int
    binary: Path
    started_at: float = field(default_factory=time.time)
    exit_code: int | None = None

    @property
    def alive(self) -> bool:
        return self.exit_code is None and self.process.returncode is None


def build_environment(
    config: GatewayConfig,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Map configuration fields to the gateway's environment variables.

    Variables that are not set fall back to the binary's defaults.
    """
    env = dict(os.environ if base is None else base)

    if config.openai_api_key:
        env["TOKLIGENCE_OPENAI_API_KEY"] = config.openai_api_key
    if config.anthropic_api_key:
        env["TOKLIGENCE_ANTHROPIC_API_KEY"] = config.anthropic_api_key
    if config.gemini_api_key:
        env["TOKLIGENCE_GEMINI_API_KEY"] = config.gemini_api_key

    env["TOKLIGENCE_WORK_MODE"] = config.work_mode

    env["TOKLIGENCE_FACADE_PORT"] = str(config.facade_port)
    if config.multiport_mode:
        env["TOKLIGENCE_MULTIPORT_MODE"] = "true"
        env["TOKLIGENCE_OPENAI_PORT"] = str(config.openai_port)
        env["TOKLIGENCE_ANTHROPIC_PORT"] = str(config.anthropic_port)
        env["TOKLIGENCE_GEMINI_PORT"] = str(config.gemini_port)

    env["TOKLIGENCE_PROMPT_FIREWALL_ENABLED"] = "true" if config.pii_firewall_enabled else "false"
    env["TOKLIGENCE_PROMPT_FIREWALL_MODE"] = config.pii_firewall_mode

    if config.model_routes:
        env["TOKLIGENCE_MODEL_PROVIDER_ROUTES"] = config.model_routes

    env["TOKLIGENCE_LOG_LEVEL"] = config.log_level

    # Local processes run without gateway-side auth
    env["TOKLIGENCE_AUTH_DISABLED"] = "true"
    return env


def _log_output(stream: str, line: str) -> None:
    process_logger.info(f"[{stream}] {line}")


class ProcessSupervisor:
    """Owns at most one gateway process and drives its lifecycle.

    States: stopped -> starting -> running -> stopped, with
    running -> crashed when the process exits on its own.
    """

    def __init__(
        self,
        config_view: ConfigView,
        consent: ConsentGate,
        provisioner: BinaryProvisioner | None = None,
        health_probe: HealthProbe | None = None,
        on_output: OutputSink | None = None,
        on_exit: ExitCallback | None = None,
        on_progress: ProgressCallback | None = None,
    ):
        self.config_view = config_view
        self.consent = consent
        self.provisioner = provisioner or BinaryProvisioner(consent)
        self.health_probe = health_probe or HealthProbe()
        self.on_output = on_output or _log_output
        self.on_exit = on_exit
        self.on_progress = on_progress

        self._state = ProcessState.STOPPED
        self._handle: GatewayProcessHandle | None = None
        self._watcher: asyncio.Task | None = None
        self._pending_start: asyncio.Future | None = None
        self._stopping = False
        self.last_exit_code: int | None = None

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def handle(self) -> GatewayProcessHandle | None:
        return self._handle

    @property
    def is_running(self) -> bool:
        return self._handle is not None and self._handle.alive

    async def __aenter__(self) -> ProcessSupervisor:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Tear down the supervisor, stopping any owned process."""
        await self.stop()

    # --- start ---

    async def start(self) -> bool:
        """Start the gateway if it is not already running.

        A start issued while another is pending waits for that one instead
        of spawning a second process.

        Returns:
            True if the gateway is running, False if consent was declined
        """
        if self.is_running and self._state == ProcessState.RUNNING:
            logger.info("Gateway is already running")
            return True

        pending = self._pending_start
        if pending is None:
            pending = asyncio.ensure_future(self._start())
            pending.add_done_callback(self._clear_pending_start)
            self._pending_start = pending
        else:
            logger.info("Gateway start already in progress, waiting for it")

        return await asyncio.shield(pending)

    def _clear_pending_start(self, future: asyncio.Future) -> None:
        if self._pending_start is future:
            self._pending_start = None

    def _resolve_binary(self, config: GatewayConfig) -> Path:
        if config.binary_path.strip():
            return default_binary_path(config)
        found = locate_binary(install_dir(config))
        return found if found is not None else default_binary_path(config)

    async def _start(self) -> bool:
        decision = await self.consent.authorize(ConsentAction.START)
        if not decision.granted:
            return False

        config = self.config_view.get()
        binary = self._resolve_binary(config)

        if not is_executable(binary):
            if not config.auto_download_binary:
                logger.error(f"Gateway binary not found or not executable: {binary}")
                raise BinaryNotInstalled(binary)

            logger.info(f"Gateway binary missing at {binary}, provisioning {config.version}")
            try:
                await self.provisioner.provision(
                    config.version, install_dir(config), on_progress=self.on_progress
                )
            except ConsentDenied:
                return False

            binary = self._resolve_binary(config)
            if not is_executable(binary):
                logger.error(f"Binary still missing or not executable: {binary}")
                raise BinaryStillMissing(binary)

        env = build_environment(config)
        bin_dir = binary.parent

        logger.info(f"Starting Tokligence Gateway: {binary}")
        logger.info(f"Work mode: {config.work_mode}")
        logger.info(
            f"PII Firewall: {config.pii_firewall_mode if config.pii_firewall_enabled else 'disabled'}"
        )
        logger.info(f"Port: {config.facade_port}")

        try:
            process = await asyncio.create_subprocess_exec(
                str(binary),
                cwd=str(bin_dir),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=PIPE_READ_LIMIT,
            )
        except OSError as e:
            logger.error(f"Failed to spawn gateway {binary}: {e}")
            raise SpawnFailed(f"Failed to spawn gateway {binary}: {e}") from e

        handle = GatewayProcessHandle(process=process, pid=process.pid, binary=binary)
        self._handle = handle
        self._state = ProcessState.STARTING
        self.last_exit_code = None
        self._watcher = asyncio.ensure_future(self._watch(handle))

        await asyncio.sleep(config.start_grace_seconds)

        if not handle.alive:
            code = handle.exit_code if handle.exit_code is not None else process.returncode
            if self._handle is handle:
                self._handle = None
            self._state = ProcessState.STOPPED
            logger.error(f"Gateway failed to start (exit code {code})")
            raise ProcessCrashed(code)

        self._state = ProcessState.RUNNING
        logger.info(f"Tokligence Gateway started on port {config.facade_port} (pid {handle.pid})")
        return True

    # --- process events ---

    def _emit(self, name: str, raw: bytes) -> None:
        self.on_output(name, raw.decode("utf-8", errors="replace").rstrip("\r\n"))

    async def _pump(self, stream: asyncio.StreamReader | None, name: str) -> None:
        """Forward output line by line until EOF.

        Lines longer than the reader limit are forwarded in pieces so the
        pipe keeps draining.
        """
        if stream is None:
            return
        split = False
        while True:
            try:
                raw = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                if e.partial:
                    self._emit(name, e.partial)
                break
            except asyncio.LimitOverrunError as e:
                self._emit(name, await stream.read(max(e.consumed, 1)))
                split = True
                continue

            # Terminator of a line that was already forwarded in pieces
            if split and raw == b"\n":
                split = False
                continue
            split = False
            self._emit(name, raw)

    async def _watch(self, handle: GatewayProcessHandle) -> None:
        pumps = [
            asyncio.ensure_future(self._pump(handle.process.stdout, "stdout")),
            asyncio.ensure_future(self._pump(handle.process.stderr, "stderr")),
        ]
        code = await handle.process.wait()

        # Grandchildren may keep the pipes open after the gateway exits
        done, pending = await asyncio.wait(pumps, timeout=PIPE_DRAIN_TIMEOUT)
        for task in pending:
            task.cancel()
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.warning(f"Gateway output reader failed: {task.exception()!r}")

        handle.exit_code = code
        self.last_exit_code = code
        logger.info(f"Gateway exited with code {code}")

        if self._handle is handle:
            self._handle = None
            if self._state == ProcessState.RUNNING and not self._stopping:
                logger.warning(f"Gateway exited unexpectedly with code {code}")
                self._state = ProcessState.CRASHED
            elif self._state != ProcessState.STARTING:
                self._state = ProcessState.STOPPED

        if self.on_exit is not None:
            self.on_exit(code)

    # --- stop / wait ---

    async def stop(self, timeout: float = STOP_TIMEOUT) -> bool:
        """Terminate the owned process if there is one.

        Returns:
            True if a running process was stopped, False if there was none
        """
        handle = self._handle
        watcher = self._watcher
        if handle is None or not handle.alive:
            self._handle = None
            self._state = ProcessState.STOPPED
            return False

        self._stopping = True
        try:
            logger.info(f"Stopping gateway (pid {handle.pid})")
            try:
                handle.process.terminate()
            except ProcessLookupError:
                pass

            if watcher is not None:
                try:
                    await asyncio.wait_for(asyncio.shield(watcher), timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"Gateway did not exit within {timeout}s, killing it")
                    try:
                        handle.process.kill()
                    except ProcessLookupError:
                        pass
                    await asyncio.shield(watcher)
        finally:
            self._stopping = False
            if self._handle is handle:
                self._handle = None
            self._state = ProcessState.STOPPED

        logger.info("Tokligence Gateway stopped")
        return True

    async def wait(self) -> int | None:
        """Wait for the owned process to exit and return its exit code."""
        if self._watcher is not None:
            await asyncio.shield(self._watcher)
        return self.last_exit_code

    # --- status ---

    async def status(self) -> GatewayStatus:
        """Derive the gateway status from config, health and liveness.

        A healthy HTTP probe counts as running even when this supervisor
        did not spawn the gateway; otherwise the local handle decides.
        """
        config = self.config_view.get()
        health = await self.health_probe.check(
            config.url, timeout=STATUS_PROBE_TIMEOUT, path=config.health_path
        )
        return GatewayStatus(
            running=health.healthy or self.is_running,
            port=config.facade_port,
            work_mode=config.work_mode,
            pii_enabled=config.pii_firewall_enabled,
            pii_mode=config.pii_firewall_mode,
            providers=sorted(set(config.providers)),
            health=health,
        )
