# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""Provisioning backends that launch and stop worker instances.

``LocalProcessProvisioner`` runs each worker as a local process started
from a command template; ``StaticProvisioner`` hands out endpoints of
workers that are started and stopped outside the control plane.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any

import psutil

from .types import WorkerInstance

logger = logging.getLogger(__name__)


def port_is_available(host: str, port: int) -> bool:
    """Return True if ``port`` can be bound on ``host``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


@dataclass
class WorkerProcessInfo:
    instance_id: str
    port: int
    pid: int
    command: list[str]
    env_overrides: dict[str, str] = field(default_factory=dict)


class LocalProcessProvisioner:
    """
    Launches workers as local processes.

    The command template is a list of arguments where ``{port}``,
    ``{host}`` and ``{instance_id}`` are substituted per instance, e.g.::

        ["python", "-m", "my_worker", "--port", "{port}"]

    Processes are started in their own session and stopped with SIGTERM,
    followed by SIGKILL when they outlive ``stop_timeout``.
    """

    def __init__(
        self,
        command: list[str],
        *,
        host: str = "127.0.0.1",
        port_range: tuple[int, int] = (9100, 9199),
        env: dict[str, str] | None = None,
        stop_timeout: float = 10.0,
    ):
        if not command:
            raise ValueError("LocalProcessProvisioner needs a non-empty command")
        self.command = list(command)
        self.host = host
        self.port_range = port_range
        self.env = dict(env or {})
        self.stop_timeout = stop_timeout

        self._lock = threading.Lock()
        self._reserved_ports: set[int] = set()
        self._processes: dict[str, WorkerProcessInfo] = {}

    def _reserve_port(self) -> int:
        low, high = self.port_range
        for candidate in range(low, high + 1):
            if candidate in self._reserved_ports:
                continue
            if port_is_available(self.host, candidate):
                self._reserved_ports.add(candidate)
                return candidate
        raise RuntimeError(f"No available port in range {low}-{high}")

    def _build_command(self, instance_id: str, port: int) -> list[str]:
        return [
            arg.format(port=port, host=self.host, instance_id=instance_id)
            for arg in self.command
        ]

    def _build_environment(self, instance_id: str, port: int) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.env)
        env["FLEET_INSTANCE_ID"] = instance_id
        env["FLEET_WORKER_PORT"] = str(port)
        return env

    async def provision(self, instance_id: str) -> tuple[str, int, dict[str, Any]]:
        with self._lock:
            port = self._reserve_port()
            command = self._build_command(instance_id, port)
            env = self._build_environment(instance_id, port)

            logger.info("Spawning worker %s on %s:%d: %s", instance_id, self.host, port, command)
            try:
                process = subprocess.Popen(
                    command,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    close_fds=True,
                    start_new_session=True,
                )
            except Exception:
                self._reserved_ports.discard(port)
                logger.exception("Failed to spawn worker %s", instance_id)
                raise

            self._processes[instance_id] = WorkerProcessInfo(
                instance_id=instance_id,
                port=port,
                pid=process.pid,
                command=command,
                env_overrides=dict(self.env),
            )
        logger.debug("Worker %s started with PID %d", instance_id, process.pid)
        return self.host, port, {"pid": process.pid, "command": command}

    async def terminate(self, instance: WorkerInstance) -> bool:
        with self._lock:
            info = self._processes.pop(instance.instance_id, None)
        if info is None:
            logger.warning("Requested stop for unknown worker %s", instance.instance_id)
            return False

        try:
            process = self._get_process(info.pid)
            if process is None:
                logger.info("Worker %s already stopped", instance.instance_id)
                return True
            return await asyncio.to_thread(self._terminate_process, process, self.stop_timeout)
        finally:
            with self._lock:
                self._reserved_ports.discard(info.port)

    def _get_process(self, pid: int) -> psutil.Process | None:
        try:
            return psutil.Process(pid)
        except psutil.Error:
            return None

    def _terminate_process(self, process: psutil.Process, timeout: float) -> bool:
        try:
            process.terminate()
            process.wait(timeout=timeout)
            logger.info("Worker PID %d stopped gracefully", process.pid)
            return True
        except psutil.TimeoutExpired:
            logger.warning(
                "Worker PID %d did not stop in %.1fs; force killing", process.pid, timeout
            )
            try:
                process.kill()
                process.wait(timeout=5)
                return True
            except psutil.Error as exc:
                logger.error("Failed to kill worker PID %d: %s", process.pid, exc)
                return False
        except psutil.NoSuchProcess:
            return True
        except psutil.Error as exc:
            logger.error("Error while stopping worker PID %d: %s", process.pid, exc)
            return False

    def list_processes(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "instance_id": info.instance_id,
                    "port": info.port,
                    "pid": info.pid,
                    "command": info.command,
                }
                for info in self._processes.values()
            ]


class StaticProvisioner:
    """
    Hands out pre-existing worker endpoints.

    ``provision`` takes the next free endpoint and ``terminate`` returns it
    to the free list; the worker processes themselves are managed elsewhere.
    """

    def __init__(self, endpoints: list[tuple[str, int]]):
        self._free: deque[tuple[str, int]] = deque(endpoints)
        self._assigned: dict[str, tuple[str, int]] = {}

    async def provision(self, instance_id: str) -> tuple[str, int, dict[str, Any]]:
        if not self._free:
            raise RuntimeError("No free static worker endpoints")
        host, port = self._free.popleft()
        self._assigned[instance_id] = (host, port)
        return host, port, {"static": True}

    async def terminate(self, instance: WorkerInstance) -> bool:
        endpoint = self._assigned.pop(instance.instance_id, None)
        if endpoint is None:
            return False
        self._free.append(endpoint)
        return True

    @property
    def free_endpoints(self) -> list[tuple[str, int]]:
        return list(self._free)
