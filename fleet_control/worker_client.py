# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""HTTP client for the worker contract: readiness probes and request forwarding."""

from __future__ import annotations

import logging
import time

import aiohttp

from .exceptions import TransientProbeFailure
from .types import (
    InboundRequest,
    ReadinessReport,
    WorkerInstance,
    WorkerResponse,
    WorkerView,
)

logger = logging.getLogger(__name__)

# Hop-by-hop headers are not relayed to workers
_HOP_BY_HOP = frozenset(
    {"connection", "keep-alive", "transfer-encoding", "upgrade", "te", "trailer", "host"}
)


class HttpWorkerClient:
    """
    Talks to workers over HTTP.

    Every worker is treated as a remote resource reachable at host:port,
    whether it runs on this machine or elsewhere. Two calls are used:

    - GET <readiness_path> -> {"ready": bool, "load": float}
    - <method> <path> for forwarded requests, relayed verbatim
    """

    def __init__(self, readiness_path: str = "/ready", forward_timeout: float = 30.0):
        self.readiness_path = readiness_path
        self.timeout = aiohttp.ClientTimeout(total=forward_timeout)
        self.http_session: aiohttp.ClientSession | None = None

    async def initialize(self) -> None:
        if not self.http_session:
            self.http_session = aiohttp.ClientSession(timeout=self.timeout)
            logger.info("HTTP session initialized for worker communication")

    async def cleanup(self) -> None:
        if self.http_session:
            await self.http_session.close()
            self.http_session = None
            logger.info("HTTP session closed")

    async def check_readiness(self, instance: WorkerInstance, timeout: float) -> ReadinessReport:
        """
        Probe a worker's readiness endpoint.

        A non-200 status is an answer ("not ready"), not a transport failure.

        Raises:
            TransientProbeFailure: on timeout, connection error or malformed body.
        """
        if not self.http_session:
            await self.initialize()
        assert self.http_session is not None

        url = f"{instance.endpoint}{self.readiness_path}"
        try:
            async with self.http_session.get(
                url, timeout=aiohttp.ClientTimeout(total=timeout)
            ) as response:
                if response.status != 200:
                    return ReadinessReport(ready=False, detail=f"status {response.status}")
                payload = await response.json(content_type=None)
        except TimeoutError as e:
            raise TransientProbeFailure(
                instance.instance_id, f"timeout after {timeout}s", timed_out=True
            ) from e
        except aiohttp.ClientError as e:
            raise TransientProbeFailure(instance.instance_id, str(e)) from e
        except ValueError as e:
            raise TransientProbeFailure(instance.instance_id, f"malformed body: {e}") from e

        if not isinstance(payload, dict):
            raise TransientProbeFailure(instance.instance_id, "readiness body is not an object")

        try:
            load = float(payload.get("load", 0.0))
        except (TypeError, ValueError) as e:
            raise TransientProbeFailure(instance.instance_id, f"bad load value: {e}") from e
        return ReadinessReport(
            ready=bool(payload.get("ready", False)),
            load=max(0.0, load),
            detail=str(payload.get("detail", "")),
        )

    async def forward(self, instance: WorkerView, request: InboundRequest) -> WorkerResponse:
        """
        Relay a request to a worker and return its response.

        Raises:
            RuntimeError: If the worker cannot be reached or times out.
        """
        if not self.http_session:
            await self.initialize()
        assert self.http_session is not None

        url = f"{instance.endpoint}{request.path}"
        headers = {k: v for k, v in request.headers.items() if k.lower() not in _HOP_BY_HOP}
        headers["X-Request-ID"] = request.request_id

        start = time.perf_counter()
        try:
            async with self.http_session.request(
                request.method, url, data=request.body, headers=headers
            ) as response:
                body = await response.read()
                elapsed_ms = (time.perf_counter() - start) * 1000
                logger.debug(
                    "Request %s served by %s in %.2fms (status=%d)",
                    request.request_id,
                    instance.instance_id,
                    elapsed_ms,
                    response.status,
                )
                return WorkerResponse(
                    status=response.status,
                    body=body,
                    headers={
                        k: v for k, v in response.headers.items() if k.lower() not in _HOP_BY_HOP
                    },
                    instance_id=instance.instance_id,
                    elapsed_ms=elapsed_ms,
                )
        except aiohttp.ClientError as e:
            raise RuntimeError(f"HTTP error calling {url}: {e}") from e
        except TimeoutError as e:
            raise RuntimeError(
                f"Request timeout calling {url} (timeout={self.timeout.total}s)"
            ) from e
