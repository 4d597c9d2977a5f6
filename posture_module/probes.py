"""
posture_module/probes.py

SMTP transport-capability probing through an external probe executable, and
the organizational-domain cache in front of it.

Probe contract:
    <probe-binary> <hostname>
    stdout: field0,starttls(0|1),requiretls(0|1),blocktls(0|1),certificateIdentifier

Functions / classes:
- parse_probe_output(text) -> Capabilities
- async run_probe(binary, host, timeout=10.0) -> Capabilities
- CapabilityCache: org-domain -> Capabilities, single-flight per key
- SMTPProber: cache-first capability lookup for one exchange

Notes:
- run_probe never raises for probe problems: launch failures, non-zero exits
  and malformed output all degrade to default (false/empty) capabilities.
- The probe runs in its own session; its whole process group is killed at
  the timeout boundary and the reap wait is bounded.
"""
from __future__ import annotations

import asyncio
import io
import os
import signal
from typing import Optional, Dict, Tuple, Callable, Awaitable

from .dns_utils import org_domain
from .logger import get_child_logger
from .posture_records import Capabilities

log = get_child_logger("probes")

DEFAULT_PROBE_BINARY = "./getUTF8"
DEFAULT_PROBE_TIMEOUT = 10.0
REAP_GRACE = 1.0


class ProbeAbandoned(Exception):
    """The caller running a shared probe was cancelled before it finished."""


def parse_probe_output(text: Optional[str]) -> Capabilities:
    """
    Parse one probe report line. A flag is set only by the literal "1";
    missing fields keep their defaults.
    """
    line = (text or "").strip().splitlines()
    fields = line[0].split(",") if line else []

    def flag(idx: int) -> bool:
        return len(fields) > idx and fields[idx].strip() == "1"

    cert = fields[4].strip() if len(fields) > 4 else ""
    return Capabilities(starttls=flag(1), requiretls=flag(2), blocktls=flag(3), cert=cert)


async def _drain(stream: asyncio.StreamReader, buf: io.BytesIO) -> None:
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        buf.write(chunk)


async def _reap(proc: asyncio.subprocess.Process, grace: float = REAP_GRACE) -> None:
    # the probe leads its own process group; helpers it forked hold stdout
    # open and would keep proc.wait() pending, so the whole group goes
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
    except asyncio.TimeoutError:
        log.warning("probe pid {} not reaped {}s after kill", proc.pid, grace)


async def run_probe(
    binary: str,
    host: str,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
) -> Capabilities:
    """
    Run the probe against `host` with a hard wall-clock bound.

    On timeout the process is killed and default capabilities are returned
    with timed_out=True.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            binary,
            host,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as e:
        log.error("{}: cannot start probe {}: {}", host, binary, e)
        return Capabilities()

    buf = io.BytesIO()
    reader = asyncio.create_task(_drain(proc.stdout, buf))
    try:
        try:
            await asyncio.wait_for(asyncio.gather(reader, proc.wait()), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("{}: process killed as timeout reached ({}s)", host, timeout)
            return Capabilities(timed_out=True)
    finally:
        if not reader.done():
            reader.cancel()
        await _reap(proc)

    if proc.returncode != 0:
        log.warning("{}: probe done, with error: exit status {}", host, proc.returncode)
    return parse_probe_output(buf.getvalue().decode("utf-8", errors="replace"))


class CapabilityCache:
    """
    Capabilities keyed by organizational domain, kept for the life of the run.

    get_or_probe() holds one in-flight future per key, so concurrent lookups
    for exchanges of the same operator share a single probe.
    """

    def __init__(self, cache_timeouts: bool = True):
        self.cache_timeouts = cache_timeouts
        self._entries: Dict[str, Capabilities] = {}
        self._inflight: Dict[str, asyncio.Future] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[Capabilities]:
        return self._entries.get(key)

    def put(self, key: str, caps: Capabilities) -> None:
        self._entries[key] = caps

    async def get_or_probe(
        self,
        host: str,
        probe: Callable[[str], Awaitable[Capabilities]],
    ) -> Capabilities:
        key = org_domain(host)
        while True:
            cached = self._entries.get(key)
            if cached is not None:
                log.debug("{}: capability cache hit ({})", host, key)
                return cached
            if key not in self._inflight:
                break
            try:
                return await asyncio.shield(self._inflight[key])
            except ProbeAbandoned:
                # the owner was cancelled; the first waiter back takes over
                log.debug("{}: shared probe for {} abandoned, retrying", host, key)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            caps = await probe(host)
            if not caps.timed_out or self.cache_timeouts:
                self._entries[key] = caps
            future.set_result(caps)
            return caps
        except asyncio.CancelledError:
            future.set_exception(ProbeAbandoned(key))
            future.exception()
            raise
        except Exception as e:
            future.set_exception(e)
            # waiters re-raise it; mark retrieved so an unawaited future does not warn
            future.exception()
            raise
        finally:
            self._inflight.pop(key, None)


class SMTPProber:
    def __init__(
        self,
        binary: str = DEFAULT_PROBE_BINARY,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        cache: Optional[CapabilityCache] = None,
    ):
        self.binary = binary
        self.timeout = timeout
        self.cache = cache if cache is not None else CapabilityCache()

    async def _probe(self, host: str) -> Capabilities:
        log.info("{}: probing transport capabilities", host)
        return await run_probe(self.binary, host, timeout=self.timeout)

    async def capabilities(self, host: str) -> Capabilities:
        return await self.cache.get_or_probe(host, self._probe)

    async def get_capabilities(self, host: str) -> Tuple[bool, bool, bool, str]:
        """(starttls, requiretls, blocktls, cert) for the exchange, probing only on a cache miss."""
        caps = await self.capabilities(host)
        return caps.as_tuple()
