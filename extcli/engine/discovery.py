"""Binary discovery for the external agent CLIs.

Locates each provider's executable, hashes it, evaluates the trust
policy and probes version and login state. Results are cached as one
``AvailabilitySnapshot`` for ``ttl_seconds``; concurrent refreshes
share a single in-flight probe and the new snapshot replaces the old
one in a single assignment.

Probe failures never raise. A missing binary yields the zero-value
entry; a failing subprocess degrades the affected field to ``None`` or
``unknown``.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shutil
import time
from dataclasses import dataclass
from typing import Optional

from .models import (
    AuthStatus,
    AvailabilityEntry,
    AvailabilitySnapshot,
    ExternalCliProvider,
    now_ms,
)
from .trust import TrustPolicy, evaluate_binary_trust

logger = logging.getLogger(__name__)

CODEX_LOGIN_MESSAGE = "Codex is installed but not authenticated. Run `codex login`."

_HASH_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one subprocess probe."""
    returncode: int
    stdout: str = ""
    stderr: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.returncode == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}"


async def _run_subprocess(*args: str, timeout: float) -> ProbeResult:
    """Run a probe command with a timeout.

    On timeout or spawn failure the return code is ``-1`` and ``error``
    says why.
    """
    proc: asyncio.subprocess.Process | None = None
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(), timeout=timeout,
        )
        return ProbeResult(
            returncode=proc.returncode or 0,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )
    except asyncio.TimeoutError:
        if proc is not None and proc.returncode is None:
            try:
                proc.kill()
                await proc.wait()
            except ProcessLookupError:
                pass
        return ProbeResult(-1, error=f"Command timed out after {timeout}s: {args}")
    except FileNotFoundError:
        return ProbeResult(-1, error=f"Command not found: {args[0]}")
    except OSError as exc:
        return ProbeResult(-1, error=f"Subprocess error: {exc}")


def _sha256_file(path: str) -> str | None:
    digest = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(_HASH_CHUNK), b""):
                digest.update(chunk)
    except OSError as exc:
        logger.debug("Could not hash %s: %s", path, exc)
        return None
    return digest.hexdigest()


def parse_version_line(text: str) -> str | None:
    """First non-empty line of *text*, stripped."""
    for line in text.splitlines():
        line = line.strip()
        if line:
            return line
    return None


def classify_codex_login(probe: ProbeResult) -> tuple[AuthStatus, str | None]:
    """Map ``codex login status`` output to an auth status."""
    if probe.error is not None:
        return AuthStatus.UNKNOWN, None
    output = probe.output.lower()
    if "not logged in" in output or "unauthenticated" in output:
        return AuthStatus.UNAUTHENTICATED, CODEX_LOGIN_MESSAGE
    if probe.returncode == 0 and "logged in" in output:
        return AuthStatus.AUTHENTICATED, None
    if "login" in output:
        return AuthStatus.UNAUTHENTICATED, CODEX_LOGIN_MESSAGE
    return AuthStatus.UNKNOWN, None


class DiscoveryService:
    """Cached availability of the codex and claude binaries."""

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        probe_timeout_seconds: float = 10.0,
        trust_policy: Optional[TrustPolicy] = None,
        search_path: str | None = None,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._probe_timeout = probe_timeout_seconds
        self._trust_policy = trust_policy or TrustPolicy.from_env()
        self._search_path = search_path
        self._snapshot: AvailabilitySnapshot | None = None
        self._fetched_at: float = 0.0
        self._generation = 0
        self._inflight: asyncio.Task[AvailabilitySnapshot] | None = None

    @property
    def ttl_ms(self) -> int:
        return int(self._ttl_seconds * 1000)

    def invalidate(self) -> None:
        """Drop the cached snapshot; the next call probes again."""
        self._generation += 1
        self._snapshot = None

    def get_cached_availability(self) -> AvailabilitySnapshot | None:
        return self._snapshot

    def _is_fresh(self) -> bool:
        if self._snapshot is None:
            return False
        return (time.monotonic() - self._fetched_at) < self._ttl_seconds

    async def get_availability(self, force_refresh: bool = False) -> AvailabilitySnapshot:
        """Return the cached snapshot, probing when stale or forced."""
        if not force_refresh and self._is_fresh():
            return self._snapshot  # type: ignore[return-value]

        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._refresh(self._generation))
        return await asyncio.shield(self._inflight)

    async def _refresh(self, generation: int) -> AvailabilitySnapshot:
        checked_at = now_ms()
        codex, claude = await asyncio.gather(
            self._probe_provider(ExternalCliProvider.CODEX, checked_at),
            self._probe_provider(ExternalCliProvider.CLAUDE, checked_at),
        )
        snapshot = AvailabilitySnapshot(
            codex=codex,
            claude=claude,
            checked_at=checked_at,
            ttl_ms=self.ttl_ms,
        )
        if generation == self._generation:
            self._snapshot = snapshot
            self._fetched_at = time.monotonic()
        else:
            logger.debug("Discovery invalidated during probe; not caching result")
        logger.info(
            "Discovery: codex installed=%s trust=%s auth=%s | claude installed=%s trust=%s",
            codex.installed, codex.binary_trust.value, codex.auth_status.value,
            claude.installed, claude.binary_trust.value,
        )
        return snapshot

    def _locate(self, provider: ExternalCliProvider) -> str | None:
        path = self._search_path
        if path is None:
            path = os.environ.get("PATH", "")
        return shutil.which(provider.value, path=path)

    async def _probe_provider(
        self, provider: ExternalCliProvider, checked_at: int,
    ) -> AvailabilityEntry:
        binary_path = self._locate(provider)
        if not binary_path:
            logger.debug("Discovery: %s not found on search path", provider.value)
            return AvailabilityEntry.empty(provider, checked_at)

        binary_sha256 = await asyncio.to_thread(_sha256_file, binary_path)
        decision = evaluate_binary_trust(
            provider, binary_path, binary_sha256, self._trust_policy,
        )
        if not decision.trusted:
            logger.warning(
                "Discovery: %s binary at %s is untrusted: %s",
                provider.value, binary_path, decision.reason,
            )

        version_probe = await _run_subprocess(
            binary_path, "--version", timeout=self._probe_timeout,
        )
        if version_probe.error:
            logger.debug("Version probe failed for %s: %s", provider.value, version_probe.error)
        version = parse_version_line(version_probe.stdout) or parse_version_line(
            version_probe.stderr
        )

        auth_status, auth_message = AuthStatus.UNKNOWN, None
        if provider is ExternalCliProvider.CODEX:
            login_probe = await _run_subprocess(
                binary_path, "login", "status", timeout=self._probe_timeout,
            )
            auth_status, auth_message = classify_codex_login(login_probe)

        return AvailabilityEntry(
            provider=provider,
            installed=True,
            binary_path=binary_path,
            binary_sha256=binary_sha256,
            binary_trust=decision.trust,
            trust_reason=decision.reason,
            version=version,
            auth_status=auth_status,
            auth_message=auth_message,
            checked_at=checked_at,
        )
