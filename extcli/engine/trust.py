"""Binary trust policy for provider executables.

``evaluate_binary_trust`` is a pure function over its inputs: the
provider, the located binary path, its digest (if it could be hashed)
and a ``TrustPolicy``. It never touches the filesystem, so it can be
exercised with synthetic paths and digests.

Checks run in order and the first failure wins:

1. basename must be the provider's executable name
2. path must sit inside a trusted installation directory
3. if a digest allowlist is configured, the digest must be in it
"""
from __future__ import annotations

import os
import posixpath
import re
import sys
from dataclasses import dataclass, field
from typing import Mapping

from .models import BinaryTrust, ExternalCliProvider

_SHA256_RE = re.compile(r"^[a-f0-9]{64}$")

DIGEST_ALLOWLIST_ENV = {
    ExternalCliProvider.CODEX: "EXTCLI_CODEX_SHA256_ALLOWLIST",
    ExternalCliProvider.CLAUDE: "EXTCLI_CLAUDE_SHA256_ALLOWLIST",
}
EXTRA_TRUSTED_DIRS_ENV = "EXTCLI_TRUSTED_BIN_DIRS"

REASON_BASENAME = "Binary basename does not match provider allowlist."
REASON_PATH = "Binary path is outside trusted allowlist directories."
REASON_DIGEST_UNAVAILABLE = (
    "Binary digest unavailable while digest allowlist is enforced."
)
REASON_DIGEST_MISMATCH = (
    "Binary digest is not in configured provider digest allowlist."
)
REASON_TRUSTED_DIGEST = "Binary path and digest match allowlist policy."
REASON_TRUSTED_PATH = "Binary path matches trusted allowlist directories."


@dataclass(frozen=True)
class TrustDecision:
    trust: BinaryTrust
    reason: str

    @property
    def trusted(self) -> bool:
        return self.trust is BinaryTrust.TRUSTED


def _is_windows(platform: str) -> bool:
    return platform.startswith("win")


def normalize_binary_path(value: str, platform: str = sys.platform) -> str:
    """Normalize separators and dot segments; lowercase on Windows."""
    normalized = posixpath.normpath(value.strip().replace("\\", "/"))
    if _is_windows(platform):
        normalized = normalized.lower()
    return normalized


def default_trusted_directories(
    home: str | None, platform: str = sys.platform,
) -> tuple[str, ...]:
    """Package-manager and user-local bin directories for *platform*."""
    home = (home or "").strip()
    if _is_windows(platform):
        candidates = [
            "C:/Program Files",
            "C:/Program Files (x86)",
            posixpath.join(home.replace("\\", "/"), "AppData", "Local", "Programs") if home else "",
            posixpath.join(home.replace("\\", "/"), "scoop", "shims") if home else "",
        ]
    else:
        candidates = [
            "/usr/local/bin",
            "/opt/homebrew/bin",
            "/usr/bin",
            posixpath.join(home, ".local", "bin") if home else "",
            posixpath.join(home, ".cargo", "bin") if home else "",
            posixpath.join(home, "bin") if home else "",
        ]
    return tuple(
        normalize_binary_path(entry, platform)
        for entry in candidates
        if entry.strip()
    )


def parse_digest_allowlist(raw: str | None) -> frozenset[str]:
    """Parse a comma-separated SHA-256 list; invalid entries are dropped."""
    if not raw:
        return frozenset()
    entries = (entry.strip().lower() for entry in raw.split(","))
    return frozenset(entry for entry in entries if _SHA256_RE.match(entry))


def executable_names(
    provider: ExternalCliProvider, platform: str = sys.platform,
) -> frozenset[str]:
    base = ExternalCliProvider(provider).value
    suffixes = ["", ".exe"]
    if _is_windows(platform):
        suffixes.append(".cmd")
    return frozenset(f"{base}{suffix}" for suffix in suffixes)


@dataclass(frozen=True)
class TrustPolicy:
    """Inputs to the trust decision that come from the host environment."""
    trusted_directories: tuple[str, ...]
    digest_allowlists: Mapping[ExternalCliProvider, frozenset[str]] = field(
        default_factory=dict,
    )
    platform: str = sys.platform

    def digest_allowlist(self, provider: ExternalCliProvider) -> frozenset[str]:
        return self.digest_allowlists.get(ExternalCliProvider(provider), frozenset())

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        platform: str = sys.platform,
    ) -> TrustPolicy:
        env = os.environ if environ is None else environ
        home = env.get("HOME") or env.get("USERPROFILE") or ""
        directories = list(default_trusted_directories(home, platform))
        extra = env.get(EXTRA_TRUSTED_DIRS_ENV, "")
        for entry in extra.split(os.pathsep):
            if entry.strip():
                directories.append(normalize_binary_path(entry, platform))
        allowlists = {
            provider: parse_digest_allowlist(env.get(var_name))
            for provider, var_name in DIGEST_ALLOWLIST_ENV.items()
        }
        return cls(
            trusted_directories=tuple(directories),
            digest_allowlists=allowlists,
            platform=platform,
        )


def is_binary_name_allowed(
    provider: ExternalCliProvider, binary_path: str, platform: str = sys.platform,
) -> bool:
    base = posixpath.basename(binary_path.replace("\\", "/")).lower()
    return base in executable_names(provider, platform)


def is_path_allowlisted(
    binary_path: str,
    trusted_directories: tuple[str, ...],
    platform: str = sys.platform,
) -> bool:
    """True when *binary_path* equals or lies under a trusted directory."""
    normalized = normalize_binary_path(binary_path, platform)
    for directory in trusted_directories:
        directory = normalize_binary_path(directory, platform)
        if normalized == directory:
            return True
        prefix = directory if directory.endswith("/") else f"{directory}/"
        if normalized.startswith(prefix):
            return True
    return False


def evaluate_binary_trust(
    provider: ExternalCliProvider | str,
    binary_path: str,
    binary_sha256: str | None,
    policy: TrustPolicy,
) -> TrustDecision:
    """Decide whether *binary_path* is safe to launch for *provider*."""
    provider = ExternalCliProvider(provider)

    if not is_binary_name_allowed(provider, binary_path, policy.platform):
        return TrustDecision(BinaryTrust.UNTRUSTED, REASON_BASENAME)

    if not is_path_allowlisted(
        binary_path, policy.trusted_directories, policy.platform,
    ):
        return TrustDecision(BinaryTrust.UNTRUSTED, REASON_PATH)

    allowlist = policy.digest_allowlist(provider)
    if allowlist:
        if not binary_sha256:
            return TrustDecision(BinaryTrust.UNTRUSTED, REASON_DIGEST_UNAVAILABLE)
        if binary_sha256.lower() not in allowlist:
            return TrustDecision(BinaryTrust.UNTRUSTED, REASON_DIGEST_MISMATCH)
        return TrustDecision(BinaryTrust.TRUSTED, REASON_TRUSTED_DIGEST)

    return TrustDecision(BinaryTrust.TRUSTED, REASON_TRUSTED_PATH)
