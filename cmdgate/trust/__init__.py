"""
cmdgate - Trusted Tool Verification

Cryptographic identity verification of executables using trust on first
use. The registry of known tools is immutable once loaded (built-in entries
merged with an optional JSON registry file); fingerprints learned at runtime
live in a separate LearnedTrustStore, which is the only state ever written.
"""

import asyncio
import hashlib
import json
import logging
import secrets
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

import jsonschema
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac as crypto_hmac

from ..core.config import TrustConfig
from ..core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

HASH_ALGORITHMS = {
    "sha256": (hashlib.sha256, hashes.SHA256),
    "sha384": (hashlib.sha384, hashes.SHA384),
    "sha512": (hashlib.sha512, hashes.SHA512),
}

CHUNK_SIZE = 8192

REGISTRY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": {
        "type": "object",
        "required": ["paths"],
        "properties": {
            "type": {"type": "string"},
            "paths": {"type": "array", "items": {"type": "string"}, "minItems": 1},
            "checksum": {"type": ["string", "null"]},
            "signature": {"type": ["string", "null"]},
            "permissions": {"type": "array", "items": {"type": "string"}},
            "description": {"type": "string"},
            "requires_consent": {"type": "boolean"},
            "requiresConsent": {"type": "boolean"},
        },
    },
}


class VerificationStatus(Enum):
    """Outcome of a tool verification."""
    LEARNED = "learned"
    VERIFIED = "verified"
    MISMATCH = "mismatch"
    UNREGISTERED = "unregistered"
    UNTRUSTED_PATH = "untrusted_path"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class TrustedToolRecord:
    """Registry entry for a trusted executable."""
    name: str
    type: str
    paths: Tuple[str, ...]
    checksum: Optional[str] = None
    signature: Optional[str] = None
    permissions: Tuple[str, ...] = ()
    description: str = ""
    requires_consent: bool = False
    source: str = "builtin"

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any], source: str = "external") -> "TrustedToolRecord":
        return cls(
            name=name,
            type=data.get("type", "system"),
            paths=tuple(data["paths"]),
            checksum=data.get("checksum"),
            signature=data.get("signature"),
            permissions=tuple(data.get("permissions", ())),
            description=data.get("description", ""),
            requires_consent=bool(
                data.get("requires_consent", data.get("requiresConsent", False))
            ),
            source=source,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "paths": list(self.paths),
            "checksum": self.checksum,
            "signature": self.signature,
            "permissions": list(self.permissions),
            "description": self.description,
            "requires_consent": self.requires_consent,
            "source": self.source,
        }


def _builtin(name: str, tool_type: str, paths: List[str], description: str,
             permissions: List[str], requires_consent: bool = False) -> TrustedToolRecord:
    return TrustedToolRecord(
        name=name,
        type=tool_type,
        paths=tuple(paths),
        permissions=tuple(permissions),
        description=description,
        requires_consent=requires_consent,
    )


def _load_builtin_tools() -> Dict[str, TrustedToolRecord]:
    """Built-in trusted tool registry."""
    read = ["read"]
    tools = [
        _builtin("echo", "system", ["/bin/echo", "/usr/bin/echo"], "Print text", read),
        _builtin("ls", "system", ["/bin/ls", "/usr/bin/ls"], "List directory contents", read),
        _builtin("cat", "system", ["/bin/cat", "/usr/bin/cat"], "Print file contents", read),
        _builtin("grep", "system", ["/bin/grep", "/usr/bin/grep"], "Search file contents", read),
        _builtin("find", "system", ["/usr/bin/find", "/bin/find"], "Search for files", read),
        _builtin("head", "system", ["/usr/bin/head", "/bin/head"], "Print first lines", read),
        _builtin("tail", "system", ["/usr/bin/tail", "/bin/tail"], "Print last lines", read),
        _builtin("wc", "system", ["/usr/bin/wc", "/bin/wc"], "Count lines and words", read),
        _builtin("sort", "system", ["/usr/bin/sort", "/bin/sort"], "Sort lines", read),
        _builtin("uniq", "system", ["/usr/bin/uniq", "/bin/uniq"], "Filter repeated lines", read),
        _builtin("cut", "system", ["/usr/bin/cut", "/bin/cut"], "Select columns", read),
        _builtin("diff", "system", ["/usr/bin/diff", "/bin/diff"], "Compare files", read),
        _builtin("node", "runtime", ["/usr/bin/node", "/usr/local/bin/node"],
                 "Node.js runtime", ["read", "execute"]),
        _builtin("bun", "runtime", ["/usr/local/bin/bun", "/usr/bin/bun"],
                 "Bun runtime", ["read", "execute"]),
        _builtin("git", "vcs", ["/usr/bin/git", "/usr/local/bin/git"],
                 "Version control", ["read", "write"]),
        _builtin("npm", "package_manager", ["/usr/bin/npm", "/usr/local/bin/npm"],
                 "Node package manager", ["read", "write", "network"], requires_consent=True),
        _builtin("yarn", "package_manager", ["/usr/bin/yarn", "/usr/local/bin/yarn"],
                 "Yarn package manager", ["read", "write", "network"], requires_consent=True),
    ]
    return {tool.name: tool for tool in tools}


@dataclass
class LearnedFingerprint:
    """Fingerprint recorded on first verification of an executable."""
    checksum: str
    signature: Optional[str]
    key_id: Optional[str]
    learned_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checksum": self.checksum,
            "signature": self.signature,
            "key_id": self.key_id,
            "learned_at": self.learned_at,
        }


class LearnedTrustStore:
    """
    Fingerprints learned on first use, keyed by resolved executable path.

    Optionally persisted as JSON; nothing else in the verifier is written.
    """

    def __init__(self, store_path: Optional[str] = None):
        self.store_path = Path(store_path) if store_path else None
        self._entries: Dict[str, LearnedFingerprint] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: str) -> bool:
        return path in self._entries

    async def load(self) -> None:
        """Load learned fingerprints from disk."""
        if not self.store_path or not self.store_path.exists():
            return

        with open(self.store_path) as f:
            data = json.load(f)

        for path, entry in data.get("tools", {}).items():
            self._entries[path] = LearnedFingerprint(
                checksum=entry["checksum"],
                signature=entry.get("signature"),
                key_id=entry.get("key_id"),
                learned_at=entry.get("learned_at", 0.0),
            )

        logger.info(f"Loaded {len(self._entries)} learned tool fingerprints")

    def save(self) -> None:
        """Persist learned fingerprints, if a store path is configured."""
        if not self.store_path:
            return
        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": "1.0.0",
            "tools": {path: fp.to_dict() for path, fp in self._entries.items()},
        }
        tmp = self.store_path.with_suffix(self.store_path.suffix + ".tmp")
        with open(tmp, "w") as f:
            json.dump(payload, f, indent=2, sort_keys=True)
        tmp.replace(self.store_path)

    def get(self, path: str) -> Optional[LearnedFingerprint]:
        return self._entries.get(path)

    def put(self, path: str, fingerprint: LearnedFingerprint) -> None:
        self._entries[path] = fingerprint
        self.save()

    def forget(self, path: str) -> bool:
        if self._entries.pop(path, None) is None:
            return False
        self.save()
        return True


@dataclass
class VerificationResult:
    """Result of verifying one executable."""
    trusted: bool
    status: VerificationStatus
    message: str
    path: str
    tool: Optional[str] = None
    reason: Optional[str] = None
    checksum: Optional[str] = None
    signature: Optional[str] = None
    cached: bool = False
    verification_time_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trusted": self.trusted,
            "status": self.status.value,
            "message": self.message,
            "path": self.path,
            "tool": self.tool,
            "reason": self.reason,
            "checksum": self.checksum,
            "signature": self.signature,
            "cached": self.cached,
            "verification_time_ms": self.verification_time_ms,
            "timestamp": self.timestamp,
        }


@dataclass
class _CacheEntry:
    result: VerificationResult
    stored_at: float
    file_state: Optional[Tuple[int, int]]


def _file_state(path: Path) -> Optional[Tuple[int, int]]:
    try:
        st = path.stat()
    except OSError:
        return None
    return (st.st_size, st.st_mtime_ns)


class TrustedToolVerifier:
    """
    Trust-on-first-use verifier for executables.

    The first successful verification of an executable records its
    checksum (and HMAC signature) in the learned store; later verifications
    compare against it. Results are cached per (resolved path, options)
    for ``cache_ttl_ms`` and invalidated when the file changes on disk.
    """

    def __init__(
        self,
        config: Optional[TrustConfig] = None,
        learned_store: Optional[LearnedTrustStore] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or TrustConfig()
        self._clock = clock or time.monotonic

        if self.config.checksum_algorithm not in HASH_ALGORITHMS:
            raise ConfigurationError(
                f"Unsupported checksum algorithm: {self.config.checksum_algorithm}",
                source="trust.checksum_algorithm",
            )
        if self.config.signature_algorithm not in HASH_ALGORITHMS:
            raise ConfigurationError(
                f"Unsupported signature algorithm: {self.config.signature_algorithm}",
                source="trust.signature_algorithm",
            )

        self._secret = (
            bytes.fromhex(self.config.secret_key)
            if self.config.secret_key
            else secrets.token_bytes(32)
        )
        self._key_id = hashlib.sha256(self._secret).hexdigest()[:16]

        self._seed: Mapping[str, TrustedToolRecord] = MappingProxyType(_load_builtin_tools())
        self._overlay: Dict[str, TrustedToolRecord] = {}
        self._removed: Set[str] = set()
        self._tool_status: Dict[str, str] = {}

        self.learned = learned_store or LearnedTrustStore(self.config.learned_store_path)

        self._cache: Dict[str, _CacheEntry] = {}
        self._metrics = {
            "total_verifications": 0,
            "successful_verifications": 0,
            "failed_verifications": 0,
            "cache_hits": 0,
            "cache_misses": 0,
            "verification_types": {"checksum": 0, "signature": 0},
        }

    async def load(self) -> None:
        """Load the registry file and the learned store."""
        if self.config.registry_path:
            self.load_registry(self.config.registry_path)
        await self.learned.load()

    def load_registry(self, registry_path: str) -> int:
        """
        Merge a JSON registry file over the built-in entries.

        The merged registry replaces the seed registry as a whole.

        Args:
            registry_path: Path to trusted tools JSON

        Returns:
            Number of entries loaded from the file

        Raises:
            ConfigurationError: If the file is not valid JSON or fails schema validation
        """
        path = Path(registry_path)
        if not path.exists():
            logger.warning(f"Trusted tools registry not found: {registry_path}")
            return 0

        try:
            with open(path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Trusted tools registry is not valid JSON: {e}",
                source=str(path),
            ) from e

        try:
            jsonschema.validate(data, REGISTRY_SCHEMA)
        except jsonschema.ValidationError as e:
            raise ConfigurationError(
                f"Trusted tools registry is invalid: {e.message}",
                errors=[e.message],
                source=str(path),
            ) from e

        merged = dict(self._seed)
        for name, entry in data.items():
            merged[name] = TrustedToolRecord.from_dict(name, entry)
        self._seed = MappingProxyType(merged)
        self._cache.clear()

        logger.info(f"Loaded {len(data)} trusted tools from {path}")
        return len(data)

    def get_record(self, name: str) -> Optional[TrustedToolRecord]:
        """Look up a registry entry by tool name."""
        if name in self._removed:
            return None
        return self._overlay.get(name) or self._seed.get(name)

    def _cache_key(self, resolved: str, options: Dict[str, Any]) -> str:
        return f"{resolved}:{json.dumps(options, sort_keys=True, default=str)}"

    def _from_cache(self, key: str, resolved: Path) -> Optional[VerificationResult]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        expired = (self._clock() - entry.stored_at) * 1000 > self.config.cache_ttl_ms
        if expired or _file_state(resolved) != entry.file_state:
            del self._cache[key]
            return None
        return entry.result

    def _fingerprint(self, path: Path) -> Tuple[str, Optional[str]]:
        """Compute checksum and, when enabled, HMAC signature in one pass."""
        hash_factory, _ = HASH_ALGORITHMS[self.config.checksum_algorithm]
        hasher = hash_factory()
        signer = None
        if self.config.check_signature:
            _, sig_algorithm = HASH_ALGORITHMS[self.config.signature_algorithm]
            signer = crypto_hmac.HMAC(self._secret, sig_algorithm())

        with open(path, "rb") as f:
            while chunk := f.read(CHUNK_SIZE):
                hasher.update(chunk)
                if signer is not None:
                    signer.update(chunk)

        signature = signer.finalize().hex() if signer is not None else None
        return hasher.hexdigest(), signature

    async def verify_tool(
        self,
        tool_path: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> VerificationResult:
        """
        Verify that an executable is trusted.

        Args:
            tool_path: Path to the executable
            options: Caller options, part of the cache key

        Returns:
            VerificationResult
        """
        options = options or {}
        start = self._clock()
        self._metrics["total_verifications"] += 1

        raw = Path(tool_path)
        name = raw.name
        resolved = raw.resolve()
        resolved_str = str(resolved)

        key = self._cache_key(resolved_str, options)
        cached = self._from_cache(key, resolved)
        if cached is not None:
            self._metrics["cache_hits"] += 1
            return replace(cached, cached=True)
        self._metrics["cache_misses"] += 1

        try:
            result = await self._verify_uncached(name, resolved)
        except OSError as e:
            self._metrics["failed_verifications"] += 1
            logger.error(f"Verification error for {tool_path}: {e}")
            return VerificationResult(
                trusted=False,
                status=VerificationStatus.ERROR,
                message=f"Verification error: {e}",
                path=resolved_str,
                tool=name,
                reason="VERIFICATION_ERROR",
            )

        result.verification_time_ms = (self._clock() - start) * 1000

        if result.trusted:
            self._metrics["successful_verifications"] += 1
        else:
            self._metrics["failed_verifications"] += 1
            logger.warning(f"Tool verification failed for {resolved_str}: {result.message}")

        if result.status is not VerificationStatus.LEARNED:
            self._cache[key] = _CacheEntry(
                result=result,
                stored_at=self._clock(),
                file_state=_file_state(resolved),
            )

        return result

    async def _verify_uncached(self, name: str, resolved: Path) -> VerificationResult:
        path_str = str(resolved)
        record = self.get_record(name)
        if record is None:
            return VerificationResult(
                trusted=False,
                status=VerificationStatus.UNREGISTERED,
                message="Tool not in trusted registry",
                path=path_str,
                tool=name,
                reason="UNREGISTERED_TOOL",
            )

        if not resolved.is_file():
            return VerificationResult(
                trusted=False,
                status=VerificationStatus.NOT_FOUND,
                message="Tool file not found",
                path=path_str,
                tool=name,
                reason="FILE_NOT_FOUND",
            )

        registered = {str(Path(p).resolve()) for p in record.paths}
        if path_str not in registered and not self.config.allow_self_signed:
            return VerificationResult(
                trusted=False,
                status=VerificationStatus.UNTRUSTED_PATH,
                message="Tool path not in trusted paths",
                path=path_str,
                tool=name,
                reason="UNTRUSTED_PATH",
            )

        # Hashing reads the whole binary; keep it off the event loop
        checksum, signature = await asyncio.to_thread(self._fingerprint, resolved)
        self._metrics["verification_types"]["checksum"] += 1
        if signature is not None:
            self._metrics["verification_types"]["signature"] += 1

        learned = self.learned.get(path_str)
        expected_checksum = record.checksum or (learned.checksum if learned else None)

        if expected_checksum is None:
            self.learned.put(path_str, LearnedFingerprint(
                checksum=checksum,
                signature=signature,
                key_id=self._key_id if signature else None,
                learned_at=time.time(),
            ))
            self._tool_status[name] = "verified"
            logger.info(f"Learned fingerprint for {name} at {path_str}")
            return VerificationResult(
                trusted=True,
                status=VerificationStatus.LEARNED,
                message="Tool fingerprint learned on first use",
                path=path_str,
                tool=name,
                checksum=checksum,
                signature=signature,
            )

        if not secrets.compare_digest(checksum, expected_checksum):
            return self._mismatch(name, path_str, checksum, "CHECKSUM_MISMATCH")

        expected_signature = record.signature
        if expected_signature is None and learned and learned.key_id == self._key_id:
            expected_signature = learned.signature
        if (
            signature is not None
            and expected_signature is not None
            and not secrets.compare_digest(signature, expected_signature)
        ):
            return self._mismatch(name, path_str, checksum, "SIGNATURE_MISMATCH")

        if learned and signature and learned.key_id != self._key_id:
            # Signature was learned under a different process key
            learned.signature = signature
            learned.key_id = self._key_id
            self.learned.save()

        self._tool_status[name] = "verified"
        return VerificationResult(
            trusted=True,
            status=VerificationStatus.VERIFIED,
            message="Tool verification successful",
            path=path_str,
            tool=name,
            checksum=checksum,
            signature=signature,
        )

    def _mismatch(self, name: str, path: str, checksum: str, reason: str) -> VerificationResult:
        self._tool_status[name] = "failed"
        return VerificationResult(
            trusted=False,
            status=VerificationStatus.MISMATCH,
            message=f"Tool fingerprint does not match recorded value ({reason})",
            path=path,
            tool=name,
            reason=reason,
            checksum=checksum,
        )

    def add_trusted_tool(self, name: str, record: Dict[str, Any]) -> TrustedToolRecord:
        """Register a tool at runtime without touching the seed registry."""
        entry = TrustedToolRecord.from_dict(name, record, source="runtime")
        self._overlay[name] = entry
        self._removed.discard(name)
        self._cache.clear()
        logger.info(f"Added trusted tool {name}")
        return entry

    def remove_trusted_tool(self, name: str) -> bool:
        """Remove a tool from the effective registry."""
        if self.get_record(name) is None:
            return False
        self._overlay.pop(name, None)
        self._removed.add(name)
        self._cache.clear()
        logger.info(f"Removed trusted tool {name}")
        return True

    def forget(self, tool_path: str) -> bool:
        """Drop learned trust for an executable."""
        resolved = str(Path(tool_path).resolve())
        self._cache = {k: v for k, v in self._cache.items() if not k.startswith(f"{resolved}:")}
        return self.learned.forget(resolved)

    def clear_cache(self) -> None:
        self._cache.clear()

    def get_trusted_tools(self) -> Dict[str, Dict[str, Any]]:
        """Get the effective registry with verification status."""
        names = (set(self._seed) | set(self._overlay)) - self._removed
        tools = {}
        for name in sorted(names):
            record = self.get_record(name)
            info = record.to_dict()
            info["verification_status"] = self._tool_status.get(name, "pending")
            tools[name] = info
        return tools

    def get_metrics(self) -> Dict[str, Any]:
        """Get verification metrics."""
        total = self._metrics["total_verifications"]
        return {
            **self._metrics,
            "verification_types": dict(self._metrics["verification_types"]),
            "success_rate": (
                self._metrics["successful_verifications"] / total if total else 0.0
            ),
            "registry_size": len(self.get_trusted_tools()),
            "learned_tools": len(self.learned),
            "cache_size": len(self._cache),
        }


__all__ = [
    "TrustedToolVerifier",
    "TrustedToolRecord",
    "LearnedTrustStore",
    "LearnedFingerprint",
    "VerificationResult",
    "VerificationStatus",
    "REGISTRY_SCHEMA",
]
