"""Secure vault for API keys and upload credentials."""
from __future__ import annotations

import base64
import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from ..config import VaultConfig
from ..errors import VaultError, VaultUnavailable
from ..models import SecretRecord
from .schemes import ProtectedBlob, ProtectionBackend, ProtectionScheme, available_backends

LOGGER = logging.getLogger(__name__)

SECRETS_FILENAME = "secrets.json"
SALT_FILENAME = "vault.salt"


class SecretFile:
    """JSON file of encrypted secret records, rewritten atomically."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Dict[str, SecretRecord]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            return {
                name: SecretRecord(
                    name=name,
                    ciphertext=base64.b64decode(item["ciphertext"]),
                    scheme=item["scheme"],
                    created_at=float(item["created_at"]),
                )
                for name, item in raw.items()
            }
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise VaultError(f"Secret file {self._path} is unreadable: {exc}") from exc

    def save(self, records: Mapping[str, SecretRecord]) -> None:
        serializable = {
            name: {
                "ciphertext": base64.b64encode(record.ciphertext).decode("ascii"),
                "scheme": record.scheme,
                "created_at": record.created_at,
            }
            for name, record in records.items()
        }
        fd, tmp_name = tempfile.mkstemp(prefix=".secrets-", dir=str(self._path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(serializable, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        LOGGER.debug("Persisted %d secret records", len(serializable))


class SecureVault:
    """Encrypts secrets with the best protection scheme this host offers.

    Schemes are checked once at construction. New ciphertexts use the active
    scheme; decryption always follows the scheme tag stored with the
    ciphertext, so secrets written under one scheme stay readable after the
    preference changes, as long as this host still supports that scheme.
    """

    def __init__(
        self,
        directory: Path,
        config: Optional[VaultConfig] = None,
        *,
        backends: Optional[Mapping[ProtectionScheme, ProtectionBackend]] = None,
    ) -> None:
        self._config = config or VaultConfig()
        self._directory = directory
        self._directory.mkdir(parents=True, exist_ok=True)
        if backends is None:
            backends = available_backends(
                self._directory / SALT_FILENAME, iterations=self._config.kdf_iterations
            )
        self._backends: Dict[ProtectionScheme, ProtectionBackend] = dict(backends)
        self._active = self._resolve_active(self._config.scheme_preference)
        self._secrets = SecretFile(self._directory / SECRETS_FILENAME)
        self._lock = threading.Lock()
        LOGGER.info("Vault ready with scheme %s", self._active.scheme.value)

    def _resolve_active(self, preference: str) -> ProtectionBackend:
        native = self._backends.get(ProtectionScheme.DPAPI)
        fallback = self._backends.get(ProtectionScheme.MACHINE_FERNET)
        if preference == "native":
            if native is None:
                raise VaultUnavailable("Platform protection primitive is not available on this host")
            return native
        if preference == "fallback":
            if fallback is None:
                raise VaultUnavailable("Machine-bound fallback scheme could not be initialised")
            return fallback
        chosen = native or fallback
        if chosen is None:
            raise VaultUnavailable("No secret protection scheme is available on this host")
        if native is None:
            LOGGER.info("Platform protection primitive unavailable; using machine-bound fallback")
        return chosen

    @property
    def active_scheme(self) -> ProtectionScheme:
        return self._active.scheme

    @property
    def supported_schemes(self) -> List[ProtectionScheme]:
        return list(self._backends)

    def protect(self, plaintext: Union[bytes, str]) -> ProtectedBlob:
        """Encrypt ``plaintext`` for this host and user."""
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else bytes(plaintext)
        return ProtectedBlob(scheme=self._active.scheme.value, ciphertext=self._active.protect(data))

    def unprotect(self, blob: ProtectedBlob) -> bytes:
        """Decrypt a blob with the scheme it was tagged with.

        Raises:
            VaultUnavailable: the scheme is unknown or not supported here.
            CorruptCiphertext: the ciphertext failed its integrity check.
        """
        scheme = ProtectionScheme.from_tag(blob.scheme)
        backend = self._backends.get(scheme)
        if backend is None:
            raise VaultUnavailable(f"Protection scheme {scheme.value!r} is not supported on this host")
        return backend.unprotect(blob.ciphertext)

    def put_secret(self, name: str, plaintext: Union[bytes, str]) -> SecretRecord:
        """Encrypt and persist a named secret, replacing any previous value.

        A replaced secret keeps the ``created_at`` of its first version.
        """
        if not name:
            raise ValueError("Secret name must not be empty")
        blob = self.protect(plaintext)
        with self._lock:
            records = self._secrets.load()
            previous = records.get(name)
            record = SecretRecord(
                name=name,
                ciphertext=blob.ciphertext,
                scheme=blob.scheme,
                created_at=previous.created_at if previous is not None else time.time(),
            )
            records[name] = record
            self._secrets.save(records)
        LOGGER.info("Stored secret %s with scheme %s", name, blob.scheme)
        return record

    def get_secret(self, name: str) -> bytes:
        """Decrypt a named secret. Raises ``KeyError`` when it does not exist."""
        record = self.get_record(name)
        return self.unprotect(ProtectedBlob(scheme=record.scheme, ciphertext=record.ciphertext))

    def get_record(self, name: str) -> SecretRecord:
        with self._lock:
            records = self._secrets.load()
        if name not in records:
            raise KeyError(name)
        return records[name]

    def has_secret(self, name: str) -> bool:
        with self._lock:
            return name in self._secrets.load()

    def delete_secret(self, name: str) -> bool:
        with self._lock:
            records = self._secrets.load()
            if name not in records:
                return False
            del records[name]
            self._secrets.save(records)
        LOGGER.info("Deleted secret %s", name)
        return True

    def list_secrets(self) -> List[str]:
        with self._lock:
            return sorted(self._secrets.load())
