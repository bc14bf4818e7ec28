"""Secret protection schemes and capability probing."""
from __future__ import annotations

import base64
import ctypes
import getpass
import logging
import os
import sys
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..errors import CorruptCiphertext, VaultUnavailable

LOGGER = logging.getLogger(__name__)

_MACHINE_ID_FILES = ("/etc/machine-id", "/var/lib/dbus/machine-id")


class ProtectionScheme(Enum):
    """Tag recorded next to every ciphertext."""

    DPAPI = "dpapi"
    MACHINE_FERNET = "machine-fernet"

    @classmethod
    def from_tag(cls, tag: str) -> "ProtectionScheme":
        try:
            return cls(tag)
        except ValueError as exc:
            raise VaultUnavailable(f"Unknown protection scheme {tag!r}") from exc


@dataclass(frozen=True)
class ProtectedBlob:
    """Ciphertext together with the scheme that produced it."""

    scheme: str
    ciphertext: bytes


class ProtectionBackend(ABC):
    """A mechanism able to seal and open small secrets for this host."""

    scheme: ProtectionScheme

    @abstractmethod
    def protect(self, plaintext: bytes) -> bytes:
        """Encrypt ``plaintext``."""

    @abstractmethod
    def unprotect(self, ciphertext: bytes) -> bytes:
        """Decrypt ``ciphertext``, raising :class:`CorruptCiphertext` on tampering."""


class DpapiBackend(ProtectionBackend):
    """Windows Data Protection API, scoped to the current user."""

    scheme = ProtectionScheme.DPAPI
    _UI_FORBIDDEN = 0x01

    def __init__(self) -> None:
        if not self.is_supported():
            raise VaultUnavailable("DPAPI is only available on Windows")
        from ctypes import wintypes

        class _DataBlob(ctypes.Structure):
            _fields_ = [("cbData", wintypes.DWORD), ("pbData", ctypes.POINTER(ctypes.c_char))]

        self._blob_type = _DataBlob
        self._crypt32 = ctypes.windll.crypt32  # type: ignore[attr-defined]
        self._kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]

    @staticmethod
    def is_supported() -> bool:
        return sys.platform == "win32"

    def protect(self, plaintext: bytes) -> bytes:
        buffer = ctypes.create_string_buffer(plaintext, len(plaintext))
        data_in = self._blob_for(buffer)
        data_out = self._blob_type()
        ok = self._crypt32.CryptProtectData(
            ctypes.byref(data_in), None, None, None, None, self._UI_FORBIDDEN, ctypes.byref(data_out)
        )
        if not ok:
            raise VaultUnavailable(f"CryptProtectData failed (error {ctypes.GetLastError()})")  # type: ignore[attr-defined]
        return self._take(data_out)

    def unprotect(self, ciphertext: bytes) -> bytes:
        buffer = ctypes.create_string_buffer(ciphertext, len(ciphertext))
        data_in = self._blob_for(buffer)
        data_out = self._blob_type()
        ok = self._crypt32.CryptUnprotectData(
            ctypes.byref(data_in), None, None, None, None, self._UI_FORBIDDEN, ctypes.byref(data_out)
        )
        if not ok:
            raise CorruptCiphertext("DPAPI rejected the ciphertext")
        return self._take(data_out)

    def _blob_for(self, buffer):  # type: ignore[no-untyped-def]
        return self._blob_type(len(buffer), ctypes.cast(buffer, ctypes.POINTER(ctypes.c_char)))

    def _take(self, blob) -> bytes:  # type: ignore[no-untyped-def]
        try:
            return ctypes.string_at(blob.pbData, blob.cbData)
        finally:
            self._kernel32.LocalFree(blob.pbData)


class MachineFernetBackend(ProtectionBackend):
    """Fernet with a key bound to this machine and user.

    The key is derived with PBKDF2 from the host's machine identifier, its
    burned-in hardware address when it has one, and the login name, salted
    with a random value kept in an owner-only file next to the secrets.
    Fernet authenticates every token, so tampering is detected on decryption.
    """

    scheme = ProtectionScheme.MACHINE_FERNET

    def __init__(self, salt_path: Path, *, iterations: int = 390_000, identity: Optional[bytes] = None) -> None:
        salt = _load_or_create_salt(salt_path)
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)
        key = base64.urlsafe_b64encode(kdf.derive(identity if identity is not None else machine_identity()))
        self._fernet = Fernet(key)

    def protect(self, plaintext: bytes) -> bytes:
        return self._fernet.encrypt(plaintext)

    def unprotect(self, ciphertext: bytes) -> bytes:
        try:
            return self._fernet.decrypt(ciphertext)
        except InvalidToken as exc:
            raise CorruptCiphertext("Ciphertext failed integrity validation") from exc


def machine_identity() -> bytes:
    """Collect stable identifiers of this host and user."""
    parts: List[str] = []
    for candidate in _MACHINE_ID_FILES:
        try:
            value = Path(candidate).read_text(encoding="utf-8").strip()
        except OSError:
            continue
        if value:
            parts.append(value)
            break
    if sys.platform == "win32":
        parts.append(_windows_machine_guid())
    node = uuid.getnode()
    # getnode() falls back to a random per-process value with the multicast bit set.
    if not (node >> 40) & 1:
        parts.append(f"{node:012x}")
    try:
        parts.append(getpass.getuser())
    except (KeyError, OSError):
        parts.append(str(os.getuid()) if hasattr(os, "getuid") else "unknown-user")
    return "|".join(parts).encode("utf-8")


def _windows_machine_guid() -> str:
    import winreg

    try:
        with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, r"SOFTWARE\Microsoft\Cryptography") as key:
            value, _ = winreg.QueryValueEx(key, "MachineGuid")
    except OSError:
        return ""
    return str(value)


def _load_or_create_salt(path: Path) -> bytes:
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        salt = path.read_bytes()
        if len(salt) < 16:
            raise CorruptCiphertext(f"Vault salt at {path} is truncated")
        return salt
    salt = os.urandom(16)
    with os.fdopen(fd, "wb") as handle:
        handle.write(salt)
        handle.flush()
        os.fsync(handle.fileno())
    LOGGER.info("Created vault salt at %s", path)
    return salt


def available_backends(salt_path: Path, *, iterations: int) -> Dict[ProtectionScheme, ProtectionBackend]:
    """Instantiate every scheme this host supports."""
    backends: Dict[ProtectionScheme, ProtectionBackend] = {}
    if DpapiBackend.is_supported():
        try:
            backends[ProtectionScheme.DPAPI] = DpapiBackend()
        except (OSError, AttributeError, VaultUnavailable) as exc:
            LOGGER.warning("DPAPI self-test failed: %s", exc)
    try:
        backends[ProtectionScheme.MACHINE_FERNET] = MachineFernetBackend(salt_path, iterations=iterations)
    except OSError as exc:
        LOGGER.warning("Machine-bound fallback unavailable: %s", exc)
    LOGGER.debug("Supported protection schemes: %s", [scheme.value for scheme in backends])
    return backends
