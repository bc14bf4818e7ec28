"""Tests for the secret vault and its protection schemes."""
from __future__ import annotations

import json
import os
import stat
import sys
import threading
from pathlib import Path
from types import SimpleNamespace

import pytest

from hostwatch.config import VaultConfig
from hostwatch.errors import CorruptCiphertext, VaultError, VaultUnavailable
from hostwatch.security.schemes import (
    MachineFernetBackend,
    ProtectedBlob,
    ProtectionBackend,
    ProtectionScheme,
    machine_identity,
)
from hostwatch.security.vault import SecureVault

not_windows = pytest.mark.skipif(sys.platform == "win32", reason="DPAPI is present on Windows")


def test_protect_then_unprotect_returns_plaintext(vault: SecureVault) -> None:
    blob = vault.protect(b"api-key-123")

    assert blob.scheme == ProtectionScheme.MACHINE_FERNET.value
    assert b"api-key-123" not in blob.ciphertext
    assert vault.unprotect(blob) == b"api-key-123"


def test_text_plaintext_is_utf8_encoded(vault: SecureVault) -> None:
    blob = vault.protect("pässwörd")

    assert vault.unprotect(blob).decode("utf-8") == "pässwörd"


def test_unknown_scheme_tag_is_unavailable(vault: SecureVault) -> None:
    blob = vault.protect(b"secret")

    with pytest.raises(VaultUnavailable):
        vault.unprotect(ProtectedBlob(scheme="tpm2-sealed", ciphertext=blob.ciphertext))


@not_windows
def test_native_tag_on_host_without_native_scheme(vault: SecureVault) -> None:
    with pytest.raises(VaultUnavailable):
        vault.unprotect(ProtectedBlob(scheme=ProtectionScheme.DPAPI.value, ciphertext=b"\x01\x00\x00\x00"))


def test_tampered_ciphertext_fails_integrity_check(vault: SecureVault) -> None:
    blob = vault.protect(b"secret")
    tampered = bytearray(blob.ciphertext)
    tampered[len(tampered) // 2] ^= 0x01

    with pytest.raises(CorruptCiphertext):
        vault.unprotect(ProtectedBlob(scheme=blob.scheme, ciphertext=bytes(tampered)))


def test_key_is_bound_to_machine_identity(tmp_path: Path) -> None:
    salt = tmp_path / "vault.salt"
    here = MachineFernetBackend(salt, iterations=1_000, identity=b"machine-a|alice")
    elsewhere = MachineFernetBackend(salt, iterations=1_000, identity=b"machine-b|alice")
    again = MachineFernetBackend(salt, iterations=1_000, identity=b"machine-a|alice")

    token = here.protect(b"upload-credential")

    with pytest.raises(CorruptCiphertext):
        elsewhere.unprotect(token)
    assert again.unprotect(token) == b"upload-credential"


def test_salt_is_created_once(tmp_path: Path) -> None:
    salt = tmp_path / "vault" / "vault.salt"
    MachineFernetBackend(salt, iterations=1_000, identity=b"x")
    first = salt.read_bytes()
    MachineFernetBackend(salt, iterations=1_000, identity=b"x")

    assert salt.read_bytes() == first
    assert len(first) == 16


def test_truncated_salt_is_rejected(tmp_path: Path) -> None:
    salt = tmp_path / "vault.salt"
    salt.write_bytes(b"abc")

    with pytest.raises(CorruptCiphertext):
        MachineFernetBackend(salt, iterations=1_000, identity=b"x")


def test_machine_identity_is_stable() -> None:
    assert machine_identity() == machine_identity()
    assert machine_identity()


def test_random_hardware_address_does_not_change_the_key(tmp_path: Path, monkeypatch) -> None:
    # Hosts without a readable MAC get a fresh random node, multicast bit set, per process.
    nodes = iter([0x13_0000_0000_01 | (1 << 40), 0x77_1234_5678_9A | (1 << 40)])
    monkeypatch.setattr("hostwatch.security.schemes.uuid.getnode", lambda: next(nodes))
    salt = tmp_path / "vault.salt"

    before_restart = MachineFernetBackend(salt, iterations=1_000)
    token = before_restart.protect(b"upload-credential")
    after_restart = MachineFernetBackend(salt, iterations=1_000)

    assert after_restart.unprotect(token) == b"upload-credential"


def test_hostname_is_not_part_of_the_key(tmp_path: Path, monkeypatch) -> None:
    salt = tmp_path / "vault.salt"
    monkeypatch.setattr("socket.gethostname", lambda: "build-01")
    token = MachineFernetBackend(salt, iterations=1_000).protect(b"api-key")

    monkeypatch.setattr("socket.gethostname", lambda: "build-01-renamed")

    assert MachineFernetBackend(salt, iterations=1_000).unprotect(token) == b"api-key"


def test_secrets_survive_reopen(tmp_path: Path) -> None:
    config = VaultConfig(scheme_preference="fallback", kdf_iterations=1_000)
    first = SecureVault(tmp_path / "vault", config)
    record = first.put_secret("upload.token", "tok-987")

    second = SecureVault(tmp_path / "vault", config)

    assert record.scheme == ProtectionScheme.MACHINE_FERNET.value
    assert second.has_secret("upload.token")
    assert second.get_secret("upload.token") == b"tok-987"


def test_secret_records_never_hold_plaintext(vault: SecureVault, tmp_path: Path) -> None:
    vault.put_secret("api_key", "very-secret-value")

    raw = (tmp_path / "vault" / "secrets.json").read_text(encoding="utf-8")
    stored = json.loads(raw)

    assert "very-secret-value" not in raw
    assert stored["api_key"]["scheme"] == "machine-fernet"
    assert stored["api_key"]["created_at"] > 0


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
def test_secret_file_is_owner_only(vault: SecureVault, tmp_path: Path) -> None:
    vault.put_secret("api_key", "value")

    mode = stat.S_IMODE(os.stat(tmp_path / "vault" / "secrets.json").st_mode)

    assert mode == 0o600


def test_secret_lifecycle(vault: SecureVault) -> None:
    assert not vault.has_secret("a")
    vault.put_secret("b", "2")
    vault.put_secret("a", "1")
    vault.put_secret("a", "one")

    assert vault.list_secrets() == ["a", "b"]
    assert vault.get_secret("a") == b"one"
    assert vault.delete_secret("a")
    assert not vault.delete_secret("a")
    assert not vault.has_secret("a")
    with pytest.raises(KeyError):
        vault.get_secret("a")
    with pytest.raises(ValueError):
        vault.put_secret("", "x")


def test_replacing_a_secret_keeps_its_creation_time(vault: SecureVault, monkeypatch) -> None:
    clock = iter([1_000.0, 2_000.0])
    monkeypatch.setattr("hostwatch.security.vault.time", SimpleNamespace(time=lambda: next(clock)))

    first = vault.put_secret("upload.token", "v1")
    second = vault.put_secret("upload.token", "v2")

    assert first.created_at == second.created_at == 1_000.0
    assert vault.get_record("upload.token").created_at == 1_000.0
    assert vault.get_secret("upload.token") == b"v2"


def test_unreadable_secret_file_raises(vault: SecureVault, tmp_path: Path) -> None:
    (tmp_path / "vault" / "secrets.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(VaultError):
        vault.has_secret("anything")


def test_record_with_unsupported_scheme_is_unavailable(vault: SecureVault, tmp_path: Path) -> None:
    vault.put_secret("legacy", "value")
    path = tmp_path / "vault" / "secrets.json"
    stored = json.loads(path.read_text(encoding="utf-8"))
    stored["legacy"]["scheme"] = "keychain"
    path.write_text(json.dumps(stored), encoding="utf-8")

    with pytest.raises(VaultUnavailable):
        vault.get_secret("legacy")


@not_windows
def test_native_preference_without_native_scheme(tmp_path: Path) -> None:
    with pytest.raises(VaultUnavailable):
        SecureVault(tmp_path / "vault", VaultConfig(scheme_preference="native", kdf_iterations=1_000))


@not_windows
def test_auto_preference_falls_back(tmp_path: Path) -> None:
    vault = SecureVault(tmp_path / "vault", VaultConfig(kdf_iterations=1_000))

    assert vault.active_scheme is ProtectionScheme.MACHINE_FERNET
    assert vault.supported_schemes == [ProtectionScheme.MACHINE_FERNET]


class ReversingBackend(ProtectionBackend):
    """Toy native scheme used to exercise dispatch by tag."""

    scheme = ProtectionScheme.DPAPI

    def protect(self, plaintext: bytes) -> bytes:
        return plaintext[::-1]

    def unprotect(self, ciphertext: bytes) -> bytes:
        return ciphertext[::-1]


def test_unprotect_dispatches_on_tag_not_active_scheme(tmp_path: Path) -> None:
    fallback = MachineFernetBackend(tmp_path / "vault.salt", iterations=1_000, identity=b"host")
    backends = {ProtectionScheme.DPAPI: ReversingBackend(), ProtectionScheme.MACHINE_FERNET: fallback}
    native_vault = SecureVault(tmp_path / "vault", backends=backends)
    fallback_blob = ProtectedBlob(scheme="machine-fernet", ciphertext=fallback.protect(b"old"))

    native_blob = native_vault.protect(b"new")

    assert native_vault.active_scheme is ProtectionScheme.DPAPI
    assert native_blob == ProtectedBlob(scheme="dpapi", ciphertext=b"wen")
    assert native_vault.unprotect(fallback_blob) == b"old"
    assert native_vault.unprotect(native_blob) == b"new"


def test_no_backend_at_all_is_unavailable(tmp_path: Path) -> None:
    with pytest.raises(VaultUnavailable):
        SecureVault(tmp_path / "vault", backends={})


def test_concurrent_protect_calls(vault: SecureVault) -> None:
    results = {}

    def worker(index: int) -> None:
        blob = vault.protect(f"value-{index}")
        results[index] = vault.unprotect(blob)

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results == {index: f"value-{index}".encode() for index in range(16)}
