"""Secret protection for agent configuration."""
from .schemes import (
    DpapiBackend,
    MachineFernetBackend,
    ProtectedBlob,
    ProtectionBackend,
    ProtectionScheme,
)
from .vault import SecureVault

__all__ = [
    "DpapiBackend",
    "MachineFernetBackend",
    "ProtectedBlob",
    "ProtectionBackend",
    "ProtectionScheme",
    "SecureVault",
]
