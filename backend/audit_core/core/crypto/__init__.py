"""
Cryptographic audit trail primitives.

Pure library modules for tamper-evident integrity:
- **canonicalization**: RFC 8785 canonical bytes and value normalization
- **signature**: keyed-hash signing and verification of audit records
"""

from audit_core.core.crypto.canonicalization import (
    CANONICALIZATION_RFC8785,
    canonicalize_jcs_bytes,
    normalize_timestamp,
    normalize_value,
)
from audit_core.core.crypto.signature import (
    SIGNATURE_VERSION,
    SIGNED_FIELDS,
    SignatureCheck,
    SignatureConfigurationError,
    SignatureService,
    signed_fields,
)

__all__ = [
    "CANONICALIZATION_RFC8785",
    "SIGNATURE_VERSION",
    "SIGNED_FIELDS",
    "SignatureCheck",
    "SignatureConfigurationError",
    "SignatureService",
    "canonicalize_jcs_bytes",
    "normalize_timestamp",
    "normalize_value",
    "signed_fields",
]
