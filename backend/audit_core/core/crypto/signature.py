"""
Keyed-hash signatures over the canonical field set of an audit record.

The signed payload is the RFC 8785 canonical form of the signed fields plus a
``signature_version`` marker, followed by the configured secret key. The
digest is hex-encoded, so the default ``sha512`` yields 128 characters.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from audit_core.core.config import SignatureSettings, get_settings
from audit_core.core.crypto.canonicalization import canonicalize_jcs_bytes, normalize_value
from audit_core.core.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_VERSION = "1.0"

# Every persisted audit field except ``id`` (assigned by the store after
# signing) and ``signature`` itself.
SIGNED_FIELDS: tuple[str, ...] = (
    "audit_uuid",
    "event_type",
    "action_type",
    "model_type",
    "model_id",
    "table_name",
    "source_page",
    "source_element",
    "user_id",
    "session_id",
    "ip_address",
    "user_agent",
    "device_fingerprint",
    "additional_data",
    "old_values",
    "new_values",
    "created_at",
)

SignatureState = Literal["keyed", "unkeyed", "disabled"]


class SignatureConfigurationError(RuntimeError):
    """Raised when signing is requested but cannot be performed."""


@dataclass(frozen=True)
class SignatureCheck:
    """Outcome of verifying one stored signature."""

    record_id: int | None
    audit_uuid: str | None
    valid: bool
    algorithm: str


def signed_fields(record: Any) -> dict[str, Any]:
    """Extract the signed field set from a mapping or an ORM record."""
    if isinstance(record, Mapping):
        return {name: record.get(name) for name in SIGNED_FIELDS}
    return {name: getattr(record, name, None) for name in SIGNED_FIELDS}


class SignatureService:
    """Sign and verify audit field sets with a configured secret and algorithm."""

    def __init__(self, settings: SignatureSettings | None = None) -> None:
        self._settings = settings or get_settings().audit.signature
        if self._settings.enabled and not self._settings.secret_key:
            logger.warning(
                "audit_signature_unkeyed",
                algorithm=self._settings.algorithm,
                detail="secret key is empty; signatures are plain hashes",
            )

    @property
    def algorithm(self) -> str:
        return self._settings.algorithm

    @property
    def is_enabled(self) -> bool:
        return self._settings.enabled

    @property
    def is_keyed(self) -> bool:
        return bool(self._settings.secret_key)

    @property
    def configuration_state(self) -> SignatureState:
        """Report whether signatures are keyed, degraded to plain hashes, or off."""
        if not self._settings.enabled:
            return "disabled"
        return "keyed" if self.is_keyed else "unkeyed"

    def canonical_payload(self, fields: Mapping[str, Any]) -> bytes:
        """Canonical bytes for *fields*, excluding any ``signature`` entry."""
        payload = {
            name: normalize_value(value) for name, value in fields.items() if name != "signature"
        }
        payload["signature_version"] = SIGNATURE_VERSION
        return canonicalize_jcs_bytes(payload)

    def sign(self, fields: Mapping[str, Any], *, algorithm: str | None = None) -> str:
        """Return the hex digest for *fields*."""
        digest = hashlib.new(algorithm or self.algorithm)
        digest.update(self.canonical_payload(fields))
        digest.update(self._settings.secret_key.encode("utf-8"))
        return digest.hexdigest()

    def verify(
        self,
        fields: Mapping[str, Any],
        signature: str | None,
        *,
        algorithm: str | None = None,
    ) -> bool:
        """Recompute the digest for *fields* and compare in constant time."""
        if not signature:
            return False
        try:
            expected = self.sign(fields, algorithm=algorithm)
        except ValueError:
            # Unknown algorithm tag on the stored record
            return False
        return hmac.compare_digest(expected, signature)

    def sign_record(self, record: Any) -> str:
        return self.sign(signed_fields(record))

    def verify_record(self, record: Any) -> bool:
        """Verify a stored record using the algorithm recorded alongside it."""
        algorithm = getattr(record, "signature_algorithm", None) or self.algorithm
        return self.verify(signed_fields(record), record.signature, algorithm=algorithm)

    def batch_verify(self, records: Iterable[Any]) -> list[SignatureCheck]:
        checks: list[SignatureCheck] = []
        for record in records:
            checks.append(
                SignatureCheck(
                    record_id=getattr(record, "id", None),
                    audit_uuid=getattr(record, "audit_uuid", None),
                    valid=self.verify_record(record),
                    algorithm=getattr(record, "signature_algorithm", None) or self.algorithm,
                )
            )
        return checks

    @staticmethod
    def verification_stats(checks: Iterable[SignatureCheck]) -> dict[str, Any]:
        """Summarize a batch of checks with a validity percentage."""
        total = valid = 0
        for check in checks:
            total += 1
            valid += int(check.valid)
        return {
            "total": total,
            "valid": valid,
            "invalid": total - valid,
            "validity_percentage": round(valid / total * 100, 2) if total else 100.0,
        }

    def sign_data(
        self,
        data: Mapping[str, Any],
        context: Mapping[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> dict[str, Any]:
        """Sign an arbitrary payload, e.g. an export or a report."""
        timestamp = timestamp or datetime.now(UTC)
        fields = {"data": dict(data), "context": dict(context or {}), "timestamp": timestamp}
        return {
            "signature": self.sign(fields),
            "timestamp": normalize_value(timestamp),
            "algorithm": self.algorithm,
            "version": SIGNATURE_VERSION,
        }

    def verify_data(
        self,
        data: Mapping[str, Any],
        signature: str,
        context: Mapping[str, Any] | None = None,
        timestamp: datetime | str | None = None,
    ) -> bool:
        fields = {"data": dict(data), "context": dict(context or {}), "timestamp": timestamp}
        return self.verify(fields, signature)

    @staticmethod
    def generate_secret_key(length: int = 64) -> str:
        """Generate a random secret suitable for ``audit.signature.secret_key``."""
        if length < 32:
            raise SignatureConfigurationError("Secret keys shorter than 32 characters are unsafe")
        return secrets.token_urlsafe(length)[:length]
