"""Device fingerprint derivation.

A fingerprint is an HMAC-SHA256 over the canonical device attributes, keyed
with a random per-issuance salt. The salt is not a secret: it only makes
fingerprints of the same device differ between sessions. The IP address is
left out because mobile clients change networks mid-session.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

from piauth.storage.models import DeviceInfo

_SEPARATOR = "\x1f"


def _clean(value: str | None) -> str:
    return (value or "").strip()


def canonicalize(device: DeviceInfo) -> str:
    return _SEPARATOR.join(
        [
            _clean(device.device_id),
            _clean(device.platform).lower(),
            _clean(device.user_agent),
            _clean(device.app_version),
        ]
    )


def _anchor_form(device: DeviceInfo) -> str:
    return _SEPARATOR.join([_clean(device.device_id), _clean(device.platform).lower()])


def _keyed_digest(salt: str, message: str) -> str:
    return hmac.new(salt.encode(), message.encode(), hashlib.sha256).hexdigest()


def derive(device: DeviceInfo, salt: str) -> str:
    """Fingerprint of the full device description."""
    return _keyed_digest(salt, canonicalize(device))


def derive_anchor(device: DeviceInfo, salt: str) -> str:
    """Fingerprint of the identity fields only (device id and platform).

    Survives app upgrades and browser updates, so it tells a changed device
    apart from a different one.
    """
    return _keyed_digest(salt, "anchor" + _SEPARATOR + _anchor_form(device))


def new_salt() -> str:
    return secrets.token_hex(16)


def matches(expected: str, actual: str) -> bool:
    return hmac.compare_digest(expected.encode(), actual.encode())


__all__ = ["canonicalize", "derive", "derive_anchor", "new_salt", "matches"]
