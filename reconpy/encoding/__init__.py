"""Canonical encoding and fingerprinting."""

from reconpy.encoding.codec import CanonicalCodec
from reconpy.encoding.fingerprint import (
    Codec,
    Fingerprint,
    FingerprintEngine,
    structurally_equal,
)
