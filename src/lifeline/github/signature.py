from __future__ import annotations

import re
from typing import Optional

from gidgethub import ValidationFailure
from gidgethub.sansio import validate_event

from lifeline.errors import RejectedSignature

SIGNATURE_PREFIX = "sha256="
_HEX_DIGEST = re.compile(r"^[0-9a-fA-F]{64}$")


def verify_signature(
    raw_body: bytes, signature_header: Optional[str], secret: Optional[str]
) -> None:
    """Raise :class:`RejectedSignature` unless ``signature_header`` signs ``raw_body``.

    The header must be ``sha256=`` followed by 64 hex digits; the digest check
    itself is gidgethub's constant-time comparison.
    """
    if not secret:
        raise RejectedSignature("No webhook secret configured")
    if not signature_header:
        raise RejectedSignature("Missing signature header")
    if not signature_header.startswith(SIGNATURE_PREFIX):
        raise RejectedSignature("Unsupported signature algorithm")
    digest = signature_header[len(SIGNATURE_PREFIX) :].strip()
    if not _HEX_DIGEST.match(digest):
        raise RejectedSignature("Malformed signature digest")
    try:
        validate_event(raw_body, signature=f"{SIGNATURE_PREFIX}{digest}", secret=secret)
    except ValidationFailure as e:
        raise RejectedSignature(str(e)) from e
