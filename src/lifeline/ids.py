from __future__ import annotations

import os
import re
from typing import Callable

MODULE_CODE_MAP = {
    "s3-bucket": "s3",
    "ec2-instance": "ec2",
    "ecr-repo": "ecr",
}

# lowercase, without o 0 i 1
SAFE_ALPHABET = "abcdefghjklmnpqrstuvwxyz23456789"

SHORT_ID_LENGTH = 6

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


def module_type_to_code(module_type: str) -> str:
    if module_type in MODULE_CODE_MAP:
        return MODULE_CODE_MAP[module_type]
    return _NON_ALNUM.sub("", module_type)[:4].lower()


def random_code(
    length: int = SHORT_ID_LENGTH,
    random_bytes: Callable[[int], bytes] = os.urandom,
) -> str:
    code = ""
    while len(code) < length:
        for byte in random_bytes(length * 2):
            code += SAFE_ALPHABET[byte % len(SAFE_ALPHABET)]
            if len(code) == length:
                break
    return code


def generate_request_id(
    environment: str,
    module_type: str,
    random_bytes: Callable[[int], bytes] = os.urandom,
) -> str:
    """Build a request id of the form ``req_<env>_<module>_<code>``."""
    return "_".join(
        [
            "req",
            environment.lower(),
            module_type_to_code(module_type),
            random_code(random_bytes=random_bytes),
        ]
    )
