"""Password strength policy.

Rules are checked in order and only the first broken rule is reported.
"""
import re

from loginguard.models import PolicyResult

MIN_LENGTH = 8
SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'

_DIGIT = re.compile(r"[0-9]")
_UPPERCASE = re.compile(r"[A-Z]")
_SPECIAL = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")

RULES = [
    (lambda p: len(p) >= MIN_LENGTH, f"Password must be at least {MIN_LENGTH} characters long."),
    (lambda p: _DIGIT.search(p) is not None, "Password must contain at least one number."),
    (lambda p: _UPPERCASE.search(p) is not None, "Password must contain at least one uppercase letter."),
    (lambda p: _SPECIAL.search(p) is not None, "Password must contain at least one special character."),
]


def validate_password(password: str) -> PolicyResult:
    password = password or ""
    for check, message in RULES:
        if not check(password):
            return PolicyResult(valid=False, message=message)
    return PolicyResult(valid=True)
