"""Boundary validation — everything that ends up in a bus subject or a file path.

Knight, domain and chain names are interpolated into subjects such as
fleet-a.tasks.<domain>.<knight>-ui-<ms>; only plain identifiers are allowed so a
request can never address another subject or wildcard.
"""
import re
from dataclasses import dataclass

IDENTIFIER_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9-]{0,62}$")
DATE_KEY_RE = re.compile(r"^[0-9]{4}-[0-9]{2}-[0-9]{2}$")
MAX_TASK_CHARS = 10000


class DispatchValidationError(ValueError):
    """Raised when a dispatch request must not reach the bus."""


@dataclass(frozen=True)
class DispatchRequest:
    knight: str
    domain: str
    task: str
    timeout_ms: int = 0


def is_identifier(value: str) -> bool:
    return isinstance(value, str) and IDENTIFIER_RE.fullmatch(value) is not None


def is_date_key(value: str) -> bool:
    return isinstance(value, str) and DATE_KEY_RE.fullmatch(value) is not None


def validate_dispatch(knight: str, domain: str, task: str, timeout_ms: int = 0) -> DispatchRequest:
    if not is_identifier(knight) or not is_identifier(domain):
        raise DispatchValidationError("Invalid knight or domain name")
    if not isinstance(task, str) or not 0 < len(task) <= MAX_TASK_CHARS:
        raise DispatchValidationError(f"Task must be 1-{MAX_TASK_CHARS} characters")
    if timeout_ms < 0:
        raise DispatchValidationError("timeout_ms must not be negative")
    return DispatchRequest(knight=knight, domain=domain, task=task, timeout_ms=timeout_ms)
