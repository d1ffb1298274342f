"""
Control Surface

Handles ``cmd:<Cmd>;serviceGuid:<id>;instanceNum:<n>`` requests against a registry.
"""

from __future__ import annotations

import logging

from recog_eval.domain.constants import DEFAULT_MAX_CONCURRENCY
from recog_eval.use_cases.registry import EvaluationRegistry

logger = logging.getLogger(__name__)

INVALID_REQUEST = "Invalid request."


class InvalidRequestError(ValueError):
    """Raised when a control request cannot be parsed"""
    pass


def parse_request(request: str | bytes) -> dict[str, str]:
    """
    Parse a control request into a dict with lower-cased keys

    Raises:
        InvalidRequestError: If the request is not a list of key:value pairs
    """
    if isinstance(request, bytes):
        try:
            request = request.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidRequestError(f"Request is not UTF-8: {e}") from e

    entries: dict[str, str] = {}
    for part in request.split(";"):
        if not part.strip():
            continue
        key, sep, value = part.partition(":")
        key = key.strip().lower()
        if not sep or not key:
            raise InvalidRequestError(f"Malformed request field: {part!r}")
        if key in entries:
            raise InvalidRequestError(f"Duplicate request field: {key}")
        entries[key] = value.strip()

    if not entries.get("cmd"):
        raise InvalidRequestError("Request field 'cmd' is missing")
    return entries


def build_request(cmd: str, service_id: str, instance_num: int = 0) -> str:
    """Format a control request"""
    return f"cmd:{cmd};serviceGuid:{service_id};instanceNum:{instance_num}"


def handle_request(
    registry: EvaluationRegistry,
    request: str | bytes,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
) -> str:
    """
    Execute a control request and return the reply text

    Args:
        registry: Registry of running evaluations
        request: Raw request
        max_concurrency: Upper bound applied to instanceNum

    Returns:
        str: Reply text
    """
    try:
        entries = parse_request(request)
        cmd = entries["cmd"].lower()
        service_id = entries.get("serviceguid", "")
        if not service_id and cmd != "list":
            raise InvalidRequestError("Request field 'serviceGuid' is missing")
        concurrency = 1
        if cmd in ("start", "resume"):
            concurrency = int(entries.get("instancenum", "1"))
    except (InvalidRequestError, ValueError) as e:
        logger.warning("Rejected control request: %s", e)
        return INVALID_REQUEST

    if cmd in ("start", "resume"):
        concurrency = max(1, min(concurrency, max_concurrency))
        started, _ = registry.start(service_id, concurrency, resume=(cmd == "resume"))
        if started:
            reply = f"Evaluation started for service: {service_id}."
        else:
            reply = f"Evaluation is already running for service: {service_id}."
    elif cmd == "cancel":
        if registry.cancel(service_id):
            reply = "Evaluation is being cancelled."
        else:
            reply = "Evaluation is not running."
    elif cmd == "check":
        snapshot = registry.check(service_id)
        if snapshot is not None:
            reply = snapshot.describe()
        else:
            reply = f"Evaluation for service {service_id} is not found"
    elif cmd == "list":
        snapshots = registry.list()
        if snapshots:
            reply = "\n".join(s.describe() for s in snapshots)
        else:
            reply = "No evaluation is running."
    else:
        reply = f"Request is not supported: {entries['cmd']}"

    logger.info(reply)
    return reply
