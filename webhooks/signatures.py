import base64
import hashlib
import hmac
import logging
from typing import Any, Dict

logger = logging.getLogger(__name__)


def verify_bold_signature(raw_body: bytes, signature: str, secret: str, allow_unsigned: bool = False) -> bool:
    """
    Bold signs ``base64(raw body)`` with HMAC-SHA256 and sends the hex digest
    in ``x-bold-signature``.
    """
    if not secret:
        if allow_unsigned:
            logger.warning("BOLD_SECRET_KEY is not set; accepting unsigned Bold webhook")
        else:
            logger.error("BOLD_SECRET_KEY is not set; rejecting Bold webhook")
        return allow_unsigned

    if not signature:
        return False

    encoded = base64.b64encode(raw_body)
    expected = hmac.new(secret.encode("utf-8"), encoded, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


_MISSING = object()


def _resolve_path(data: Dict[str, Any], path: str) -> Any:
    value: Any = data
    for key in path.split("."):
        if not isinstance(value, dict) or key not in value:
            return _MISSING
        value = value[key]
    return value


def _checksum_value(value: Any) -> str:
    # Wompi computes checksums in JavaScript, so values stringify the way String() does
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def verify_wompi_checksum(payload: Dict[str, Any], secret: str, allow_unsigned: bool = False) -> bool:
    """
    Wompi puts the checksum in the body: SHA-256 of the values named in
    ``signature.properties`` (dotted paths into ``data``), then ``timestamp``,
    then the events secret.
    """
    if not secret:
        if allow_unsigned:
            logger.warning("WOMPI_EVENTS_SECRET is not set; accepting unsigned Wompi webhook")
        else:
            logger.error("WOMPI_EVENTS_SECRET is not set; rejecting Wompi webhook")
        return allow_unsigned

    signature = payload.get("signature") or {}
    checksum = signature.get("checksum")
    properties = signature.get("properties")
    if not checksum or not isinstance(properties, list):
        return False

    data = payload.get("data") or {}
    values = []
    for path in properties:
        value = _resolve_path(data, str(path))
        if value is not _MISSING:
            values.append(_checksum_value(value))

    concatenated = "".join(values) + str(payload.get("timestamp", "")) + secret
    expected = hashlib.sha256(concatenated.encode("utf-8")).hexdigest()
    return hmac.compare_digest(expected, str(checksum).lower())
