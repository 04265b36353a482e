import json
import logging
from typing import Any, Callable, Dict, Iterable, Optional

from common.config import RATE_LIMIT_ERROR_CODES, RATE_LIMIT_PATTERNS
from common.models import DispatchResult

logger = logging.getLogger("Dispatch")

# invoke(domain, service, data) -> {"success": bool, "data"?, "error"?, "error_code"?}
InvokeFn = Callable[[str, str, Dict[str, Any]], Any]


def _code(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _message_from_json(text: str):
    """AC Infinity errors often arrive as a JSON document inside `message`."""
    stripped = text.strip()
    if not stripped.startswith(("{", "[")):
        return text, None
    try:
        parsed = json.loads(stripped)
    except ValueError:
        return text, None
    if isinstance(parsed, dict):
        return parsed.get("msg") or text, parsed.get("code")
    return text, None


def normalize_result(raw: Any) -> DispatchResult:
    """
    Collapse any provider result into a DispatchResult.

    Handles {"success": True, "data": ...}, {"success": False, "error": "..."},
    nested {"error": {"msg", "code"}}, {"errorObject": {...}}, JSON strings in
    "message", and messages under data.message / data.msg.
    """
    if raw is None:
        return DispatchResult(success=False, error="No result returned from service call")
    if not isinstance(raw, dict):
        return DispatchResult(success=False, error=f"Unexpected service result: {raw!r}")

    if raw.get("success") is True:
        return DispatchResult(success=True, data=raw.get("data"))

    error = raw.get("error")
    error_obj = raw.get("errorObject") or raw.get("error_object")
    if isinstance(error, dict):
        error_obj, error = error, None
    if not isinstance(error_obj, dict):
        error_obj = raw

    code = raw.get("error_code") or raw.get("errorCode") or error_obj.get("code")
    message = error if isinstance(error, str) and error else None

    if message is None:
        data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
        if error_obj.get("msg"):
            message = str(error_obj["msg"])
        elif error_obj.get("message"):
            message, nested_code = _message_from_json(str(error_obj["message"]))
            code = code or nested_code
        elif data.get("message"):
            message, nested_code = _message_from_json(str(data["message"]))
            code = code or nested_code
        elif data.get("msg"):
            message = str(data["msg"])

    if message is None and error_obj is not raw:
        message = json.dumps(error_obj, default=str)
    if message is None:
        message = "Unknown error"

    return DispatchResult(success=False, data=raw.get("data"), error=message, error_code=_code(code))


def is_rate_limited(
    result: DispatchResult,
    error_codes: Iterable[str] = RATE_LIMIT_ERROR_CODES,
    patterns: Iterable[str] = RATE_LIMIT_PATTERNS,
) -> bool:
    """Vendor rate-limit signature: code 100001 or its known message forms."""
    if result.success:
        return False
    codes = {str(c) for c in error_codes}
    if result.error_code in codes:
        return True
    message = result.error or ""
    if "code" in message and any(c in message for c in codes):
        return True
    return any(p in message for p in patterns)


def dispatch(invoke: InvokeFn, domain: str, service: str, data: Dict[str, Any]) -> DispatchResult:
    """Call the injected actuator function once; never raises."""
    logger.info(f"Calling {domain}.{service}: {json.dumps(data, default=str)}")
    try:
        raw = invoke(domain, service, data)
    except Exception as e:
        logger.error(f"Service call {domain}.{service} raised: {e}")
        return DispatchResult(success=False, error=str(e) or e.__class__.__name__,
                              error_code=_code(getattr(e, "code", None)))

    result = normalize_result(raw)
    if not result.success:
        logger.error(f"Service call {domain}.{service} failed: {result.error} (code: {result.error_code})")
    return result
