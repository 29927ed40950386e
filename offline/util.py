import base64
import binascii
import hashlib
import json
import math
from typing import Any, Iterable, List, Optional, Sequence, TypeVar
from urllib.parse import urlsplit


T = TypeVar('T')


def clamp(value, min, max):
    return sorted((min, value, max))[1]


def normalize_number(value: Any, fallback: int, min: int, max: int) -> int:
    """
    Coerce `value` to an integer between `min` and `max`.

    Booleans, non-numeric strings, NaN and infinities are not numbers here and
    produce `fallback`.
    """
    if isinstance(value, bool):
        return fallback
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(parsed):
        return fallback
    return clamp(int(round(parsed)), min, max)


def normalize_optional_string(value: Any) -> str:
    if not isinstance(value, str):
        return ''
    return value.strip()


def normalize_boolean(value: Any, fallback: Optional[bool] = None) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(fallback, bool):
        return fallback
    return None


def normalize_vibrate_pattern(value: Any) -> Optional[List[int]]:
    if not isinstance(value, (list, tuple)):
        return None

    pattern = []
    for item in value:
        if isinstance(item, bool):
            continue
        try:
            number = float(item)
        except (TypeError, ValueError):
            continue
        if math.isfinite(number) and number >= 0:
            pattern.append(int(round(number)))
    return pattern or None


def dedupe(items: Iterable[T]) -> List[T]:
    return list(dict.fromkeys(items))


def fingerprint(method: str, url: str, body: Optional[bytes]) -> str:
    """
    Deterministic hash of a mutating request, used to recognise resubmissions.
    """
    digest = hashlib.sha256()
    digest.update(method.upper().encode('utf-8'))
    digest.update(b'|')
    digest.update(url.encode('utf-8'))
    digest.update(b'|')
    digest.update(body or b'')
    return digest.hexdigest()[:32]


def decode_base64url(value: str) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None

    padding = '=' * (-len(value) % 4)
    try:
        return base64.b64decode(value + padding, altchars=b'-_', validate=True).decode('utf-8')
    except (binascii.Error, ValueError):
        return None


def encode_body(body: Any, headers: dict) -> Optional[bytes]:
    """
    Turn a caller-supplied body into bytes.

    Structured bodies are sent as JSON, and a JSON content type is added to
    `headers` when the caller did not pick one.
    """
    if body is None:
        return None
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode('utf-8')
    if isinstance(body, (dict, list)):
        if not any(key.lower() == 'content-type' for key in headers):
            headers['Content-Type'] = 'application/json'
        return json.dumps(body).encode('utf-8')
    return str(body).encode('utf-8')


_DEFAULT_PORTS = {'http': 80, 'https': 443}


def origin_of(url: str) -> str:
    """
    The scheme, host and port of `url`. Default ports are left out.
    """
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    try:
        port = parts.port
    except ValueError:
        return '{}://{}'.format(scheme, parts.netloc).lower()

    host = (parts.hostname or '').lower()
    if ':' in host:
        host = '[{}]'.format(host)
    if port is None or port == _DEFAULT_PORTS.get(scheme):
        return '{}://{}'.format(scheme, host)
    return '{}://{}:{}'.format(scheme, host, port)


def same_origin(url: str, origin: str) -> bool:
    return origin_of(url) == origin_of(origin)


def header_present(headers: dict, name: str) -> bool:
    lowered = name.lower()
    return any(key.lower() == lowered for key in headers)


def without_headers(headers: dict, names: Sequence[str]) -> dict:
    lowered = {name.lower() for name in names}
    return {key: value for key, value in headers.items() if key.lower() not in lowered}
