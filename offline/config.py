"""
Static configuration of an engine instance.

Configuration arrives as loosely-typed JSON (usually produced by the web front
end) and is normalized field by field when loaded. Invalid values never make it
into an `EngineConfig`: they are clamped into range or replaced by defaults.
"""

from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
import re
from typing import Any, Mapping, Optional, Tuple

from .model import AppliesTo, CacheRule, Strategy
from .util import (decode_base64url, dedupe, normalize_number, normalize_optional_string,
                   normalize_vibrate_pattern)


logger = logging.getLogger(__name__)


DEFAULT_RETRY_DELAYS_SECONDS = (30, 120, 600, 1800, 3600)


def _pick(source: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in source:
            return source[key]
    return default


def _section(source: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = source.get(key)
    return value if isinstance(value, Mapping) else {}


def normalize_strategy(value: Any, fallback: Strategy) -> Strategy:
    try:
        return Strategy(str(value or '').strip().lower())
    except ValueError:
        return fallback


def normalize_applies_to(value: Any) -> AppliesTo:
    normalized = str(value or '').strip().lower()
    if normalized == 'navigate':
        return AppliesTo.NAVIGATION
    try:
        return AppliesTo(normalized)
    except ValueError:
        return AppliesTo.ALL


def normalize_rules(rules: Any) -> Tuple[CacheRule, ...]:
    if not isinstance(rules, (list, tuple)):
        return ()

    normalized = []
    for rule in rules:
        if not isinstance(rule, Mapping):
            continue

        strategy = normalize_strategy(rule.get('strategy'), Strategy.NETWORK_FIRST)
        applies_to = normalize_applies_to(_pick(rule, 'appliesTo', 'applyTo', 'applies_to'))
        prefix = normalize_optional_string(rule.get('prefix'))
        expression = normalize_optional_string(rule.get('regex'))

        pattern = None
        if not prefix and expression:
            try:
                pattern = re.compile(expression)
            except re.error:
                logger.warning('Dropping cache rule with malformed regex: {}'.format(expression))
                continue

        if not prefix and pattern is None:
            logger.warning('Dropping cache rule without a prefix or regex: {}'.format(rule))
            continue

        normalized.append(CacheRule(strategy=strategy, applies_to=applies_to, prefix=prefix, pattern=pattern))
    return tuple(normalized)


def normalize_retry_delays(delays: Any) -> Tuple[int, ...]:
    if not isinstance(delays, (list, tuple)):
        return DEFAULT_RETRY_DELAYS_SECONDS

    normalized = []
    for item in delays:
        value = normalize_number(item, 0, 0, 10 ** 9)
        if value > 0:
            normalized.append(value)
    return tuple(normalized) or DEFAULT_RETRY_DELAYS_SECONDS


@dataclass(frozen=True)
class CacheConfig:
    page_strategy: Strategy = Strategy.NETWORK_FIRST
    api_strategy: Strategy = Strategy.NETWORK_FIRST
    asset_strategy: Strategy = Strategy.STALE_WHILE_REVALIDATE
    max_runtime_entries: int = 300
    max_runtime_age_seconds: int = 604800
    network_timeout_seconds: int = 10
    rules: Tuple[CacheRule, ...] = ()

    @classmethod
    def from_dict(cls, source: Mapping[str, Any]) -> 'CacheConfig':
        return cls(
            page_strategy=normalize_strategy(_pick(source, 'pageStrategy', 'page_strategy'),
                                             Strategy.NETWORK_FIRST),
            api_strategy=normalize_strategy(_pick(source, 'apiStrategy', 'api_strategy'),
                                            Strategy.NETWORK_FIRST),
            asset_strategy=normalize_strategy(_pick(source, 'assetStrategy', 'asset_strategy'),
                                              Strategy.STALE_WHILE_REVALIDATE),
            max_runtime_entries=normalize_number(
                _pick(source, 'maxRuntimeEntries', 'max_runtime_entries'), 300, 10, 5000),
            max_runtime_age_seconds=normalize_number(
                _pick(source, 'maxRuntimeAgeSeconds', 'max_runtime_age_seconds'), 604800, 0, 31536000),
            network_timeout_seconds=normalize_number(
                _pick(source, 'networkTimeoutSeconds', 'network_timeout_seconds'), 10, 1, 120),
            rules=normalize_rules(source.get('rules')),
        )


@dataclass(frozen=True)
class SyncConfig:
    enabled: bool = True
    max_queue_entries: int = 250
    max_body_bytes: int = 262144
    max_age_seconds: int = 86400
    max_attempts: int = 5
    retry_delays_seconds: Tuple[int, ...] = DEFAULT_RETRY_DELAYS_SECONDS

    @classmethod
    def from_dict(cls, source: Mapping[str, Any]) -> 'SyncConfig':
        return cls(
            enabled=source.get('enabled') is not False,
            max_queue_entries=normalize_number(
                _pick(source, 'maxQueueEntries', 'max_queue_entries'), 250, 10, 5000),
            max_body_bytes=normalize_number(
                _pick(source, 'maxBodyBytes', 'max_body_bytes'), 262144, 1024, 2097152),
            max_age_seconds=normalize_number(
                _pick(source, 'maxAgeSeconds', 'max_age_seconds'), 86400, 60, 604800),
            max_attempts=normalize_number(_pick(source, 'maxAttempts', 'max_attempts'), 5, 1, 20),
            retry_delays_seconds=normalize_retry_delays(
                _pick(source, 'retryDelaysSeconds', 'retry_delays_seconds')),
        )


@dataclass(frozen=True)
class PushConfig:
    default_title: str = 'Notification'
    icon: str = ''
    badge: str = ''
    image: str = ''
    require_interaction: Optional[bool] = None
    renotify: Optional[bool] = None
    silent: Optional[bool] = None
    vibrate: Optional[Tuple[int, ...]] = None

    @classmethod
    def from_dict(cls, source: Mapping[str, Any]) -> 'PushConfig':
        def tri_state(*keys):
            value = _pick(source, *keys)
            return value if isinstance(value, bool) else None

        vibrate = normalize_vibrate_pattern(source.get('vibrate'))
        return cls(
            default_title=normalize_optional_string(_pick(source, 'defaultTitle', 'default_title'))
            or 'Notification',
            icon=normalize_optional_string(source.get('icon')),
            badge=normalize_optional_string(source.get('badge')),
            image=normalize_optional_string(source.get('image')),
            require_interaction=tri_state('requireInteraction', 'require_interaction'),
            renotify=tri_state('renotify'),
            silent=tri_state('silent'),
            vibrate=tuple(vibrate) if vibrate else None,
        )


@dataclass(frozen=True)
class EngineConfig:
    scope: str = 'http://localhost/'
    """
    The base URL of the application. Its origin is the engine's own origin.
    """

    offline_fallback: str = '/offline.html'
    precache: Tuple[str, ...] = ('/', '/offline.html')
    data_directory: Path = Path('.offline')
    cache: CacheConfig = field(default_factory=CacheConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    push: PushConfig = field(default_factory=PushConfig)

    @classmethod
    def from_dict(cls, source: Optional[Mapping[str, Any]]) -> 'EngineConfig':
        source = source if isinstance(source, Mapping) else {}

        scope = normalize_optional_string(source.get('scope')) or cls.scope
        if not scope.endswith('/'):
            scope += '/'
        offline_fallback = (normalize_optional_string(_pick(source, 'offlineFallback', 'offline_fallback'))
                            or cls.offline_fallback)

        extra = source.get('precache')
        extra = [normalize_optional_string(item) for item in extra] if isinstance(extra, (list, tuple)) else []
        precache = tuple(dedupe(['/', offline_fallback] + [item for item in extra if item]))

        data_directory = _pick(source, 'dataDirectory', 'data_directory')
        data_directory = Path(data_directory) if isinstance(data_directory, (str, Path)) and data_directory \
            else cls.data_directory

        return cls(
            scope=scope,
            offline_fallback=offline_fallback,
            precache=precache,
            data_directory=data_directory,
            cache=CacheConfig.from_dict(_section(source, 'cache')),
            sync=SyncConfig.from_dict(_section(source, 'sync')),
            push=PushConfig.from_dict(_section(source, 'push')),
        )

    @classmethod
    def from_encoded(cls, encoded: Optional[str], **overrides: Any) -> 'EngineConfig':
        """
        Load configuration from base64url-encoded JSON.

        Anything that does not decode to a JSON object yields the defaults.
        Keyword overrides are applied on top of the decoded options.
        """
        decoded = decode_base64url(encoded or '')
        options = {}
        if decoded:
            try:
                parsed = json.loads(decoded)
                if isinstance(parsed, dict):
                    options = parsed
            except json.JSONDecodeError:
                logger.warning('Ignoring engine options that are not valid JSON.')
        options.update(overrides)
        return cls.from_dict(options)
