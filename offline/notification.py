import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Union
from urllib.parse import urljoin

from .config import PushConfig
from .model import NotificationAction, NotificationSpec
from .platform import Client, Platform
from .util import (normalize_boolean, normalize_optional_string, normalize_vibrate_pattern, origin_of,
                   same_origin)


logger = logging.getLogger(__name__)


RawPayload = Union[None, bytes, str, Mapping[str, Any]]


def parse_payload(raw: RawPayload) -> Dict[str, Any]:
    """
    Turn the data of a push event into a dict of fields.

    JSON objects are used as is, other JSON values and plain text become the
    body, and anything unreadable yields an empty payload.
    """
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, bytes):
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError:
            logger.warning('Push payload is not UTF-8. Ignoring it.')
            return {}
    if not isinstance(raw, str) or not raw:
        return {}

    try:
        payload = json.loads(raw)
    except ValueError:
        return {'body': raw}
    if isinstance(payload, dict):
        return payload
    return {'body': '' if payload is None else str(payload)}


class NotificationRouter:
    def __init__(self, config: PushConfig, scope: str) -> None:
        self.__config = config
        self.__scope = scope
        self.__origin = origin_of(scope)

    def build_display_spec(self, raw: RawPayload) -> NotificationSpec:
        source = parse_payload(raw)
        config = self.__config

        data = source.get('data')
        data = dict(data) if isinstance(data, Mapping) else {}
        target = self.normalize_target(source.get('url') or source.get('click_action') or data.get('url'))
        if target:
            data['url'] = target
        elif 'url' in data:
            logger.info('Discarding notification target outside of {}.'.format(self.__origin))
            del data['url']

        vibrate = normalize_vibrate_pattern(source.get('vibrate')) or (list(config.vibrate) if config.vibrate
                                                                        else None)
        return NotificationSpec(
            title=normalize_optional_string(source.get('title')) or config.default_title,
            body=normalize_optional_string(source.get('body')),
            icon=self.resolve_asset(source.get('icon')) or self.resolve_asset(config.icon),
            badge=self.resolve_asset(source.get('badge')) or self.resolve_asset(config.badge),
            image=self.resolve_asset(source.get('image')) or self.resolve_asset(config.image),
            tag=normalize_optional_string(source.get('tag')) or None,
            require_interaction=normalize_boolean(source.get('requireInteraction'), config.require_interaction),
            renotify=normalize_boolean(source.get('renotify'), config.renotify),
            silent=normalize_boolean(source.get('silent'), config.silent),
            vibrate=vibrate,
            actions=self._actions(source.get('actions')),
            data=data,
        )

    def resolve_click_target(self, notification: Union[NotificationSpec, Mapping[str, Any], None]) -> Optional[str]:
        if notification is None:
            return None
        data = notification.get('data') if isinstance(notification, Mapping) else notification.data
        if not isinstance(data, Mapping):
            return None
        return self.normalize_target(data.get('url'))

    def handle_click(self, notification, platform: Platform) -> Optional[Client]:
        """
        Bring the notification's target into view.

        A window already showing the target is focused. Otherwise the first
        window willing to navigate there is reused, and failing that a new
        window is opened. Without a target, the first open window is focused.
        """
        target = self.resolve_click_target(notification)
        clients = platform.clients()

        if target is None:
            return clients[0].focus() if clients else None

        for client in clients:
            if client.url == target:
                logger.info('Focusing the window already showing {}.'.format(target))
                return client.focus()

        for client in clients:
            try:
                client.navigate(target)
            except Exception:
                logger.info('A window refused to navigate to {}. Trying the next one.'.format(target))
                continue
            return client.focus()

        logger.info('Opening a new window for {}.'.format(target))
        return platform.open_window(target)

    def normalize_target(self, value: Any) -> Optional[str]:
        value = normalize_optional_string(value)
        if not value:
            return None
        url = urljoin(self.__origin + '/', value)
        if not same_origin(url, self.__origin):
            return None
        return url

    def resolve_asset(self, value: Any) -> Optional[str]:
        value = normalize_optional_string(value)
        if not value:
            return None
        return urljoin(self.__scope, value)

    def _actions(self, actions: Any) -> List[NotificationAction]:
        if not isinstance(actions, (list, tuple)):
            return []

        result = []
        for item in actions:
            if not isinstance(item, Mapping):
                continue
            action = normalize_optional_string(item.get('action'))
            title = normalize_optional_string(item.get('title'))
            if not action or not title:
                continue
            result.append(NotificationAction(action=action, title=title, icon=self.resolve_asset(item.get('icon'))))
        return result
