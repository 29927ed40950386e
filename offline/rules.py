import logging
from typing import Sequence
from urllib.parse import urlsplit

from .config import CacheConfig
from .model import CacheRule, Category, Request, Strategy


logger = logging.getLogger(__name__)


class CacheRuleEngine:
    """
    Decides which caching strategy applies to an intercepted request.

    Rules are evaluated in configured order and the first match wins. Without a
    match, the default strategy of the request's category applies.
    """

    def __init__(self, config: CacheConfig) -> None:
        self.__rules: Sequence[CacheRule] = tuple(config.rules)
        self.__defaults = {
            Category.NAVIGATION: config.page_strategy,
            Category.API: config.api_strategy,
            Category.ASSET: config.asset_strategy,
        }

    @staticmethod
    def classify(request: Request) -> Category:
        if is_navigation(request):
            return Category.NAVIGATION
        if urlsplit(request.uri).path.startswith('/api/'):
            return Category.API
        return Category.ASSET

    def resolve_strategy(self, request: Request, category: Category) -> Strategy:
        path = urlsplit(request.uri).path or '/'
        for rule in self.__rules:
            if rule.matches(path, category):
                logger.info('Cache rule {!r} matched {}; using {}.'.format(
                    rule.prefix or rule.pattern.pattern, path, rule.strategy.value))
                return rule.strategy

        strategy = self.__defaults[category]
        logger.info('No cache rule matched {}; using the {} default, {}.'.format(
            path, category.value, strategy.value))
        return strategy


def is_navigation(request: Request) -> bool:
    """
    Whether a request loads a page, as opposed to a subresource or API call.
    """
    if request.method.upper() != 'GET':
        return False
    if (request.header('Sec-Fetch-Mode') or '').lower() == 'navigate':
        return True
    accept = (request.header('Accept') or '').lower()
    return accept.split(',')[0].strip().startswith('text/html')
