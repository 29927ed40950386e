"""
What the engine needs from the runtime harness that hosts it.

The harness delivers triggers to the engine and owns everything outside it:
the windows of the application, the platform's retry signal and activation.
"""

from abc import ABC, abstractmethod
import logging
from typing import Any, List, Mapping, Optional


logger = logging.getLogger(__name__)


class Client(ABC):
    """
    An open window of the application.
    """

    @property
    @abstractmethod
    def url(self) -> str:
        """
        The URL the window currently shows.
        """

    @abstractmethod
    def focus(self) -> 'Client':
        pass

    @abstractmethod
    def navigate(self, url: str) -> 'Client':
        """
        @throws Exception
          If the window refuses to navigate.
        """

    @abstractmethod
    def post_message(self, message_type: str, payload: Mapping[str, Any]) -> None:
        pass


class Platform(ABC):
    @abstractmethod
    def clients(self) -> List[Client]:
        """
        All open windows, including ones the engine does not control yet.
        """

    @abstractmethod
    def open_window(self, url: str) -> Optional[Client]:
        pass

    @abstractmethod
    def register_sync(self, tag: str) -> bool:
        """
        Ask the platform for a retry signal for `tag` once connectivity returns.

        @return
          Whether the platform accepted the registration.
        """

    @abstractmethod
    def skip_waiting(self) -> None:
        pass

    def broadcast(self, message_type: str, payload: Mapping[str, Any]) -> None:
        for client in self.clients():
            client.post_message(message_type, payload)


class DetachedPlatform(Platform):
    """
    A platform with no windows and no retry signal, such as a plain Python
    process using the adapter. Queued requests are flushed only on demand.
    """

    def clients(self) -> List[Client]:
        return []

    def open_window(self, url: str) -> Optional[Client]:
        logger.info('No windows can be opened. Ignoring {}.'.format(url))
        return None

    def register_sync(self, tag: str) -> bool:
        return False

    def skip_waiting(self) -> None:
        pass
