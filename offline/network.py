from io import BytesIO
import logging
from typing import Dict, Mapping, Optional

import requests

from .model import Request, Response
from .util import same_origin, without_headers


logger = logging.getLogger(__name__)


CREDENTIAL_HEADERS = ('Cookie', 'Authorization')


class NetworkError(Exception):
    """
    The origin could not be reached, or did not answer in time.
    """


class Network:
    """
    Talks to the origin on behalf of the engine.

    This deliberately uses its own plain `requests.Session`, so requests the
    engine makes are never intercepted by the engine itself.
    """

    def __init__(self, session: Optional[requests.Session] = None) -> None:
        self.__session = session if session is not None else requests.Session()

    def fetch(self, request: Request, timeout: Optional[float] = None) -> Response:
        prepared = requests.Request(method=request.method,
                                    url=request.uri,
                                    headers=dict(request.headers),
                                    data=request.body).prepare()
        try:
            logger.info('Sending {} {} to the network.'.format(request.method, request.uri))
            response = self.__session.send(prepared, timeout=timeout)
            content = response.content
        except requests.RequestException as e:
            logger.info('Network request for {} failed: {}'.format(request.uri, e))
            raise NetworkError(str(e)) from e

        return Response(status=response.status_code,
                        reason=response.reason or '',
                        headers=dict(response.headers),
                        body=BytesIO(content))

    def close(self) -> None:
        self.__session.close()


def apply_credentials(headers: Mapping[str, str], credentials: str, url: str, origin: str) -> Dict[str, str]:
    """
    Drop credential headers that the request's credentials mode does not allow.
    """
    if credentials == 'include':
        return dict(headers)
    if credentials == 'omit' or not same_origin(url, origin):
        return without_headers(dict(headers), CREDENTIAL_HEADERS)
    return dict(headers)
