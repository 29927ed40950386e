from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict
from requests.utils import get_encoding_from_headers

from .config import EngineConfig
from .engine import OfflineEngine
from .model import Request, Response
from .network import NetworkError
from .platform import Platform


def _body_bytes(body) -> Optional[bytes]:
    if body is None:
        return None
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode('utf-8')
    if hasattr(body, 'read'):
        data = body.read()
        return data.encode('utf-8') if isinstance(data, str) else data
    # Chunked bodies arrive as an iterable of chunks.
    return b''.join(chunk.encode('utf-8') if isinstance(chunk, str) else chunk for chunk in body)


class OfflineHTTPAdapter(HTTPAdapter):
    """
    Routes every request sent through a session to an `OfflineEngine`.

    Mount it on the prefixes the application talks to:

        session.mount('https://app.example.com/', OfflineHTTPAdapter(engine))
    """

    def __init__(self, engine: OfflineEngine, *args, **kw) -> None:
        super().__init__(*args, **kw)
        self.engine = engine

    def send(self, requests_request: requests.PreparedRequest, stream=False, timeout=None, verify=True, cert=None,
             proxies=None) -> requests.Response:
        """
        Send a request through the engine, which decides whether it is answered
        from the cache, the network, or the mutation queue.
        """
        request = Request(method=requests_request.method,
                          uri=requests_request.url,
                          headers=dict(requests_request.headers),
                          body=_body_bytes(requests_request.body))

        try:
            response = self.engine.handle_fetch(request, timeout=timeout)
        except NetworkError as e:
            raise requests.ConnectionError(str(e), request=requests_request) from e

        return self.build_offline_response(requests_request, response)

    def build_offline_response(self, requests_request: requests.PreparedRequest, response: Response) -> requests.Response:
        result = requests.Response()
        result.status_code = response.status
        result.reason = response.reason
        result.headers = CaseInsensitiveDict(response.headers)
        result.encoding = get_encoding_from_headers(result.headers)
        result.raw = response.body
        result.url = requests_request.url
        result.request = requests_request
        result.connection = self
        return result

    def close(self):
        self.engine.close()
        super().close()


def create(config: EngineConfig, platform: Optional[Platform] = None) -> OfflineHTTPAdapter:
    engine = OfflineEngine(config, platform=platform)
    engine.activate()
    return OfflineHTTPAdapter(engine)
