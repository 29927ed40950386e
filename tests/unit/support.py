from concurrent.futures import Executor, Future
from io import BytesIO
from typing import Mapping, Optional

from offline.model import Request, Response


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InlineExecutor(Executor):
    """Runs submitted work immediately, so background refreshes are deterministic."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as e:
            future.set_exception(e)
        return future


def get(uri: str, headers: Optional[Mapping[str, str]] = None) -> Request:
    return Request(method='GET', uri=uri, headers=dict(headers or {}))


def response(status: int = 200, body: bytes = b'', headers: Optional[Mapping[str, str]] = None,
             reason: str = 'OK') -> Response:
    return Response(status=status, reason=reason, headers=dict(headers or {}), body=BytesIO(body))
