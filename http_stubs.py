from __future__ import annotations

import json
import threading
from typing import Dict, List, Optional, Tuple, Union

import requests


def make_response(
    url: str,
    body: Union[bytes, str] = b"",
    status: int = 200,
    content_type: str = "text/html; charset=utf-8",
) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.url = url
    response._content = body.encode("utf-8") if isinstance(body, str) else body
    response.encoding = "utf-8"
    response.headers["Content-Type"] = content_type
    return response


def json_response(url: str, payload: object, status: int = 200) -> requests.Response:
    return make_response(url, json.dumps(payload), status=status, content_type="application/json")


class StubSession:
    """Serves canned responses by URL; unknown URLs raise ConnectionError."""

    def __init__(self, routes: Optional[Dict[str, object]] = None) -> None:
        self.routes: Dict[str, object] = dict(routes or {})
        self.calls: List[Tuple[str, dict]] = []
        self._lock = threading.Lock()

    def get(self, url: str, **kwargs) -> requests.Response:
        with self._lock:
            self.calls.append((url, kwargs))
        target = self.routes.get(url)
        if target is None:
            raise requests.ConnectionError(f"No route for {url}")
        if isinstance(target, Exception):
            raise target
        return target

    def called_urls(self) -> List[str]:
        with self._lock:
            return [url for url, _ in self.calls]
