from __future__ import annotations

import json
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen


class HttpJsonError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, timed_out: bool = False) -> None:
        self.status_code = status_code
        self.timed_out = timed_out
        super().__init__(message)


def api_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


def http_json(
    *,
    method: str,
    url: str,
    payload: dict[str, Any] | None = None,
    timeout_seconds: float = 15.0,
) -> Any:
    body_bytes = None
    headers = {"Accept": "application/json"}
    if payload is not None:
        body_bytes = json.dumps(payload, default=str).encode("utf-8")
        headers["Content-Type"] = "application/json"
    request = Request(url=url, method=method.upper(), data=body_bytes, headers=headers)
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            raw = response.read().decode("utf-8")
            return json.loads(raw) if raw.strip() else {}
    except HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise HttpJsonError(f"http_error:{exc.code}:{detail}", status_code=int(exc.code)) from exc
    except URLError as exc:
        timed_out = isinstance(exc.reason, TimeoutError)
        raise HttpJsonError(f"url_error:{exc.reason}", timed_out=timed_out) from exc
    except TimeoutError as exc:
        raise HttpJsonError("timeout", timed_out=True) from exc
    except json.JSONDecodeError as exc:
        raise HttpJsonError(f"invalid_json:{exc.msg}") from exc
