import logging
import requests
from django.conf import settings


logger = logging.getLogger(__name__)


class BackendError(Exception):
    def __init__(self, message, status_code=None, detail=None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class BackendAuthError(BackendError):
    pass


def _url(path):
    return (
        f"{settings.BACKEND_API_URL.rstrip('/')}/"
        f"{path.lstrip('/')}"
    )


def _headers(token=None):
    h = {
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    if token:
        h["Authorization"] = f"Bearer {token}"
    return h


def _error_message(response):
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(data, dict):
        for key in ("message", "detail", "error"):
            if data.get(key):
                return str(data[key])
    return f"HTTP {response.status_code}"


def _send(method, path, token=None, params=None, payload=None):
    url = _url(path)
    try:
        r = requests.request(
            method,
            url,
            headers=_headers(token),
            params=params,
            json=payload,
            timeout=settings.BACKEND_API_TIMEOUT,
        )
    except requests.RequestException as e:
        logger.error("Backend %s %s failed: %s", method, url, str(e))
        raise BackendError("The school server could not be reached") from e
    if r.status_code == 401:
        logger.info("Backend %s %s returned 401", method, url)
        raise BackendAuthError("Unauthorized", status_code=401)
    if not r.ok:
        body = r.text or ""
        logger.error(
            "Backend %s %s failed: %s %s", method, url, r.status_code, body[:500]
        )
        raise BackendError(_error_message(r), status_code=r.status_code, detail=body[:500])
    if not r.content:
        return None
    try:
        return r.json()
    except ValueError as e:
        logger.error("Backend %s %s returned invalid JSON", method, url)
        raise BackendError("The school server returned an invalid response") from e


def api_get(path, token=None, params=None):
    return _send("GET", path, token=token, params=params)


def api_post(path, payload: dict, token=None):
    return _send("POST", path, token=token, payload=payload)
