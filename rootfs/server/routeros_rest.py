import base64
import json
import logging
import ssl
import urllib.error
import urllib.parse
import urllib.request

from errors import MalformedRouterResponse, RouterRejected, RouterUnreachable

_log = logging.getLogger("mikroguard.router")

REST_PREFIX = "/rest"


def _error_text(raw):
    try:
        parsed = json.loads(raw)
    except ValueError:
        return raw[:200]
    if not isinstance(parsed, dict):
        return raw[:200]
    detail = parsed.get("detail")
    message = parsed.get("message") or parsed.get("error")
    if detail and message:
        return f"{message}: {detail}"
    return str(detail or message or raw[:200])


class RouterRestClient:
    """Thin client for the RouterOS v7 REST API.

    Every call is a single blocking request. Failures are not retried: a
    network problem raises :class:`RouterUnreachable`, a non-2xx answer
    raises :class:`RouterRejected` with the router's own error text.
    """

    def __init__(self, host, port=None, username="admin", password="",
                 use_tls=False, verify_tls=True, timeout=10):
        scheme = "https" if use_tls else "http"
        port = port or (443 if use_tls else 80)
        self.base_url = f"{scheme}://{host}:{port}{REST_PREFIX}"
        self.timeout = timeout
        token = base64.b64encode(f"{username}:{password}".encode()).decode()
        self._auth = f"Basic {token}"
        self._ctx = None
        if use_tls:
            self._ctx = ssl.create_default_context()
            if not verify_tls:
                self._ctx.check_hostname = False
                self._ctx.verify_mode = ssl.CERT_NONE

    def _url(self, path):
        return self.base_url + "/" + urllib.parse.quote(path.lstrip("/"), safe="/*.")

    def _request(self, method, path, body=None):
        url = self._url(path)
        data = json.dumps(body).encode() if body is not None else None
        headers = {"Authorization": self._auth, "Accept": "application/json"}
        if data is not None:
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(url, data=data, method=method, headers=headers)
        _log.debug("%s %s", method, path)
        try:
            resp = urllib.request.urlopen(req, context=self._ctx, timeout=self.timeout)
            raw = resp.read()
        except urllib.error.HTTPError as e:
            text = _error_text(e.read().decode(errors="replace"))
            _log.warning("router %s %s HTTP %s: %s", method, path, e.code, text)
            raise RouterRejected(f"Router {method} {path} HTTP {e.code}: {text}",
                                 status=e.code, detail=text)
        except (urllib.error.URLError, OSError) as e:
            _log.warning("router %s %s unreachable: %s", method, path, e)
            raise RouterUnreachable(f"Router {method} {path} network error: {e}")
        if not raw or not raw.strip():
            return None
        try:
            return json.loads(raw)
        except ValueError:
            raise MalformedRouterResponse(f"Router {method} {path} returned non-JSON body")

    def get(self, path):
        return self._request("GET", path)

    def put(self, path, body):
        return self._request("PUT", path, body)

    def patch(self, path, body):
        return self._request("PATCH", path, body)

    def delete(self, path):
        return self._request("DELETE", path)
