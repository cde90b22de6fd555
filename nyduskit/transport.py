"""Authenticated access to registry blobs, with a cache of sessions."""

from __future__ import annotations

import ipaddress
import logging
import re
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urlsplit

import requests

log = logging.getLogger(__name__)

HTTP_CLIENT_TIMEOUT = 60.0
AUTH_TIMEOUT = 10.0
DEFAULT_POOL_SIZE = 3000

Keychain = Callable[[str], Optional[tuple[str, str]]]

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


@dataclass(frozen=True)
class RepositoryRef:
    """A tagged repository in a registry."""

    registry: str
    repository: str
    tag: str = "latest"
    insecure: bool = False

    def name(self) -> str:
        """Return registry/repository:tag."""
        return f"{self.registry}/{self.repository}:{self.tag}"

    def scheme(self) -> str:
        """Return http for insecure or loopback registries, https otherwise."""
        if self.insecure:
            return "http"
        if self.registry == "localhost" or self.registry.startswith("localhost:"):
            return "http"
        host = urlsplit(f"//{self.registry}").hostname or ""
        try:
            if ipaddress.ip_address(host).is_loopback:
                return "http"
        except ValueError:
            pass
        return "https"


def _parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    scheme, _, rest = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM_RE.findall(rest))


def authn_transport(ref: RepositoryRef, keychain: Optional[Keychain] = None) -> requests.Session:
    """Return a session authorized to pull from the repository.

    keychain maps a registry host to (username, password), or None for
    anonymous access. Raises requests.HTTPError when the registry refuses.
    """
    credentials = keychain(ref.registry) if keychain is not None else None
    session = requests.Session()
    ping_url = f"{ref.scheme()}://{ref.registry}/v2/"
    try:
        with session.get(ping_url, timeout=AUTH_TIMEOUT) as res:
            status = res.status_code
            challenge = res.headers.get("WWW-Authenticate", "")
        if status == 200:
            return session
        if status != 401:
            raise requests.HTTPError(f"unexpected status code {status} from {ping_url}")

        scheme, params = _parse_challenge(challenge)
        if scheme == "basic":
            if credentials is not None:
                session.auth = credentials
            return session
        if scheme != "bearer":
            raise requests.HTTPError(f"unsupported challenge {challenge!r} from {ping_url}")

        realm = params.get("realm")
        if not realm:
            raise requests.HTTPError(f"missing realm in challenge from {ping_url}")
        query = {"scope": f"repository:{ref.repository}:pull"}
        if params.get("service"):
            query["service"] = params["service"]
        with requests.get(realm, params=query, auth=credentials, timeout=AUTH_TIMEOUT) as res:
            if res.status_code != 200:
                raise requests.HTTPError(
                    f"token request to {realm} failed with code {res.status_code}", response=res
                )
            payload = res.json()
        token = payload.get("token") or payload.get("access_token")
        if not token:
            raise requests.HTTPError(f"no token in response from {realm}")
        session.headers["Authorization"] = f"Bearer {token}"
        return session
    except requests.Timeout as err:
        session.close()
        raise TimeoutError("authentication timeout") from err
    except Exception:
        session.close()
        raise


def redirect(endpoint_url: str, session: requests.Session) -> str:
    """Return where the blob can be downloaded from.

    Raises requests.HTTPError when the registry answers neither 2xx nor a
    3xx with a Location.
    """
    res = session.get(
        endpoint_url,
        headers={"Range": "bytes=0-0"},
        timeout=HTTP_CLIENT_TIMEOUT,
        allow_redirects=False,
        stream=True,
    )
    try:
        if res.status_code // 100 == 2:
            return endpoint_url
        location = res.headers.get("Location", "")
        if location and res.status_code // 100 == 3:
            return location
        body = res.content.decode("utf-8", errors="replace")
        raise requests.HTTPError(
            f"failed to access to {endpoint_url!r} with code {res.status_code}, body: {body}",
            response=res,
        )
    finally:
        res.close()


class Pool:
    """Caches authorized sessions per reference, least recently used first out."""

    def __init__(self, size: int = DEFAULT_POOL_SIZE):
        self.size = size
        self._lock = threading.Lock()
        self._sessions: "OrderedDict[str, requests.Session]" = OrderedDict()

    def resolve(
        self, ref: RepositoryRef, digest: str, keychain: Optional[Keychain] = None
    ) -> tuple[str, requests.Session]:
        """Return the download URL of a blob and the session to fetch it with."""
        with self._lock:
            endpoint = f"{ref.scheme()}://{ref.registry}/v2/{ref.repository}/blobs/{digest}"
            key = ref.name()
            cached = self._sessions.get(key)
            if cached is not None:
                self._sessions.move_to_end(key)
                try:
                    return redirect(endpoint, cached), cached
                except requests.RequestException as err:
                    del self._sessions[key]
                    log.warning("redirect %s, failed, err: %s", endpoint, err)

            session = authn_transport(ref, keychain)
            url = redirect(endpoint, session)
            self._sessions[key] = session
            if self.size > 0:
                while len(self._sessions) > self.size:
                    self._sessions.popitem(last=False)
            return url, session