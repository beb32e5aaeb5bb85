"""Keep Caddy's routing table in step with the site registry.

Every site owns exactly one route whose ``@id`` is derived from the site
name, so each change can be addressed and repeated safely. Two strategies
push routes to Caddy's admin API:

* :class:`IncrementalProxySync` touches one route at a time (upsert by id,
  delete by id with "already gone" treated as success);
* :class:`DeclarativeProxySync` rewrites the whole set of managed routes in a
  single call, leaving routes it does not manage untouched.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import bcrypt
import requests

from .errors import ProxySyncFailed
from .locks import KeyedLocks

logger = logging.getLogger("sitehost.proxy")

ROUTE_ID_PREFIX = "site-"
BCRYPT_ROUNDS = 10
BCRYPT_MAX_PASSWORD_BYTES = 72

_NOT_PENDING = object()


def route_id_for(name: str) -> str:
    return f"{ROUTE_ID_PREFIX}{name}"


def is_managed_route(route: Mapping[str, Any]) -> bool:
    route_id = route.get("@id") if isinstance(route, Mapping) else None
    return isinstance(route_id, str) and route_id.startswith(ROUTE_ID_PREFIX)


def hash_basic_auth_password(password: str) -> str:
    """Return a bcrypt hash that Caddy's ``http_basic`` provider can verify."""

    encoded = password.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_PASSWORD_BYTES:
        raise ValueError("password must be at most 72 bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("ascii")


@dataclass(frozen=True)
class BasicAuthHandler:
    username: str
    password_hash: str

    def to_caddy(self) -> Dict[str, Any]:
        return {
            "handler": "authentication",
            "providers": {
                "http_basic": {
                    "hash": {"algorithm": "bcrypt"},
                    "accounts": [
                        {"username": self.username, "password": self.password_hash}
                    ],
                }
            },
        }


@dataclass(frozen=True)
class FileServerHandler:
    root: str

    def to_caddy(self) -> Dict[str, Any]:
        return {"handler": "file_server", "root": self.root}


@dataclass(frozen=True)
class Route:
    """A host match plus its handler chain.

    The chain is always ``[auth?, file_server]``: authentication can only sit
    in front of the file server, never behind it.
    """

    route_id: str
    host: str
    file_server: FileServerHandler
    auth: Optional[BasicAuthHandler] = None

    @property
    def handlers(self) -> Tuple[Any, ...]:
        if self.auth is not None:
            return (self.auth, self.file_server)
        return (self.file_server,)

    def to_caddy(self) -> Dict[str, Any]:
        return {
            "@id": self.route_id,
            "match": [{"host": [self.host]}],
            "handle": [handler.to_caddy() for handler in self.handlers],
            "terminal": True,
        }


def _field(site: Mapping[str, Any], key: str) -> Any:
    # sqlite3.Row raises IndexError for unknown columns, dicts raise KeyError.
    try:
        return site[key]
    except (KeyError, IndexError):
        return None


def build_route(site: Mapping[str, Any], domain: str) -> Route:
    name = site["name"]
    auth = None
    auth_user = _field(site, "auth_user")
    auth_hash = _field(site, "auth_hash")
    if auth_user and auth_hash:
        auth = BasicAuthHandler(auth_user, auth_hash)
    return Route(
        route_id=route_id_for(name),
        host=f"{name}.{domain}",
        file_server=FileServerHandler(str(site["path"])),
        auth=auth,
    )


class ProxyControlError(Exception):
    """Caddy answered, but refused the change."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProxyUnreachableError(ProxyControlError):
    """Caddy's admin endpoint could not be reached in time."""


class CaddyAdminClient:
    """Thin wrapper over Caddy's ``/config`` and ``/id`` admin endpoints."""

    def __init__(
        self,
        base_url: str,
        server_name: str = "srv0",
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.server_name = server_name
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def routes_path(self) -> str:
        return f"/config/apps/http/servers/{self.server_name}/routes"

    def _request(self, method: str, path: str, payload: Any = None) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            return self.session.request(
                method,
                url,
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as error:
            raise ProxyUnreachableError(
                f"Caddy admin API unreachable: {error.__class__.__name__}"
            ) from error

    @staticmethod
    def _check(response: requests.Response, action: str) -> None:
        if 200 <= response.status_code < 300:
            return
        text = (response.text or "").strip()[:500]
        raise ProxyControlError(
            f"Caddy error during {action}: {text or response.status_code}",
            status_code=response.status_code,
        )

    def ping(self) -> bool:
        response = self._request("GET", "/config/")
        self._check(response, "ping")
        return True

    def _read_routes(self) -> Optional[List[Dict[str, Any]]]:
        response = self._request("GET", self.routes_path)
        if response.status_code == 404:
            return None
        self._check(response, "list routes")
        data = response.json() if response.content else None
        return data if isinstance(data, list) else None

    def list_routes(self) -> List[Dict[str, Any]]:
        return self._read_routes() or []

    def get_route(self, route_id: str) -> Optional[Dict[str, Any]]:
        response = self._request("GET", f"/id/{route_id}")
        if response.status_code == 404:
            return None
        self._check(response, f"get route {route_id}")
        return response.json()

    def upsert_route(self, route: Route) -> str:
        """Replace the route with the same id, or append it if absent."""

        payload = route.to_caddy()
        response = self._request("PATCH", f"/id/{route.route_id}", payload)
        if response.status_code != 404:
            self._check(response, f"update route {route.route_id}")
            return "updated"

        if self._read_routes() is None:
            response = self._request("PUT", self.routes_path, [payload])
        else:
            response = self._request("POST", self.routes_path, payload)
        self._check(response, f"add route {route.route_id}")
        return "created"

    def delete_route(self, route_id: str) -> bool:
        """Delete by id; returns ``False`` when the route was already gone."""

        response = self._request("DELETE", f"/id/{route_id}")
        if response.status_code == 404:
            return False
        self._check(response, f"delete route {route_id}")
        return True

    def replace_routes(self, routes: List[Dict[str, Any]]) -> None:
        method = "PUT" if self._read_routes() is None else "PATCH"
        response = self._request(method, self.routes_path, routes)
        self._check(response, "replace routes")


class SyncResult:
    def __init__(self, applied: bool, route_ids: Iterable[str], errors: Optional[List[str]] = None) -> None:
        self.applied = applied
        self.route_ids = sorted(route_ids)
        self.errors = list(errors or [])

    def to_payload(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "routes": self.route_ids,
            "errors": self.errors,
        }


class ProxySynchronizer:
    """Base for the sync strategies.

    Per-site operations expect the site's row to exist already. Updates and
    removals reach the proxy before their registry write commits, so each
    operation records what it pushed in ``_pending`` and full passes prefer
    that record over the registry snapshot until the two agree.
    """

    mode = ""

    def __init__(
        self,
        control: Any,
        domain: str,
        list_sites: Optional[Callable[[], List[Mapping[str, Any]]]] = None,
    ) -> None:
        self.control = control
        self.domain = domain
        self.list_sites = list_sites
        self._site_locks = KeyedLocks()
        # name -> site pushed to the proxy, or None for a removed site
        self._pending: Dict[str, Optional[Mapping[str, Any]]] = {}
        self._pending_lock = threading.Lock()

    def route_for(self, site: Mapping[str, Any]) -> Route:
        return build_route(site, self.domain)

    def _failure(self, action: str, name: str, error: Exception) -> ProxySyncFailed:
        logger.error(
            "proxy_sync_failed mode=%s action=%s site=%s error=%s",
            self.mode,
            action,
            name,
            error,
        )
        return ProxySyncFailed(f"Proxy update failed: {error}", errors=[str(error)])

    def _registry_sites(
        self, sites: Optional[Iterable[Mapping[str, Any]]] = None
    ) -> List[Mapping[str, Any]]:
        if sites is not None:
            return list(sites)
        if self.list_sites is None:
            raise RuntimeError(f"{self.mode} sync needs a list_sites callable")
        return list(self.list_sites())

    def _set_pending(self, name: str, site: Optional[Mapping[str, Any]]) -> None:
        with self._pending_lock:
            self._pending[name] = site

    def _drop_pending(self, name: str) -> None:
        with self._pending_lock:
            self._pending.pop(name, None)

    def _pending_state(self, name: str) -> Any:
        with self._pending_lock:
            return self._pending.get(name, _NOT_PENDING)

    def _desired_sites(self, sites: Iterable[Mapping[str, Any]]) -> Dict[str, Mapping[str, Any]]:
        desired = {site["name"]: site for site in sites}
        with self._pending_lock:
            for name, pending in list(self._pending.items()):
                registered = desired.get(name)
                if registered is None:
                    # Removal committed, or the row it was pushed for is gone.
                    del self._pending[name]
                elif pending is None:
                    del desired[name]
                elif self.route_for(registered) == self.route_for(pending):
                    del self._pending[name]
                else:
                    desired[name] = pending
        return desired

    def _is_registered(self, name: str) -> bool:
        pending = self._pending_state(name)
        if pending is not _NOT_PENDING:
            return pending is not None
        if self.list_sites is None:
            return False
        return any(site["name"] == name for site in self.list_sites())

    def add_site(self, site: Mapping[str, Any]) -> None:
        raise NotImplementedError

    def update_site(self, site: Mapping[str, Any]) -> None:
        raise NotImplementedError

    def remove_site(self, name: str) -> None:
        raise NotImplementedError

    def sync(self, sites: Optional[Iterable[Mapping[str, Any]]] = None) -> SyncResult:
        """Converge the proxy on ``sites``, or on the registry when omitted."""

        raise NotImplementedError

    def check(self) -> bool:
        try:
            return bool(self.control.ping())
        except ProxyControlError:
            return False


class IncrementalProxySync(ProxySynchronizer):
    mode = "incremental"

    def add_site(self, site: Mapping[str, Any]) -> None:
        route = self.route_for(site)
        with self._site_locks.hold(site["name"]):
            self._set_pending(site["name"], site)
            try:
                outcome = self.control.upsert_route(route)
            except ProxyControlError as error:
                self._drop_pending(site["name"])
                raise self._failure("add", site["name"], error) from error
        logger.info("proxy_route_applied site=%s route=%s outcome=%s", site["name"], route.route_id, outcome)

    def update_site(self, site: Mapping[str, Any]) -> None:
        self.add_site(site)

    def remove_site(self, name: str) -> None:
        route_id = route_id_for(name)
        with self._site_locks.hold(name):
            self._set_pending(name, None)
            try:
                removed = self.control.delete_route(route_id)
            except ProxyControlError as error:
                self._drop_pending(name)
                raise self._failure("remove", name, error) from error
        if removed:
            logger.info("proxy_route_removed site=%s route=%s", name, route_id)
        else:
            logger.info("proxy_route_already_absent site=%s route=%s", name, route_id)

    def sync(self, sites: Optional[Iterable[Mapping[str, Any]]] = None) -> SyncResult:
        desired = self._desired_sites(self._registry_sites(sites))
        route_ids = {route_id_for(name) for name in desired}
        errors: List[str] = []

        for name in sorted(desired):
            with self._site_locks.hold(name):
                # A per-site change may have landed since the snapshot.
                site = self._pending_state(name)
                if site is _NOT_PENDING:
                    site = desired[name]
                if site is None:
                    route_ids.discard(route_id_for(name))
                    continue
                try:
                    self.control.upsert_route(self.route_for(site))
                except ProxyControlError as error:
                    errors.append(f"{route_id_for(name)}: {error}")

        try:
            existing = self.control.list_routes()
        except ProxyControlError as error:
            errors.append(f"list routes: {error}")
            existing = []

        for route in existing:
            route_id = route.get("@id") if is_managed_route(route) else None
            if route_id is None or route_id in route_ids:
                continue
            name = route_id[len(ROUTE_ID_PREFIX):]
            with self._site_locks.hold(name):
                if self._is_registered(name):
                    logger.info("proxy_orphan_route_kept route=%s reason=registered_since_snapshot", route_id)
                    continue
                try:
                    self.control.delete_route(route_id)
                    logger.info("proxy_orphan_route_removed route=%s", route_id)
                except ProxyControlError as error:
                    errors.append(f"{route_id}: {error}")

        if errors:
            logger.error("proxy_sync_partial_failure mode=%s errors=%d", self.mode, len(errors))
        return SyncResult(not errors, route_ids, errors)


class DeclarativeProxySync(ProxySynchronizer):
    """Rewrite every managed route from one registry snapshot.

    The snapshot is read and applied under ``_apply_lock`` so that two writers
    never replace each other's routes with an older view of the registry.
    """

    mode = "declarative"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._apply_lock = threading.Lock()

    def _replace(self, sites: Iterable[Mapping[str, Any]]) -> SyncResult:
        desired = self._desired_sites(sites)
        routes = sorted((self.route_for(site) for site in desired.values()), key=lambda route: route.route_id)
        route_ids = [route.route_id for route in routes]
        try:
            current = self.control.list_routes()
            unmanaged = [route for route in current if not is_managed_route(route)]
            self.control.replace_routes(unmanaged + [route.to_caddy() for route in routes])
        except ProxyControlError as error:
            logger.error("proxy_sync_failed mode=%s error=%s", self.mode, error)
            return SyncResult(False, route_ids, [str(error)])
        logger.info("proxy_routes_replaced mode=%s routes=%d", self.mode, len(routes))
        return SyncResult(True, route_ids)

    def sync(self, sites: Optional[Iterable[Mapping[str, Any]]] = None) -> SyncResult:
        with self._apply_lock:
            return self._replace(self._registry_sites(sites))

    def _apply(self, action: str, name: str, site: Optional[Mapping[str, Any]]) -> None:
        with self._apply_lock:
            self._set_pending(name, site)
            result = self._replace(self._registry_sites())
            if not result.applied:
                self._drop_pending(name)
        if not result.applied:
            raise self._failure(action, name, ProxyControlError("; ".join(result.errors)))

    def add_site(self, site: Mapping[str, Any]) -> None:
        self._apply("add", site["name"], site)

    def update_site(self, site: Mapping[str, Any]) -> None:
        self.add_site(site)

    def remove_site(self, name: str) -> None:
        self._apply("remove", name, None)


SYNC_STRATEGIES = {
    IncrementalProxySync.mode: IncrementalProxySync,
    DeclarativeProxySync.mode: DeclarativeProxySync,
}


def build_proxy_synchronizer(
    mode: str,
    control: Any,
    domain: str,
    list_sites: Optional[Callable[[], List[Mapping[str, Any]]]] = None,
) -> ProxySynchronizer:
    strategy = SYNC_STRATEGIES.get((mode or "").strip().lower())
    if strategy is None:
        logger.warning("proxy_sync_mode_unknown mode=%s fallback=%s", mode, IncrementalProxySync.mode)
        strategy = IncrementalProxySync
    return strategy(control, domain, list_sites=list_sites)
