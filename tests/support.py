import copy
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from sitehost.proxy import ProxyControlError, ProxyUnreachableError, is_managed_route


class FakeProxyControl:
    """In-memory stand-in for :class:`sitehost.proxy.CaddyAdminClient`.

    ``fail`` maps a method name to the exception it raises while set;
    ``unreachable`` makes every call look like a timeout.
    """

    def __init__(self, routes: Optional[List[Dict[str, Any]]] = None) -> None:
        self.routes: List[Dict[str, Any]] = copy.deepcopy(routes or [])
        self.fail: Dict[str, Exception] = {}
        self.unreachable = False
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        if self.unreachable:
            raise ProxyUnreachableError("Caddy admin API unreachable: ConnectTimeout")
        error = self.fail.get(method)
        if error is not None:
            raise error

    def _index(self, route_id: str) -> Optional[int]:
        for index, route in enumerate(self.routes):
            if route.get("@id") == route_id:
                return index
        return None

    def ping(self) -> bool:
        self._enter("ping")
        return True

    def list_routes(self) -> List[Dict[str, Any]]:
        self._enter("list_routes")
        with self._lock:
            return copy.deepcopy(self.routes)

    def get_route(self, route_id: str) -> Optional[Dict[str, Any]]:
        self._enter("get_route")
        with self._lock:
            index = self._index(route_id)
            return copy.deepcopy(self.routes[index]) if index is not None else None

    def upsert_route(self, route) -> str:
        self._enter("upsert_route")
        payload = route.to_caddy()
        with self._lock:
            index = self._index(route.route_id)
            if index is None:
                self.routes.append(payload)
                return "created"
            self.routes[index] = payload
            return "updated"

    def delete_route(self, route_id: str) -> bool:
        self._enter("delete_route")
        with self._lock:
            index = self._index(route_id)
            if index is None:
                return False
            del self.routes[index]
            return True

    def replace_routes(self, routes: List[Dict[str, Any]]) -> None:
        self._enter("replace_routes")
        with self._lock:
            self.routes = copy.deepcopy(routes)

    def managed_ids(self) -> List[str]:
        return sorted(route["@id"] for route in self.routes if is_managed_route(route))

    def route(self, route_id: str) -> Optional[Dict[str, Any]]:
        index = self._index(route_id)
        return self.routes[index] if index is not None else None


def control_error(message: str = "injected failure", status_code: int = 500) -> ProxyControlError:
    return ProxyControlError(message, status_code=status_code)


class FakeRegistry:
    """Dict-backed registry with the subset of :mod:`sitehost.storage` the ledger uses."""

    def __init__(self) -> None:
        self.sites: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def add(self, name: str, quota_bytes: int, used_bytes: int = 0, path: str = "") -> Dict[str, Any]:
        site = {
            "id": len(self.sites) + 1,
            "name": name,
            "path": path,
            "auth_user": None,
            "auth_hash": None,
            "quota_bytes": quota_bytes,
            "used_bytes": used_bytes,
            "created_at": 0.0,
        }
        self.sites[name] = site
        return site

    def get_site(self, name: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            site = self.sites.get(name)
            return dict(site) if site is not None else None

    def adjust_used_bytes(self, name: str, delta: int) -> Optional[int]:
        with self._lock:
            site = self.sites.get(name)
            if site is None:
                return None
            site["used_bytes"] = max(0, site["used_bytes"] + int(delta))
            return site["used_bytes"]

    def set_used_bytes(self, name: str, used_bytes: int) -> None:
        with self._lock:
            if name in self.sites:
                self.sites[name]["used_bytes"] = max(0, int(used_bytes))

    def prune_empty_dirs(self, path, root) -> None:
        current, root = Path(path), Path(root)
        while current != root and root in current.parents:
            try:
                current.rmdir()
            except OSError:
                break
            current = current.parent
