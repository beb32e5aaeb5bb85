"""Per-site storage accounting.

The ledger keeps ``used_bytes`` in the site registry in step with what is on
disk. Uploads follow a reserve/commit protocol: :meth:`QuotaLedger.reserve`
checks the quota and holds the requested bytes as *pending* under the site's
lock, the caller writes the file, and :meth:`QuotaLedger.commit` moves the
bytes into ``used_bytes``. A failed write calls :meth:`QuotaLedger.cancel`
instead, so the registry never sees bytes that did not reach the disk.
Pending bytes count against the quota, which is what stops two concurrent
uploads from both fitting into the same free space.
"""

import logging
from typing import Any, Dict, Optional

from .locks import KeyedLocks

logger = logging.getLogger("sitehost.quota")


class UnknownSiteError(LookupError):
    """Raised when the registry has no row for the requested site."""


class Reservation:
    """Outcome of :meth:`QuotaLedger.reserve`.

    ``granted`` is false when the upload does not fit; ``used_bytes`` and
    ``quota_bytes`` then describe the site at the moment of the decision.
    """

    def __init__(
        self,
        site: str,
        requested_bytes: int,
        replaced_bytes: int,
        granted: bool,
        used_bytes: int,
        quota_bytes: int,
    ) -> None:
        self.site = site
        self.requested_bytes = int(requested_bytes)
        self.replaced_bytes = int(replaced_bytes)
        self.granted = granted
        self.used_bytes = int(used_bytes)
        self.quota_bytes = int(quota_bytes)
        self.settled = not granted

    @property
    def delta(self) -> int:
        """Net change to ``used_bytes``; overwrites only pay for the growth."""
        return self.requested_bytes - self.replaced_bytes

    @property
    def held_bytes(self) -> int:
        return max(self.delta, 0) if self.granted else 0

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return (
            f"Reservation(site={self.site!r}, requested={self.requested_bytes}, "
            f"replaced={self.replaced_bytes}, granted={self.granted})"
        )


class QuotaLedger:
    """Serialize quota decisions per site on top of a site registry.

    *registry* is anything exposing ``get_site(name)`` (a mapping with
    ``quota_bytes`` and ``used_bytes``), ``adjust_used_bytes(name, delta)``
    and ``set_used_bytes(name, value)``; in the service it is
    :mod:`sitehost.storage`.
    """

    def __init__(self, registry: Any) -> None:
        self._registry = registry
        self._locks = KeyedLocks()
        self._pending: Dict[str, int] = {}

    def _load(self, site: str):
        record = self._registry.get_site(site)
        if record is None:
            raise UnknownSiteError(site)
        return int(record["used_bytes"] or 0), int(record["quota_bytes"] or 0)

    def reserve(self, site: str, incoming_bytes: int, replaced_bytes: int = 0) -> Reservation:
        if incoming_bytes < 0 or replaced_bytes < 0:
            raise ValueError("byte counts must not be negative")

        with self._locks.hold(site):
            used, quota = self._load(site)
            pending = self._pending.get(site, 0)
            delta = int(incoming_bytes) - int(replaced_bytes)
            if delta > 0 and used + pending + delta > quota:
                logger.warning(
                    "quota_reservation_denied site=%s requested=%d used=%d pending=%d quota=%d",
                    site,
                    incoming_bytes,
                    used,
                    pending,
                    quota,
                )
                return Reservation(site, incoming_bytes, replaced_bytes, False, used, quota)

            reservation = Reservation(site, incoming_bytes, replaced_bytes, True, used, quota)
            if reservation.held_bytes:
                self._pending[site] = pending + reservation.held_bytes
            return reservation

    def _drop_pending(self, reservation: Reservation) -> None:
        remaining = self._pending.get(reservation.site, 0) - reservation.held_bytes
        if remaining > 0:
            self._pending[reservation.site] = remaining
        else:
            self._pending.pop(reservation.site, None)

    def commit(self, reservation: Reservation, actual_bytes: Optional[int] = None) -> Optional[int]:
        """Charge a granted reservation once the bytes are on disk.

        *actual_bytes* corrects the charge when fewer or more bytes were
        written than were reserved. Returns the new ``used_bytes``.
        """

        if not reservation.granted:
            raise ValueError("cannot commit a denied reservation")
        if reservation.settled:
            return None

        written = reservation.requested_bytes if actual_bytes is None else int(actual_bytes)
        with self._locks.hold(reservation.site):
            self._drop_pending(reservation)
            reservation.settled = True
            used = self._registry.adjust_used_bytes(
                reservation.site, written - reservation.replaced_bytes
            )
        logger.debug(
            "quota_committed site=%s delta=%d used=%s",
            reservation.site,
            written - reservation.replaced_bytes,
            used,
        )
        return used

    def cancel(self, reservation: Reservation) -> None:
        """Roll back a granted reservation whose write did not happen."""

        if reservation.settled:
            return
        with self._locks.hold(reservation.site):
            self._drop_pending(reservation)
            reservation.settled = True
        logger.info(
            "quota_reservation_cancelled site=%s bytes=%d",
            reservation.site,
            reservation.held_bytes,
        )

    def release(self, site: str, size: int) -> Optional[int]:
        """Credit *size* bytes back after a delete; never drops below zero."""

        with self._locks.hold(site):
            return self._registry.adjust_used_bytes(site, -max(0, int(size)))

    def reconcile(self, site: str, actual_bytes: int) -> Optional[int]:
        """Overwrite ``used_bytes`` with a fresh on-disk total.

        Skipped while uploads are in flight for *site*, because a file that
        has been renamed into place but not yet committed would be counted
        twice.
        """

        with self._locks.hold(site):
            if self._pending.get(site):
                logger.debug("quota_reconcile_skipped site=%s reason=pending_uploads", site)
                return None
            used, _ = self._load(site)
            actual = max(0, int(actual_bytes))
            if used != actual:
                self._registry.set_used_bytes(site, actual)
                logger.info(
                    "quota_reconciled site=%s recorded=%d actual=%d", site, used, actual
                )
            return actual

    def usage(self, site: str) -> Dict[str, int]:
        with self._locks.hold(site):
            used, quota = self._load(site)
            pending = self._pending.get(site, 0)
        return {
            "used_bytes": used,
            "quota_bytes": quota,
            "pending_bytes": pending,
            "available_bytes": max(quota - used - pending, 0),
        }

    def forget(self, site: str) -> None:
        self._pending.pop(site, None)
        self._locks.discard(site)
