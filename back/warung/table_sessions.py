"""
Table Session Guard

Keeps at most one live client per table. A client holds a table through a
lease that it refreshes with heartbeats; a lease with no heartbeat inside the
liveness window is dead and the table can be taken by the next
`try_acquire`. There is no release call: closed tabs and crashed browsers
simply stop sending heartbeats.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from .errors import SessionRequired, TableLocked
from .models import TableSession, utcnow
from .store import as_utc

logger = logging.getLogger(__name__)

# Races lost against another writer are retried this many times
MAX_ACQUIRE_ATTEMPTS = 3


class TableSessionGuard:
    def __init__(
        self,
        liveness_window: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.liveness_window = liveness_window
        self.clock = clock

    def is_live(self, lease: TableSession, now: datetime | None = None) -> bool:
        now = now or self.clock()
        return now - as_utc(lease.last_heartbeat_at) <= self.liveness_window

    def holder(self, session: Session, table_number: str) -> TableSession | None:
        """Return the live lease for a table, if any."""
        lease = session.get(TableSession, table_number)
        if lease and self.is_live(lease):
            return lease
        return None

    def try_acquire(self, session: Session, table_number: str, client_id: str) -> TableSession:
        """Make `client_id` the holder of the table or raise TableLocked.

        Acquiring a table you already hold is a reconnect and refreshes the lease.
        """
        if not client_id:
            raise SessionRequired("A client id is required to use a table")

        for _ in range(MAX_ACQUIRE_ATTEMPTS):
            now = self.clock()
            lease = session.get(TableSession, table_number)

            if lease is None:
                lease = TableSession(
                    table_number=table_number,
                    client_id=client_id,
                    acquired_at=now,
                    last_heartbeat_at=now,
                )
                session.add(lease)
                try:
                    session.commit()
                except IntegrityError:
                    # Someone inserted the same table first; look again
                    session.rollback()
                    continue
                session.refresh(lease)
                logger.info(f"Table {table_number}: acquired by {client_id}")
                return lease

            if lease.client_id != client_id and self.is_live(lease, now):
                logger.info(
                    f"Table {table_number}: denied to {client_id}, held by {lease.client_id}"
                )
                raise TableLocked(table_number)

            values = {"last_heartbeat_at": now, "generation": lease.generation + 1}
            if lease.client_id != client_id:
                # Previous holder's lease expired; take it over
                values.update(client_id=client_id, acquired_at=now)
            previous_holder = lease.client_id

            if self._compare_and_set(session, lease, values):
                if previous_holder != client_id:
                    logger.info(
                        f"Table {table_number}: expired lease of {previous_holder} taken by {client_id}"
                    )
                else:
                    logger.debug(f"Table {table_number}: {client_id} reconnected")
                session.refresh(lease)
                return lease

        raise TableLocked(table_number)

    def heartbeat(self, session: Session, table_number: str, client_id: str) -> bool:
        """Refresh a live lease. Returns False (never raises) when the caller lost it."""
        for _ in range(MAX_ACQUIRE_ATTEMPTS):
            now = self.clock()
            lease = session.get(TableSession, table_number)
            if lease is None or lease.client_id != client_id or not self.is_live(lease, now):
                logger.warning(
                    f"Table {table_number}: heartbeat from {client_id} ignored, lease not held"
                )
                return False

            # A lost race here is usually an order being placed; re-read and retry
            if self._compare_and_set(
                session, lease, {"last_heartbeat_at": now, "generation": lease.generation + 1}
            ):
                return True

        logger.warning(f"Table {table_number}: heartbeat from {client_id} kept losing races")
        return False

    def require_holder(self, session: Session, table_number: str, client_id: str | None) -> None:
        """Revalidate the lease at the point of mutation."""
        lease = self.holder(session, table_number)
        if lease is None or not client_id or lease.client_id != client_id:
            raise SessionRequired(
                f"Table {table_number} is not reserved by this device. Scan the QR code again."
            )

    def claim(self, session: Session, table_number: str, client_id: str) -> bool:
        """Bump the lease generation inside the caller's transaction.

        Does not commit: the claim lands together with whatever the caller writes,
        so two writes made under the same lease generation cannot both commit.
        """
        lease = self.holder(session, table_number)
        if lease is None or lease.client_id != client_id:
            return False
        result = session.connection().execute(
            update(TableSession)
            .where(
                TableSession.table_number == table_number,
                TableSession.client_id == client_id,
                TableSession.generation == lease.generation,
            )
            .values(generation=lease.generation + 1)
        )
        return result.rowcount == 1

    def _compare_and_set(self, session: Session, lease: TableSession, values: dict) -> bool:
        result = session.connection().execute(
            update(TableSession)
            .where(
                TableSession.table_number == lease.table_number,
                TableSession.generation == lease.generation,
            )
            .values(**values)
        )
        if result.rowcount != 1:
            session.rollback()
            return False
        session.commit()
        return True
