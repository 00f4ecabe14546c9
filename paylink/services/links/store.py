"""Payment link store.

Owns PaymentLink and Transaction rows. Status changes go through
`transition`, which is a compare-and-set on the stored status so two racing
writers can never both move a link out of `pending`.
"""

from sqlalchemy import delete, exists, select, update
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm.attributes import set_committed_value

from paylink.common.db import utcnow
from paylink.common.errors import HasSettledTransactions, InvalidTransition, NotFound
from paylink.common.logging import logger
from paylink.common.state_machine import (
    PENDING,
    SETTLED_TRANSACTION_STATUSES,
    SUCCEEDED,
    validate_transition,
)
from paylink.services.links import domain_events
from paylink.services.links.models import (
    PaymentLink,
    PaymentLinkTimeline,
    ReconciliationAnomaly,
    Transaction,
)


class PaymentLinkStore:
    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def create(self, link: PaymentLink) -> PaymentLink:
        """Persist a new pending link together with its creation event."""

        link.status = PENDING
        link.state_version = 0
        link.completed_at = None
        with self.session_factory() as db:
            db.add(link)
            db.add(
                PaymentLinkTimeline(
                    payment_link_id=link.id,
                    from_status=None,
                    to_status=PENDING,
                    reason="link_created",
                )
            )
            db.add(domain_events.link_created(link))
            db.commit()
        return link

    def get(self, link_id: str) -> PaymentLink | None:
        with self.session_factory() as db:
            return db.get(PaymentLink, link_id)

    def list_for_owner(self, owner_id: str, status: str | None = None, limit: int = 50) -> list[PaymentLink]:
        stmt = select(PaymentLink).where(PaymentLink.owner_id == owner_id)
        if status is not None:
            stmt = stmt.where(PaymentLink.status == status)
        with self.session_factory() as db:
            return list(db.execute(stmt.order_by(PaymentLink.created_at.desc()).limit(limit)).scalars())

    def list_pending(self, limit: int = 100, created_before=None) -> list[PaymentLink]:
        stmt = select(PaymentLink).where(PaymentLink.status == PENDING)
        if created_before is not None:
            stmt = stmt.where(PaymentLink.created_at < created_before)
        with self.session_factory() as db:
            return list(db.execute(stmt.order_by(PaymentLink.created_at).limit(limit)).scalars())

    def list_overdue(self, now=None, limit: int = 100) -> list[PaymentLink]:
        now = now or utcnow()
        stmt = (
            select(PaymentLink)
            .where(
                PaymentLink.status == PENDING,
                PaymentLink.expires_at.is_not(None),
                PaymentLink.expires_at < now,
            )
            .order_by(PaymentLink.expires_at)
            .limit(limit)
        )
        with self.session_factory() as db:
            return list(db.execute(stmt).scalars())

    def transactions_for(self, link_id: str) -> list[Transaction]:
        with self.session_factory() as db:
            stmt = select(Transaction).where(Transaction.payment_link_id == link_id).order_by(Transaction.created_at)
            return list(db.execute(stmt).scalars())

    def transactions_for_owner(
        self,
        owner_id: str,
        status: str | None = None,
        provider: str | None = None,
        payment_link_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[tuple[Transaction, str]]:
        """Newest-first transactions across an owner's links, each with its link's provider."""

        stmt = (
            select(Transaction, PaymentLink.provider)
            .join(PaymentLink, PaymentLink.id == Transaction.payment_link_id)
            .where(PaymentLink.owner_id == owner_id)
        )
        if status is not None:
            stmt = stmt.where(Transaction.status == status)
        if provider is not None:
            stmt = stmt.where(PaymentLink.provider == provider)
        if payment_link_id is not None:
            stmt = stmt.where(Transaction.payment_link_id == payment_link_id)
        stmt = stmt.order_by(Transaction.created_at.desc(), Transaction.id).limit(limit).offset(offset)
        with self.session_factory() as db:
            return [(txn, link_provider) for txn, link_provider in db.execute(stmt).all()]

    def timeline_for(self, link_id: str) -> list[PaymentLinkTimeline]:
        with self.session_factory() as db:
            stmt = (
                select(PaymentLinkTimeline)
                .where(PaymentLinkTimeline.payment_link_id == link_id)
                .order_by(PaymentLinkTimeline.created_at)
            )
            return list(db.execute(stmt).scalars())

    def find_for_event(
        self,
        db,
        provider: str,
        provider_reference_id: str | None,
        link_reference: str | None,
    ) -> PaymentLink | None:
        """Match an event to a link: provider reference first, then the echoed link id."""

        if provider_reference_id:
            link = db.execute(
                select(PaymentLink).where(
                    PaymentLink.provider == provider,
                    PaymentLink.provider_reference_id == provider_reference_id,
                )
            ).scalar_one_or_none()
            if link is not None:
                return link
        if link_reference:
            link = db.get(PaymentLink, link_reference)
            if link is not None and link.provider == provider:
                return link
        return None

    def record_transaction(self, db, transaction: Transaction) -> bool:
        """Insert a transaction; False when this provider transaction was already recorded.

        Must be the first write of the unit of work: on a duplicate the whole
        transaction is rolled back.
        """

        db.add(transaction)
        try:
            db.flush()
        except sa_exc.IntegrityError:
            db.rollback()
            return False
        return True

    def transition(
        self,
        db,
        link: PaymentLink,
        new_status: str,
        reason: str,
        provider_transaction_id: str | None = None,
    ) -> PaymentLink:
        """Move `link` to `new_status` if the stored row is still in the status we read.

        Raises `InvalidTransition` for a move the state machine forbids, and
        `InvalidTransition(race_lost=True)` when another writer got there first.
        """

        validate_transition(link.status, new_status)
        from_status = link.status
        current_version = link.state_version
        now = utcnow()
        completed_at = now if new_status == SUCCEEDED else None

        result = db.execute(
            update(PaymentLink)
            .where(
                PaymentLink.id == link.id,
                PaymentLink.status == from_status,
                PaymentLink.state_version == current_version,
            )
            .values(
                status=new_status,
                state_version=current_version + 1,
                completed_at=completed_at,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidTransition(
                f"payment link {link.id} is no longer {from_status} (expected version {current_version})",
                race_lost=True,
            )

        set_committed_value(link, "status", new_status)
        set_committed_value(link, "state_version", current_version + 1)
        set_committed_value(link, "completed_at", completed_at)
        set_committed_value(link, "updated_at", now)
        db.add(
            PaymentLinkTimeline(
                payment_link_id=link.id,
                from_status=from_status,
                to_status=new_status,
                reason=reason,
                provider_transaction_id=provider_transaction_id,
            )
        )
        db.add(domain_events.link_terminal(link, provider_transaction_id))
        return link

    def record_anomaly(
        self,
        db,
        kind: str,
        provider: str,
        event_type: str,
        payment_link_id: str | None = None,
        provider_reference_id: str | None = None,
        provider_transaction_id: str | None = None,
        detail: dict | None = None,
    ) -> None:
        db.add(
            ReconciliationAnomaly(
                kind=kind,
                provider=provider,
                event_type=event_type,
                payment_link_id=payment_link_id,
                provider_reference_id=provider_reference_id,
                provider_transaction_id=provider_transaction_id,
                detail=detail or {},
            )
        )

    def anomalies(self, kind: str | None = None, limit: int = 100) -> list[ReconciliationAnomaly]:
        stmt = select(ReconciliationAnomaly)
        if kind is not None:
            stmt = stmt.where(ReconciliationAnomaly.kind == kind)
        with self.session_factory() as db:
            return list(db.execute(stmt.order_by(ReconciliationAnomaly.created_at.desc()).limit(limit)).scalars())

    def has_settled_transactions(self, db, link_id: str) -> bool:
        return bool(db.execute(select(_settled_against(link_id))).scalar())

    def delete(self, link_id: str) -> None:
        """Physically remove a link unless money has settled against it.

        The link row is locked before the check, and the final delete repeats
        the check in its WHERE clause, so a settlement committed in between
        aborts the delete instead of being removed with it.
        """

        with self.session_factory() as db:
            link = db.get(PaymentLink, link_id, with_for_update=True)
            if link is None:
                raise NotFound("payment link not found")
            if self.has_settled_transactions(db, link_id):
                raise HasSettledTransactions(f"payment link {link_id} has settled transactions")
            db.execute(
                delete(Transaction).where(
                    Transaction.payment_link_id == link_id,
                    Transaction.status.not_in(SETTLED_TRANSACTION_STATUSES),
                )
            )
            db.execute(delete(PaymentLinkTimeline).where(PaymentLinkTimeline.payment_link_id == link_id))
            removed = db.execute(
                delete(PaymentLink)
                .where(PaymentLink.id == link_id, ~_settled_against(link_id))
                .execution_options(synchronize_session=False)
            ).rowcount
            if removed != 1:
                db.rollback()
                raise HasSettledTransactions(f"payment link {link_id} settled while being deleted")
            db.commit()
        logger.info("payment_link_deleted payment_link_id=%s", link_id)


def _settled_against(link_id: str):
    return exists().where(
        Transaction.payment_link_id == link_id,
        Transaction.status.in_(SETTLED_TRANSACTION_STATUSES),
    )
