"""
Handshake Coordinator

Owns the handshake state machine:

    pending -> matched -> minted
    pending -> expired

Every transition is a single conditional UPDATE whose affected-row count
decides the winner of a race, so two claims (or two mints) on the same
record can never both succeed. Ledger calls are the only slow steps; they
happen outside any DB transaction and their results are persisted with
conditional writes afterwards.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from algosdk import encoding as algo_encoding
from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from blockchain.fee_transaction_builder import FeeTransactionResult
from blockchain.ledger_gateway import LedgerError
from contacts.models import Contact
from users.identity import IdentityResolver

from .exceptions import (
    DuplicateHandshake,
    Expired,
    InvalidCounterparty,
    InvalidState,
    InvalidWalletAddress,
    LedgerUnavailable,
    MintFailed,
    MintPartialFailure,
    NotAuthorized,
    NotFound,
    PaymentFailed,
    PaymentIncomplete,
    SelfClaim,
)
from .models import Handshake
from .signals import handshake_initiated, handshake_minted

logger = logging.getLogger(__name__)


@dataclass
class InitiateResult:
    handshake: Handshake
    unsigned_txn: FeeTransactionResult
    receiver_identifier: str
    counterparty_name: str


@dataclass
class ClaimResult:
    handshake: Handshake
    unsigned_txn: FeeTransactionResult
    initiator_name: str


@dataclass
class PaymentResult:
    handshake_id: str
    txid: str
    side: str
    both_paid: bool
    status: str


@dataclass
class MintOutcome:
    handshake: Handshake
    initiator_token_ref: str
    receiver_token_ref: str
    points_awarded: int


class HandshakeCoordinator:
    """Entry point for every handshake operation.

    `gateway` is the ledger gateway (built lazily so read-only queries never
    need ledger credentials), `identity` the identity resolver and `clock` a
    zero-argument callable returning an aware datetime.
    """

    def __init__(self, gateway=None, identity=None, clock=None):
        self._gateway = gateway
        self.identity = identity or IdentityResolver()
        self.clock = clock or timezone.now

    @property
    def gateway(self):
        if self._gateway is None:
            from blockchain.ledger_gateway import AlgorandLedgerGateway
            self._gateway = AlgorandLedgerGateway()
        return self._gateway

    # ------------------------------------------------------------------
    # initiate
    # ------------------------------------------------------------------

    def initiate(self, initiator, contact_id, initiator_wallet_address) -> InitiateResult:
        try:
            contact = Contact.objects.filter(pk=contact_id, owner=initiator).first()
        except (ValueError, TypeError):
            contact = None
        identifier = contact.receiver_identifier if contact else ''
        if not identifier:
            raise InvalidCounterparty()

        wallet = self._validate_wallet(initiator_wallet_address)
        now = self.clock()

        existing = self._active_for_contact(initiator, contact)
        if existing and existing.status == Handshake.STATUS_PENDING and existing.is_past_expiry(now):
            # A stale pending record must not block a fresh handshake with the same contact
            self._expire(existing)
            existing = self._active_for_contact(initiator, contact)
        if existing:
            logger.info("Duplicate handshake request by user %s for contact %s -> %s", initiator.pk, contact.pk, existing.id)
            raise DuplicateHandshake(
                handshake_id=existing.id,
                status=existing.status,
                paid_sides=existing.paid_sides(),
            )

        handshake = Handshake(
            initiator=initiator,
            receiver_identifier=identifier,
            contact=contact,
            event_id=contact.event_id,
            event_title=contact.event_title,
            event_datetime=contact.date_met,
            initiator_wallet_address=wallet,
            mint_fee_micro=settings.HANDSHAKE_MINT_FEE_MICRO,
            created_at=now,
            expires_at=now + timedelta(hours=settings.HANDSHAKE_TTL_HOURS),
        )

        # Build before insert so a ledger outage leaves no orphan record
        unsigned_txn = self._build_fee_payment(handshake, wallet)

        try:
            with transaction.atomic():
                handshake.save(force_insert=True)
        except IntegrityError:
            winner = self._active_for_contact(initiator, contact)
            if winner is None:
                raise
            logger.info("Lost initiate race for contact %s to handshake %s", contact.pk, winner.id)
            raise DuplicateHandshake(handshake_id=winner.id, status=winner.status, paid_sides=winner.paid_sides())

        logger.info(
            "Handshake %s initiated by user %s for %s (fee=%s, expires=%s)",
            handshake.id, initiator.pk, identifier, handshake.mint_fee_micro, handshake.expires_at.isoformat()
        )
        transaction.on_commit(lambda: self._announce_initiated(handshake))

        return InitiateResult(
            handshake=handshake,
            unsigned_txn=unsigned_txn,
            receiver_identifier=identifier,
            counterparty_name=contact.display_name or identifier,
        )

    # ------------------------------------------------------------------
    # claim
    # ------------------------------------------------------------------

    def claim(self, handshake_id, claiming_user, receiver_wallet_address) -> ClaimResult:
        handshake = self._get(handshake_id)
        if handshake.status != Handshake.STATUS_PENDING:
            raise InvalidState(
                f"Handshake is already {handshake.status}",
                handshake_id=handshake.id,
                status=handshake.status,
                paid_sides=handshake.paid_sides(),
            )

        if handshake.is_past_expiry(self.clock()):
            status = self._expire(handshake)
            raise Expired(handshake_id=handshake.id, status=status)

        if not self.identity.matches(claiming_user, handshake.receiver_identifier):
            logger.warning("User %s attempted to claim handshake %s addressed to someone else", claiming_user.pk, handshake.id)
            raise NotAuthorized(
                "This handshake was not addressed to you",
                handshake_id=handshake.id,
                status=handshake.status,
            )

        if handshake.initiator_id == claiming_user.pk:
            raise SelfClaim(handshake_id=handshake.id, status=handshake.status)

        wallet = self._validate_wallet(receiver_wallet_address, handshake)
        unsigned_txn = self._build_fee_payment(handshake, wallet)

        now = self.clock()
        updated = Handshake.objects.filter(
            pk=handshake.pk,
            status=Handshake.STATUS_PENDING,
            receiver__isnull=True,
        ).update(
            receiver=claiming_user,
            receiver_wallet_address=wallet,
            status=Handshake.STATUS_MATCHED,
            matched_at=now,
            updated_at=now,
        )
        handshake.refresh_from_db()
        if updated != 1:
            logger.info("Claim of handshake %s by user %s lost to a concurrent transition (%s)", handshake.id, claiming_user.pk, handshake.status)
            raise InvalidState(
                f"Handshake is already {handshake.status}",
                handshake_id=handshake.id,
                status=handshake.status,
                paid_sides=handshake.paid_sides(),
            )

        logger.info("Handshake %s matched: receiver user %s wallet %s", handshake.id, claiming_user.pk, wallet)
        return ClaimResult(
            handshake=handshake,
            unsigned_txn=unsigned_txn,
            initiator_name=self.identity.display_name(handshake.initiator),
        )

    # ------------------------------------------------------------------
    # confirm_payment
    # ------------------------------------------------------------------

    def confirm_payment(self, handshake_id, signed_txn_b64, side) -> PaymentResult:
        if side not in Handshake.SIDES:
            raise ValueError(f"side must be one of {Handshake.SIDES}, got {side!r}")

        handshake = self._get(handshake_id)
        signature_field = f'{side}_tx_signature'
        paid_at_field = f'{side}_minted_at'

        recorded = getattr(handshake, signature_field)
        if recorded:
            # Already paid: never rebroadcast, report what is on record
            logger.info("Payment for %s side of handshake %s already recorded as %s", side, handshake.id, recorded)
            return self._payment_result(handshake, recorded, side)

        payment = self._validate_payment(handshake, signed_txn_b64, side)

        try:
            submission = self.gateway.submit_signed_payment(signed_txn_b64)
        except LedgerError as exc:
            logger.warning("Fee payment for %s side of handshake %s failed: %s", side, handshake.id, exc)
            raise PaymentFailed(
                f"Payment could not be confirmed: {exc}",
                handshake_id=handshake.id,
                status=handshake.status,
                paid_sides=handshake.paid_sides(),
            ) from exc

        now = self.clock()
        updated = Handshake.objects.filter(
            pk=handshake.pk,
            **{f'{signature_field}__isnull': True}
        ).update(**{signature_field: submission.txid, paid_at_field: now, 'updated_at': now})
        handshake.refresh_from_db()

        if updated != 1:
            logger.warning(
                "Handshake %s %s side was recorded concurrently as %s; keeping it over %s",
                handshake.id, side, getattr(handshake, signature_field), payment.txid
            )
            txid = getattr(handshake, signature_field)
        else:
            txid = submission.txid
            logger.info("Handshake %s %s side paid: tx %s round %s", handshake.id, side, txid, submission.confirmed_round)

        result = self._payment_result(handshake, txid, side)
        if (
            result.both_paid
            and handshake.status == Handshake.STATUS_MATCHED
            and settings.HANDSHAKE_AUTO_MINT
        ):
            handshake_pk = str(handshake.id)
            transaction.on_commit(lambda: self._enqueue_mint(handshake_pk))
        return result

    # ------------------------------------------------------------------
    # mint
    # ------------------------------------------------------------------

    def mint(self, handshake_id) -> MintOutcome:
        handshake = self._get(handshake_id)
        if handshake.status != Handshake.STATUS_MATCHED:
            raise InvalidState(
                f"Cannot mint a {handshake.status} handshake",
                handshake_id=handshake.id,
                status=handshake.status,
                paid_sides=handshake.paid_sides(),
                minted_sides=handshake.minted_sides(),
            )
        if not handshake.both_paid:
            raise PaymentIncomplete(
                handshake_id=handshake.id,
                status=handshake.status,
                paid_sides=handshake.paid_sides(),
            )

        self._acquire_mint_lease(handshake)

        for side in Handshake.SIDES:
            token_field = f'{side}_token_ref'
            if getattr(handshake, token_field):
                continue
            try:
                minted = self.gateway.mint_bound_token(
                    recipient=handshake.wallet_for(side),
                    handshake_id=handshake.id,
                    side=side,
                    event_title=handshake.event_title or None,
                    event_date=handshake.event_datetime.date().isoformat() if handshake.event_datetime else None,
                )
            except LedgerError as exc:
                self._release_mint_lease(handshake)
                minted_sides = handshake.minted_sides()
                logger.error("Minting %s token for handshake %s failed: %s", side, handshake.id, exc)
                error_cls = MintPartialFailure if minted_sides else MintFailed
                raise error_cls(
                    f"Minting the {side} token failed: {exc}",
                    handshake_id=handshake.id,
                    status=handshake.status,
                    paid_sides=handshake.paid_sides(),
                    minted_sides=minted_sides,
                ) from exc
            except Exception:
                logger.exception("Unexpected error minting %s token for handshake %s", side, handshake.id)
                self._release_mint_lease(handshake)
                raise

            # Persist each side immediately so a retry never re-mints it
            Handshake.objects.filter(pk=handshake.pk, **{f'{token_field}__isnull': True}).update(
                **{token_field: minted.token_ref, 'updated_at': self.clock()}
            )
            handshake.refresh_from_db()
            logger.info("Handshake %s %s token minted: %s", handshake.id, side, getattr(handshake, token_field))

        points = settings.HANDSHAKE_POINTS_PER_HANDSHAKE
        now = self.clock()
        with transaction.atomic():
            updated = Handshake.objects.filter(
                pk=handshake.pk,
                status=Handshake.STATUS_MATCHED,
                initiator_token_ref__isnull=False,
                receiver_token_ref__isnull=False,
            ).update(
                status=Handshake.STATUS_MINTED,
                points_awarded=points,
                minted_at=now,
                mint_locked_until=None,
                updated_at=now,
            )
            handshake.refresh_from_db()
            if updated != 1:
                raise InvalidState(
                    f"Handshake is already {handshake.status}",
                    handshake_id=handshake.id,
                    status=handshake.status,
                    minted_sides=handshake.minted_sides(),
                )

            from achievements.models import PointsLedgerEntry
            reason = f"Handshake: {handshake.event_label}"
            for user in (handshake.initiator, handshake.receiver):
                PointsLedgerEntry.objects.create(
                    user=user,
                    handshake=handshake,
                    points=points,
                    reason=reason,
                )

            party_ids = [handshake.initiator_id, handshake.receiver_id]
            transaction.on_commit(lambda: self._announce_minted(handshake, party_ids))

        logger.info("Handshake %s minted; %s points awarded to users %s", handshake.id, points, party_ids)
        return MintOutcome(
            handshake=handshake,
            initiator_token_ref=handshake.initiator_token_ref,
            receiver_token_ref=handshake.receiver_token_ref,
            points_awarded=handshake.points_awarded,
        )

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def list_pending_for(self, user) -> List[Handshake]:
        identifiers = self.identity.identifiers_for(user)
        if not identifiers:
            return []

        handshakes = list(
            Handshake.objects.filter(
                status=Handshake.STATUS_PENDING,
                receiver__isnull=True,
                receiver_identifier_key__in=identifiers,
                expires_at__gt=self.clock(),
            )
            .exclude(initiator=user)
            .select_related('initiator')
            .order_by('-created_at')
        )
        for handshake in handshakes:
            handshake.initiator_name = self.identity.display_name(handshake.initiator)
        return handshakes

    def get_for_party(self, handshake_id, user) -> Handshake:
        handshake = self._get(handshake_id)
        if handshake.side_for_user(user) is None:
            # Non-parties cannot tell a foreign handshake from a missing one
            raise NotFound(handshake_id=handshake_id)
        return handshake

    def list_for_user(self, user, status=None) -> List[Handshake]:
        qs = Handshake.objects.filter(Q(initiator=user) | Q(receiver=user)).select_related('initiator', 'receiver')
        if status:
            qs = qs.filter(status=status)
        return list(qs.order_by('-created_at'))

    # ------------------------------------------------------------------
    # retries and maintenance
    # ------------------------------------------------------------------

    def refresh_payment_transaction(self, handshake_id, user) -> FeeTransactionResult:
        """Rebuild the caller's fee payment against current network params.

        Used when the first transaction's validity window lapsed before it
        was signed and posted.
        """
        handshake = self._get(handshake_id)
        side = handshake.side_for_user(user)
        if side is None:
            raise NotAuthorized(handshake_id=handshake.id, status=handshake.status)
        if handshake.status in Handshake.TERMINAL_STATUSES:
            raise InvalidState(
                f"Handshake is already {handshake.status}",
                handshake_id=handshake.id,
                status=handshake.status,
                paid_sides=handshake.paid_sides(),
            )
        if handshake.status == Handshake.STATUS_PENDING and handshake.is_past_expiry(self.clock()):
            status = self._expire(handshake)
            raise Expired(handshake_id=handshake.id, status=status)
        if handshake.signature_for(side):
            raise InvalidState(
                f"The {side} payment is already recorded",
                handshake_id=handshake.id,
                status=handshake.status,
                paid_sides=handshake.paid_sides(),
            )
        return self._build_fee_payment(handshake, handshake.wallet_for(side))

    def expire_stale(self, now=None) -> int:
        now = now or self.clock()
        count = Handshake.objects.filter(
            status=Handshake.STATUS_PENDING,
            receiver__isnull=True,
            expires_at__lte=now,
        ).update(status=Handshake.STATUS_EXPIRED, updated_at=now)
        if count:
            logger.info("Expired %s stale pending handshakes", count)
        return count

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _get(self, handshake_id) -> Handshake:
        try:
            handshake = Handshake.objects.select_related('initiator', 'receiver').filter(pk=handshake_id).first()
        except (ValueError, ValidationError):
            handshake = None
        if handshake is None:
            raise NotFound(handshake_id=handshake_id)
        return handshake

    @staticmethod
    def _active_for_contact(initiator, contact) -> Optional[Handshake]:
        return (
            Handshake.objects.filter(initiator=initiator, contact=contact, status__in=Handshake.ACTIVE_STATUSES)
            .order_by('-created_at')
            .first()
        )

    def _expire(self, handshake) -> str:
        """Lazily flip an overdue pending record; returns the resulting status."""
        now = self.clock()
        updated = Handshake.objects.filter(
            pk=handshake.pk,
            status=Handshake.STATUS_PENDING,
            receiver__isnull=True,
        ).update(status=Handshake.STATUS_EXPIRED, updated_at=now)
        handshake.refresh_from_db()
        if updated:
            logger.info("Handshake %s expired on touch (expires_at=%s)", handshake.id, handshake.expires_at.isoformat())
        return handshake.status

    @staticmethod
    def _validate_wallet(address, handshake=None) -> str:
        address = (address or '').strip()
        if not address or not algo_encoding.is_valid_address(address):
            raise InvalidWalletAddress(
                handshake_id=handshake.id if handshake else None,
                status=handshake.status if handshake else None,
            )
        return address

    def _build_fee_payment(self, handshake, wallet) -> FeeTransactionResult:
        try:
            return self.gateway.build_fee_payment(wallet, handshake.mint_fee_micro, handshake.id)
        except LedgerError as exc:
            logger.error("Could not build fee payment for handshake %s: %s", handshake.id, exc)
            raise LedgerUnavailable(
                handshake_id=None if handshake._state.adding else handshake.id,
                status=None if handshake._state.adding else handshake.status,
            ) from exc

    def _validate_payment(self, handshake, signed_txn_b64, side):
        def fail(reason):
            logger.warning("Rejected %s payment for handshake %s: %s", side, handshake.id, reason)
            return PaymentFailed(
                reason,
                handshake_id=handshake.id,
                status=handshake.status,
                paid_sides=handshake.paid_sides(),
            )

        try:
            payment = self.gateway.inspect_signed_payment(signed_txn_b64)
        except LedgerError as exc:
            raise fail(f"Invalid signed transaction: {exc}") from exc

        if payment.receiver != self.gateway.treasury_address:
            raise fail("Payment is not addressed to the protocol treasury")
        if payment.amount < handshake.mint_fee_micro:
            raise fail(f"Payment of {payment.amount} is below the fee of {handshake.mint_fee_micro}")
        if payment.handshake_id != str(handshake.id):
            raise fail("Payment note does not reference this handshake")
        expected_sender = handshake.wallet_for(side)
        if expected_sender and payment.sender != expected_sender:
            raise fail("Payment was not sent from the wallet registered for this side")
        return payment

    def _payment_result(self, handshake, txid, side) -> PaymentResult:
        return PaymentResult(
            handshake_id=str(handshake.id),
            txid=txid,
            side=side,
            both_paid=handshake.both_paid,
            status=handshake.status,
        )

    def _acquire_mint_lease(self, handshake):
        now = self.clock()
        lease_until = now + timedelta(seconds=settings.HANDSHAKE_MINT_LEASE_SECONDS)
        acquired = Handshake.objects.filter(
            Q(mint_locked_until__isnull=True) | Q(mint_locked_until__lte=now),
            pk=handshake.pk,
            status=Handshake.STATUS_MATCHED,
        ).update(mint_locked_until=lease_until, updated_at=now)
        handshake.refresh_from_db()
        if acquired != 1:
            raise InvalidState(
                "mint in progress" if handshake.status == Handshake.STATUS_MATCHED else f"Handshake is already {handshake.status}",
                handshake_id=handshake.id,
                status=handshake.status,
                paid_sides=handshake.paid_sides(),
                minted_sides=handshake.minted_sides(),
            )
        logger.info("Mint lease on handshake %s held until %s", handshake.id, lease_until.isoformat())

    @staticmethod
    def _release_mint_lease(handshake):
        Handshake.objects.filter(pk=handshake.pk, status=Handshake.STATUS_MATCHED).update(mint_locked_until=None)
        handshake.refresh_from_db()

    @staticmethod
    def _minted_counts(user_ids):
        counts = {user_id: 0 for user_id in user_ids}
        rows = (
            Handshake.objects.filter(status=Handshake.STATUS_MINTED)
            .filter(Q(initiator_id__in=user_ids) | Q(receiver_id__in=user_ids))
            .values_list('initiator_id', 'receiver_id')
        )
        for initiator_id, receiver_id in rows:
            for user_id in (initiator_id, receiver_id):
                if user_id in counts:
                    counts[user_id] += 1
        return counts

    def _announce_initiated(self, handshake):
        handshake_initiated.send(sender=Handshake, handshake=handshake)
        self._enqueue_receiver_notification(str(handshake.id))

    def _announce_minted(self, handshake, party_ids):
        handshake_minted.send(
            sender=Handshake,
            handshake=handshake,
            minted_counts=self._minted_counts(party_ids),
        )

    @staticmethod
    def _enqueue_receiver_notification(handshake_id):
        from .tasks import notify_handshake_receiver
        notify_handshake_receiver.delay(handshake_id)

    @staticmethod
    def _enqueue_mint(handshake_id):
        from .tasks import mint_handshake
        mint_handshake.delay(handshake_id)
