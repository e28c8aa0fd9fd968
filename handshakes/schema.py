"""
Handshake GraphQL API

Mutations never raise: every failure is returned as success=False with a
stable error_code, the retryable flag and the record's current status so
clients can decide whether to retry, resync or give up.
"""

import logging

import graphene
from django.db.models import Sum
from graphene_django import DjangoObjectType
from graphql_jwt.decorators import login_required

from achievements.models import PointsLedgerEntry, TrustScore
from users.identity import IdentityResolver

from .coordinator import HandshakeCoordinator
from .exceptions import HandshakeError, NotAuthorized
from .models import Handshake

logger = logging.getLogger(__name__)


def get_coordinator():
    return HandshakeCoordinator()


class HandshakeSide(graphene.Enum):
    INITIATOR = Handshake.SIDE_INITIATOR
    RECEIVER = Handshake.SIDE_RECEIVER


class HandshakeTxnType(graphene.ObjectType):
    """Unsigned fee payment for the client wallet to sign"""
    txn = graphene.String()
    txid = graphene.String()
    amount = graphene.Int()
    first = graphene.Int()
    last = graphene.Int()
    gh = graphene.String()
    gen = graphene.String()

    @classmethod
    def from_result(cls, result):
        if result is None:
            return None
        return cls(
            txn=result.txn_b64,
            txid=result.txid,
            amount=result.amount,
            first=result.first_valid,
            last=result.last_valid,
            gh=result.genesis_hash,
            gen=result.genesis_id,
        )


class HandshakeType(DjangoObjectType):
    initiator_name = graphene.String()
    receiver_name = graphene.String()
    mint_progress = graphene.String()
    both_paid = graphene.Boolean()
    paid_sides = graphene.List(graphene.String)
    my_side = graphene.String()

    class Meta:
        model = Handshake
        convert_choices_to_enum = False
        fields = (
            'id',
            'status',
            'receiver_identifier',
            'event_id',
            'event_title',
            'event_datetime',
            'initiator_wallet_address',
            'receiver_wallet_address',
            'initiator_tx_signature',
            'receiver_tx_signature',
            'mint_fee_micro',
            'initiator_minted_at',
            'receiver_minted_at',
            'initiator_token_ref',
            'receiver_token_ref',
            'points_awarded',
            'created_at',
            'expires_at',
            'matched_at',
            'minted_at',
        )

    def resolve_initiator_name(self, info):
        return getattr(self, 'initiator_name', None) or IdentityResolver().display_name(self.initiator)

    def resolve_receiver_name(self, info):
        if self.receiver_id is None:
            return None
        return IdentityResolver().display_name(self.receiver)

    def resolve_mint_progress(self, info):
        return self.mint_progress

    def resolve_both_paid(self, info):
        return self.both_paid

    def resolve_paid_sides(self, info):
        return self.paid_sides()

    def resolve_my_side(self, info):
        return self.side_for_user(info.context.user)


class PointsLedgerEntryType(DjangoObjectType):
    handshake_id = graphene.ID()

    class Meta:
        model = PointsLedgerEntry
        fields = ('id', 'points', 'reason', 'created_at')

    def resolve_handshake_id(self, info):
        return self.handshake_id


class HandshakePointsType(graphene.ObjectType):
    total_points = graphene.Int()
    total_handshakes = graphene.Int()
    entries = graphene.List(PointsLedgerEntryType)


class HandshakeMutationMixin:
    """Common failure fields for handshake mutations"""
    success = graphene.Boolean()
    error = graphene.String()
    error_code = graphene.String()
    retryable = graphene.Boolean()
    status = graphene.String()
    handshake_id = graphene.ID()
    paid_sides = graphene.List(graphene.String)
    minted_sides = graphene.List(graphene.String)

    @classmethod
    def failure(cls, exc):
        if isinstance(exc, HandshakeError):
            return cls(success=False, **exc.as_dict())
        logger.exception("Unexpected error in %s", cls.__name__)
        return cls(success=False, error='Internal error', error_code='INTERNAL_ERROR', retryable=True)

    @classmethod
    def not_authenticated(cls):
        return cls(success=False, error='Not authenticated', error_code='NOT_AUTHENTICATED', retryable=False)

    @staticmethod
    def party_side(coordinator, handshake_id, user):
        handshake = coordinator.get_for_party(handshake_id, user)
        return handshake, handshake.side_for_user(user)


class InitiateHandshake(HandshakeMutationMixin, graphene.Mutation):
    class Arguments:
        contact_id = graphene.ID(required=True)
        wallet_address = graphene.String(required=True)

    handshake = graphene.Field(HandshakeType)
    transaction = graphene.Field(HandshakeTxnType)
    receiver_identifier = graphene.String()
    counterparty_name = graphene.String()

    @classmethod
    def mutate(cls, root, info, contact_id, wallet_address):
        user = info.context.user
        if not user.is_authenticated:
            return cls.not_authenticated()
        try:
            result = get_coordinator().initiate(user, contact_id, wallet_address)
        except Exception as exc:
            return cls.failure(exc)
        return cls(
            success=True,
            handshake=result.handshake,
            handshake_id=result.handshake.id,
            status=result.handshake.status,
            transaction=HandshakeTxnType.from_result(result.unsigned_txn),
            receiver_identifier=result.receiver_identifier,
            counterparty_name=result.counterparty_name,
        )


class ClaimHandshake(HandshakeMutationMixin, graphene.Mutation):
    class Arguments:
        handshake_id = graphene.ID(required=True)
        wallet_address = graphene.String(required=True)

    handshake = graphene.Field(HandshakeType)
    transaction = graphene.Field(HandshakeTxnType)
    initiator_name = graphene.String()

    @classmethod
    def mutate(cls, root, info, handshake_id, wallet_address):
        user = info.context.user
        if not user.is_authenticated:
            return cls.not_authenticated()
        try:
            result = get_coordinator().claim(handshake_id, user, wallet_address)
        except Exception as exc:
            return cls.failure(exc)
        return cls(
            success=True,
            handshake=result.handshake,
            handshake_id=result.handshake.id,
            status=result.handshake.status,
            transaction=HandshakeTxnType.from_result(result.unsigned_txn),
            initiator_name=result.initiator_name,
        )


class ConfirmHandshakePayment(HandshakeMutationMixin, graphene.Mutation):
    class Arguments:
        handshake_id = graphene.ID(required=True)
        signed_transaction = graphene.String(required=True)
        side = HandshakeSide(required=True)

    txid = graphene.String()
    side = graphene.String()
    both_paid = graphene.Boolean()

    @classmethod
    def mutate(cls, root, info, handshake_id, signed_transaction, side):
        user = info.context.user
        if not user.is_authenticated:
            return cls.not_authenticated()
        side = getattr(side, 'value', side)
        coordinator = get_coordinator()
        try:
            handshake, caller_side = cls.party_side(coordinator, handshake_id, user)
            if caller_side != side:
                raise NotAuthorized(
                    f"Only the {side} can pay for that side",
                    handshake_id=handshake.id,
                    status=handshake.status,
                    paid_sides=handshake.paid_sides(),
                )
            result = coordinator.confirm_payment(handshake.id, signed_transaction, side)
        except Exception as exc:
            return cls.failure(exc)
        return cls(
            success=True,
            handshake_id=result.handshake_id,
            txid=result.txid,
            side=result.side,
            both_paid=result.both_paid,
            status=result.status,
        )


class MintHandshake(HandshakeMutationMixin, graphene.Mutation):
    class Arguments:
        handshake_id = graphene.ID(required=True)

    handshake = graphene.Field(HandshakeType)
    initiator_token_ref = graphene.String()
    receiver_token_ref = graphene.String()
    points_awarded = graphene.Int()

    @classmethod
    def mutate(cls, root, info, handshake_id):
        user = info.context.user
        if not user.is_authenticated:
            return cls.not_authenticated()
        coordinator = get_coordinator()
        try:
            handshake, _ = cls.party_side(coordinator, handshake_id, user)
            outcome = coordinator.mint(handshake.id)
        except Exception as exc:
            return cls.failure(exc)
        return cls(
            success=True,
            handshake=outcome.handshake,
            handshake_id=outcome.handshake.id,
            status=outcome.handshake.status,
            initiator_token_ref=outcome.initiator_token_ref,
            receiver_token_ref=outcome.receiver_token_ref,
            points_awarded=outcome.points_awarded,
        )


class RefreshHandshakePayment(HandshakeMutationMixin, graphene.Mutation):
    """Rebuild the caller's unsigned fee payment after its validity window lapsed"""

    class Arguments:
        handshake_id = graphene.ID(required=True)

    transaction = graphene.Field(HandshakeTxnType)

    @classmethod
    def mutate(cls, root, info, handshake_id):
        user = info.context.user
        if not user.is_authenticated:
            return cls.not_authenticated()
        try:
            result = get_coordinator().refresh_payment_transaction(handshake_id, user)
        except Exception as exc:
            return cls.failure(exc)
        return cls(
            success=True,
            handshake_id=handshake_id,
            transaction=HandshakeTxnType.from_result(result),
        )


class Query(graphene.ObjectType):
    pending_handshakes = graphene.List(HandshakeType)
    handshake = graphene.Field(HandshakeType, id=graphene.ID(required=True))
    my_handshakes = graphene.List(HandshakeType, status=graphene.String())
    my_handshake_points = graphene.Field(HandshakePointsType)

    @login_required
    def resolve_pending_handshakes(self, info):
        """Handshakes addressed to the current user that they can still claim"""
        return get_coordinator().list_pending_for(info.context.user)

    @login_required
    def resolve_handshake(self, info, id):
        try:
            return get_coordinator().get_for_party(id, info.context.user)
        except HandshakeError:
            return None

    @login_required
    def resolve_my_handshakes(self, info, status=None):
        return get_coordinator().list_for_user(info.context.user, status=status)

    @login_required
    def resolve_my_handshake_points(self, info):
        user = info.context.user
        entries = PointsLedgerEntry.objects.filter(user=user).order_by('-created_at')
        score = TrustScore.objects.filter(user=user).first()
        return HandshakePointsType(
            total_points=entries.aggregate(total=Sum('points'))['total'] or 0,
            total_handshakes=score.total_handshakes if score else 0,
            entries=list(entries),
        )


class Mutation(graphene.ObjectType):
    initiate_handshake = InitiateHandshake.Field()
    claim_handshake = ClaimHandshake.Field()
    confirm_handshake_payment = ConfirmHandshakePayment.Field()
    mint_handshake = MintHandshake.Field()
    refresh_handshake_payment = RefreshHandshakePayment.Field()
