import logging

from celery import shared_task

from .coordinator import HandshakeCoordinator
from .exceptions import HandshakeError, InvalidState
from .models import Handshake
from .signals import handshake_received

logger = logging.getLogger(__name__)


@shared_task(name='handshakes.expire_stale_handshakes')
def expire_stale_handshakes():
    """Flip overdue pending handshakes to expired. Claim also expires lazily."""
    count = HandshakeCoordinator().expire_stale()
    return {'expired': count}


@shared_task(bind=True, name='handshakes.mint_handshake', max_retries=5, default_retry_delay=30)
def mint_handshake(self, handshake_id):
    """Mint both tokens once both fees are paid.

    Retryable mint failures (ledger errors, a partially minted pair) are
    retried with backoff; a retry only mints the side that is still missing.
    """
    try:
        outcome = HandshakeCoordinator().mint(handshake_id)
    except InvalidState as exc:
        # Already minted, or another worker holds the mint lease
        logger.info("Skipping mint of handshake %s: %s (%s)", handshake_id, exc.message, exc.status)
        return {'success': False, 'status': exc.status, 'error': exc.message}
    except HandshakeError as exc:
        if exc.retryable:
            logger.warning("Mint of handshake %s failed (%s); retry %s", handshake_id, exc.code, self.request.retries + 1)
            raise self.retry(exc=exc, countdown=30 * (2 ** self.request.retries))
        logger.error("Mint of handshake %s failed permanently: %s", handshake_id, exc.message)
        return {'success': False, 'status': exc.status, 'error': exc.message}

    return {
        'success': True,
        'status': outcome.handshake.status,
        'initiator_token_ref': outcome.initiator_token_ref,
        'receiver_token_ref': outcome.receiver_token_ref,
    }


@shared_task(name='handshakes.notify_handshake_receiver')
def notify_handshake_receiver(handshake_id):
    """Tell the addressed counterparty about a new handshake, if they have an account."""
    handshake = Handshake.objects.select_related('initiator').filter(pk=handshake_id).first()
    if handshake is None or handshake.status != Handshake.STATUS_PENDING:
        return {'notified': False}

    coordinator = HandshakeCoordinator()
    receiver = coordinator.identity.find_account(handshake.receiver_identifier)
    if receiver is None or receiver.pk == handshake.initiator_id:
        logger.info("No account to notify for handshake %s (%s)", handshake.id, handshake.receiver_identifier)
        return {'notified': False}

    initiator_name = coordinator.identity.display_name(handshake.initiator)
    handshake_received.send(
        sender=Handshake,
        handshake=handshake,
        receiver=receiver,
        initiator_name=initiator_name,
    )
    logger.info("Notified user %s of handshake %s from %s", receiver.pk, handshake.id, initiator_name)
    return {'notified': True, 'receiver_id': receiver.pk}
