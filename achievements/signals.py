from django.dispatch import receiver

from handshakes.signals import handshake_minted

from .models import TrustScore

import logging

logger = logging.getLogger(__name__)


@receiver(handshake_minted)
def update_trust_scores(sender, handshake, minted_counts, **kwargs):
    """Store each party's recomputed minted-handshake count"""
    for user_id, count in minted_counts.items():
        TrustScore.objects.update_or_create(
            user_id=user_id,
            defaults={'total_handshakes': count}
        )
        logger.info(f"Trust score for user {user_id} updated to {count} handshakes after {handshake.id}")
