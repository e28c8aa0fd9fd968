from django.dispatch import Signal

# Sent after a handshake is created and committed. Args: handshake
handshake_initiated = Signal()

# Sent when the addressed counterparty resolves to a Convenu account.
# Args: handshake, receiver, initiator_name
handshake_received = Signal()

# Sent after a handshake flips to minted and the transaction commits.
# Args: handshake, minted_counts ({user_id: minted handshake count})
handshake_minted = Signal()
