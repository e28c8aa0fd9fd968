"""
Typed failures raised by the handshake coordinator.

Every error carries a stable `code`, whether the caller may retry the same
call, and the record's authoritative status when one exists, so clients can
resync instead of guessing.
"""


class HandshakeError(Exception):
    code = 'HANDSHAKE_ERROR'
    retryable = False
    default_message = 'Handshake operation failed'

    def __init__(self, message=None, handshake_id=None, status=None, paid_sides=None, minted_sides=None):
        self.message = message or self.default_message
        self.handshake_id = str(handshake_id) if handshake_id is not None else None
        self.status = status
        self.paid_sides = list(paid_sides or [])
        self.minted_sides = list(minted_sides or [])
        super().__init__(self.message)

    def as_dict(self):
        return {
            'error': self.message,
            'error_code': self.code,
            'retryable': self.retryable,
            'status': self.status,
            'handshake_id': self.handshake_id,
            'paid_sides': self.paid_sides,
            'minted_sides': self.minted_sides,
        }


# Input / authorization

class InvalidCounterparty(HandshakeError):
    code = 'INVALID_COUNTERPARTY'
    default_message = 'Contact not found or has no Telegram handle or email'


class InvalidWalletAddress(HandshakeError):
    code = 'INVALID_WALLET_ADDRESS'
    default_message = 'Wallet address is not a valid Algorand address'


class NotAuthorized(HandshakeError):
    code = 'NOT_AUTHORIZED'
    default_message = 'You are not allowed to act on this handshake'


class SelfClaim(HandshakeError):
    code = 'SELF_CLAIM'
    default_message = 'You cannot claim your own handshake'


class DuplicateHandshake(HandshakeError):
    code = 'DUPLICATE_HANDSHAKE'
    default_message = 'A handshake with this contact is already in progress'


# State

class NotFound(HandshakeError):
    code = 'NOT_FOUND'
    default_message = 'Handshake not found'


class InvalidState(HandshakeError):
    code = 'INVALID_STATE'
    default_message = 'Handshake is not in a state that allows this operation'


class Expired(HandshakeError):
    code = 'EXPIRED'
    default_message = 'Handshake has expired'


class PaymentIncomplete(HandshakeError):
    code = 'PAYMENT_INCOMPLETE'
    default_message = 'Both parties must pay before minting'


# Transient

class PaymentFailed(HandshakeError):
    code = 'PAYMENT_FAILED'
    retryable = True
    default_message = 'Payment could not be confirmed'


class MintFailed(HandshakeError):
    code = 'MINT_FAILED'
    retryable = True
    default_message = 'Minting failed'


class MintPartialFailure(MintFailed):
    code = 'MINT_PARTIAL_FAILURE'
    default_message = 'Only part of the handshake was minted; retry to finish'


class LedgerUnavailable(HandshakeError):
    code = 'LEDGER_UNAVAILABLE'
    retryable = True
    default_message = 'Could not reach the ledger; try again'
