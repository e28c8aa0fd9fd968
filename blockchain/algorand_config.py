"""
Centralized Algorand blockchain configuration.
Retrieves all settings from Django settings.py which reads from environment variables.
"""

from django.conf import settings
from algosdk.v2client import algod


def get_algod_client():
    """Get Algorand Algod client using Django settings"""
    address = settings.ALGORAND_ALGOD_ADDRESS
    token = settings.ALGORAND_ALGOD_TOKEN or ''
    headers = {'User-Agent': 'convenu-backend/algosdk'}
    # Nodely endpoints expect the token as an API key header
    if 'nodely' in (address or '').lower():
        if token:
            headers['X-API-Key'] = token
        return algod.AlgodClient('', address, headers=headers)
    return algod.AlgodClient(token, address, headers=headers)


def get_network():
    """Get current network (testnet/mainnet/localnet)"""
    return settings.BLOCKCHAIN_CONFIG.get('NETWORK', 'testnet')


def get_handshake_config():
    """Get the handshake fee/mint configuration"""
    return {
        'treasury_address': settings.HANDSHAKE_TREASURY_ADDRESS,
        'minter_mnemonic': settings.HANDSHAKE_MINTER_MNEMONIC,
        'mint_fee_micro': settings.HANDSHAKE_MINT_FEE_MICRO,
        'confirmation_rounds': settings.HANDSHAKE_CONFIRMATION_ROUNDS,
        'metadata_url': settings.HANDSHAKE_TOKEN_METADATA_URL,
    }
