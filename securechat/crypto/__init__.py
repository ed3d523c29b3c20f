"""
Cryptographic primitives for SecureChat.

This package provides implementations of:
- The 2048-bit MODP Diffie-Hellman group
- Per-partner Diffie-Hellman key exchange with AES-256 key derivation
- AES-256 encryption/decryption (GCM, or legacy CBC with PKCS#7 padding)
"""

from .group import P, G, mod_pow
from .dh import KeyPair, KeyExchangeEngine, encode_public_value, decode_public_value
from .aes import CipherMode, encrypt, decrypt, generate_random_key

__all__ = [
    'P',
    'G',
    'mod_pow',
    'KeyPair',
    'KeyExchangeEngine',
    'encode_public_value',
    'decode_public_value',
    'CipherMode',
    'encrypt',
    'decrypt',
    'generate_random_key',
]
