"""
SecureChat Application

Two-party end-to-end encrypted chat over an untrusted relay:
- Per-partner Diffie-Hellman key exchange (2048-bit MODP group)
- Simultaneous-initiation safe handshake state machine
- AES-256-GCM message encryption
- Line-delimited JSON relay with presence and optional MySQL storage
"""

__version__ = "1.0.0"
