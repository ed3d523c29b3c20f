"""
Custom exceptions for SecureChat.
"""


class SecureChatException(Exception):
    """Base exception for SecureChat errors."""
    pass


class KeyExchangeError(SecureChatException):
    """Diffie-Hellman key exchange failed."""
    pass


class NotFoundError(KeyExchangeError):
    """No key material exists for the referenced partner."""
    pass


class InvalidPublicValueError(KeyExchangeError):
    """Peer public value is malformed or outside 1 < y < p-1."""
    pass


class EncryptionError(SecureChatException):
    """Encryption/decryption failed."""
    pass


class InvalidKeySizeError(EncryptionError):
    """Symmetric key has the wrong length."""
    pass


class InvalidIVSizeError(EncryptionError):
    """IV or nonce has the wrong length for the cipher mode."""
    pass


class DecryptionFailedError(EncryptionError):
    """Authentication, padding or decoding failure while decrypting."""
    pass


class NoSessionKeyError(SecureChatException):
    """Key exchange with the partner has not completed yet."""
    pass


class RegistryClosedError(SecureChatException):
    """The session registry (or key engine) was torn down."""
    pass


class ProtocolError(SecureChatException):
    """Protocol violation detected."""
    pass


class DatabaseError(SecureChatException):
    """Database operation failed."""
    pass
