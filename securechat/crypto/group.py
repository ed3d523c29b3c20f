"""
Diffie-Hellman Group Parameters

Fixed 2048-bit MODP group shared by every peer. Pure data plus modular
exponentiation; no mutable state.
"""


# RFC 3526 - 2048-bit MODP Group (Group 14)
# This is a safe prime for DH key exchange
P = int(
    "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD1"
    "29024E088A67CC74020BBEA63B139B22514A08798E3404DD"
    "EF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245"
    "E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7ED"
    "EE386BFB5A899FA5AE9F24117C4B1FE649286651ECE45B3D"
    "C2007CB8A163BF0598DA48361C55D39A69163FA8FD24CF5F"
    "83655D23DCA3AD961C62F356208552BB9ED529077096966D"
    "670C354E4ABC9804F1746C08CA18217C32905E462E36CE3B"
    "E39E772C180E86039B2783A2EC07A28FB5C55DF06F4C52C9"
    "DE2BCBF6955817183995497CEA956AE515D2261898FA0510"
    "15728E5A8AACAA68FFFFFFFFFFFFFFFF", 16
)

G = 2

# Size of P, exponents and encoded public values in bytes
PUBLIC_VALUE_SIZE = (P.bit_length() + 7) // 8


def mod_pow(base: int, exponent: int, modulus: int) -> int:
    """
    Compute base^exponent mod modulus.

    Not hardened against timing side channels.

    Args:
        base: Base
        exponent: Non-negative exponent
        modulus: Positive modulus

    Returns:
        Result in range [0, modulus)

    Raises:
        ValueError: If modulus <= 0 or exponent < 0
    """
    if modulus <= 0:
        raise ValueError("Modulus must be positive")
    if exponent < 0:
        raise ValueError("Exponent must be non-negative")
    return pow(base, exponent, modulus)
