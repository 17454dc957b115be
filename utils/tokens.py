import secrets

# No 0/O/o, 1/I/l: tokens end up in links people may retype.
TOKEN_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghjkmnpqrstuvwxyz23456789"

# Largest multiple of the alphabet size that fits in a byte; bytes at or above it are rejected.
_ACCEPT_BELOW = 256 - (256 % len(TOKEN_ALPHABET))


def generate_token(length: int = 32) -> str:
    """Return a uniformly distributed random token of exactly `length` characters."""
    if length < 1:
        raise ValueError("Token length must be at least 1")

    result = []
    while len(result) < length:
        batch = secrets.token_bytes(length - len(result) + 16)
        for byte in batch:
            if byte < _ACCEPT_BELOW:
                result.append(TOKEN_ALPHABET[byte % len(TOKEN_ALPHABET)])
                if len(result) == length:
                    break
    return "".join(result)
