import base64
import binascii

PUBLIC_KEY_LENGTH = 44
KEY_BYTES = 32


def is_valid_public_key(key):
    """44 characters of strict base64 that decode to 32 bytes."""
    if not isinstance(key, str) or len(key) != PUBLIC_KEY_LENGTH:
        return False
    try:
        raw = base64.b64decode(key, validate=True)
    except (binascii.Error, ValueError):
        return False
    return len(raw) == KEY_BYTES
