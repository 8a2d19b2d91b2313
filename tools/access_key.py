# tools/access_key.py
import secrets
import string

ACCESS_KEY_ALPHABET = string.ascii_lowercase + string.digits


def generate_access_key(length: int = 8, alphabet: str = ACCESS_KEY_ALPHABET) -> str:
    """Random access key; callers must still check it against existing keys."""
    return "".join(secrets.choice(alphabet) for _ in range(length))
