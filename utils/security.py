import json
from cryptography.fernet import Fernet # Symmetric encryption library.
from flask import current_app # To access application configuration (e.g., FERNET_KEY).

def get_fernet():
    """
    Initializes and returns a Fernet instance for encryption/decryption.

    The FERNET_KEY must be a URL-safe base64-encoded 32-byte key, generated once
    and kept secret.

    Raises:
        ValueError: If FERNET_KEY is not configured in the application.

    Returns:
        cryptography.fernet.Fernet: An initialized Fernet cipher suite instance.
    """
    key = current_app.config.get('FERNET_KEY')
    if not key:
        current_app.logger.critical("FERNET_KEY is not configured in the application. Archive snapshots cannot be encrypted.")
        raise ValueError("FERNET_KEY not configured properly. Please set it in your application configuration.")
    if isinstance(key, str):
        key = key.encode('utf-8')
    return Fernet(key)

def encrypt_value(value):
    """
    Encrypts a plain-text string using Fernet symmetric encryption.

    Args:
        value (str or None): The plain text to encrypt. If None, returns None.

    Returns:
        str or None: The Fernet token as a UTF-8 string (suitable for a Text column).
    """
    if value is None:
        return None
    return get_fernet().encrypt(value.encode('utf-8')).decode('utf-8')

def decrypt_value(token):
    """
    Decrypts a Fernet token produced by `encrypt_value`.

    Raises:
        cryptography.fernet.InvalidToken: If the token is invalid or was encrypted with another key.
            This should be handled by the caller.
    """
    if token is None:
        return None
    return get_fernet().decrypt(token.encode('utf-8')).decode('utf-8')

def encrypt_json(payload):
    """Serializes `payload` to JSON and encrypts it. Datetimes must already be strings."""
    return encrypt_value(json.dumps(payload, sort_keys=True))

def decrypt_json(token):
    """Inverse of `encrypt_json`."""
    plain = decrypt_value(token)
    return json.loads(plain) if plain is not None else None
