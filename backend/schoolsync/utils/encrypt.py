import json
from typing import Any, Dict

from cryptography.fernet import Fernet
from schoolsync.config import settings


def get_fernet_key():
    """Returns the Fernet key from settings."""
    return Fernet(settings.encryption_key.encode('utf-8'))


def encrypt_data(data: str) -> str:
    """Encrypts a string using Fernet."""
    f = get_fernet_key()
    return f.encrypt(data.encode('utf-8')).decode('utf-8')


def decrypt_data(encrypted_data: str) -> str:
    """Decrypts a string using Fernet."""
    f = get_fernet_key()
    return f.decrypt(encrypted_data.encode('utf-8')).decode('utf-8')


def encrypt_credentials(credentials: Dict[str, Any]) -> str:
    """Serialise and encrypt a connector credential payload."""
    return encrypt_data(json.dumps(credentials, sort_keys=True))


def decrypt_credentials(encrypted: str) -> Dict[str, Any]:
    """Inverse of ``encrypt_credentials``."""
    return json.loads(decrypt_data(encrypted))
