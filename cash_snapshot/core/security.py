from cryptography.fernet import Fernet

from cash_snapshot.core.config import settings


# ─── Fernet encryption (for Plaid access tokens at rest) ──────
def get_fernet() -> Fernet:
    return Fernet(settings.encryption_key.encode())


def encrypt_value(value: str) -> str:
    return get_fernet().encrypt(value.encode()).decode()


def decrypt_value(encrypted: str) -> str:
    return get_fernet().decrypt(encrypted.encode()).decode()
