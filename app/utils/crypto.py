import json
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from app.exceptions import ProviderAuthError


class CredentialCipher:
    """Fernet encryption for stored account credentials."""

    def __init__(self, key: str) -> None:
        self._fernet = Fernet(key.encode())

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: str) -> str:
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken as e:
            raise ProviderAuthError("Stored credentials could not be decrypted") from e

    def encrypt_json(self, value: dict[str, Any]) -> str:
        return self.encrypt(json.dumps(value))

    def decrypt_json(self, value: str) -> dict[str, Any]:
        decrypted = self.decrypt(value)
        try:
            data = json.loads(decrypted)
        except json.JSONDecodeError as e:
            raise ProviderAuthError("Stored credentials are not a token set") from e
        if not isinstance(data, dict):
            raise ProviderAuthError("Stored credentials are not a token set")
        return data
