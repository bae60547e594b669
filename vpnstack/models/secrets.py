"""Secret material bound to one install."""
from dataclasses import dataclass, fields
from typing import Dict

# Field name -> key in the .env secret file
ENV_KEYS = {
    'jwt_secret': 'AUTHELIA_JWT_SECRET',
    'session_secret': 'AUTHELIA_SESSION_SECRET',
    'storage_encryption_key': 'AUTHELIA_STORAGE_ENCRYPTION_KEY',
    'postgres_password': 'POSTGRES_PASSWORD',
    'redis_password': 'REDIS_PASSWORD',
    'admin_password_hash': 'ADMIN_PASSWORD_HASH',
}


@dataclass(frozen=True)
class SecretMaterial:
    """The fixed set of named secrets for one install.

    ``storage_encryption_key`` protects authelia's at-rest records and must
    never change once postgres holds data encrypted with it.
    """

    jwt_secret: str
    session_secret: str
    storage_encryption_key: str
    postgres_password: str
    redis_password: str
    admin_password_hash: str

    def to_env(self) -> Dict[str, str]:
        """Return the secrets keyed by their .env variable names."""
        return {ENV_KEYS[f.name]: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_env(cls, env: Dict[str, str]) -> 'SecretMaterial':
        """Build from a parsed .env mapping.

        Raises:
            KeyError: If a required key is absent or empty
        """
        missing = [key for key in ENV_KEYS.values() if not env.get(key)]
        if missing:
            raise KeyError(', '.join(missing))
        return cls(**{name: env[key] for name, key in ENV_KEYS.items()})

    @classmethod
    def placeholder(cls) -> 'SecretMaterial':
        """Stand-in values for previews and dry synthesis. Never written to disk."""
        return cls(
            jwt_secret="0" * 64,
            session_secret="0" * 64,
            storage_encryption_key="0" * 64,
            postgres_password="placeholder",
            redis_password="placeholder",
            admin_password_hash="$argon2id$placeholder",
        )

    def __repr__(self) -> str:
        return "SecretMaterial(<redacted>)"
