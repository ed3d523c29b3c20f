"""
Runtime configuration for SecureChat.

Values come from the process environment, optionally seeded from a `.env`
file in the working directory.
"""

import os
from dataclasses import dataclass
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


@dataclass(frozen=True)
class Settings:
    server_host: str
    server_port: int
    log_level: str
    cipher_mode: str
    persist_messages: bool


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    """
    Build settings from the environment.

    Returns:
        Settings snapshot

    Raises:
        ValueError: If CIPHER_MODE is not 'gcm' or 'cbc'
    """
    cipher_mode = os.getenv('CIPHER_MODE', 'gcm').strip().lower()
    if cipher_mode not in ('gcm', 'cbc'):
        raise ValueError(f"CIPHER_MODE must be 'gcm' or 'cbc', got '{cipher_mode}'")

    return Settings(
        server_host=os.getenv('SERVER_HOST', '127.0.0.1'),
        server_port=int(os.getenv('SERVER_PORT', 5000)),
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        cipher_mode=cipher_mode,
        persist_messages=_env_flag('PERSIST_MESSAGES'),
    )
