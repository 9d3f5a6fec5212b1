"""Credential generation, hashing and one-time disclosure."""

import secrets
import string

import bcrypt

from ..models.instance import CredentialDisclosure
from .engines import BaseAdapter

PASSWORD_LENGTH = 24
# Letters and digits survive every client's URI parsing and shell quoting
PASSWORD_ALPHABET = string.ascii_letters + string.digits
BCRYPT_ROUNDS = 10


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Generate a random password with upper, lower and digit characters.

    SQL Server rejects passwords missing a character class, so keep drawing
    until all three are present.
    """
    if length < 8:
        raise ValueError("password length must be at least 8")
    while True:
        password = "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))
        if (
            any(c.islower() for c in password)
            and any(c.isupper() for c in password)
            and any(c.isdigit() for c in password)
        ):
            return password


def hash_password(password: str) -> str:
    # bcrypt.hashpw returns bytes, we decode to store as string
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def build_disclosure(
    adapter: BaseAdapter,
    host: str,
    port: int,
    database_name: str,
    username: str,
    password: str,
) -> CredentialDisclosure:
    """Assemble the response that carries a plaintext password exactly once."""
    return CredentialDisclosure(
        username=username,
        password=password,
        database_name=database_name,
        host=host,
        port=port,
        connection_string=adapter.get_connection_string(host, port, database_name, username, password),
        sample_connections=adapter.get_sample_connections(host, port, database_name, username, password),
    )
