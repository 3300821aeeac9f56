"""
Security utilities for authentication and privileged-action confirmation.
Includes password/PIN hashing, encryption at rest, session keys, reset tokens
and signed transfer tokens for staged mutations.
"""
from datetime import timedelta
from typing import Optional, Dict, Any, Tuple
from jose import JWTError, jwt
from passlib.context import CryptContext
import bcrypt
from fastapi.security import APIKeyCookie, APIKeyHeader
from cryptography.fernet import Fernet, InvalidToken
import secrets
import hashlib
import base64

from core.logger import logger
from core.utils import utcnow
import config

# Password hashing
# Configure to avoid wrap bug detection issues
pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__ident="2b",  # Use bcrypt 2b identifier
    bcrypt__rounds=12  # Standard rounds
)

TRANSFER_TOKEN_TYPE = "staged_mutation"

# Security schemes
session_cookie = APIKeyCookie(name=config.SESSION_COOKIE_NAME, auto_error=False)
session_header = APIKeyHeader(name="X-Session-Key", auto_error=False)


# Encryption utilities
def get_encryption_key() -> bytes:
    """
    Get encryption key from config.
    If not set, generate one (not recommended for production).
    """
    encryption_key = getattr(config, 'ENCRYPTION_KEY', None)
    if not encryption_key:
        logger.warning("ENCRYPTION_KEY not set, generating temporary key (not secure for production!)")
        encryption_key = Fernet.generate_key().decode()
        config.ENCRYPTION_KEY = encryption_key

    if isinstance(encryption_key, str):
        try:
            key_bytes = base64.urlsafe_b64decode(encryption_key.encode())
        except ValueError:
            key_bytes = b""
        if len(key_bytes) != 32:
            # Not a Fernet key: derive 32 bytes from the configured secret
            key_bytes = hashlib.sha256(encryption_key.encode()).digest()
    else:
        key_bytes = encryption_key
        if len(key_bytes) != 32:
            key_bytes = hashlib.sha256(key_bytes).digest()

    return base64.urlsafe_b64encode(key_bytes)


def encrypt_data(data: str) -> str:
    """
    Encrypt sensitive data using Fernet symmetric encryption.

    Args:
        data: Data to encrypt

    Returns:
        Encrypted string (base64)
    """
    f = Fernet(get_encryption_key())
    return f.encrypt(data.encode()).decode()


def decrypt_data(encrypted_data: str) -> str:
    """
    Decrypt data using Fernet symmetric encryption.

    Args:
        encrypted_data: Encrypted string (base64)

    Returns:
        Decrypted string

    Raises:
        InvalidToken: If the data was not produced with the current key
    """
    f = Fernet(get_encryption_key())
    try:
        return f.decrypt(encrypted_data.encode()).decode()
    except InvalidToken:
        logger.error("Decryption failed: data was not encrypted with the configured key")
        raise


# Password / PIN hashing
def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password (or PIN) against a bcrypt hash."""
    if not plain_password or not hashed_password:
        return False
    try:
        # Try direct bcrypt first
        return bcrypt.checkpw(plain_password.encode('utf-8'), hashed_password.encode('utf-8'))
    except ValueError:
        # Fallback to passlib for hashes bcrypt cannot parse directly
        try:
            return pwd_context.verify(plain_password, hashed_password)
        except ValueError:
            return False


def get_password_hash(password: str) -> str:
    """
    Hash a password using bcrypt.

    Note: Password validation should be done before calling this function.
    Use core.validators.validate_password() to check password requirements.
    """
    password_bytes = password.encode('utf-8')
    if len(password_bytes) > 72:
        raise ValueError("Password cannot be longer than 72 bytes. Please use a shorter password.")

    # Use bcrypt directly to avoid passlib initialization issues
    try:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password_bytes, salt).decode('utf-8')
    except (ValueError, TypeError):
        return pwd_context.hash(password)


def get_pin_hash(pin: str) -> str:
    """PINs are hashed exactly like passwords."""
    return get_password_hash(pin)


# Session utilities
def generate_session_key() -> Tuple[str, str, str]:
    """
    Generate a new session key.

    Returns:
        Tuple of (session_key, encrypted_session_key, session_hash)
    """
    session_key = secrets.token_urlsafe(32)
    session_hash = hash_session_key(session_key)
    encrypted_key = encrypt_data(session_key)
    return session_key, encrypted_key, session_hash


def hash_session_key(key: str) -> str:
    """
    Hash a session key for storage/comparison.

    Args:
        key: Session key string

    Returns:
        Hashed key
    """
    return hashlib.sha256(key.encode()).hexdigest()


# Reset token utilities
def generate_reset_token() -> str:
    """256 bits from the OS CSPRNG, hex encoded (64 characters)."""
    return secrets.token_hex(32)


# Transfer tokens for staged mutations
def create_transfer_token(
    staged_id: str,
    actor_id: int,
    secret_key: str,
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a signed token referencing a server-held staged mutation.

    The token carries no mutation fields; it only names the staged record and
    the admin allowed to confirm it.
    """
    expire = utcnow() + (expires_delta or timedelta(minutes=config.STAGED_MUTATION_EXPIRE_MINUTES))
    to_encode = {
        "sub": staged_id,
        "actor": actor_id,
        "type": TRANSFER_TOKEN_TYPE,
        "iat": utcnow(),
        "exp": expire,
    }
    return jwt.encode(to_encode, secret_key, algorithm=config.ALGORITHM)


def decode_transfer_token(token: str, secret_key: str) -> Optional[Dict[str, Any]]:
    """
    Decode and verify a transfer token.

    Returns:
        Decoded claims or None if the signature, expiry or type is wrong
    """
    try:
        payload = jwt.decode(token, secret_key, algorithms=[config.ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != TRANSFER_TOKEN_TYPE or not payload.get("sub"):
        return None
    return payload
