# Password hashing, salt and identity hashing utilities.
import hashlib
import secrets

# Hash a password with a salt using SHA-256.
def hash_password(password: str, salt: str) -> str:
    return hashlib.sha256(f"{salt}{password}".encode("utf-8")).hexdigest()

# Generate a random salt string for password hashing.
def generate_salt() -> str:
    return secrets.token_hex(16)

# Compare a password against a stored hash without leaking timing.
def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    return secrets.compare_digest(hash_password(password, salt), expected_hash)

# One-way hash of a client IP so raw addresses are never stored.
def hash_ip(ip_address: str) -> str:
    return hashlib.sha256(ip_address.encode("utf-8")).hexdigest()
