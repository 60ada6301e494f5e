"""
Password Hashing Module

One-way password hashing with scrypt. Hashes are self-describing strings
of the form ``scrypt$<n>$<r>$<p>$<salt>$<hash>`` so the cost parameters
travel with the stored value and can be raised without breaking old hashes.
"""

import hashlib
import hmac
import secrets

from .errors import HashingError


ALGORITHM = "scrypt"
DKLEN = 32


class PasswordHasher:
    """scrypt password hasher with configurable cost"""
    
    def __init__(self, n: int = 16384, r: int = 8, p: int = 1, max_length: int = 72):
        self.n = n
        self.r = r
        self.p = p
        self.max_length = max_length
    
    def _generate_salt(self) -> str:
        """Generate random salt for password hashing"""
        return secrets.token_hex(16)
    
    def _derive(self, password: bytes, salt: str, n: int, r: int, p: int) -> bytes:
        # scrypt needs roughly 128 * n * r bytes; leave headroom over the default 32MiB cap
        maxmem = 256 * n * r + 1024 * 1024
        return hashlib.scrypt(password, salt=salt.encode(), n=n, r=r, p=p,
                              maxmem=maxmem, dklen=DKLEN)
    
    def hash(self, password: str) -> str:
        """
        Hash a plaintext password.
        
        Raises:
            HashingError: if the password is empty, not encodable as UTF-8,
                longer than max_length bytes, or rejected by scrypt
        """
        if not password:
            raise HashingError("Password must not be empty")
        
        try:
            encoded = password.encode("utf-8")
        except UnicodeEncodeError as e:
            raise HashingError("Password is not valid UTF-8 text") from e
        if len(encoded) > self.max_length:
            raise HashingError(f"Password exceeds {self.max_length} bytes")
        
        salt = self._generate_salt()
        try:
            digest = self._derive(encoded, salt, self.n, self.r, self.p)
        except (ValueError, MemoryError) as e:
            raise HashingError(f"Password hashing failed: {e}") from e
        
        return f"{ALGORITHM}${self.n}${self.r}${self.p}${salt}${digest.hex()}"
    
    def verify(self, password: str, encoded_hash: str) -> bool:
        """Check a candidate password against a stored hash"""
        try:
            algorithm, n, r, p, salt, expected = encoded_hash.split("$")
            if algorithm != ALGORITHM:
                return False
            digest = self._derive(password.encode("utf-8"), salt, int(n), int(r), int(p))
        except (AttributeError, ValueError, MemoryError):
            return False
        
        return hmac.compare_digest(digest.hex(), expected)
