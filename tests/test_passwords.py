"""
Tests for scrypt password hashing
"""

import pytest

from minibank.errors import HashingError
from minibank.passwords import PasswordHasher


class TestPasswordHasher:
    """Test hashing and verification"""

    def setup_method(self):
        self.hasher = PasswordHasher(n=1024, r=8, p=1)

    def test_hash_is_not_plaintext(self):
        """Stored hash never equals the password"""
        encoded = self.hasher.hash("siuu")
        assert encoded != "siuu"
        assert "siuu" not in encoded
        assert encoded.startswith("scrypt$1024$8$1$")

    def test_verify_exact_password(self):
        encoded = self.hasher.hash("correct horse")
        assert self.hasher.verify("correct horse", encoded)

    def test_verify_rejects_other_passwords(self):
        encoded = self.hasher.hash("correct horse")
        for candidate in ["Correct horse", "correct horse ", "", "wrong-password"]:
            assert not self.hasher.verify(candidate, encoded)

    def test_salts_differ(self):
        """Same password hashed twice gives different hashes"""
        assert self.hasher.hash("siuu") != self.hasher.hash("siuu")

    def test_cost_travels_with_hash(self):
        """A hasher with different settings still verifies older hashes"""
        encoded = self.hasher.hash("siuu")
        other = PasswordHasher(n=2048, r=4, p=2)
        assert other.verify("siuu", encoded)

    def test_empty_password_rejected(self):
        with pytest.raises(HashingError):
            self.hasher.hash("")

    def test_password_length_limit(self):
        """Passwords over max_length UTF-8 bytes cannot be hashed"""
        hasher = PasswordHasher(n=1024, max_length=72)
        assert hasher.verify("a" * 72, hasher.hash("a" * 72))

        with pytest.raises(HashingError):
            hasher.hash("a" * 73)

        # 37 two-byte characters are 74 bytes
        with pytest.raises(HashingError):
            hasher.hash("é" * 37)

    def test_unencodable_password_rejected(self):
        """Lone surrogates cannot be encoded and fail as a hashing error"""
        with pytest.raises(HashingError):
            self.hasher.hash("pass\ud800word")

        encoded = self.hasher.hash("siuu")
        assert not self.hasher.verify("\ud800", encoded)

    def test_invalid_cost_parameter(self):
        """scrypt rejects a cost that is not a power of two"""
        hasher = PasswordHasher(n=1000)
        with pytest.raises(HashingError):
            hasher.hash("siuu")

    def test_malformed_hash_is_a_mismatch(self):
        """Verification never raises on a bad stored value"""
        assert not self.hasher.verify("siuu", "")
        assert not self.hasher.verify("siuu", "not-a-hash")
        assert not self.hasher.verify("siuu", "bcrypt$1$2$3$salt$abcd")
        assert not self.hasher.verify("siuu", "scrypt$x$8$1$salt$abcd")
        assert not self.hasher.verify("siuu", None)
