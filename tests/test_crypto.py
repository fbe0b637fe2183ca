"""Tests for the AES-GCM secret codec."""

from __future__ import annotations

import base64

import pytest

from calbridge.crypto import ENCRYPTION_KEY_ENV, SecretCodec, SecretCodecError

pytestmark = pytest.mark.unit

KEY = b"0123456789abcdef0123456789abcdef"


@pytest.fixture
def codec() -> SecretCodec:
    return SecretCodec(KEY)


class TestSecretCodec:
    def test_ciphertext_layout(self, codec):
        token = codec.encrypt("refresh-1")

        raw = base64.b64decode(token)
        # iv (12) + tag (16) + ciphertext (len("refresh-1"))
        assert len(raw) == 12 + 16 + 9
        assert codec.decrypt(token) == "refresh-1"

    def test_fresh_iv_per_encryption(self, codec):
        assert codec.encrypt("same") != codec.encrypt("same")

    def test_tampering_is_detected(self, codec):
        raw = bytearray(base64.b64decode(codec.encrypt("secret")))
        raw[-1] ^= 0x01

        with pytest.raises(SecretCodecError, match="authentication"):
            codec.decrypt(base64.b64encode(bytes(raw)).decode())

    def test_wrong_key_fails(self, codec):
        token = codec.encrypt("secret")

        with pytest.raises(SecretCodecError):
            SecretCodec(b"x" * 32).decrypt(token)

    def test_short_key_is_rejected(self):
        with pytest.raises(SecretCodecError, match="32-byte"):
            SecretCodec(b"short")

    def test_lenient_decrypt_passes_plaintext_through(self, codec):
        assert codec.decrypt_if_present("123:plain-bot-token") == "123:plain-bot-token"
        assert codec.decrypt_if_present(None) is None

    def test_double_encryption_is_unwrapped(self, codec):
        twice = codec.encrypt(codec.encrypt("access-1"))

        assert codec.decrypt_if_present(twice) == "access-1"

    def test_repr_hides_key(self, codec):
        assert "0123" not in repr(codec)


class TestFromEnv:
    def test_reads_base64_key(self, monkeypatch):
        monkeypatch.setenv(ENCRYPTION_KEY_ENV, base64.b64encode(KEY).decode())

        codec = SecretCodec.from_env()

        assert SecretCodec(KEY).decrypt(codec.encrypt("x")) == "x"

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv(ENCRYPTION_KEY_ENV, raising=False)

        with pytest.raises(SecretCodecError, match="openssl rand -base64 32"):
            SecretCodec.from_env()

    def test_invalid_base64(self, monkeypatch):
        monkeypatch.setenv(ENCRYPTION_KEY_ENV, "not base64!!")

        with pytest.raises(SecretCodecError, match="not valid base64"):
            SecretCodec.from_env()

    def test_generated_key_is_usable(self, monkeypatch):
        monkeypatch.setenv(ENCRYPTION_KEY_ENV, SecretCodec.generate_key())

        assert SecretCodec.from_env().decrypt_if_present("plain") == "plain"
