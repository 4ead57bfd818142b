import base64
import uuid

import bcrypt

from gpstrack.util import (
    crypt_password,
    gen_random_bytes,
    gen_random_string,
    gen_uuid,
    gen_uuid_bytes,
)


def _decode(text):
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def test_random_bytes_length_and_variety():
    a = gen_random_bytes(32)
    b = gen_random_bytes(32)
    assert len(a) == 32
    assert a != b


def test_random_string_round_trip_with_prefix():
    text = gen_random_string(b"ab", 32)
    decoded = _decode(text)
    assert decoded.startswith(b"ab")
    assert len(decoded) == 2 + 32


def test_random_string_is_url_safe_without_padding():
    for _ in range(20):
        text = gen_random_string(b"", 31)
        assert "=" not in text
        assert "+" not in text and "/" not in text


def test_crypt_password_verifies():
    password = "password"
    hashed = crypt_password(password)
    assert bcrypt.checkpw(password.encode(), hashed.encode())
    assert not bcrypt.checkpw(b"secret", hashed.encode())
    assert hashed.split("$")[2] == "12"


def test_gen_uuid_is_version_4():
    text = gen_uuid()
    assert uuid.UUID(text).version == 4
    assert str(uuid.UUID(text)) == text


def test_gen_uuid_bytes():
    raw = gen_uuid_bytes()
    assert len(raw) == 16
    assert uuid.UUID(bytes=raw).version == 4
    assert gen_uuid_bytes() != raw