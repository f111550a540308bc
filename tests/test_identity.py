import pytest

from cosmic_cv.errors import AuthenticationError
from cosmic_cv.identity import Identity, decode_session_token, encode_session_token, normalize_email

from conftest import SESSION_SECRET, session_token


def test_normalize_email():
    assert normalize_email("  A@X.Com ") == "a@x.com"
    assert normalize_email(None) == ""


def test_identity_normalizes_on_construction():
    identity = Identity(user_id=42, email=" A@X.com")
    assert identity.user_id == "42"
    assert identity.email == "a@x.com"
    assert Identity(user_id="  ", email="").user_id is None


def test_decode_valid_session_token():
    identity = decode_session_token(session_token(user_id="u42", email="New@User.com"), SESSION_SECRET)
    assert identity.user_id == "u42"
    assert identity.email == "new@user.com"


def test_decode_rejects_wrong_secret():
    with pytest.raises(AuthenticationError):
        decode_session_token(session_token(secret="other"), SESSION_SECRET)


def test_decode_rejects_expired_token():
    with pytest.raises(AuthenticationError):
        decode_session_token(session_token(ttl=-60), SESSION_SECRET)


@pytest.mark.parametrize("token", ["", "a.b", "not.a.jwt", "x.y.z.w"])
def test_decode_rejects_malformed_tokens(token):
    with pytest.raises(AuthenticationError):
        decode_session_token(token, SESSION_SECRET)


def test_decode_requires_configured_secret():
    with pytest.raises(AuthenticationError):
        decode_session_token(session_token(), "")


@pytest.mark.parametrize(
    "claims",
    [["not", "an", "object"], {"sub": "u1", "exp": "soon"}, {"sub": "u1", "exp": None}],
)
def test_decode_rejects_malformed_claims(claims):
    with pytest.raises(AuthenticationError):
        decode_session_token(encode_session_token(claims, SESSION_SECRET), SESSION_SECRET)


def test_decode_rejects_non_object_header():
    with pytest.raises(AuthenticationError):
        decode_session_token("W10.e30.c2ln", SESSION_SECRET)
