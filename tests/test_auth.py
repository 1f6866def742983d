import base64
import json
import time
from datetime import timedelta

import pytest

from kbsync.config import Settings
from kbsync.service.auth import SessionResolver
from kbsync.service.errors import AuthenticationError


def _resolver() -> SessionResolver:
    settings = Settings(jwt_secret="unit-test-secret", jwt_issuer="iss", jwt_audience="aud")
    return SessionResolver(settings)


def _forge(resolver: SessionResolver, header: dict, payload: dict) -> str:
    enc = lambda obj: resolver._encode_segment(json.dumps(obj).encode())  # noqa: E731
    signing_input = f"{enc(header)}.{enc(payload)}"
    return f"{signing_input}.{resolver._sign(signing_input)}"


class TestSessionResolver:
    def test_issued_token_round_trips_subject(self):
        resolver = _resolver()
        token = resolver.issue_token("owner-1")

        assert resolver.resolve_owner(f"Bearer {token}") == "owner-1"

    def test_cookie_used_when_header_missing(self):
        resolver = _resolver()
        token = resolver.issue_token("owner-2")

        assert resolver.resolve_owner(None, token) == "owner-2"

    def test_header_preferred_over_cookie(self):
        resolver = _resolver()
        header_token = resolver.issue_token("from-header")
        cookie_token = resolver.issue_token("from-cookie")

        assert resolver.resolve_owner(f"Bearer {header_token}", cookie_token) == "from-header"

    def test_missing_credentials(self):
        with pytest.raises(AuthenticationError, match="missing"):
            _resolver().resolve_owner(None, None)
        with pytest.raises(AuthenticationError):
            _resolver().resolve_owner("Basic abc", None)

    def test_expired_token_rejected(self):
        resolver = _resolver()
        token = resolver.issue_token("owner-1", ttl=timedelta(minutes=-5))

        with pytest.raises(AuthenticationError, match="invalid or expired"):
            resolver.resolve_owner(f"Bearer {token}")

    def test_tampered_signature_rejected(self):
        resolver = _resolver()
        token = resolver.issue_token("owner-1")
        other = SessionResolver(Settings(jwt_secret="different", jwt_issuer="iss", jwt_audience="aud"))

        assert other.decode_token(token) is None
        assert resolver.decode_token(token[:-2] + "xx") is None

    def test_wrong_algorithm_rejected(self):
        resolver = _resolver()
        payload = {"iss": "iss", "aud": "aud", "sub": "o", "exp": int(time.time()) + 60}

        assert resolver.decode_token(_forge(resolver, {"alg": "none"}, payload)) is None

    def test_audience_list_accepted(self):
        resolver = _resolver()
        payload = {"iss": "iss", "aud": ["other", "aud"], "sub": "o", "exp": int(time.time()) + 60}

        assert resolver.decode_token(_forge(resolver, {"alg": "HS256"}, payload))["sub"] == "o"

    def test_wrong_issuer_rejected(self):
        resolver = _resolver()
        payload = {"iss": "evil", "aud": "aud", "sub": "o", "exp": int(time.time()) + 60}

        assert resolver.decode_token(_forge(resolver, {"alg": "HS256"}, payload)) is None

    def test_missing_subject_rejected(self):
        resolver = _resolver()
        payload = {"iss": "iss", "aud": "aud", "exp": int(time.time()) + 60}
        token = _forge(resolver, {"alg": "HS256"}, payload)

        with pytest.raises(AuthenticationError, match="subject"):
            resolver.resolve_owner(f"Bearer {token}")

    def test_malformed_token(self):
        resolver = _resolver()
        assert resolver.decode_token("not-a-jwt") is None
        garbage = base64.urlsafe_b64encode(b"{").decode().rstrip("=")
        assert resolver.decode_token(f"{garbage}.{garbage}.sig") is None

    def test_non_ascii_signature_rejected(self):
        resolver = _resolver()
        header = resolver._encode_segment(json.dumps({"alg": "HS256"}).encode())

        assert resolver.decode_token(f"{header}.e30.é") is None
        with pytest.raises(AuthenticationError):
            resolver.resolve_owner(f"Bearer {header}.e30.é")

    @pytest.mark.parametrize("subject", ["alice/bob", "alice\\bob", ".alice", " alice", "al\nice"])
    def test_subject_that_is_not_one_key_segment_rejected(self, subject):
        resolver = _resolver()
        token = resolver.issue_token(subject)

        with pytest.raises(AuthenticationError, match="owner id"):
            resolver.resolve_owner(f"Bearer {token}")
