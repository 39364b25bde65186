import base64
import json

from conftest import make_settings
from portal.service.tokens import TokenIssuer, extract_bearer, new_refresh_token_value
from portal.storage.models import User


def _user(store, username="alice", email="alice@example.com"):
    return store.create_user(username, email, "x" * 64, first_name="Alice", last_name="Doe")


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


class TestAccessTokens:
    def test_claims_round_trip(self, services):
        user = _user(services.store)
        token, expires_at = services.tokens.issue_access_token(
            user, ["IK.Bordro.KendiGoruntule"], ["CALISAN"]
        )
        claims = services.tokens.decode_access_token(token)
        assert claims["sub"] == "alice"
        assert claims["uid"] == user.id
        assert claims["tenant"] == "00"
        assert claims["email"] == "alice@example.com"
        assert claims["given_name"] == "Alice"
        assert claims["permissions"] == ["IK.Bordro.KendiGoruntule"]
        assert claims["roles"] == ["CALISAN"]
        assert claims["exp"] == int(expires_at.timestamp())

    def test_expiry_has_no_leeway(self, services):
        user = _user(services.store)
        token, _ = services.tokens.issue_access_token(user, [], [])
        services.clock.advance(minutes=services.settings.access_token_ttl_minutes)
        assert services.tokens.decode_access_token(token) is None

    def test_valid_one_second_before_expiry(self, services):
        user = _user(services.store)
        token, expires_at = services.tokens.issue_access_token(user, [], [])
        services.clock.now = expires_at
        services.clock.advance(seconds=-1)
        assert services.tokens.decode_access_token(token) is not None

    def test_tampered_payload_rejected(self, services):
        user = _user(services.store)
        token, _ = services.tokens.issue_access_token(user, [], ["CALISAN"])
        header, payload, signature = token.split(".")
        claims = services.tokens.decode_access_token(token)
        claims["roles"] = ["ADMIN"]
        forged = ".".join([header, _b64(claims), signature])
        assert services.tokens.decode_access_token(forged) is None

    def test_alg_none_rejected(self, services):
        user = _user(services.store)
        token, _ = services.tokens.issue_access_token(user, [], [])
        _, payload, _ = token.split(".")
        unsigned = ".".join([_b64({"alg": "none", "typ": "JWT"}), payload, ""])
        assert services.tokens.decode_access_token(unsigned) is None

    def test_wrong_secret_issuer_or_audience_rejected(self, tmp_path, services):
        user = _user(services.store)
        token, _ = services.tokens.issue_access_token(user, [], [])
        for override in (
            {"jwt_secret": "k" * 40},
            {"jwt_issuer": "someone-else"},
            {"jwt_audience": "other-clients"},
        ):
            other = TokenIssuer(
                services.store, make_settings(tmp_path, **override), clock=services.clock
            )
            assert other.decode_access_token(token) is None

    def test_malformed_tokens(self, services):
        for bad in ("", "abc", "a.b", "a.b.c.d", "!!!.???.###"):
            assert services.tokens.decode_access_token(bad) is None


class TestAuthenticate:
    def test_builds_context(self, services):
        user = _user(services.store)
        token, _ = services.tokens.issue_access_token(user, ["BUTCE.Duzenle"], ["BUTCE_YONETICI"])
        ctx = services.tokens.authenticate(f"Bearer {token}")
        assert ctx.user_id == user.id
        assert ctx.username == "alice"
        assert ctx.has_permission("BUTCE.Duzenle")
        assert not ctx.has_permission("ADMIN.Yetki.Yonet")
        assert ctx.roles == frozenset({"BUTCE_YONETICI"})

    def test_missing_or_wrong_scheme(self, services):
        assert services.tokens.authenticate(None) is None
        assert services.tokens.authenticate("Basic abc") is None
        assert services.tokens.authenticate("Bearer ") is None

    def test_extract_bearer_is_case_insensitive(self):
        assert extract_bearer("bearer abc") == "abc"
        assert extract_bearer("BEARER  abc ") == "abc"


class TestRefreshTokens:
    def test_values_are_random_and_long(self):
        first, second = new_refresh_token_value(), new_refresh_token_value()
        assert first != second
        assert len(base64.b64decode(first)) == 64

    def test_issue_pair_persists_refresh_token(self, services):
        user = _user(services.store)
        pair = services.tokens.issue_pair(user, [], [], "10.0.0.1")
        record = services.store.get_refresh_token(pair.refresh_token)
        assert record.user_id == user.id
        assert record.created_by_ip == "10.0.0.1"
        assert record.expires_at == pair.refresh_token_expires_at

    def test_rotate_links_successor(self, services):
        user = _user(services.store)
        first = services.tokens.issue_pair(user, [], [])
        previous = services.store.get_refresh_token(first.refresh_token)
        second = services.tokens.rotate(previous, user, [], [], "10.0.0.2")

        old = services.store.get_refresh_token(first.refresh_token)
        new = services.store.get_refresh_token(second.refresh_token)
        assert old.is_revoked
        assert old.replaced_by_token == second.refresh_token
        assert old.revoked_by_ip == "10.0.0.2"
        assert new.is_active()

    def test_rotate_after_revocation_issues_nothing(self, services):
        """A token revoked between read and rotate yields no live successor."""
        user = _user(services.store)
        first = services.tokens.issue_pair(user, [], [])
        previous = services.store.get_refresh_token(first.refresh_token)
        assert services.tokens.revoke(first.refresh_token)

        assert services.tokens.rotate(previous, user, [], []) is None
        tokens = services.store.list_refresh_tokens(user.id)
        assert len(tokens) == 2
        assert not any(t.is_active() for t in tokens)
        assert services.store.get_refresh_token(first.refresh_token).replaced_by_token is None


def test_issuer_accepts_any_user_shape(services):
    user = User.new("bob", "bob@example.com", "x" * 64, tenant_id="07")
    token, _ = services.tokens.issue_access_token(user, [], [])
    assert services.tokens.authenticate(f"Bearer {token}").tenant_id == "07"
