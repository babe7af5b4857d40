"""Tests for PKCE utilities used by the authorization code flow."""

from urllib.parse import parse_qs, urlsplit

from salesforce_auth.oauth.pkce import (
    CHALLENGE_METHOD,
    challenge_params,
    compute_challenge,
    generate_pkce_pair,
    verify_pkce,
)


class TestPKCE:
    """Tests for PKCE pair generation and verification."""

    def test_generate_pkce_pair(self):
        """Verifier and challenge are both 43 base64url characters."""
        verifier, challenge = generate_pkce_pair()

        assert len(verifier) == 43
        assert len(challenge) == 43
        assert verify_pkce(verifier, challenge)

    def test_generate_pkce_pair_unique(self):
        """Each call yields a fresh pair."""
        pairs = [generate_pkce_pair() for _ in range(10)]

        assert len({p[0] for p in pairs}) == 10
        assert len({p[1] for p in pairs}) == 10

    def test_compute_challenge_rfc_vector(self):
        """RFC 7636 Appendix B test vector."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

        assert compute_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_verify_pkce_rejects_wrong_verifier(self):
        _, challenge = generate_pkce_pair()

        assert verify_pkce("wrong_verifier", challenge) is False

    def test_verify_pkce_rejects_suffixed_verifier(self):
        verifier, challenge = generate_pkce_pair()

        assert verify_pkce(verifier, challenge) is True
        assert verify_pkce(verifier + "x", challenge) is False


class TestChallengeParams:
    """Tests for authorization URL PKCE parameters."""

    def test_challenge_params(self):
        """Params carry the S256 challenge for the verifier."""
        verifier, challenge = generate_pkce_pair()

        params = challenge_params(verifier)

        assert params == {"code_challenge": challenge, "code_challenge_method": "S256"}
        assert CHALLENGE_METHOD == "S256"

    def test_challenge_params_are_url_safe(self):
        """The challenge survives URL encoding unchanged."""
        verifier, challenge = generate_pkce_pair()
        url = "https://x.test/?" + "&".join(f"{k}={v}" for k, v in challenge_params(verifier).items())

        assert parse_qs(urlsplit(url).query)["code_challenge"] == [challenge]
