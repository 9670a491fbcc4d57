"""Tests for constant-time comparison and the HS256 token codec."""

import json
import statistics
import time

import pytest

from latchkey.service.crypto import b64url_decode, b64url_encode, random_token, safe_compare
from latchkey.service.roles import Role
from latchkey.service.tokens import (
    SessionClaims,
    ShareAccessClaims,
    StepUpClaims,
    TokenCodec,
)

SECRET = "a-signing-secret-that-is-long-enough-for-tests"


class TestSafeCompare:
    def test_equal_values_match(self):
        assert safe_compare("2468", "2468")

    def test_different_values_do_not_match(self):
        assert not safe_compare("2468", "2469")

    def test_prefix_does_not_match(self):
        assert not safe_compare("246", "2468")

    def test_missing_values_never_match(self):
        assert not safe_compare(None, "2468")
        assert not safe_compare("2468", None)
        assert not safe_compare(None, None)

    def test_empty_string_only_matches_empty_string(self):
        assert safe_compare("", "")
        assert not safe_compare("", None)


def _median_latencies(expected, candidates, rounds=300, calls_per_sample=40):
    """Median nanoseconds per batch of compares, one entry per candidate.

    Candidates are measured interleaved within each round so drift in the
    machine's load hits every case alike.
    """
    samples = {candidate: [] for candidate in candidates}
    for _ in range(rounds):
        for candidate in candidates:
            start = time.perf_counter_ns()
            for _ in range(calls_per_sample):
                safe_compare(candidate, expected)
            samples[candidate].append(time.perf_counter_ns() - start)
    return {candidate: statistics.median(values) for candidate, values in samples.items()}


def _assert_close(first, second, tolerance=1.5):
    assert max(first, second) / min(first, second) < tolerance


class TestSafeCompareTiming:
    EXPECTED = "k7R2p9Qx4mW8vB3n"

    def test_first_and_last_character_mismatch_take_the_same_time(self):
        first = "X" + self.EXPECTED[1:]
        last = self.EXPECTED[:-1] + "X"
        medians = _median_latencies(self.EXPECTED, [first, last])
        _assert_close(medians[first], medians[last])

    def test_candidate_length_does_not_change_timing(self):
        short = self.EXPECTED[:2]
        long = self.EXPECTED + "Y" * 24
        medians = _median_latencies(self.EXPECTED, [short, long])
        _assert_close(medians[short], medians[long])

    def test_match_and_mismatch_take_the_same_time(self):
        wrong = self.EXPECTED[:-1] + "X"
        medians = _median_latencies(self.EXPECTED, [self.EXPECTED, wrong])
        _assert_close(medians[self.EXPECTED], medians[wrong])


def test_random_token_is_url_safe_and_unique():
    tokens = {random_token() for _ in range(50)}
    assert len(tokens) == 50
    for token in tokens:
        assert "=" not in token and "+" not in token and "/" not in token


class TestTokenCodec:
    def _claims(self) -> SessionClaims:
        return SessionClaims(
            role=Role.STAFF,
            issued_at=1_700_000_000,
            expires_at=1_700_003_600,
            token_version=3,
            jti="9f0c4a3e-3a54-4b8e-9a53-3f1f0d7f2c11",
            ip="203.0.113.7",
        )

    def test_round_trip_restores_claims(self):
        codec = TokenCodec(SECRET)
        token = codec.encode(self._claims().to_payload())
        payload = codec.decode(token)
        assert SessionClaims.from_payload(payload) == self._claims()

    def test_wrong_secret_is_rejected(self):
        token = TokenCodec(SECRET).encode(self._claims().to_payload())
        assert TokenCodec(SECRET + "-other").decode(token) is None

    def test_modified_payload_is_rejected(self):
        codec = TokenCodec(SECRET)
        header, _, signature = codec.encode(self._claims().to_payload()).split(".")
        forged = dict(self._claims().to_payload(), role="admin")
        forged_payload = b64url_encode(json.dumps(forged).encode())
        assert codec.decode(f"{header}.{forged_payload}.{signature}") is None

    def test_alg_none_is_rejected(self):
        codec = TokenCodec(SECRET)
        _, payload, signature = codec.encode(self._claims().to_payload()).split(".")
        header = b64url_encode(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        assert codec.decode(f"{header}.{payload}.{signature}") is None

    @pytest.mark.parametrize(
        "token", ["", "abc", "a.b", "a.b.c.d", "not-base64!.x.y", "x" * 5000]
    )
    def test_malformed_tokens_are_rejected(self, token):
        assert TokenCodec(SECRET).decode(token) is None

    def test_payload_is_canonical(self):
        codec = TokenCodec(SECRET)
        first = codec.encode({"b": 1, "a": 2})
        second = codec.encode({"a": 2, "b": 1})
        assert first == second
        assert json.loads(b64url_decode(first.split(".")[1])) == {"a": 2, "b": 1}


class TestClaims:
    def test_session_claims_reject_other_kinds(self):
        step_up = StepUpClaims(
            parent_jti="9f0c4a3e-3a54-4b8e-9a53-3f1f0d7f2c11",
            issued_at=1,
            expires_at=301,
            nonce="abcd",
        )
        assert SessionClaims.from_payload(step_up.to_payload()) is None
        assert StepUpClaims.from_payload(step_up.to_payload()) == step_up

    def test_session_claims_reject_cron_role(self):
        payload = {
            "kind": "session",
            "role": "cron",
            "iat": 1,
            "exp": 2,
            "tv": 1,
            "jti": "9f0c4a3e-3a54-4b8e-9a53-3f1f0d7f2c11",
        }
        assert SessionClaims.from_payload(payload) is None

    def test_session_claims_require_integer_times(self):
        payload = {
            "kind": "session",
            "role": "staff",
            "iat": "soon",
            "exp": 2,
            "tv": 1,
            "jti": "9f0c4a3e-3a54-4b8e-9a53-3f1f0d7f2c11",
        }
        assert SessionClaims.from_payload(payload) is None

    def test_share_access_claims_round_trip(self):
        claims = ShareAccessClaims(slug="spring-gala", share_id="s1", fingerprint="f" * 64, expires_at=99)
        assert ShareAccessClaims.from_payload(claims.to_payload()) == claims
        assert SessionClaims.from_payload(claims.to_payload()) is None

    def test_remaining_seconds_never_negative(self):
        claims = SessionClaims(
            role=Role.ADMIN, issued_at=0, expires_at=100, token_version=1, jti="x" * 36
        )
        assert claims.remaining_seconds(40) == 60
        assert claims.remaining_seconds(400) == 0


class TestRoles:
    def test_admin_satisfies_staff_and_upload(self):
        assert Role.ADMIN.satisfies(Role.STAFF)
        assert Role.ADMIN.satisfies(Role.UPLOAD)
        assert Role.ADMIN.satisfies(Role.ADMIN)

    def test_other_roles_only_satisfy_themselves(self):
        assert not Role.STAFF.satisfies(Role.ADMIN)
        assert not Role.STAFF.satisfies(Role.UPLOAD)
        assert not Role.UPLOAD.satisfies(Role.STAFF)
        assert not Role.ADMIN.satisfies(Role.CRON)
        assert Role.CRON.satisfies(Role.CRON)

    def test_cron_does_not_issue_tokens(self):
        assert not Role.CRON.issues_tokens
        assert Role.UPLOAD.issues_tokens

    def test_parse_normalises_and_rejects_unknown(self):
        assert Role.parse(" Staff ") is Role.STAFF
        with pytest.raises(ValueError):
            Role.parse("root")
