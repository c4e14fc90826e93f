"""Unit tests for TokenService.

Covers issuance, the verification order, device binding, refresh rotation
and session revocation against the in-process stores.
"""

import asyncio
import base64
import json
from dataclasses import replace

import pytest

from piauth.service.circuit_breaker import CircuitBreaker
from piauth.service.errors import AuthErrorKind
from piauth.service.tokens import ACCESS, REFRESH, TokenService
from piauth.storage.common import to_datetime
from piauth.storage.errors import StorageUnavailable
from piauth.storage.memory import MemoryRevocationStore, MemorySessionStore


@pytest.fixture
def sessions(clock):
    return MemorySessionStore(retention_seconds=8 * 24 * 3600, clock=clock)


@pytest.fixture
def revocations(clock):
    return MemoryRevocationStore(clock=clock)


@pytest.fixture
def service(settings, sessions, revocations, clock):
    return TokenService(settings, sessions, revocations, clock=clock)


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class _FlakySessions(MemorySessionStore):
    """Fails each named operation once, then behaves normally."""

    def __init__(self, *, fail, **kwargs):
        super().__init__(**kwargs)
        self.fail = set(fail)
        self.failed = []

    def _maybe_fail(self, name):
        if name in self.fail:
            self.fail.discard(name)
            self.failed.append(name)
            raise StorageUnavailable(f"{name} timed out")

    async def touch(self, session_id):
        self._maybe_fail("touch")
        await super().touch(session_id)

    async def rebind(self, session_id, fingerprint, salt, anchor):
        self._maybe_fail("rebind")
        await super().rebind(session_id, fingerprint, salt, anchor)


class _YieldingRevocations(MemoryRevocationStore):
    """Suspends before every call so concurrent refreshes interleave."""

    async def is_revoked(self, token_id):
        await asyncio.sleep(0)
        return await super().is_revoked(token_id)

    async def revoke(self, token_id, reason, ttl):
        await asyncio.sleep(0)
        return await super().revoke(token_id, reason, ttl)


async def _issue(service, principal, device):
    result = await service.issue(principal, device)
    assert result.ok, result.error
    return result.value


class TestIssue:
    async def test_issue_returns_bound_pair(self, service, sessions, principal, device):
        pair = await _issue(service, principal, device)

        access = service._decode_jwt(pair.access_token)
        refresh = service._decode_jwt(pair.refresh_token)
        assert access.kind == ACCESS
        assert refresh.kind == REFRESH
        assert access.token_id != refresh.token_id
        assert access.session_id == refresh.session_id == pair.session_id
        assert access.device_fingerprint == refresh.device_fingerprint

        binding = await sessions.get_binding(pair.session_id)
        assert binding.fingerprint == access.device_fingerprint
        assert binding.user_id == principal.user_id

    async def test_issue_uses_configured_lifetimes(self, service, settings, principal, device, clock):
        pair = await _issue(service, principal, device)

        access = service._decode_jwt(pair.access_token)
        refresh = service._decode_jwt(pair.refresh_token)
        assert access.expires_at - access.issued_at == settings.access_token_ttl_seconds
        assert refresh.expires_at - refresh.issued_at == settings.refresh_token_ttl_seconds
        assert pair.expires_in == 3600
        assert pair.refresh_expires_in == 7 * 24 * 3600
        assert pair.token_type == "Bearer"

    async def test_each_login_gets_its_own_session_and_salt(self, service, principal, device):
        first = await _issue(service, principal, device)
        second = await _issue(service, principal, device)

        assert first.session_id != second.session_id
        assert (
            service._decode_jwt(first.access_token).device_fingerprint
            != service._decode_jwt(second.access_token).device_fingerprint
        )

    async def test_permissions_follow_merchant_flag(self, service, principal, merchant, device):
        user_pair = await _issue(service, principal, device)
        merchant_pair = await _issue(service, merchant, device)

        assert user_pair.permissions == ["view_listings"]
        assert set(merchant_pair.permissions) == {
            "view_listings",
            "create_listing",
            "manage_inventory",
        }

    async def test_header_carries_scheme_version(self, service, principal, device):
        pair = await _issue(service, principal, device)
        header = json.loads(service._decode_segment(pair.access_token.split(".")[0]))
        assert header == {"alg": "HS256", "typ": "JWT", "ver": "1.0"}


class TestVerify:
    async def test_verify_succeeds_for_same_device(self, service, principal, device):
        pair = await _issue(service, principal, device)

        result = await service.verify(pair.access_token, device)

        assert result.ok
        assert result.value.user_id == principal.user_id
        assert result.value.pi_id == principal.pi_id

    async def test_verify_ignores_ip_change(self, service, principal, device):
        pair = await _issue(service, principal, device)

        result = await service.verify(pair.access_token, replace(device, ip_address="10.0.0.1"))

        assert result.ok

    async def test_verify_touches_session(self, service, sessions, principal, device, clock):
        pair = await _issue(service, principal, device)
        clock.advance(120)

        assert (await service.verify(pair.access_token, device)).ok

        session = await sessions.get(pair.session_id)
        assert session.last_activity_at == to_datetime(clock.now)

    async def test_other_device_is_binding_mismatch(self, service, principal, device, other_device):
        pair = await _issue(service, principal, device)

        result = await service.verify(pair.access_token, other_device)

        assert result.error.kind is AuthErrorKind.DEVICE_BINDING_MISMATCH

    async def test_stored_binding_is_authoritative(self, service, sessions, principal, device):
        pair = await _issue(service, principal, device)
        binding = await sessions.get_binding(pair.session_id)
        await sessions.rebind(pair.session_id, "f" * 64, binding.salt, binding.anchor)

        result = await service.verify(pair.access_token, device)

        assert result.error.kind is AuthErrorKind.DEVICE_BINDING_MISMATCH

    async def test_unknown_session_is_binding_mismatch(self, settings, service, principal, device, clock):
        pair = await _issue(service, principal, device)
        fresh = TokenService(
            settings,
            MemorySessionStore(retention_seconds=3600, clock=clock),
            MemoryRevocationStore(clock=clock),
            clock=clock,
        )

        result = await fresh.verify(pair.access_token, device)

        assert result.error.kind is AuthErrorKind.DEVICE_BINDING_MISMATCH

    async def test_missing_token(self, service, device):
        result = await service.verify("", device)
        assert result.error.kind is AuthErrorKind.MISSING_CREDENTIAL

    @pytest.mark.parametrize(
        "token",
        ["not-a-jwt", "a.b", "x.y.z", "W10.e30.sig", "a.b.c.d"],
    )
    async def test_malformed_tokens(self, service, device, token):
        result = await service.verify(token, device)
        assert result.error.kind is AuthErrorKind.MALFORMED_TOKEN

    async def test_tampered_payload_fails_signature(self, service, principal, device):
        pair = await _issue(service, principal, device)
        header, payload, signature = pair.access_token.split(".")
        claims = json.loads(service._decode_segment(payload))
        claims["roles"] = ["admin"]

        result = await service.verify(f"{header}.{_segment(claims)}.{signature}", device)

        assert result.error.kind is AuthErrorKind.SIGNATURE_INVALID

    async def test_alg_none_is_rejected(self, service, principal, device):
        pair = await _issue(service, principal, device)
        _, payload, _ = pair.access_token.split(".")
        forged = f"{_segment({'alg': 'none', 'typ': 'JWT', 'ver': '1.0'})}.{payload}."

        result = await service.verify(forged, device)

        assert result.error.kind is AuthErrorKind.SIGNATURE_INVALID

    async def test_wrong_secret_fails_signature(self, settings, sessions, revocations, clock, principal, device):
        other = TokenService(
            settings.model_copy(update={"jwt_secret": "another-secret-that-is-long-enough-123"}),
            sessions,
            revocations,
            clock=clock,
        )
        pair = await _issue(other, principal, device)

        result = await TokenService(settings, sessions, revocations, clock=clock).verify(
            pair.access_token, device
        )

        assert result.error.kind is AuthErrorKind.SIGNATURE_INVALID

    async def test_wrong_issuer_fails_signature(self, settings, sessions, revocations, clock, principal, device):
        other = TokenService(
            settings.model_copy(update={"jwt_issuer": "someone-else"}),
            sessions,
            revocations,
            clock=clock,
        )
        pair = await _issue(other, principal, device)

        result = await TokenService(settings, sessions, revocations, clock=clock).verify(
            pair.access_token, device
        )

        assert result.error.kind is AuthErrorKind.SIGNATURE_INVALID

    async def test_expired_token(self, service, principal, device, clock):
        pair = await _issue(service, principal, device)
        clock.advance(3600 + 31)

        result = await service.verify(pair.access_token, device)

        assert result.error.kind is AuthErrorKind.TOKEN_EXPIRED

    async def test_expiry_allows_clock_skew_leeway(self, service, principal, device, clock):
        pair = await _issue(service, principal, device)
        clock.advance(3600 + 10)

        assert (await service.verify(pair.access_token, device)).ok

    async def test_scheme_rotation_invalidates_prior_tokens(
        self, settings, sessions, revocations, clock, service, principal, device
    ):
        pair = await _issue(service, principal, device)
        rotated = TokenService(
            settings.model_copy(update={"token_scheme_version": "2.0"}),
            sessions,
            revocations,
            clock=clock,
        )

        for token in (pair.access_token, pair.refresh_token):
            result = await rotated.verify(token, device)
            assert result.error.kind is AuthErrorKind.SCHEME_VERSION_MISMATCH

    async def test_scheme_mismatch_reported_even_with_rotated_key(
        self, settings, sessions, revocations, clock, service, principal, device
    ):
        pair = await _issue(service, principal, device)
        rotated = TokenService(
            settings.model_copy(
                update={
                    "token_scheme_version": "2.0",
                    "jwt_secret": "rotated-signing-key-material-0123456789",
                }
            ),
            sessions,
            revocations,
            clock=clock,
        )

        result = await rotated.verify(pair.access_token, device)

        assert result.error.kind is AuthErrorKind.SCHEME_VERSION_MISMATCH

    async def test_expected_kind_enforced(self, service, principal, device):
        pair = await _issue(service, principal, device)

        result = await service.verify(pair.refresh_token, device, expected_kind=ACCESS)

        assert result.error.kind is AuthErrorKind.MALFORMED_TOKEN


class TestRefresh:
    async def test_login_verify_refresh_scenario(self, service, principal, device):
        pair = await _issue(service, principal, device)
        assert (await service.verify(pair.access_token, device)).ok

        refreshed = await service.refresh(pair.refresh_token, device)
        assert refreshed.ok
        new_pair = refreshed.value
        assert new_pair.access_token != pair.access_token
        assert new_pair.refresh_token != pair.refresh_token

        old_refresh = await service.verify(pair.refresh_token, device)
        assert old_refresh.error.kind is AuthErrorKind.TOKEN_REVOKED

        assert (await service.verify(new_pair.access_token, device)).ok

    async def test_refresh_keeps_session_and_fingerprint(self, service, principal, device):
        pair = await _issue(service, principal, device)

        new_pair = (await service.refresh(pair.refresh_token, device)).value

        assert new_pair.session_id == pair.session_id
        assert (
            service._decode_jwt(new_pair.access_token).device_fingerprint
            == service._decode_jwt(pair.access_token).device_fingerprint
        )
        # the old access token shares the binding and stays valid until it expires
        assert (await service.verify(pair.access_token, device)).ok

    async def test_refresh_token_is_single_use(self, service, principal, device):
        pair = await _issue(service, principal, device)

        first = await service.refresh(pair.refresh_token, device)
        second = await service.refresh(pair.refresh_token, device)

        assert first.ok
        assert second.error.kind is AuthErrorKind.TOKEN_REVOKED

    async def test_concurrent_refresh_has_exactly_one_winner(
        self, settings, sessions, clock, principal, device
    ):
        service = TokenService(
            settings, sessions, _YieldingRevocations(clock=clock), clock=clock
        )
        pair = await _issue(service, principal, device)

        results = await asyncio.gather(
            service.refresh(pair.refresh_token, device),
            service.refresh(pair.refresh_token, device),
        )

        assert sum(1 for r in results if r.ok) == 1
        failures = [r for r in results if not r.ok]
        assert failures[0].error.kind is AuthErrorKind.TOKEN_REVOKED

    async def test_access_token_cannot_refresh(self, service, principal, device):
        pair = await _issue(service, principal, device)

        result = await service.refresh(pair.access_token, device)

        assert result.error.kind is AuthErrorKind.MALFORMED_TOKEN

    async def test_refresh_from_other_device_does_not_consume_token(
        self, service, principal, device, other_device
    ):
        pair = await _issue(service, principal, device)

        stolen = await service.refresh(pair.refresh_token, other_device)
        assert stolen.error.kind is AuthErrorKind.DEVICE_BINDING_MISMATCH

        assert (await service.refresh(pair.refresh_token, device)).ok

    async def test_material_device_change_rebinds_session(self, service, sessions, principal, device):
        pair = await _issue(service, principal, device)
        upgraded = replace(device, app_version="1.5.0", user_agent="MapOfPi/1.5.0 (Android 14)")
        before = await sessions.get_binding(pair.session_id)

        refreshed = await service.refresh(pair.refresh_token, upgraded)

        assert refreshed.ok
        after = await sessions.get_binding(pair.session_id)
        assert after.salt != before.salt
        assert after.fingerprint != before.fingerprint
        assert refreshed.value.session_id == pair.session_id
        assert (await service.verify(refreshed.value.access_token, upgraded)).ok
        stale = await service.verify(pair.access_token, device)
        assert stale.error.kind is AuthErrorKind.DEVICE_BINDING_MISMATCH

    async def test_expired_refresh_token(self, service, principal, device, clock):
        pair = await _issue(service, principal, device)
        clock.advance(7 * 24 * 3600 + 60)

        result = await service.refresh(pair.refresh_token, device)

        assert result.error.kind is AuthErrorKind.TOKEN_EXPIRED

    async def test_rotation_entry_expires_with_token(self, service, revocations, principal, device, clock):
        pair = await _issue(service, principal, device)
        clock.advance(100)
        claims = service._decode_jwt(pair.refresh_token)

        assert (await service.refresh(pair.refresh_token, device)).ok

        entry = await revocations.get(claims.token_id)
        assert entry.reason == "rotated"
        assert entry.expires_at == to_datetime(claims.expires_at)

    async def test_rotated_refresh_token_reports_revoked_for_any_kind(self, service, principal, device):
        pair = await _issue(service, principal, device)
        assert (await service.refresh(pair.refresh_token, device)).ok

        result = await service.verify(pair.refresh_token, device, expected_kind=ACCESS)

        assert result.error.kind is AuthErrorKind.TOKEN_REVOKED

    async def test_touch_outage_after_claim_still_rotates(self, settings, clock, principal, device):
        sessions = _FlakySessions(retention_seconds=3600, clock=clock, fail={"touch"})
        service = TokenService(settings, sessions, MemoryRevocationStore(clock=clock), clock=clock)
        pair = await _issue(service, principal, device)

        refreshed = await service.refresh(pair.refresh_token, device)

        assert refreshed.ok
        assert sessions.failed == ["touch"]
        assert (await service.refresh(refreshed.value.refresh_token, device)).ok

    async def test_rebind_outage_keeps_current_binding(self, settings, clock, principal, device):
        sessions = _FlakySessions(retention_seconds=3600, clock=clock, fail={"rebind"})
        service = TokenService(settings, sessions, MemoryRevocationStore(clock=clock), clock=clock)
        pair = await _issue(service, principal, device)
        before = await sessions.get_binding(pair.session_id)
        upgraded = replace(device, app_version="1.5.0", user_agent="MapOfPi/1.5.0 (Android 14)")

        deferred = await service.refresh(pair.refresh_token, upgraded)

        assert deferred.ok
        assert sessions.failed == ["rebind"]
        assert (await sessions.get_binding(pair.session_id)).salt == before.salt
        assert service._decode_jwt(deferred.value.access_token).device_fingerprint == before.fingerprint

        rebound = await service.refresh(deferred.value.refresh_token, upgraded)

        assert rebound.ok
        assert (await sessions.get_binding(pair.session_id)).salt != before.salt
        assert (await service.verify(rebound.value.access_token, upgraded)).ok

    async def test_logout_during_rebind_is_not_deferred(self, settings, clock, principal, device):
        sessions = MemorySessionStore(retention_seconds=3600, clock=clock)
        service = TokenService(settings, sessions, MemoryRevocationStore(clock=clock), clock=clock)
        pair = await _issue(service, principal, device)
        upgraded = replace(device, app_version="1.5.0", user_agent="MapOfPi/1.5.0 (Android 14)")
        original_rebind = sessions.rebind

        async def rebind_after_logout(session_id, *args):
            await sessions.deactivate(session_id)
            return await original_rebind(session_id, *args)

        sessions.rebind = rebind_after_logout
        result = await service.refresh(pair.refresh_token, upgraded)

        assert result.error.kind is AuthErrorKind.SESSION_INACTIVE


class TestRevoke:
    async def test_revoke_ends_whole_session(self, service, principal, device):
        pair = await _issue(service, principal, device)

        result = await service.revoke(pair.access_token)

        assert result.ok and result.value is True
        access = await service.verify(pair.access_token, device)
        refresh = await service.verify(pair.refresh_token, device)
        assert access.error.kind in (AuthErrorKind.TOKEN_REVOKED, AuthErrorKind.SESSION_INACTIVE)
        assert refresh.error.kind in (AuthErrorKind.TOKEN_REVOKED, AuthErrorKind.SESSION_INACTIVE)
        assert (await service.refresh(pair.refresh_token, device)).error.kind is AuthErrorKind.SESSION_INACTIVE

    async def test_revoke_twice_is_not_an_error(self, service, principal, device):
        pair = await _issue(service, principal, device)

        first = await service.revoke(pair.access_token)
        second = await service.revoke(pair.access_token)

        assert first.ok
        assert second.ok

    async def test_revoke_garbage_is_acknowledged(self, service):
        for token in (None, "", "garbage", "a.b.c"):
            result = await service.revoke(token)
            assert result.ok
            assert result.value is False

    async def test_revoke_expired_token_still_ends_session(self, service, principal, device, clock):
        pair = await _issue(service, principal, device)
        clock.advance(3600 + 120)

        result = await service.revoke(pair.access_token)

        assert result.ok and result.value is True
        refresh = await service.verify(pair.refresh_token, device)
        assert refresh.error.kind is AuthErrorKind.SESSION_INACTIVE

    async def test_revocation_ttl_is_remaining_lifetime(self, service, revocations, principal, device, clock):
        pair = await _issue(service, principal, device)
        claims = service._decode_jwt(pair.access_token)
        clock.advance(600)

        await service.revoke(pair.access_token)

        entry = await revocations.get(claims.token_id)
        assert entry.reason == "logout"
        assert entry.expires_at == to_datetime(claims.expires_at)


class _FailingSessions(MemorySessionStore):
    async def get_binding(self, session_id):
        raise StorageUnavailable("down")

    async def create(self, user_id, fingerprint, salt, anchor):
        raise StorageUnavailable("down")


class TestDependencyFailures:
    async def test_store_outage_is_dependency_unavailable(self, settings, clock, principal, device):
        sessions = _FailingSessions(retention_seconds=3600, clock=clock)
        service = TokenService(
            settings,
            sessions,
            MemoryRevocationStore(clock=clock),
            session_breaker=CircuitBreaker("session_store", failure_threshold=2, clock=clock),
            clock=clock,
        )

        result = await service.issue(principal, device)

        assert result.error.kind is AuthErrorKind.DEPENDENCY_UNAVAILABLE
        assert result.error.retryable

    async def test_open_breaker_fails_fast(self, settings, clock, principal, device):
        working = MemorySessionStore(retention_seconds=3600, clock=clock)
        revocations = MemoryRevocationStore(clock=clock)
        pair = await _issue(TokenService(settings, working, revocations, clock=clock), principal, device)
        breaker = CircuitBreaker("session_store", failure_threshold=2, reset_timeout=30, clock=clock)
        service = TokenService(
            settings,
            _FailingSessions(retention_seconds=3600, clock=clock),
            revocations,
            session_breaker=breaker,
            clock=clock,
        )

        for _ in range(3):
            result = await service.verify(pair.access_token, device)
            assert result.error.kind is AuthErrorKind.DEPENDENCY_UNAVAILABLE

        assert breaker.state.value == "open"
        assert result.error.retry_after == 30
