"""Tests for signed email verification links."""

import hashlib
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from idgate.service.errors import AccountNotFoundError, InvalidLinkError
from idgate.service.signed_links import (
    VERIFY_ROUTE,
    SignedLinkVerifier,
    canonicalize,
    identifier_hash,
    sign,
    verify_signature,
)


@pytest.fixture
def verifier(store, clock, app_key):
    return SignedLinkVerifier(app_key, store, clock=clock)


@pytest.fixture
def account(store):
    return store.create_account("alice", "alice@example.com")


class TestPrimitives:
    def test_canonical_form_orders_parameters(self):
        assert (
            canonicalize(VERIFY_ROUTE, 7, "abc", 1700000000)
            == "verification.verify?expires=1700000000&hash=abc&id=7"
        )

    def test_identifier_hash_is_sha1_hex(self):
        expected = hashlib.sha1(b"alice@example.com").hexdigest()
        assert identifier_hash("alice@example.com") == expected

    def test_signature_round_trip(self, app_key):
        payload = canonicalize(VERIFY_ROUTE, 1, "h", 10)
        signature = sign(app_key, payload)
        assert verify_signature(app_key, payload, signature)
        assert not verify_signature("another-key-that-is-long-enough-000000", payload, signature)
        assert not verify_signature(app_key, payload + "x", signature)

    def test_verifier_requires_key(self, store):
        with pytest.raises(ValueError):
            SignedLinkVerifier("", store)


class TestVerify:
    def test_valid_link_returns_account(self, verifier, account):
        link = verifier.build_for_account(account, timedelta(minutes=60))
        verified = verifier.verify(link.id, link.hash, link.expires, link.signature)
        assert verified.id == account.id

    def test_valid_until_expiry_second(self, verifier, clock, account):
        link = verifier.build_for_account(account, timedelta(minutes=60))
        clock.advance(minutes=60)
        assert verifier.verify(link.id, link.hash, link.expires, link.signature).id == account.id

    def test_expired_link_rejected(self, verifier, clock, account):
        link = verifier.build_for_account(account, timedelta(minutes=60))
        clock.advance(minutes=60, seconds=1)
        with pytest.raises(InvalidLinkError) as exc:
            verifier.verify(link.id, link.hash, link.expires, link.signature)
        assert exc.value.reason == "expired"

    def test_tampered_expiry_rejected_as_signature(self, verifier, account):
        link = verifier.build_for_account(account, timedelta(minutes=60))
        with pytest.raises(InvalidLinkError) as exc:
            verifier.verify(link.id, link.hash, link.expires + 3600, link.signature)
        assert exc.value.reason == "signature"

    def test_tampered_id_rejected(self, verifier, store, account):
        other = store.create_account("bob", "bob@example.com")
        link = verifier.build_for_account(account, timedelta(minutes=60))
        with pytest.raises(InvalidLinkError):
            verifier.verify(other.id, link.hash, link.expires, link.signature)

    def test_email_change_breaks_binding(self, verifier, store, account):
        link = verifier.build_for_account(account, timedelta(minutes=60))
        store.update_account(account.id, email="alice@new.example.com")
        with pytest.raises(InvalidLinkError) as exc:
            verifier.verify(link.id, link.hash, link.expires, link.signature)
        assert exc.value.reason == "binding"

    def test_signed_link_for_missing_account(self, verifier, account):
        link = verifier.build_link(999, identifier_hash("ghost@example.com"), timedelta(minutes=5))
        with pytest.raises(AccountNotFoundError):
            verifier.verify(link.id, link.hash, link.expires, link.signature)

    def test_all_failures_share_one_code(self, verifier, clock, account):
        link = verifier.build_for_account(account, timedelta(minutes=1))
        failures = []
        for args in (
            (link.id, link.hash, link.expires, "0" * 64),
            (link.id, "0" * 40, link.expires, link.signature),
        ):
            with pytest.raises(InvalidLinkError) as exc:
                verifier.verify(*args)
            failures.append(exc.value)
        clock.advance(minutes=2)
        with pytest.raises(InvalidLinkError) as exc:
            verifier.verify(link.id, link.hash, link.expires, link.signature)
        failures.append(exc.value)
        assert {f.error_code for f in failures} == {"invalid_verification_link"}
        assert {f.message for f in failures} == {"Invalid or expired verification link"}


class TestLinkUrl:
    def test_url_carries_all_parameters(self, verifier, account):
        link = verifier.build_for_account(account, timedelta(minutes=60))
        url = urlparse(link.url("https://id.example.com/"))
        assert url.path == f"/v1/email/verify/{account.id}/{identifier_hash(account.email)}"
        query = parse_qs(url.query)
        assert query["expires"] == [str(link.expires)]
        assert query["signature"] == [link.signature]

    def test_account_without_email_cannot_get_link(self, verifier, store):
        bare = store.create_account("noemail")
        with pytest.raises(ValueError):
            verifier.build_for_account(bare, timedelta(minutes=5))
