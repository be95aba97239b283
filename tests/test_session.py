"""
SessionManager Tests

End-to-end conversations between accounts sharing one directory:
handshake on first contact, ratcheting, ordering, rejection and trust.
"""

import asyncio

import pytest

from e2ee.attachments import decrypt_attachment, encrypt_attachment
from e2ee.config import EngineConfig
from e2ee.errors import (
    DecryptionFailed,
    IdentityKeyMismatch,
    SignatureInvalid,
    TooManySkippedMessages,
    UnknownSession,
)
from e2ee.messages import MessagePayload, RatchetMessage
from e2ee import session as session_module
from e2ee.primitive import b64e
from e2ee.security_code import generate_security_code
from e2ee.store import MemorySessionStore

from conftest import TEST_CONFIG


def tamper(message: RatchetMessage) -> RatchetMessage:
    ct = bytearray(message.ciphertext.encode())
    ct[0] = ord("A") if ct[0] != ord("A") else ord("B")
    return message.model_copy(update={"ciphertext": ct.decode()})


class FailingOneTimeKeyStore(MemorySessionStore):
    """Raises on one-time pre-key removal while ``fail`` is set."""

    fail = False

    async def remove_one_time_prekey(self, key_id):
        if self.fail:
            raise ConnectionError("store unavailable")
        await super().remove_one_time_prekey(key_id)


class TestConversation:
    """Basic request/response flow."""

    @pytest.mark.asyncio
    async def test_hello_world(self, make_account):
        alice = await make_account("alice")
        bob = await make_account("bob")

        msg = await alice.sessions.encrypt("bob", "hello")
        assert (await bob.sessions.decrypt("alice", msg)).text == "hello"

        reply = await bob.sessions.encrypt("alice", "world")
        assert (await alice.sessions.decrypt("bob", reply)).text == "world"

    @pytest.mark.asyncio
    async def test_initial_fields_until_reply(self, make_account):
        alice = await make_account("alice")
        bob = await make_account("bob")

        first = await alice.sessions.encrypt("bob", "one")
        second = await alice.sessions.encrypt("bob", "two")
        assert first.initial() is not None
        assert second.initial() == first.initial()

        await bob.sessions.decrypt("alice", first)
        await bob.sessions.decrypt("alice", second)
        reply = await bob.sessions.encrypt("alice", "ack")
        assert reply.initial() is None

        await alice.sessions.decrypt("bob", reply)
        third = await alice.sessions.encrypt("bob", "three")
        assert third.initial() is None
        assert (await bob.sessions.decrypt("alice", third)).text == "three"

    @pytest.mark.asyncio
    async def test_one_time_key_consumed_once(self, make_account):
        alice = await make_account("alice")
        bob = await make_account("bob")
        before = await bob.store.list_one_time_prekeys()

        first = await alice.sessions.encrypt("bob", "one")
        second = await alice.sessions.encrypt("bob", "two")
        await bob.sessions.decrypt("alice", first)
        await bob.sessions.decrypt("alice", second)

        after = await bob.store.list_one_time_prekeys()
        assert set(before) - set(after) == {first.one_time_key_id}

    @pytest.mark.asyncio
    async def test_handshake_without_one_time_key(self, make_account, directory):
        alice = await make_account("alice")
        bob = await make_account("bob")
        for _ in range(await directory.one_time_key_count("bob")):
            await directory.fetch("bob")

        msg = await alice.sessions.encrypt("bob", "no otk left")
        assert msg.one_time_key_id is None
        assert (await bob.sessions.decrypt("alice", msg)).text == "no otk left"

    @pytest.mark.asyncio
    async def test_out_of_order_delivery(self, make_account):
        alice = await make_account("alice")
        bob = await make_account("bob")

        m1 = await alice.sessions.encrypt("bob", "1")
        m2 = await alice.sessions.encrypt("bob", "2")
        m3 = await alice.sessions.encrypt("bob", "3")

        got = [(await bob.sessions.decrypt("alice", m)).text for m in (m2, m3, m1)]
        assert got == ["2", "3", "1"]

    @pytest.mark.asyncio
    async def test_long_exchange(self, make_account):
        alice = await make_account("alice")
        bob = await make_account("bob")

        for i in range(5):
            msg = await alice.sessions.encrypt("bob", f"a{i}")
            assert (await bob.sessions.decrypt("alice", msg)).text == f"a{i}"
            reply = await bob.sessions.encrypt("alice", f"b{i}")
            assert (await alice.sessions.decrypt("bob", reply)).text == f"b{i}"

    @pytest.mark.asyncio
    async def test_concurrent_encrypts_get_distinct_counters(self, make_account):
        alice = await make_account("alice")
        await make_account("bob")

        messages = await asyncio.gather(*(alice.sessions.encrypt("bob", str(i)) for i in range(10)))
        assert sorted(m.counter for m in messages) == list(range(10))
        assert len({m.ratchet_key for m in messages}) == 1


class TestRejection:
    """Failures surface as typed errors and leave stored sessions intact."""

    @pytest.mark.asyncio
    async def test_failed_decrypt_keeps_session(self, make_account):
        alice = await make_account("alice")
        bob = await make_account("bob")
        await bob.sessions.decrypt("alice", await alice.sessions.encrypt("bob", "hi"))

        msg = await alice.sessions.encrypt("bob", "secret")
        stored = (await bob.store.get_session("alice")).to_dict()
        with pytest.raises(DecryptionFailed):
            await bob.sessions.decrypt("alice", tamper(msg))

        assert (await bob.store.get_session("alice")).to_dict() == stored
        assert (await bob.sessions.decrypt("alice", msg)).text == "secret"

    @pytest.mark.asyncio
    async def test_failed_initial_message_persists_nothing(self, make_account):
        alice = await make_account("alice")
        bob = await make_account("bob")
        msg = await alice.sessions.encrypt("bob", "hi")

        with pytest.raises(DecryptionFailed):
            await bob.sessions.decrypt("alice", tamper(msg))

        assert not await bob.sessions.has_session("alice")
        assert await bob.store.get_trusted_key("alice") is None
        assert await bob.store.get_one_time_prekey(msg.one_time_key_id) is not None
        assert (await bob.sessions.decrypt("alice", msg)).text == "hi"

    @pytest.mark.asyncio
    async def test_too_many_skipped(self, make_account):
        config = EngineConfig(max_skip=3, num_otk=5, otk_low_watermark=2, publish_backoff=0.0)
        alice = await make_account("alice")
        bob = await make_account("bob", config=config)
        await bob.sessions.decrypt("alice", await alice.sessions.encrypt("bob", "hi"))

        msg = None
        for i in range(6):
            msg = await alice.sessions.encrypt("bob", f"m{i}")
        with pytest.raises(TooManySkippedMessages):
            await bob.sessions.decrypt("alice", msg)

    @pytest.mark.asyncio
    async def test_unknown_session(self, make_account):
        alice = await make_account("alice")
        bob = await make_account("bob")
        await bob.sessions.decrypt("alice", await alice.sessions.encrypt("bob", "hi"))
        await alice.sessions.decrypt("bob", await bob.sessions.encrypt("alice", "hey"))

        msg = await alice.sessions.encrypt("bob", "after reset")
        await bob.sessions.reset_session("alice")

        with pytest.raises(UnknownSession):
            await bob.sessions.decrypt("alice", msg)

    @pytest.mark.asyncio
    async def test_forged_bundle_signature(self, make_account, directory):
        alice = await make_account("alice")
        await make_account("bob")
        directory._bundles["bob"]["signed_prekey"]["signature"] = b64e(bytes(64))

        with pytest.raises(SignatureInvalid):
            await alice.sessions.encrypt("bob", "hello")
        assert not await alice.sessions.has_session("bob")
        assert await alice.store.get_trusted_key("bob") is None

    @pytest.mark.asyncio
    async def test_malformed_fields_are_typed_failures(self, make_account):
        alice = await make_account("alice")
        bob = await make_account("bob")
        await bob.sessions.decrypt("alice", await alice.sessions.encrypt("bob", "hi"))

        msg = await alice.sessions.encrypt("bob", "hello")
        stored = (await bob.store.get_session("alice")).to_dict()
        for bad in (
            msg.model_copy(update={"iv": b64e(bytes(4))}),
            msg.model_copy(update={"ratchet_key": b64e(b"short")}),
            msg.model_copy(update={"ciphertext": "not-base64!"}),
        ):
            with pytest.raises(DecryptionFailed):
                await bob.sessions.decrypt("alice", bad)

        assert (await bob.store.get_session("alice")).to_dict() == stored
        assert (await bob.sessions.decrypt("alice", msg)).text == "hello"

    @pytest.mark.asyncio
    async def test_malformed_initial_message(self, make_account):
        alice = await make_account("alice")
        bob = await make_account("bob")
        msg = await alice.sessions.encrypt("bob", "hi")

        with pytest.raises(DecryptionFailed):
            await bob.sessions.decrypt("alice", msg.model_copy(update={"ephemeral_key": b64e(b"x" * 5)}))
        assert not await bob.sessions.has_session("alice")
        assert await bob.store.get_trusted_key("alice") is None

    @pytest.mark.asyncio
    async def test_one_time_key_removal_failure_saves_no_session(self, make_account):
        alice = await make_account("alice")
        store = FailingOneTimeKeyStore(TEST_CONFIG)
        bob = await make_account("bob", store=store)
        msg = await alice.sessions.encrypt("bob", "hi")

        store.fail = True
        with pytest.raises(ConnectionError):
            await bob.sessions.decrypt("alice", msg)
        assert not await bob.sessions.has_session("alice")

        store.fail = False
        assert (await bob.sessions.decrypt("alice", msg)).text == "hi"
        assert await store.get_one_time_prekey(msg.one_time_key_id) is None


class TestTrust:
    """Identity pinning and verification."""

    @pytest.mark.asyncio
    async def test_keys_pinned_on_first_contact(self, make_account):
        alice = await make_account("alice")
        bob = await make_account("bob")
        await bob.sessions.decrypt("alice", await alice.sessions.encrypt("bob", "hi"))

        bob_key = bob.keys.get_identity_public_key()
        alice_key = alice.keys.get_identity_public_key()
        assert await alice.sessions.verify_identity("bob", bob_key)
        assert await bob.sessions.verify_identity("alice", alice_key)
        assert not await alice.sessions.verify_identity("bob", alice_key)

    @pytest.mark.asyncio
    async def test_changed_identity_raises_until_accepted(self, make_account):
        alice = await make_account("alice")
        bob = await make_account("bob")
        await bob.sessions.decrypt("alice", await alice.sessions.encrypt("bob", "hi"))

        # bob reinstalls: new identity, new bundle
        await bob.keys.reset()
        await bob.keys.initialize()
        await alice.sessions.reset_session("bob")

        with pytest.raises(IdentityKeyMismatch) as excinfo:
            await alice.sessions.encrypt("bob", "who is this?")
        assert excinfo.value.presented_key == bob.keys.get_identity_public_key()
        assert not await alice.sessions.has_session("bob")

        await alice.sessions.accept_identity("bob", bob.keys.get_identity_public_key())
        msg = await alice.sessions.encrypt("bob", "verified")
        assert (await bob.sessions.decrypt("alice", msg)).text == "verified"

    @pytest.mark.asyncio
    async def test_incoming_initial_with_changed_identity(self, make_account):
        alice = await make_account("alice")
        bob = await make_account("bob")
        await bob.sessions.decrypt("alice", await alice.sessions.encrypt("bob", "hi"))

        await alice.keys.reset()
        await alice.keys.initialize()
        msg = await alice.sessions.encrypt("bob", "new phone")

        with pytest.raises(IdentityKeyMismatch):
            await bob.sessions.decrypt("alice", msg)

    @pytest.mark.asyncio
    async def test_security_codes_match(self, make_account):
        alice = await make_account("alice")
        bob = await make_account("bob")
        await bob.sessions.decrypt("alice", await alice.sessions.encrypt("bob", "hi"))

        code = await alice.sessions.security_code("bob")
        assert code == await bob.sessions.security_code("alice")
        assert code == generate_security_code(alice.keys.get_identity_public_key(),
                                              bob.keys.get_identity_public_key())

    @pytest.mark.asyncio
    async def test_security_code_before_contact_uses_directory(self, make_account):
        alice = await make_account("alice")
        await make_account("bob")

        assert await alice.sessions.security_code("bob") is not None
        assert await alice.sessions.security_code("nobody") is None


class TestSessionManagement:
    """Housekeeping around sessions."""

    @pytest.mark.asyncio
    async def test_sweep_purges_expired_skipped_keys(self, make_account):
        alice = await make_account("alice")
        bob = await make_account("bob")
        m0 = await alice.sessions.encrypt("bob", "m0")
        m1 = await alice.sessions.encrypt("bob", "m1")
        await bob.sessions.decrypt("alice", m1, now=1000.0)

        assert await bob.sessions.sweep(now=1000.0) == 0
        assert await bob.sessions.sweep(now=1000.0 + 24 * 60 * 60 + 1) == 1
        with pytest.raises(DecryptionFailed):
            await bob.sessions.decrypt("alice", m0)

    @pytest.mark.asyncio
    async def test_processed_initials_are_bounded(self, make_account, monkeypatch):
        monkeypatch.setattr(session_module, "MAX_PROCESSED_INITIALS", 1)
        alice = await make_account("alice")
        carol = await make_account("carol")
        bob = await make_account("bob")

        first = await alice.sessions.encrypt("bob", "one")
        await bob.sessions.decrypt("alice", first)
        from_carol = await carol.sessions.encrypt("bob", "hey")
        await bob.sessions.decrypt("carol", from_carol)
        assert list(bob.sessions._processed_initials) == [from_carol.ephemeral_key]

        # alice still repeats her initial fields; the stored session recognises them
        second = await alice.sessions.encrypt("bob", "two")
        assert second.ephemeral_key == first.ephemeral_key
        assert (await bob.sessions.decrypt("alice", second)).text == "two"
        assert (await bob.sessions.decrypt("carol", await carol.sessions.encrypt("bob", "again"))).text == "again"

    @pytest.mark.asyncio
    async def test_reset_all(self, make_account):
        alice = await make_account("alice")
        await make_account("bob")
        await alice.sessions.encrypt("bob", "hi")

        await alice.sessions.reset_all()
        assert not await alice.sessions.has_session("bob")
        assert alice.keys.identity is None

    @pytest.mark.asyncio
    async def test_attachment_key_travels_in_payload(self, make_account):
        alice = await make_account("alice")
        bob = await make_account("bob")
        blob, file_key = encrypt_attachment(b"\x89PNG...image bytes")

        msg = await alice.sessions.encrypt("bob", MessagePayload(text="photo", file_key=file_key))
        payload = await bob.sessions.decrypt("alice", msg)

        assert payload.text == "photo"
        assert decrypt_attachment(blob, payload.file_key) == b"\x89PNG...image bytes"

    def test_attachment_with_wrong_key(self):
        blob, _ = encrypt_attachment(b"data")
        _, other_key = encrypt_attachment(b"other")
        with pytest.raises(DecryptionFailed):
            decrypt_attachment(blob, other_key)

    def test_attachment_with_malformed_key(self):
        blob, _ = encrypt_attachment(b"data")
        with pytest.raises(DecryptionFailed):
            decrypt_attachment(blob, "not-base64!")
        with pytest.raises(DecryptionFailed):
            decrypt_attachment(blob, b64e(b"k" * 7))
