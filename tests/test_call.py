"""
CallCrypto Tests

Per-frame media encryption for 1:1 calls and conferences.
"""

import pytest

from e2ee.call import CALL_KEY_LENGTH, CallCrypto, ConferenceCrypto, supports_frame_transforms
from e2ee.errors import CryptoError
from e2ee.primitive import IV_LENGTH, b64d, b64e

FRAME = b"\x00\x01opus-frame-payload" * 4


async def frames(*items):
    for item in items:
        yield item


def make_call():
    """Two endpoints that exchanged keys over signaling."""
    caller, callee = CallCrypto(), CallCrypto()
    callee.set_decrypt_key(caller.generate_key())
    caller.set_decrypt_key(callee.generate_key())
    return caller, callee


class TestCallCrypto:
    """1:1 frame transforms."""

    def test_generate_key(self):
        call = CallCrypto()
        key = call.generate_key()
        assert len(b64d(key)) == CALL_KEY_LENGTH
        assert call.key_b64 == key
        assert call.encryption_enabled

    def test_frame_round_trip(self):
        caller, callee = make_call()
        sealed = caller.encrypt_frame(FRAME)

        assert len(sealed) == IV_LENGTH + len(FRAME) + 16
        assert sealed[IV_LENGTH:] != FRAME
        assert callee.decrypt_frame(sealed) == FRAME

    def test_each_frame_gets_fresh_iv(self):
        caller, _ = make_call()
        assert caller.encrypt_frame(FRAME)[:IV_LENGTH] != caller.encrypt_frame(FRAME)[:IV_LENGTH]

    def test_bad_frame_is_dropped(self):
        caller, callee = make_call()
        sealed = bytearray(caller.encrypt_frame(FRAME))
        sealed[-1] ^= 0xFF

        assert callee.decrypt_frame(bytes(sealed)) is None
        assert callee.decrypt_frame(b"short") is None
        assert callee.dropped_frames == 2
        # the call goes on
        assert callee.decrypt_frame(caller.encrypt_frame(FRAME)) == FRAME

    def test_wrong_direction_key_drops(self):
        caller, callee = make_call()
        # frames sealed with the callee's own key cannot be opened with the caller's key
        assert callee.decrypt_frame(callee.encrypt_frame(FRAME)) is None

    def test_disable_encryption_falls_back_to_plaintext(self):
        caller, callee = make_call()
        caller.disable_encryption()

        assert not caller.encryption_enabled
        assert caller.encrypt_frame(FRAME) == FRAME

    def test_no_decrypt_key_passes_through(self):
        call = CallCrypto()
        assert call.decrypt_frame(FRAME) == FRAME

    def test_bad_key_length(self):
        with pytest.raises(CryptoError):
            CallCrypto().set_decrypt_key(b64e(b"x" * 32))

    def test_empty_key_is_ignored(self):
        call = CallCrypto()
        call.set_decrypt_key(None)
        assert call.decrypt_frame(FRAME) == FRAME

    def test_destroy(self):
        caller, callee = make_call()
        callee.destroy()
        assert callee.key_b64 is None
        assert not callee.encryption_enabled

    @pytest.mark.asyncio
    async def test_stream_transforms(self):
        caller, callee = make_call()
        sealed = [f async for f in caller.encrypt_frames(frames(b"a" * 20, b"b" * 20))]
        stream = frames(sealed[0], b"garbage-garbage-garbage", sealed[1])

        opened = [f async for f in callee.decrypt_frames(stream)]
        assert opened == [b"a" * 20, b"b" * 20]
        assert callee.dropped_frames == 1


class TestConferenceCrypto:
    """N-party frame transforms with per-participant keys."""

    def test_per_participant_keys(self):
        me, bob, carol = ConferenceCrypto(), ConferenceCrypto(), ConferenceCrypto()
        bob_key, carol_key = bob.generate_key(), carol.generate_key()
        me.generate_key()
        me.set_decrypt_key("bob", bob_key)
        me.set_decrypt_key("carol", carol_key)

        assert me.participants() == ["bob", "carol"]
        assert me.decrypt_frame("bob", bob.encrypt_frame(FRAME)) == FRAME
        assert me.decrypt_frame("carol", carol.encrypt_frame(FRAME)) == FRAME
        assert me.decrypt_frame("carol", bob.encrypt_frame(FRAME)) is None

    def test_remove_participant_rotates_key(self):
        me, carol = ConferenceCrypto(), ConferenceCrypto()
        old_key = me.generate_key()
        carol.set_decrypt_key("me", old_key)
        me.set_decrypt_key("carol", carol.generate_key())

        new_key = me.remove_participant("carol")

        assert new_key != old_key
        assert me.participants() == []
        # carol still holds the old key and cannot follow new frames
        assert carol.decrypt_frame("me", me.encrypt_frame(FRAME)) is None

    @pytest.mark.asyncio
    async def test_stream_transforms(self):
        me, bob = ConferenceCrypto(), ConferenceCrypto()
        me.set_decrypt_key("bob", bob.generate_key())
        sealed = [f async for f in bob.encrypt_frames(frames(FRAME, FRAME))]

        opened = [f async for f in me.decrypt_frames("bob", frames(*sealed))]
        assert opened == [FRAME, FRAME]

    def test_destroy(self):
        me = ConferenceCrypto()
        me.generate_key()
        me.set_decrypt_key("bob", ConferenceCrypto().generate_key())
        me.destroy()

        assert me.key_b64 is None
        assert me.participants() == []


class TestCapabilities:

    def test_supports_frame_transforms(self):
        assert supports_frame_transforms({"frame_transforms": True})
        assert supports_frame_transforms({"insertable_streams": True})
        assert not supports_frame_transforms({})
        assert not supports_frame_transforms({"frame_transforms": False})
