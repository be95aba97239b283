"""
GroupCrypto Tests

Room key generation, distribution over pairwise sessions, rotation on
member removal and version purging.
"""

import pytest

from e2ee.errors import CryptoError, DecryptionFailed, NoGroupKey
from e2ee.group import GroupCrypto
from e2ee.messages import GroupMessage
from e2ee.primitive import b64e

ROOM = "room-1"


class Outbox:
    """Collects wrapped keys instead of sending them over a transport."""

    def __init__(self):
        self.sent = []

    async def __call__(self, recipient, message):
        self.sent.append((recipient, message))

    def for_(self, recipient):
        return [m for r, m in self.sent if r == recipient]


async def deliver(outbox, sender, member, group):
    for wrapped in outbox.for_(member.name):
        await group.receive_key(sender, ROOM, wrapped)


@pytest.fixture
def make_member(make_account):
    async def _make(name):
        account = await make_account(name)
        outbox = Outbox()
        account.group = GroupCrypto(account.sessions, account.store, outbox)
        account.outbox = outbox
        return account
    return _make


class TestGroupKey:
    """Local key generation."""

    @pytest.mark.asyncio
    async def test_versions_increase(self, make_member):
        alice = await make_member("alice")
        first = await alice.group.generate_group_key(ROOM)
        second = await alice.group.generate_group_key(ROOM)

        assert (first.version, second.version) == (1, 2)
        assert first.key_b64 != second.key_b64

    @pytest.mark.asyncio
    async def test_encrypt_without_key(self, make_member):
        alice = await make_member("alice")
        with pytest.raises(NoGroupKey):
            await alice.group.encrypt(ROOM, "hello")

    @pytest.mark.asyncio
    async def test_own_messages_decrypt(self, make_member):
        alice = await make_member("alice")
        await alice.group.generate_group_key(ROOM)

        msg = await alice.group.encrypt(ROOM, "note to self")
        assert msg.version == 1
        assert (await alice.group.decrypt_message(msg)).text == "note to self"


class TestDistribution:
    """Handing the room key to members."""

    @pytest.mark.asyncio
    async def test_distribute_and_decrypt(self, make_member):
        alice = await make_member("alice")
        bob = await make_member("bob")
        carol = await make_member("carol")
        await alice.group.generate_group_key(ROOM)

        result = await alice.group.distribute_key(ROOM, ["alice", "bob", "carol"], "alice")
        assert sorted(result.delivered) == ["bob", "carol"]
        assert result.failed == []

        await deliver(alice.outbox, "alice", bob, bob.group)
        await deliver(alice.outbox, "alice", carol, carol.group)

        msg = await alice.group.encrypt(ROOM, "hi all")
        assert (await bob.group.decrypt(ROOM, msg.ciphertext, msg.iv, msg.version)).text == "hi all"
        assert (await carol.group.decrypt(ROOM, msg.ciphertext, msg.iv)).text == "hi all"

    @pytest.mark.asyncio
    async def test_partial_failure_is_retried(self, make_member, make_account):
        alice = await make_member("alice")
        await make_member("bob")
        await alice.group.generate_group_key(ROOM)

        result = await alice.group.distribute_key(ROOM, ["bob", "dave"])
        assert result.delivered == ["bob"]
        assert result.failed == ["dave"]
        assert alice.group.pending == {ROOM: {"dave"}}

        dave = await make_account("dave")
        retried = await alice.group.retry_pending()
        assert retried[ROOM].delivered == ["dave"]
        assert alice.group.pending == {}

        wrapped = alice.outbox.for_("dave")[-1]
        dave_group = GroupCrypto(dave.sessions, dave.store, Outbox())
        key = await dave_group.receive_key("alice", ROOM, wrapped)
        assert key.version == 1

    @pytest.mark.asyncio
    async def test_receive_key_for_wrong_room(self, make_member):
        alice = await make_member("alice")
        bob = await make_member("bob")
        await alice.group.generate_group_key(ROOM)
        await alice.group.distribute_key(ROOM, ["bob"])

        with pytest.raises(CryptoError):
            await bob.group.receive_key("alice", "other-room", alice.outbox.for_("bob")[0])

    @pytest.mark.asyncio
    async def test_plain_message_is_not_a_key(self, make_member):
        alice = await make_member("alice")
        bob = await make_member("bob")
        msg = await alice.sessions.encrypt("bob", "just chatting")

        with pytest.raises(CryptoError):
            await bob.group.receive_key("alice", ROOM, msg)

    @pytest.mark.asyncio
    async def test_tampered_group_message(self, make_member):
        alice = await make_member("alice")
        await alice.group.generate_group_key(ROOM)
        msg = await alice.group.encrypt(ROOM, "hello")

        forged = GroupMessage(room_id=ROOM, ciphertext=msg.ciphertext, iv=msg.iv, version=msg.version)
        forged.ciphertext = ("B" if msg.ciphertext[0] == "A" else "A") + msg.ciphertext[1:]
        with pytest.raises(DecryptionFailed):
            await alice.group.decrypt_message(forged)

    @pytest.mark.asyncio
    async def test_malformed_group_message(self, make_member):
        alice = await make_member("alice")
        await alice.group.generate_group_key(ROOM)
        msg = await alice.group.encrypt(ROOM, "hello")

        with pytest.raises(DecryptionFailed):
            await alice.group.decrypt(ROOM, msg.ciphertext, "not-base64!", msg.version)
        with pytest.raises(DecryptionFailed):
            await alice.group.decrypt(ROOM, msg.ciphertext, b64e(bytes(4)), msg.version)
        assert (await alice.group.decrypt_message(msg)).text == "hello"


class TestMembership:
    """Rotation on removal and version lifetime."""

    @pytest.mark.asyncio
    async def test_removed_member_never_gets_new_key(self, make_member):
        alice = await make_member("alice")
        bob = await make_member("bob")
        carol = await make_member("carol")
        await alice.group.generate_group_key(ROOM)
        await alice.group.distribute_key(ROOM, ["bob", "carol"])
        await deliver(alice.outbox, "alice", bob, bob.group)
        await deliver(alice.outbox, "alice", carol, carol.group)
        old = await alice.group.encrypt(ROOM, "before")
        alice.outbox.sent.clear()

        result = await alice.group.remove_member(ROOM, "carol", ["alice", "bob", "carol"])
        assert result.version == 2
        assert result.delivered == ["bob"]
        assert alice.outbox.for_("carol") == []

        await deliver(alice.outbox, "alice", bob, bob.group)
        new = await alice.group.encrypt(ROOM, "after")
        assert new.version == 2
        assert (await bob.group.decrypt_message(new)).text == "after"
        with pytest.raises(NoGroupKey):
            await carol.group.decrypt_message(new)

        # history stays readable
        assert (await bob.group.decrypt_message(old)).text == "before"
        assert (await carol.group.decrypt_message(old)).text == "before"

    @pytest.mark.asyncio
    async def test_purge_version(self, make_member):
        alice = await make_member("alice")
        await alice.group.generate_group_key(ROOM)
        old = await alice.group.encrypt(ROOM, "v1")
        await alice.group.generate_group_key(ROOM)

        await alice.group.purge_version(ROOM, 1)
        with pytest.raises(NoGroupKey):
            await alice.group.decrypt_message(old)
        assert (await alice.group.encrypt(ROOM, "v2")).version == 2
