"""
Complete End-to-End Example: sessions, rooms and calls

Demonstrates the engine driving a full secure conversation:
1. Key setup (identity, signed pre-key, one-time pre-keys published)
2. First message (X3DH handshake folded into the first ratchet message)
3. Bidirectional and out-of-order messaging
4. Safety numbers
5. Group room keys and per-frame call encryption
"""

import asyncio

from e2ee import (
    CallCrypto,
    EngineConfig,
    GroupCrypto,
    KeyManager,
    MemoryBundleDirectory,
    MemorySessionStore,
    SessionManager,
)


async def make_account(name, directory, config):
    store = MemorySessionStore(config)
    keys = KeyManager(name, store, directory, config)
    await keys.initialize()
    return store, keys, SessionManager(keys, store, config)


async def main():
    config = EngineConfig()
    directory = MemoryBundleDirectory()

    # ========================================
    # SETUP PHASE: key material
    # ========================================

    print("=" * 60)
    print("SETUP: Identity and pre-key bundles")
    print("=" * 60)

    alice_store, alice_keys, alice = await make_account("alice", directory, config)
    bob_store, bob_keys, bob = await make_account("bob", directory, config)

    print(f"✓ Alice identity: {alice_keys.get_identity_public_key()[:20]}...")
    print(f"✓ Bob identity:   {bob_keys.get_identity_public_key()[:20]}...")
    print(f"  Bob has {await directory.one_time_key_count('bob')} one-time pre-keys published")

    # ========================================
    # MESSAGING PHASE: Bidirectional Communication
    # ========================================

    print("\n" + "=" * 60)
    print("MESSAGING: Bidirectional Encrypted Communication")
    print("=" * 60)

    msg1 = await alice.encrypt("bob", "Hi Bob! This is our first encrypted message.")
    print(f"\nAlice sends message with X3DH header (ephemeral {msg1.ephemeral_key[:20]}...)")
    print(f"  Header: {{ratchet_key: {msg1.ratchet_key[:20]}..., n: {msg1.counter}, pn: {msg1.previous_chain_length}}}")
    print(f"Bob receives: '{(await bob.decrypt('alice', msg1)).text}'")

    reply = await bob.encrypt("alice", "I'm doing great! Thanks for asking.")
    print(f"\nBob replies (new ratchet key {reply.ratchet_key[:20]}...)")
    print(f"Alice receives: '{(await alice.decrypt('bob', reply)).text}'")

    follow_up = await alice.encrypt("bob", "Nice! Let's encrypt all our messages.")
    assert follow_up.ephemeral_key is None
    print("  NOTE: Alice stops sending the X3DH header once Bob has answered")
    print(f"Bob receives: '{(await bob.decrypt('alice', follow_up)).text}'")

    # ========================================
    # OUT-OF-ORDER MESSAGE HANDLING
    # ========================================

    print("\n" + "=" * 60)
    print("OUT-OF-ORDER: Handling Late-Arriving Messages")
    print("=" * 60)

    sent = [await alice.encrypt("bob", f"Message number {i + 1}") for i in range(3)]
    for m in sent:
        print(f"  [{m.counter}] sent")

    print("\nBob receives out of order: [2], [0], [1]")
    for i in (2, 0, 1):
        payload = await bob.decrypt("alice", sent[i])
        state = await bob_store.get_session("alice")
        print(f"  [{sent[i].counter}] {payload.text} ✓  (skipped keys held: {len(state.skipped)})")

    # ========================================
    # SAFETY NUMBERS
    # ========================================

    print("\n" + "=" * 60)
    print("VERIFICATION: Safety numbers")
    print("=" * 60)

    alice_code = await alice.security_code("bob")
    bob_code = await bob.security_code("alice")
    assert alice_code == bob_code
    print(f"✓ Both sides show: {alice_code}")

    # ========================================
    # GROUPS
    # ========================================

    print("\n" + "=" * 60)
    print("GROUPS: Room key distribution")
    print("=" * 60)

    outbox = []

    async def send(recipient, message):
        outbox.append((recipient, message))

    alice_group = GroupCrypto(alice, alice_store, send)
    bob_group = GroupCrypto(bob, bob_store, send)

    await alice_group.generate_group_key("lobby")
    result = await alice_group.distribute_key("lobby", ["alice", "bob"], "alice")
    print(f"✓ Room key v{result.version} delivered to {result.delivered}")
    for recipient, wrapped in outbox:
        if recipient == "bob":
            await bob_group.receive_key("alice", "lobby", wrapped)

    room_msg = await alice_group.encrypt("lobby", "Hello room!")
    print(f"Bob reads room message: '{(await bob_group.decrypt_message(room_msg)).text}'")

    # ========================================
    # CALLS
    # ========================================

    print("\n" + "=" * 60)
    print("CALLS: Per-frame media encryption")
    print("=" * 60)

    caller, callee = CallCrypto(), CallCrypto()
    callee.set_decrypt_key(caller.generate_key())
    caller.set_decrypt_key(callee.generate_key())

    frame = b"\x00" * 160
    sealed = caller.encrypt_frame(frame)
    assert callee.decrypt_frame(sealed) == frame
    print(f"✓ {len(frame)}-byte frame sealed into {len(sealed)} bytes and opened")

    print("\n" + "=" * 60)
    print("✓ COMPLETE END-TO-END EXAMPLE SUCCESSFUL")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
