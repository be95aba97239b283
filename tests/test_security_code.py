"""Security code (safety number) tests."""

import re

from e2ee.keys import IdentityKeyPair
from e2ee.security_code import GROUPS, generate_security_code


class TestSecurityCode:

    def test_format(self):
        a, b = IdentityKeyPair.generate(), IdentityKeyPair.generate()
        code = generate_security_code(a.dh_pub_b64, b.dh_pub_b64)
        assert re.fullmatch(r"\d{4}( \d{4}){%d}" % (GROUPS - 1), code)

    def test_commutative(self):
        a, b = IdentityKeyPair.generate(), IdentityKeyPair.generate()
        assert generate_security_code(a.dh_pub_b64, b.dh_pub_b64) == \
            generate_security_code(b.dh_pub_b64, a.dh_pub_b64)

    def test_deterministic(self):
        a, b = IdentityKeyPair.generate(), IdentityKeyPair.generate()
        assert generate_security_code(a.dh_pub_b64, b.dh_pub_b64) == \
            generate_security_code(a.dh_pub_b64, b.dh_pub_b64)

    def test_changes_when_either_key_changes(self):
        a, b, c = IdentityKeyPair.generate(), IdentityKeyPair.generate(), IdentityKeyPair.generate()
        base = generate_security_code(a.dh_pub_b64, b.dh_pub_b64)
        assert generate_security_code(a.dh_pub_b64, c.dh_pub_b64) != base
        assert generate_security_code(c.dh_pub_b64, b.dh_pub_b64) != base
