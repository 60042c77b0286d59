"""
Tests for governance/identity.py — IdentityRotator.

Covers:
  - Empty pool / disabled rotation return None without moving the cursor
  - Strict round-robin with wrap-around
  - Proxies added mid-rotation join at the end
  - Fingerprints drawn from the table; custom tables override defaults
"""

import random

from market_governor.governance.identity import IdentityRotator
from market_governor.governance.models import ProxyEndpoint


def _pool(n: int) -> list[ProxyEndpoint]:
    return [ProxyEndpoint(host=f"10.0.0.{i}", port=8000 + i) for i in range(n)]


class TestProxyRotation:
    def test_empty_pool_returns_none(self):
        rot = IdentityRotator()
        assert rot.next_proxy() is None
        assert rot.cursor == 0

    def test_round_robin_wraps(self):
        rot = IdentityRotator()
        pool = _pool(3)
        for p in pool:
            rot.add_proxy(p)

        picked = [rot.next_proxy() for _ in range(7)]
        assert picked == [pool[0], pool[1], pool[2], pool[0], pool[1], pool[2], pool[0]]
        assert rot.cursor == 1

    def test_disabled_returns_none_and_keeps_cursor(self):
        rot = IdentityRotator()
        for p in _pool(2):
            rot.add_proxy(p)
        rot.next_proxy()

        assert rot.next_proxy(enabled=False) is None
        assert rot.cursor == 1

    def test_added_proxy_joins_rotation(self):
        rot = IdentityRotator()
        first, second = _pool(2)
        rot.add_proxy(first)
        assert rot.next_proxy() == first
        rot.add_proxy(second)
        assert rot.next_proxy() == first
        assert rot.next_proxy() == second

    def test_proxies_is_immutable_view(self):
        rot = IdentityRotator()
        rot.add_proxy(_pool(1)[0])
        assert isinstance(rot.proxies, tuple)
        assert len(rot.proxies) == 1


class TestFingerprints:
    def test_default_table_used(self):
        rot = IdentityRotator(rng=random.Random(3))
        assert len(rot.fingerprints) == 5
        for _ in range(20):
            assert rot.random_fingerprint() in IdentityRotator.DEFAULT_FINGERPRINTS

    def test_custom_table(self):
        rot = IdentityRotator(fingerprints=["agent-a", "agent-b"])
        assert rot.fingerprints == ("agent-a", "agent-b")
        assert rot.random_fingerprint() in {"agent-a", "agent-b"}

    def test_empty_table_keeps_defaults(self):
        rot = IdentityRotator(fingerprints=[])
        assert rot.fingerprints == IdentityRotator.DEFAULT_FINGERPRINTS

    def test_selection_is_independent_of_proxy_cursor(self):
        rot = IdentityRotator(rng=random.Random(0))
        seen = {rot.random_fingerprint() for _ in range(200)}
        assert len(seen) > 1
